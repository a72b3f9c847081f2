from __future__ import annotations

import threading
from collections.abc import Callable

CancelCallback = Callable[[str], None]


class CancelToken:
    """A cancellation signal that can be composed into parent/child scopes.

    The API mirrors :class:`threading.Event` (``is_set`` / ``wait``) so adapters can
    treat it as one. Cancelling a token cancels every child created from it with the
    same reason; cancelling a child leaves the parent untouched.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: list[CancelCallback] = []
        self._parent = parent
        if parent is not None:
            parent.add_callback(self._on_parent_cancelled)

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel the token. Returns False when it was already cancelled."""

        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            callback(reason)
        return True

    def add_callback(self, callback: CancelCallback) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
            reason = self._reason or "cancelled"
        callback(reason)

    def remove_callback(self, callback: CancelCallback) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def detach(self) -> None:
        """Stop listening to the parent; call once the child's scope has ended."""

        if self._parent is not None:
            self._parent.remove_callback(self._on_parent_cancelled)
            self._parent = None

    def _on_parent_cancelled(self, reason: str) -> None:
        self.cancel(reason)
