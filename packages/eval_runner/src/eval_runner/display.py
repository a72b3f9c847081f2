from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"
ERROR = "error"

TERMINAL_STATUSES = frozenset({COMPLETE, ERROR})


@dataclass
class RunDisplayState:
    """Progress of one run task.

    Written only by the worker that owns the task; renderers read through
    :meth:`snapshot` and never mutate the live object.
    """

    id: int
    name: str
    status: str = PENDING
    message: str = ""
    log_file: Path | None = None
    results: dict[str, dict[str, Any]] | None = None
    stats: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def set_message(self, message: str) -> None:
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                return
            self.status = RUNNING
            self.message = message

    def set_log_file(self, path: Path) -> None:
        with self._lock:
            self.log_file = path

    def complete(
        self,
        *,
        results: dict[str, dict[str, Any]],
        stats: dict[str, Any] | None,
    ) -> None:
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                return
            self.status = COMPLETE
            self.message = ""
            self.results = results
            self.stats = stats

    def fail(self, error: dict[str, Any]) -> None:
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                return
            self.status = ERROR
            self.error = error

    def snapshot(self) -> RunDisplayState:
        with self._lock:
            return RunDisplayState(
                id=self.id,
                name=self.name,
                status=self.status,
                message=self.message,
                log_file=self.log_file,
                results=copy.deepcopy(self.results),
                stats=copy.deepcopy(self.stats),
                error=copy.deepcopy(self.error),
            )


def initial_states(tasks: list[Any]) -> list[RunDisplayState]:
    return [RunDisplayState(id=task.id, name=task.name) for task in tasks]
