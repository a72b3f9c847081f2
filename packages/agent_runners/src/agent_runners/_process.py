from __future__ import annotations

import os
import queue
import shlex
import shutil
import subprocess
import threading
import time
from collections.abc import Iterator, Sequence
from pathlib import Path

from agent_runners.base import CancelSignal

_EOF = object()

# After a kill, stop waiting for stdout EOF if grandchildren keep the pipe open.
_KILL_DRAIN_SECONDS = 2.0


def resolve_binary(env_var: str, default: str) -> str:
    raw = os.environ.get(env_var)
    binary = raw.strip() if raw is not None and raw.strip() else default
    return _resolve_executable(binary)


def _resolve_executable(binary: str) -> str:
    p = Path(binary)
    if p.is_absolute():
        return str(p)

    # Treat anything with a path separator as an explicit path, not a PATH lookup.
    if any(sep in binary for sep in ("/", "\\")):
        return binary

    resolved = shutil.which(binary)
    return resolved if resolved is not None else binary


def format_command(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(part) for part in argv)


def launch_error(label: str, binary: str, env_var: str, exc: OSError) -> RuntimeError:
    hint = "Ensure it is installed and on PATH"
    if env_var != "PATH":
        hint += f", or set {env_var} to its full path"
    return RuntimeError(f"Could not launch {label} process. binary={binary!r}: {exc}. {hint}.")


class StreamedProcess:
    """Run a process and yield its stdout lines while honoring a cancel signal.

    stderr goes to ``stderr_path``. Once the signal is set the process is killed
    and the line sequence ends; :attr:`exit_code` and :attr:`cancelled` are valid
    after iteration finishes.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        cwd: Path,
        cancel_token: CancelSignal,
        stderr_path: Path,
        stdin_text: str | None = None,
        env: dict[str, str] | None = None,
        label: str = "agent",
        binary_env_var: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.label = label
        self.binary_env_var = binary_env_var
        self.cwd = cwd
        self.cancel_token = cancel_token
        self.stderr_path = stderr_path
        self.stdin_text = stdin_text
        self.env = env
        self.exit_code: int | None = None
        self.cancelled = False

    def lines(self) -> Iterator[str]:
        self.stderr_path.parent.mkdir(parents=True, exist_ok=True)
        with self.stderr_path.open("w", encoding="utf-8", newline="\n") as stderr_f:
            try:
                proc = subprocess.Popen(
                    self.argv,
                    cwd=str(self.cwd),
                    stdin=subprocess.PIPE if self.stdin_text is not None else subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_f,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    env=self.env,
                )
            except OSError as e:
                stderr_f.write(f"Failed to launch {self.label} process.\nargv[0]={self.argv[0]!r}\n")
                raise launch_error(
                    self.label, self.argv[0], self.binary_env_var or "PATH", e
                ) from e
            if proc.stdin is not None:
                try:
                    proc.stdin.write(self.stdin_text or "")
                except BrokenPipeError:
                    pass
                finally:
                    try:
                        proc.stdin.close()
                    except OSError:
                        pass

            lines: queue.Queue[object] = queue.Queue()

            def _stream_stdout() -> None:
                try:
                    if proc.stdout is not None:
                        for line in proc.stdout:
                            lines.put(line)
                finally:
                    lines.put(_EOF)

            reader = threading.Thread(target=_stream_stdout, daemon=True)
            reader.start()

            killed_at: float | None = None
            try:
                while True:
                    if killed_at is None and self.cancel_token.is_set():
                        self.cancelled = True
                        stderr_f.write("Cancellation requested; terminating process.\n")
                        stderr_f.flush()
                        proc.kill()
                        killed_at = time.monotonic()
                    try:
                        item = lines.get(timeout=0.05)
                    except queue.Empty:
                        if killed_at is not None and time.monotonic() - killed_at > _KILL_DRAIN_SECONDS:
                            break
                        continue
                    if item is _EOF:
                        break
                    yield item  # type: ignore[misc]
            finally:
                if proc.poll() is None:
                    proc.kill()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    # Keep moving and report a failure exit code; avoid hanging here.
                    pass
                reader.join(timeout=1)

        self.exit_code = proc.returncode if proc.returncode is not None else 1


def run_captured(argv: Sequence[str], *, cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        list(argv),
        cwd=str(cwd),
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
