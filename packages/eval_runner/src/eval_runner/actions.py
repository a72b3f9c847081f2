from __future__ import annotations

import shlex
import shutil
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from eval_runner.display import RunDisplayState
from eval_runner.runlog import RunLog

ACTION_KINDS: tuple[str, ...] = ("command", "copy", "files")


class ActionError(ValueError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or "before_action_failed"
        self.details = dict(details) if isinstance(details, dict) else {}
        self.hint = hint


@dataclass(frozen=True)
class BeforeAction:
    kind: str
    payload: Any

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> BeforeAction:
        for kind in ACTION_KINDS:
            if kind in raw:
                payload = raw[kind]
                if isinstance(payload, Mapping):
                    payload = dict(payload)
                return cls(kind=kind, payload=payload)
        raise ValueError(f"Unknown before action: {sorted(raw)}")


@dataclass(frozen=True)
class ActionContext:
    workspace_dir: Path
    root: Path
    log: RunLog
    state: RunDisplayState | None = None

    def report(self, message: str) -> None:
        if self.state is not None:
            self.state.set_message(message)


def resolve_under(base: Path, rel: str) -> Path:
    """Resolve ``rel`` under ``base`` and refuse paths that escape it."""

    base_resolved = base.resolve()
    candidate = (base_resolved / rel).resolve()
    if candidate != base_resolved and base_resolved not in candidate.parents:
        raise ActionError(
            f"Path escapes the workspace: {rel}",
            code="path_outside_workspace",
            details={"path": rel, "workspace": str(base_resolved)},
            hint="Use a relative path inside the run workspace.",
        )
    return candidate


def run_logged_command(command: str, *, cwd: Path, log: RunLog, kind: str) -> int:
    """Run ``command`` (split, not shell) in ``cwd`` with its output appended to ``log``."""

    argv = shlex.split(command)
    if not argv:
        raise ActionError(f"Empty {kind}.", code="empty_command")
    log.section_start(kind, command)
    sink = log.subprocess_sink()
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=sink,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as e:
        log.write(f"Failed to launch {kind}: {e}\n")
        raise ActionError(
            f"Could not launch {kind} {command!r}: {e}",
            code="command_launch_failed",
            details={"command": command, "argv": argv, "cwd": str(cwd), "error": str(e)},
            hint=f"Ensure `{argv[0]}` is installed and on PATH.",
        ) from e
    log.section_end(kind, command)
    return proc.returncode


def _run_command(ctx: ActionContext, payload: str) -> None:
    ctx.report(f"before: running `{payload}`")
    run_logged_command(payload, cwd=ctx.workspace_dir, log=ctx.log, kind="before command")


def _run_copy(ctx: ActionContext, payload: dict[str, str]) -> None:
    ctx.report("before: copying files")
    for src_raw, dest_raw in payload.items():
        src = Path(src_raw)
        if not src.is_absolute():
            src = ctx.root / src
        dest = resolve_under(ctx.workspace_dir, dest_raw)
        ctx.log.write(f"\n--- Before: copying {src_raw} -> {dest_raw} ---\n")
        if src.is_dir():
            shutil.copytree(src, dest, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)


def _run_files(ctx: ActionContext, payload: dict[str, str]) -> None:
    ctx.report("before: writing files")
    ctx.log.write(f"\n--- Before: writing files: {', '.join(payload)} ---\n")
    for dest_raw, content in payload.items():
        dest = resolve_under(ctx.workspace_dir, dest_raw)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(content, encoding="utf-8", newline="\n")


_HANDLERS: dict[str, Callable[[ActionContext, Any], None]] = {
    "command": _run_command,
    "copy": _run_copy,
    "files": _run_files,
}


def run_before_actions(actions: Iterable[BeforeAction], ctx: ActionContext) -> None:
    for action in actions:
        handler = _HANDLERS.get(action.kind)
        if handler is None:
            raise ActionError(
                f"Unsupported before action kind: {action.kind}",
                code="unknown_action_kind",
                details={"kind": action.kind, "supported": list(_HANDLERS)},
            )
        handler(ctx, action.payload)
