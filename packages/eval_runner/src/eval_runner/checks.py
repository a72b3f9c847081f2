from __future__ import annotations

import json
import subprocess
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from eval_runner.display import RunDisplayState
from eval_runner.runlog import RunLog

COMMAND_SUCCESS = "command_success"
FILE_EXISTS = "file_exists"

# YAML key -> check kind
CHECK_KEYS: dict[str, str] = {
    "commandSuccess": COMMAND_SUCCESS,
    "fileExists": FILE_EXISTS,
}


@dataclass(frozen=True)
class CommandSuccess:
    command: str
    output_contains: str | None = None


@dataclass(frozen=True)
class FileExists:
    paths: tuple[str, ...]


@dataclass(frozen=True)
class Check:
    name: str
    kind: str
    payload: CommandSuccess | FileExists

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any]) -> Check:
        name = str(raw["name"])
        if "commandSuccess" in raw:
            value = raw["commandSuccess"]
            if isinstance(value, Mapping):
                contains = value.get("outputContains")
                payload: CommandSuccess | FileExists = CommandSuccess(
                    command=str(value["command"]),
                    output_contains=str(contains) if contains else None,
                )
            else:
                payload = CommandSuccess(command=str(value))
            return cls(name=name, kind=COMMAND_SUCCESS, payload=payload)
        if "fileExists" in raw:
            value = raw["fileExists"]
            paths = (value,) if isinstance(value, str) else tuple(str(p) for p in value)
            return cls(name=name, kind=FILE_EXISTS, payload=FileExists(paths=paths))
        raise ValueError(f"Check {name!r} declares no known kind ({', '.join(CHECK_KEYS)}).")


@dataclass(frozen=True)
class CheckResult:
    score: float
    message: str = ""

    @property
    def passed(self) -> bool:
        return self.score > 0

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "message": self.message}


@dataclass(frozen=True)
class CheckContext:
    workspace_dir: Path
    log: RunLog


def _command_success(ctx: CheckContext, payload: CommandSuccess) -> CheckResult:
    command = payload.command
    ctx.log.section_start("evaluation command", command)
    proc = subprocess.run(
        command,
        shell=True,
        cwd=str(ctx.workspace_dir),
        stdin=subprocess.DEVNULL,
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=False,
    )
    stdout = proc.stdout or ""
    stderr = proc.stderr or ""
    ctx.log.write(stdout)
    ctx.log.write(stderr)
    ctx.log.section_end("evaluation command", command, exit_code=proc.returncode)

    output = f"\n\nSTDOUT:\n{stdout}\n\nSTDERR:\n{stderr}"
    if proc.returncode != 0:
        return CheckResult(0.0, f"Command '{command}' exited with code {proc.returncode}.{output}")
    if not payload.output_contains:
        return CheckResult(1.0, f"Command '{command}' was successful.{output}")
    expected = json.dumps(payload.output_contains)
    if payload.output_contains in stdout:
        return CheckResult(1.0, f"Command '{command}' contained output {expected}.{output}")
    return CheckResult(0.0, f"Command '{command}' output did not contain {expected}.{output}")


def _file_exists(ctx: CheckContext, payload: FileExists) -> CheckResult:
    missing = next((p for p in payload.paths if not (ctx.workspace_dir / p).exists()), None)
    score = 1.0 if missing is None else 0.0
    joined = ", ".join(payload.paths)
    ctx.log.write(f"\n--- Evaluation fileExists: {joined} (Result: {score}) ---\n")
    if missing is None:
        return CheckResult(score, f"All files exist: {joined}")
    return CheckResult(score, f"File not found: {missing}")


_CHECK_HANDLERS: dict[str, Callable[[CheckContext, Any], CheckResult]] = {
    COMMAND_SUCCESS: _command_success,
    FILE_EXISTS: _file_exists,
}


def run_checks(
    checks: Iterable[Check],
    ctx: CheckContext,
    *,
    state: RunDisplayState | None = None,
) -> dict[str, CheckResult]:
    """Score the finished workspace. Results are keyed by check name; the last duplicate wins."""

    checks = list(checks)
    results: dict[str, CheckResult] = {}
    for i, check in enumerate(checks, start=1):
        if state is not None:
            state.set_message(f"evaluating: {check.name} ({i}/{len(checks)})")
        handler = _CHECK_HANDLERS.get(check.kind)
        if handler is None:
            raise ValueError(f"Unsupported check kind: {check.kind}")
        results[check.name] = handler(ctx, check.payload)
    return results
