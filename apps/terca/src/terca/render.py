from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

from eval_runner.display import COMPLETE, ERROR, PENDING, RunDisplayState
from eval_runner.planner import RunTask
from run_results import EvalSummary


def _failed_checks(results: dict[str, dict[str, Any]] | None) -> list[str]:
    failed: list[str] = []
    for name, result in (results or {}).items():
        try:
            score = float(result.get("score", 0.0))
        except (TypeError, ValueError, AttributeError):
            score = 0.0
        if score <= 0:
            failed.append(name)
    return failed


def _stats_suffix(stats: dict[str, Any] | None) -> str:
    if not stats:
        return ""
    parts: list[str] = []
    duration = stats.get("durationSeconds")
    if isinstance(duration, (int, float)) and duration:
        parts.append(f"latency: {duration:.2f}s")
    tokens = int(stats.get("inputTokens") or 0) + int(stats.get("outputTokens") or 0)
    if tokens:
        parts.append(f"tokens: {tokens}")
    if stats.get("timedOut"):
        parts.append("timed out")
    return f" ({', '.join(parts)})" if parts else ""


def format_status(state: RunDisplayState) -> str:
    """One status line (plus indented details) for a run's current state."""

    head = f"{state.id:03d} {state.name}: "
    log_line = f"\n  - log: {state.log_file}" if state.log_file else ""
    if state.status == COMPLETE:
        failed = _failed_checks(state.results)
        line = head + ("PASS" if not failed else "FAIL") + _stats_suffix(state.stats)
        for name in failed:
            line += f"\n  - FAIL: {name}"
        if failed:
            line += log_line
        return line
    if state.status == ERROR:
        message = (state.error or {}).get("message", "unknown error")
        return head + f"error: {message}" + log_line
    if state.status == PENDING:
        return head + "pending"
    return head + (state.message or "running")


class StatusPrinter:
    """Emit a line whenever a run's (status, message) changes."""

    def __init__(self) -> None:
        self._seen: dict[int, tuple[str, str]] = {}

    def changes(self, states: Iterable[RunDisplayState]) -> list[str]:
        lines: list[str] = []
        for live in states:
            state = live.snapshot()
            key = (state.status, state.message)
            if self._seen.get(state.id) == key:
                continue
            if state.status == PENDING and state.id not in self._seen:
                self._seen[state.id] = key
                continue
            self._seen[state.id] = key
            lines.append(format_status(state))
        return lines


def format_plan(tasks: Sequence[RunTask]) -> str:
    lines = [f"{task.id:03d} {task.name}" for task in tasks]
    lines.append(f"{len(tasks)} run(s) planned.")
    return "\n".join(lines)


def format_summary(summaries: Sequence[EvalSummary], counts: dict[str, int]) -> str:
    lines = ["", "=== Terca Run Summary ==="]
    grouped: dict[tuple[str, str], list[EvalSummary]] = {}
    for s in summaries:
        grouped.setdefault((s.environment, s.experiment), []).append(s)
    for (environment, experiment), group in grouped.items():
        lines.append("")
        lines.append(f"=== {environment}: {experiment} ===")
        lines.extend(_summary_line(s) for s in group)
    lines.append("")
    lines.append(
        f"{counts.get('passed', 0)} passed, {counts.get('failed', 0)} failed, "
        f"{counts.get('errored', 0)} errored"
    )
    return "\n".join(lines)


def _summary_line(s: EvalSummary) -> str:
    line = (
        f"- {s.eval}: {s.verdict} ({s.passed}/{s.runs}), "
        f"avg {s.avg_duration_seconds:.1f}s, "
        f"token avg: {s.avg_input_tokens / 1000:.0f}K in / "
        f"{s.avg_output_tokens / 1000:.0f}K out / "
        f"{s.avg_cached_input_tokens / 1000:.0f}K cached"
    )
    if s.errors:
        line += f", {s.errors} error(s)"
    return line
