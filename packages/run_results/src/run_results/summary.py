from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from run_results.records import RunRecord

PASS_THRESHOLD = 0.8
WARN_THRESHOLD = 0.5


@dataclass(frozen=True)
class EvalSummary:
    environment: str
    experiment: str
    eval: str
    runs: int
    passed: int
    errors: int
    avg_duration_seconds: float
    avg_input_tokens: float
    avg_output_tokens: float
    avg_cached_input_tokens: float

    @property
    def pass_rate(self) -> float:
        if self.runs == 0:
            return 0.0
        return self.passed / self.runs

    @property
    def verdict(self) -> str:
        rate = self.pass_rate
        if rate > PASS_THRESHOLD:
            return "PASS"
        if rate > WARN_THRESHOLD:
            return "WARN"
        return "FAIL"


def _stat(record: RunRecord, key: str) -> float:
    if record.stats is None:
        return 0.0
    value = record.stats.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    return float(value)


def _mean(records: list[RunRecord], key: str) -> float:
    if not records:
        return 0.0
    return sum(_stat(r, key) for r in records) / len(records)


def summarize(records: Iterable[RunRecord]) -> list[EvalSummary]:
    """Group records by environment, experiment and eval, in run-id order."""

    groups: dict[tuple[str, str, str], list[RunRecord]] = {}
    for record in sorted(records, key=lambda r: r.id):
        key = (record.environment, record.experiment, record.eval)
        groups.setdefault(key, []).append(record)

    out: list[EvalSummary] = []
    for (environment, experiment, eval_name), group in groups.items():
        out.append(
            EvalSummary(
                environment=environment,
                experiment=experiment,
                eval=eval_name,
                runs=len(group),
                passed=sum(1 for r in group if r.passed),
                errors=sum(1 for r in group if r.is_error),
                avg_duration_seconds=_mean(group, "durationSeconds"),
                avg_input_tokens=_mean(group, "inputTokens"),
                avg_output_tokens=_mean(group, "outputTokens"),
                avg_cached_input_tokens=_mean(group, "cachedInputTokens"),
            )
        )
    return out


def count_outcomes(records: Iterable[RunRecord]) -> dict[str, int]:
    counts = {"passed": 0, "failed": 0, "errored": 0}
    for record in records:
        if record.is_error:
            counts["errored"] += 1
        elif record.passed:
            counts["passed"] += 1
        else:
            counts["failed"] += 1
    return counts
