from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from eval_runner.suite import EvalCase, Suite
from eval_runner.variants import Variant, expand_variants


class SelectionError(ValueError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or "unknown_selection"
        self.details = dict(details) if isinstance(details, dict) else {}
        self.hint = hint or "Run `terca plan` to list the available evals and variants."


@dataclass(frozen=True)
class RunTask:
    id: int
    eval_case: EvalCase
    variant: Variant
    repetition: int
    name: str


def task_name(eval_name: str, variant: Variant, repetition: int) -> str:
    return f"{eval_name} ({variant.environment}.{variant.experiment} rep {repetition})"


def _check_known(kind: str, requested: Sequence[str] | None, available: list[str]) -> None:
    if not requested:
        return
    unknown = [name for name in requested if name not in available]
    if unknown:
        raise SelectionError(
            f"Unknown {kind} name(s): {', '.join(unknown)}",
            code=f"unknown_{kind}",
            details={"unknown": unknown, "available": available},
        )


def _unique(names: list[str]) -> list[str]:
    return list(dict.fromkeys(names))


def plan_runs(
    suite: Suite,
    *,
    variants: Sequence[Variant] | None = None,
    tests: Sequence[str] | None = None,
    environments: Sequence[str] | None = None,
    experiments: Sequence[str] | None = None,
    repetitions: int | None = None,
) -> list[RunTask]:
    """Build the ordered task list: eval -> variant -> repetition, ids from 1.

    Selections filter but never reorder; ids are assigned after filtering.
    """

    all_variants = list(variants) if variants is not None else expand_variants(suite)

    _check_known("test", tests, suite.eval_names())
    _check_known("environment", environments, _unique([v.environment for v in all_variants]))
    _check_known("experiment", experiments, _unique([v.experiment for v in all_variants]))

    selected_evals = [e for e in suite.evals if not tests or e.name in tests]
    selected_variants = [
        v
        for v in all_variants
        if (not environments or v.environment in environments)
        and (not experiments or v.experiment in experiments)
    ]

    suite_reps = repetitions or suite.repetitions or 1
    tasks: list[RunTask] = []
    for eval_case in selected_evals:
        total = suite_reps * (eval_case.repetitions or 1)
        for variant in selected_variants:
            for rep in range(1, total + 1):
                tasks.append(
                    RunTask(
                        id=len(tasks) + 1,
                        eval_case=eval_case,
                        variant=variant,
                        repetition=rep,
                        name=task_name(eval_case.name, variant, rep),
                    )
                )
    return tasks
