from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class RunRecord:
    """One persisted outcome of a run task.

    Exactly one of ``results`` and ``error`` is set. ``stats`` accompanies
    ``results`` and stays ``None`` when the agent adapter reported no usage.
    """

    id: int
    eval: str
    environment: str
    experiment: str
    repetition: int
    variant: dict[str, Any] = field(default_factory=dict)
    results: dict[str, dict[str, Any]] | None = None
    stats: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def failed_checks(self) -> list[str]:
        if self.results is None:
            return []
        return [name for name, result in self.results.items() if _score(result) <= 0]

    @property
    def passed(self) -> bool:
        return self.results is not None and not self.failed_checks

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "eval": self.eval,
            "environment": self.environment,
            "experiment": self.experiment,
            "repetition": self.repetition,
            "variant": self.variant,
        }
        if self.error is not None:
            out["error"] = self.error
        else:
            out["results"] = self.results or {}
            out["stats"] = self.stats
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunRecord:
        results = raw.get("results")
        stats = raw.get("stats")
        error = raw.get("error")
        variant = raw.get("variant")
        return cls(
            id=int(raw.get("id", 0)),
            eval=str(raw.get("eval") or raw.get("test") or ""),
            environment=str(raw.get("environment") or "default"),
            experiment=str(raw.get("experiment") or "default"),
            repetition=int(raw.get("repetition", 1)),
            variant=dict(variant) if isinstance(variant, dict) else {},
            results=dict(results) if isinstance(results, dict) else None,
            stats=dict(stats) if isinstance(stats, dict) else None,
            error=dict(error) if isinstance(error, dict) else None,
        )


def _score(result: Any) -> float:
    if not isinstance(result, dict):
        return 0.0
    try:
        return float(result.get("score", 0.0))
    except (TypeError, ValueError):
        return 0.0


def error_payload(exc: BaseException, *, step: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": str(exc) or type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }
    if step is not None:
        payload["step"] = step
    return payload
