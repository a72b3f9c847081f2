from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from eval_runner.actions import BeforeAction

if TYPE_CHECKING:
    from eval_runner.suite import Suite

DEFAULT_NAME = "default"


@dataclass(frozen=True)
class Variant:
    """One environment x experiment combination.

    ``properties`` is the merged mapping (environment first, experiment on top)
    and is what gets persisted with each run record.
    """

    name: str
    environment: str
    experiment: str
    properties: Mapping[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.environment, self.experiment)

    @property
    def agent(self) -> str | None:
        return _optional_str(self.properties.get("agent"))

    @property
    def rules(self) -> str | None:
        return _optional_str(self.properties.get("rules"))

    @property
    def command(self) -> str | None:
        return _optional_str(self.properties.get("command"))

    @property
    def preamble(self) -> str | None:
        return _optional_str(self.properties.get("preamble"))

    @property
    def postamble(self) -> str | None:
        return _optional_str(self.properties.get("postamble"))

    @property
    def mcp_servers(self) -> dict[str, dict[str, Any]]:
        raw = self.properties.get("mcpServers")
        if not isinstance(raw, Mapping):
            return {}
        return {str(k): dict(v) for k, v in raw.items() if isinstance(v, Mapping)}

    @property
    def before(self) -> tuple[BeforeAction, ...]:
        raw = self.properties.get("before")
        if not isinstance(raw, list):
            return ()
        return tuple(BeforeAction.from_raw(item) for item in raw if isinstance(item, Mapping))

    def to_dict(self) -> dict[str, Any]:
        return dict(self.properties)


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _axis(entries: Sequence[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    if not entries:
        return [{"name": DEFAULT_NAME}]
    return list(entries)


def _display_name(environment: str, experiment: str) -> str:
    if experiment != DEFAULT_NAME:
        return experiment
    if environment != DEFAULT_NAME:
        return environment
    return DEFAULT_NAME


def combine(
    environments: Sequence[Mapping[str, Any]],
    experiments: Sequence[Mapping[str, Any]],
) -> list[Variant]:
    out: list[Variant] = []
    for env in _axis(environments):
        for exp in _axis(experiments):
            env_name = str(env.get("name") or DEFAULT_NAME)
            exp_name = str(exp.get("name") or DEFAULT_NAME)
            name = _display_name(env_name, exp_name)
            merged: dict[str, Any] = {**env, **exp}
            merged["name"] = name
            merged["environment"] = env_name
            merged["experiment"] = exp_name
            out.append(
                Variant(name=name, environment=env_name, experiment=exp_name, properties=merged)
            )
    return out


def expand_variants(suite: Suite) -> list[Variant]:
    environments: Sequence[Mapping[str, Any]] = suite.environments
    if not environments and suite.matrix:
        environments = matrix_environments(suite.matrix)
    return combine(environments, suite.experiments)


def expand_matrix(entries: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Cartesian product of a legacy matrix.

    List values are expanded, scalars held constant, ``None`` (alone or inside a
    list) leaves the key out of that combination, and an empty list is treated
    as an absent axis. No entries yields ``[{}]``.
    """

    combos: list[dict[str, Any]] = [{}]
    for entry in entries:
        for key, value in entry.items():
            options = value if isinstance(value, list) else [value]
            if not options:
                continue
            expanded: list[dict[str, Any]] = []
            for combo in combos:
                for option in options:
                    nxt = dict(combo)
                    if option is not None:
                        nxt[key] = option
                    expanded.append(nxt)
            combos = expanded
    return combos


def matrix_environments(entries: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    combos = expand_matrix(entries)
    return [{**combo, "name": f"matrix-{i:02d}"} for i, combo in enumerate(combos, start=1)]
