from __future__ import annotations

from collections.abc import Callable

from agent_runners.base import AgentRunner

RunnerFactory = Callable[[], AgentRunner]


class AgentRegistry:
    """Maps agent identifiers (``variant.agent``) to runner factories."""

    def __init__(self) -> None:
        self._factories: dict[str, RunnerFactory] = {}

    def register(self, name: str, factory: RunnerFactory, *, aliases: tuple[str, ...] = ()) -> None:
        for key in (name, *aliases):
            if key in self._factories:
                raise ValueError(f"Agent runner already registered: {key}")
            self._factories[key] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def create(self, name: str | None) -> AgentRunner | None:
        if not name:
            return None
        factory = self._factories.get(name)
        return factory() if factory is not None else None


def default_registry() -> AgentRegistry:
    from agent_runners.claude_cli import ClaudeCodeRunner
    from agent_runners.codex_cli import CodexRunner
    from agent_runners.gemini_cli import GeminiCliRunner

    registry = AgentRegistry()
    registry.register("claude-code", ClaudeCodeRunner, aliases=("claude",))
    registry.register("gemini-cli", GeminiCliRunner, aliases=("gemini",))
    registry.register("codex", CodexRunner)
    return registry
