from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Protocol


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float | None = None) -> bool: ...


class LogSink(Protocol):
    def write(self, text: str) -> None: ...


@dataclass(frozen=True)
class AgentStats:
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    duration_seconds: float = 0.0
    timed_out: bool = False

    def with_timed_out(self) -> AgentStats:
        return replace(self, timed_out=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cachedInputTokens": self.cached_input_tokens,
            "durationSeconds": self.duration_seconds,
            "timedOut": self.timed_out,
        }


@dataclass(frozen=True)
class AgentProgress:
    done: bool = False
    exit_code: int | None = None
    output: str | None = None
    stats: AgentStats | None = None


@dataclass(frozen=True)
class AgentRunOptions:
    workspace_dir: Path
    artifacts_dir: Path
    prompt: str
    cancel_token: CancelSignal
    log: LogSink
    rules_file: Path | None = None
    mcp_servers: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)


class AgentRunner(Protocol):
    """Drives one agent implementation.

    ``run`` returns a lazy, finite sequence of progress chunks. Implementations
    must stop their subprocess once ``options.cancel_token`` is set and then end
    the sequence with a final ``done`` chunk rather than raising.
    """

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]: ...
