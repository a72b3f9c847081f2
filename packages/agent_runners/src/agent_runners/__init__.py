from agent_runners.base import (
    AgentProgress,
    AgentRunner,
    AgentRunOptions,
    AgentStats,
    CancelSignal,
    LogSink,
)
from agent_runners.claude_cli import ClaudeCodeRunner
from agent_runners.codex_cli import CodexRunner
from agent_runners.gemini_cli import GeminiCliRunner
from agent_runners.registry import AgentRegistry, RunnerFactory, default_registry

__all__ = [
    "AgentProgress",
    "AgentRegistry",
    "AgentRunOptions",
    "AgentRunner",
    "AgentStats",
    "CancelSignal",
    "ClaudeCodeRunner",
    "CodexRunner",
    "GeminiCliRunner",
    "LogSink",
    "RunnerFactory",
    "default_registry",
]
