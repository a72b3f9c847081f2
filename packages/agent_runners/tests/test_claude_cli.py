from __future__ import annotations

import json
import threading
import time
from pathlib import Path

import pytest

from agent_runners import AgentProgress, AgentRunOptions, ClaudeCodeRunner
from agent_runners.claude_cli import _StreamTally, mcp_add_argv, render_event

_DUMMY_CLAUDE = """
import json
import sys

args = sys.argv[1:]
if args[:2] == ["mcp", "add"]:
    print("added " + args[args.index("--transport") + 2])
    sys.exit(0)

def emit(obj):
    print(json.dumps(obj), flush=True)

emit({"type": "system", "subtype": "init"})
emit({"type": "assistant", "message": {"content": [{"type": "text", "text": json.dumps(args)}]}})
emit({"type": "assistant", "message": {"content": [
    {"type": "tool_use", "name": "Write", "input": {"file_path": "out.txt"}}
]}})
emit({"type": "user", "message": {"content": [
    {"type": "tool_result", "tool_use_id": "toolu_1", "content": "ok"}
]}})
emit({
    "type": "result",
    "result": "done",
    "duration_ms": 2500,
    "modelUsage": {
        "claude-sonnet": {
            "inputTokens": 100,
            "outputTokens": 40,
            "cacheReadInputTokens": 1000,
            "cacheCreationInputTokens": 50,
        },
        "claude-haiku": {"inputTokens": 10, "outputTokens": 5},
    },
})
sys.stderr.write("claude stderr line\\n")
"""

_SLOW_CLAUDE = """
import json
import sys
import time

print(json.dumps({"type": "assistant", "message": {"content": [
    {"type": "text", "text": "thinking"}
]}}), flush=True)
time.sleep(60)
"""


def _options(tmp_path: Path, log: object, token: threading.Event, **kwargs: object) -> AgentRunOptions:
    workspace = tmp_path / "workspace"
    workspace.mkdir(exist_ok=True)
    return AgentRunOptions(
        workspace_dir=workspace,
        artifacts_dir=tmp_path / "artifacts",
        prompt="Create out.txt",
        cancel_token=token,
        log=log,  # type: ignore[arg-type]
        **kwargs,  # type: ignore[arg-type]
    )


def test_mcp_add_argv_infers_transport() -> None:
    http = mcp_add_argv(
        "claude",
        "docs",
        {"url": "https://example.test/mcp", "headers": {"Authorization": "Bearer x"}},
    )
    assert http == [
        "claude",
        "mcp",
        "add",
        "--transport",
        "http",
        "docs",
        "https://example.test/mcp",
        "--header",
        "Authorization: Bearer x",
    ]

    stdio = mcp_add_argv(
        "claude", "fs", {"command": "npx", "args": ["-y", "fs-server"], "env": {"ROOT": "/w"}}
    )
    assert stdio == [
        "claude",
        "mcp",
        "add",
        "--transport",
        "stdio",
        "fs",
        "--env",
        "ROOT=/w",
        "--",
        "npx",
        "-y",
        "fs-server",
    ]

    with pytest.raises(ValueError, match="missing transport"):
        mcp_add_argv("claude", "broken", {})
    with pytest.raises(ValueError, match="missing url"):
        mcp_add_argv("claude", "sse-no-url", {"transport": "sse"})


def test_render_event_counts_tool_uses_and_sums_usage() -> None:
    tally = _StreamTally()
    out = render_event(
        {
            "type": "assistant",
            "message": {
                "content": [
                    {"type": "text", "text": "hello"},
                    {"type": "tool_use", "name": "Bash", "input": {"command": "ls"}},
                ]
            },
        },
        tally,
    )
    assert out == ["hello", '\n> Bash({"command": "ls"})\n']

    render_event(
        {
            "type": "result",
            "duration_ms": 1500,
            "modelUsage": {
                "m": {
                    "inputTokens": 1,
                    "outputTokens": 2,
                    "cacheReadInputTokens": 3,
                    "cacheCreationInputTokens": 4,
                }
            },
        },
        tally,
    )
    assert tally.stats is not None
    assert tally.stats.requests == 1
    assert tally.stats.input_tokens == 8
    assert tally.stats.cached_input_tokens == 3
    assert tally.stats.output_tokens == 2
    assert tally.stats.duration_seconds == pytest.approx(1.5)


def test_runner_streams_transcript_and_reports_stats(
    tmp_path: Path, make_dummy_agent, recording_log
) -> None:
    binary = make_dummy_agent("dummy_claude", _DUMMY_CLAUDE)
    rules = tmp_path / "rules.md"
    rules.write_text("Be terse.\n", encoding="utf-8")

    options = _options(
        tmp_path,
        recording_log,
        threading.Event(),
        rules_file=rules,
        mcp_servers={"fs": {"command": "fs-server"}},
    )
    progress = list(ClaudeCodeRunner(binary=binary).run(options))

    final = progress[-1]
    assert final.done
    assert final.exit_code == 0
    assert final.stats is not None
    assert final.stats.input_tokens == 100 + 1000 + 50 + 10
    assert final.stats.output_tokens == 45
    assert final.stats.cached_input_tokens == 1000
    assert final.stats.requests == 1
    assert final.stats.duration_seconds == pytest.approx(2.5)
    assert not final.stats.timed_out

    output = "".join(p.output or "" for p in progress)
    assert "added fs" in output
    assert "--dangerously-skip-permissions" in output
    assert "--output-format=stream-json" in output
    assert "> Write(" in output
    assert "< toolu_1:\nok" in output
    assert "Final result: done" in output
    assert "claude stderr line" in output

    transcript = (tmp_path / "artifacts" / "claude-transcript.jsonl").read_text(encoding="utf-8")
    assert len(transcript.splitlines()) == 5
    assert (options.workspace_dir / "CLAUDE.md").read_text(encoding="utf-8") == "Be terse.\n"
    assert "<prompt>" in recording_log.text
    assert "Create out.txt" not in recording_log.text


def test_runner_kills_process_when_cancelled(
    tmp_path: Path, make_dummy_agent, recording_log
) -> None:
    binary = make_dummy_agent("slow_claude", _SLOW_CLAUDE)
    token = threading.Event()
    options = _options(tmp_path, recording_log, token)

    start = time.monotonic()
    progress: list[AgentProgress] = []
    for item in ClaudeCodeRunner(binary=binary).run(options):
        progress.append(item)
        if item.output == "thinking":
            token.set()

    assert time.monotonic() - start < 20
    assert progress[-1].done
    assert progress[-1].exit_code != 0
    assert progress[-1].stats is None


def test_runner_reports_missing_binary(tmp_path: Path, recording_log) -> None:
    options = _options(tmp_path, recording_log, threading.Event())
    runner = ClaudeCodeRunner(binary=str(tmp_path / "does-not-exist" / "claude"))
    with pytest.raises(RuntimeError, match="Could not launch Claude CLI"):
        list(runner.run(options))


def test_transcript_lines_are_valid_json(tmp_path: Path, make_dummy_agent, recording_log) -> None:
    binary = make_dummy_agent("dummy_claude_json", _DUMMY_CLAUDE)
    options = _options(tmp_path, recording_log, threading.Event())
    list(ClaudeCodeRunner(binary=binary).run(options))

    transcript = tmp_path / "artifacts" / "claude-transcript.jsonl"
    types = [json.loads(line)["type"] for line in transcript.read_text(encoding="utf-8").splitlines()]
    assert types == ["system", "assistant", "assistant", "user", "result"]
