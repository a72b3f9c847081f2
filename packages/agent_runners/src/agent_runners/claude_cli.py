from __future__ import annotations

import json
import shutil
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_runners._process import (
    StreamedProcess,
    format_command,
    launch_error,
    resolve_binary,
    run_captured,
)
from agent_runners.base import AgentProgress, AgentRunOptions, AgentStats

BINARY_ENV = "TERCA_CLAUDE_BINARY"
TRANSCRIPT_FILENAME = "claude-transcript.jsonl"
STDERR_FILENAME = "stderr.txt"
RULES_FILENAME = "CLAUDE.md"


def _infer_transport(server: Mapping[str, Any]) -> str | None:
    transport = server.get("transport")
    if isinstance(transport, str) and transport:
        return transport
    if server.get("url"):
        return "http"
    if server.get("command"):
        return "stdio"
    return None


def mcp_add_argv(binary: str, name: str, server: Mapping[str, Any]) -> list[str]:
    """Build ``claude mcp add`` arguments for one server.

    Raises ValueError naming the reason when the server cannot be registered.
    """

    transport = _infer_transport(server)
    if transport is None:
        raise ValueError(f"Skipping MCP server {name}: missing transport and cannot infer.")

    argv = [binary, "mcp", "add", "--transport", transport, name]
    if transport in {"http", "sse"}:
        url = server.get("url")
        if not url:
            raise ValueError(f"Skipping MCP server {name}: missing url for {transport} transport.")
        argv.append(str(url))

    headers = server.get("headers")
    if isinstance(headers, Mapping):
        for key, value in headers.items():
            argv.extend(["--header", f"{key}: {value}"])
    env = server.get("env")
    if isinstance(env, Mapping):
        for key, value in env.items():
            argv.extend(["--env", f"{key}={value}"])

    if transport == "stdio":
        command = server.get("command")
        if not command:
            raise ValueError(f"Skipping MCP server {name}: missing command for stdio transport.")
        argv.extend(["--", str(command)])
        args = server.get("args")
        if isinstance(args, list):
            argv.extend(str(a) for a in args)
    return argv


@dataclass
class _StreamTally:
    requests: int = 0
    stats: AgentStats | None = None


def _usage_stats(model_usage: Mapping[str, Any], *, requests: int, duration_ms: Any) -> AgentStats:
    input_tokens = 0
    output_tokens = 0
    cached = 0
    for usage in model_usage.values():
        if not isinstance(usage, Mapping):
            continue
        cache_read = int(usage.get("cacheReadInputTokens") or 0)
        input_tokens += (
            int(usage.get("inputTokens") or 0)
            + cache_read
            + int(usage.get("cacheCreationInputTokens") or 0)
        )
        output_tokens += int(usage.get("outputTokens") or 0)
        cached += cache_read
    duration = float(duration_ms) / 1000 if isinstance(duration_ms, (int, float)) else 0.0
    return AgentStats(
        requests=requests,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cached_input_tokens=cached,
        duration_seconds=duration,
    )


def render_event(event: Mapping[str, Any], tally: _StreamTally) -> list[str]:
    """Turn one stream-json event into log output; usage lands in ``tally``."""

    out: list[str] = []
    event_type = event.get("type")
    message = event.get("message")
    content = message.get("content") if isinstance(message, Mapping) else None

    if event_type == "assistant" and isinstance(content, list):
        for item in content:
            if not isinstance(item, Mapping):
                continue
            if item.get("type") == "text" and item.get("text"):
                out.append(str(item["text"]))
            elif item.get("type") == "tool_use":
                tally.requests += 1
                out.append(f"\n> {item.get('name')}({json.dumps(item.get('input'))})\n")
    elif event_type == "user" and isinstance(content, list):
        for item in content:
            if isinstance(item, Mapping) and item.get("type") == "tool_result":
                out.append(f"\n< {item.get('tool_use_id')}:\n{item.get('content')}\n")
    elif event_type == "result":
        model_usage = event.get("modelUsage")
        if isinstance(model_usage, Mapping):
            tally.stats = _usage_stats(
                model_usage, requests=tally.requests, duration_ms=event.get("duration_ms")
            )
        if event.get("result"):
            out.append(f"\nFinal result: {event['result']}\n")
    return out


class ClaudeCodeRunner:
    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or resolve_binary(BINARY_ENV, "claude")

    def _register_mcp_servers(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        for name, server in options.mcp_servers.items():
            try:
                argv = mcp_add_argv(self.binary, name, server)
            except ValueError as e:
                options.log.write(f"{e}\n")
                continue
            options.log.write(f"> {format_command(argv)}\n")
            try:
                proc = run_captured(argv, cwd=options.workspace_dir)
            except OSError as e:
                raise launch_error("Claude CLI", self.binary, BINARY_ENV, e) from e
            if proc.stdout:
                yield AgentProgress(output=proc.stdout)
            if proc.stderr:
                yield AgentProgress(output=proc.stderr)
            if proc.returncode != 0:
                yield AgentProgress(
                    output=f"Error adding MCP server {name}. Exit code: {proc.returncode}\n"
                )

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        options.artifacts_dir.mkdir(parents=True, exist_ok=True)
        if options.rules_file is not None:
            shutil.copyfile(options.rules_file, options.workspace_dir / RULES_FILENAME)

        yield from self._register_mcp_servers(options)

        argv = [
            self.binary,
            "--dangerously-skip-permissions",
            "-p",
            options.prompt,
            "--output-format=stream-json",
            "--verbose",
        ]
        options.log.write(f"> {format_command([*argv[:3], '<prompt>', *argv[4:]])}\n")

        stderr_path = options.artifacts_dir / STDERR_FILENAME
        proc = StreamedProcess(
            argv,
            cwd=options.workspace_dir,
            cancel_token=options.cancel_token,
            stderr_path=stderr_path,
            label="Claude CLI",
            binary_env_var=BINARY_ENV,
        )
        tally = _StreamTally()
        transcript = options.artifacts_dir / TRANSCRIPT_FILENAME
        with transcript.open("w", encoding="utf-8", newline="\n") as transcript_f:
            for line in proc.lines():
                if not line.strip():
                    continue
                transcript_f.write(line if line.endswith("\n") else line + "\n")
                transcript_f.flush()
                try:
                    event = json.loads(line)
                except json.JSONDecodeError as e:
                    options.log.write(f"Error parsing JSON: {e}\n")
                    continue
                if not isinstance(event, dict):
                    continue
                for chunk in render_event(event, tally):
                    yield AgentProgress(output=chunk)

        stderr = stderr_path.read_text(encoding="utf-8", errors="replace")
        if stderr:
            yield AgentProgress(output=stderr)
        yield AgentProgress(done=True, exit_code=proc.exit_code, stats=tally.stats)
