from __future__ import annotations

import json
import re
import shutil
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from agent_runners._process import StreamedProcess, format_command, resolve_binary
from agent_runners.base import AgentProgress, AgentRunOptions, AgentStats

BINARY_ENV = "TERCA_CODEX_BINARY"
EVENTS_FILENAME = "codex-events.jsonl"
STDERR_FILENAME = "stderr.txt"
RULES_FILENAME = "AGENTS.md"

_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def toml_basic_string(value: str) -> str:
    # Codex parses `-c key=value` values as TOML; JSON strings are valid TOML basic strings.
    return json.dumps(value, ensure_ascii=False)


def _toml_key(key: str) -> str:
    return key if _BARE_KEY_RE.match(key) else toml_basic_string(key)


def _toml_inline_table(values: Mapping[str, Any]) -> str:
    parts = [f"{_toml_key(str(k))} = {toml_basic_string(str(values[k]))}" for k in sorted(values)]
    return "{ " + ", ".join(parts) + " }"


def mcp_config_overrides(mcp_servers: Mapping[str, Mapping[str, Any]]) -> list[str]:
    """Render MCP servers as ``mcp_servers.<name>.<key>=<toml>`` overrides, sorted by name."""

    overrides: list[str] = []
    for name in sorted(mcp_servers):
        server = mcp_servers[name]
        prefix = f"mcp_servers.{_toml_key(name)}"
        if server.get("url"):
            overrides.append(f"{prefix}.url={toml_basic_string(str(server['url']))}")
            headers = server.get("headers")
            if isinstance(headers, Mapping) and headers:
                overrides.append(f"{prefix}.http_headers={_toml_inline_table(headers)}")
        elif server.get("command"):
            overrides.append(f"{prefix}.command={toml_basic_string(str(server['command']))}")
            args = server.get("args")
            if isinstance(args, list) and args:
                rendered = ", ".join(toml_basic_string(str(a)) for a in args)
                overrides.append(f"{prefix}.args=[{rendered}]")
            if server.get("cwd"):
                overrides.append(f"{prefix}.cwd={toml_basic_string(str(server['cwd']))}")
        else:
            continue
        env = server.get("env")
        if isinstance(env, Mapping) and env:
            overrides.append(f"{prefix}.env={_toml_inline_table(env)}")
    return overrides


@dataclass
class _StreamTally:
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0
    turns: int = 0
    commands: int = 0

    def stats(self, duration_seconds: float) -> AgentStats | None:
        if not self.turns:
            return None
        return AgentStats(
            requests=self.turns + self.commands,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cached_input_tokens=self.cached_input_tokens,
            duration_seconds=duration_seconds,
        )


def render_event(event: Mapping[str, Any], tally: _StreamTally) -> list[str]:
    event_type = event.get("type")
    if event_type == "turn.completed":
        usage = event.get("usage")
        if isinstance(usage, Mapping):
            tally.turns += 1
            tally.input_tokens += int(usage.get("input_tokens") or 0)
            tally.cached_input_tokens += int(usage.get("cached_input_tokens") or 0)
            tally.output_tokens += int(usage.get("output_tokens") or 0)
        return []
    if event_type == "error":
        return [f"\nError: {event.get('message')}\n"]
    if event_type != "item.completed":
        return []

    item = event.get("item")
    if not isinstance(item, Mapping):
        return []
    item_type = item.get("type")
    if item_type == "agent_message" and item.get("text"):
        return [f"{item['text']}\n"]
    if item_type == "command_execution":
        tally.commands += 1
        out = [f"\n> {item.get('command')}\n"]
        output = item.get("aggregated_output")
        if isinstance(output, str) and output:
            out.append(f"< exit {item.get('exit_code')}:\n{output}\n")
        return out
    return []


class CodexRunner:
    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or resolve_binary(BINARY_ENV, "codex")

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        options.artifacts_dir.mkdir(parents=True, exist_ok=True)
        if options.rules_file is not None:
            shutil.copyfile(options.rules_file, options.workspace_dir / RULES_FILENAME)

        argv = [
            self.binary,
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--sandbox",
            "workspace-write",
        ]
        for override in mcp_config_overrides(options.mcp_servers):
            argv.extend(["-c", override])
        # Prompt goes on stdin.
        argv.append("-")
        options.log.write(f"> {format_command(argv)}\n")

        stderr_path = options.artifacts_dir / STDERR_FILENAME
        proc = StreamedProcess(
            argv,
            cwd=options.workspace_dir,
            cancel_token=options.cancel_token,
            stderr_path=stderr_path,
            stdin_text=options.prompt,
            label="Codex CLI",
            binary_env_var=BINARY_ENV,
        )
        tally = _StreamTally()
        start = time.monotonic()
        events_path = options.artifacts_dir / EVENTS_FILENAME
        with events_path.open("w", encoding="utf-8", newline="\n") as events_f:
            for line in proc.lines():
                if not line.strip():
                    continue
                events_f.write(line if line.endswith("\n") else line + "\n")
                events_f.flush()
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    # Codex interleaves plain-text notices with JSON events.
                    yield AgentProgress(output=line)
                    continue
                if not isinstance(event, dict):
                    continue
                for chunk in render_event(event, tally):
                    yield AgentProgress(output=chunk)

        stderr = stderr_path.read_text(encoding="utf-8", errors="replace")
        if stderr:
            yield AgentProgress(output=stderr)
        yield AgentProgress(
            done=True,
            exit_code=proc.exit_code,
            stats=tally.stats(time.monotonic() - start),
        )
