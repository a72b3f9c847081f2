from __future__ import annotations

import json
import shutil
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_runners._process import StreamedProcess, format_command, resolve_binary
from agent_runners.base import AgentProgress, AgentRunOptions, AgentStats

BINARY_ENV = "TERCA_GEMINI_BINARY"
TRANSCRIPT_FILENAME = "gemini-transcript.jsonl"
TELEMETRY_FILENAME = "telemetry.log"
STDERR_FILENAME = "stderr.txt"


def _load_settings(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError as e:
        raise ValueError(f"Failed to parse Gemini settings JSON in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"Expected JSON object in {path}, got {type(raw).__name__}.")
    return raw


def build_settings(
    settings: dict[str, Any],
    *,
    rules_name: str | None,
    mcp_servers: Mapping[str, Mapping[str, Any]],
    telemetry_path: Path,
) -> dict[str, Any]:
    """Merge run options into an existing ``.gemini/settings.json`` mapping."""

    out = dict(settings)
    if rules_name is not None:
        context = dict(out.get("context") or {})
        current = context.get("fileName")
        if not current:
            context["fileName"] = rules_name
        else:
            names = list(current) if isinstance(current, list) else [current]
            if rules_name not in names:
                names.append(rules_name)
            context["fileName"] = names
        out["context"] = context

    if mcp_servers:
        servers = dict(out.get("mcpServers") or {})
        for name, server in mcp_servers.items():
            entry = dict(server)
            url = entry.pop("url", None)
            if url:
                entry["httpUrl"] = url
            servers[name] = entry
        out["mcpServers"] = servers

    out["telemetry"] = {
        "enabled": True,
        "target": "local",
        "outfile": str(telemetry_path.resolve()),
    }
    return out


@dataclass
class _StreamTally:
    requests: int = 0
    stats: AgentStats | None = None


def render_event(event: Mapping[str, Any], tally: _StreamTally) -> list[str]:
    event_type = event.get("type")
    if event_type == "message":
        if event.get("role") == "assistant" and event.get("content"):
            return [str(event["content"])]
    elif event_type == "tool_use":
        tally.requests += 1
        return [f"\n> {event.get('tool_name')}({json.dumps(event.get('parameters'))})\n"]
    elif event_type == "tool_result":
        return [f"\n< {event.get('tool_id')}:\n{event.get('output')}\n"]
    elif event_type == "error":
        return [f"\nError: {event.get('message')}\n"]
    elif event_type == "result":
        stats = event.get("stats")
        if isinstance(stats, Mapping):
            tally.stats = AgentStats(
                # +1 for the initial prompt
                requests=tally.requests + 1,
                input_tokens=int(stats.get("input_tokens") or 0),
                output_tokens=int(stats.get("output_tokens") or 0),
                cached_input_tokens=int(stats.get("cached_tokens") or 0),
                duration_seconds=float(stats.get("duration_ms") or 0) / 1000,
            )
    return []


def _hr_seconds(value: Any) -> float | None:
    if isinstance(value, list) and len(value) == 2:
        try:
            return float(value[0]) + float(value[1]) / 1e9
        except (TypeError, ValueError):
            return None
    return None


def parse_telemetry_log(path: Path) -> AgentStats | None:
    """Sum token usage from the local telemetry outfile (pretty-printed JSON objects)."""

    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None

    requests = 0
    input_tokens = 0
    output_tokens = 0
    cached = 0
    first: float | None = None
    last: float | None = None

    buf: list[str] = []
    in_object = False
    for line in content.splitlines():
        if line.startswith("{"):
            in_object = True
            buf = [line]
        elif in_object:
            buf.append(line)
        if not (in_object and line.startswith("}")):
            continue
        in_object = False
        try:
            obj = json.loads("\n".join(buf))
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue

        ts = _hr_seconds(obj.get("hrTime"))
        if ts is not None:
            first = ts if first is None else first
            last = ts
        attributes = obj.get("attributes")
        if not isinstance(attributes, dict):
            continue
        if attributes.get("event.name") == "gemini_cli.api_response":
            requests += 1
        for key, value in attributes.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            if key == "input_token_count":
                input_tokens += int(value)
            elif key == "output_token_count":
                output_tokens += int(value)
            elif key == "cached_content_token_count":
                cached += int(value)

    if not (requests or input_tokens or output_tokens or cached):
        return None
    return AgentStats(
        requests=requests,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cached_input_tokens=cached,
        duration_seconds=(last - first) if first is not None and last is not None else 0.0,
    )


class GeminiCliRunner:
    def __init__(self, binary: str | None = None) -> None:
        self.binary = binary or resolve_binary(BINARY_ENV, "gemini")

    def _write_settings(self, options: AgentRunOptions) -> None:
        gemini_dir = options.workspace_dir / ".gemini"
        gemini_dir.mkdir(parents=True, exist_ok=True)
        settings_path = gemini_dir / "settings.json"

        rules_name: str | None = None
        if options.rules_file is not None:
            rules_name = options.rules_file.name
            shutil.copyfile(options.rules_file, options.workspace_dir / rules_name)

        settings = build_settings(
            _load_settings(settings_path),
            rules_name=rules_name,
            mcp_servers=options.mcp_servers,
            telemetry_path=options.artifacts_dir / TELEMETRY_FILENAME,
        )
        settings_path.write_text(
            json.dumps(settings, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
            newline="\n",
        )

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        options.artifacts_dir.mkdir(parents=True, exist_ok=True)
        self._write_settings(options)

        argv = [self.binary, "-p", options.prompt, "--yolo", "--output-format", "stream-json"]
        options.log.write(f"> {format_command([argv[0], '-p', '<prompt>', *argv[3:]])}\n")

        stderr_path = options.artifacts_dir / STDERR_FILENAME
        proc = StreamedProcess(
            argv,
            cwd=options.workspace_dir,
            cancel_token=options.cancel_token,
            stderr_path=stderr_path,
            label="Gemini CLI",
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
                    options.log.write(f"Error parsing JSON event: {e}\n")
                    continue
                if not isinstance(event, dict):
                    continue
                for chunk in render_event(event, tally):
                    yield AgentProgress(output=chunk)

        stderr = stderr_path.read_text(encoding="utf-8", errors="replace")
        if stderr:
            yield AgentProgress(output=stderr)

        # Telemetry includes cached tokens, so it wins over the stream's result event.
        stats = parse_telemetry_log(options.artifacts_dir / TELEMETRY_FILENAME) or tally.stats
        yield AgentProgress(done=True, exit_code=proc.exit_code, stats=stats)
