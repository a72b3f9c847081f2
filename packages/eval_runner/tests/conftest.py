from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from agent_runners import AgentProgress, AgentRunOptions, AgentStats


@pytest.fixture
def write_yaml() -> Callable[[Path, dict[str, Any]], Path]:
    def _write(path: Path, data: dict[str, Any]) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8", newline="\n")
        return path

    return _write


class WritingRunner:
    """Writes ``files`` into the workspace and reports fixed stats."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files = files or {"out.txt": "hello\n"}
        self.prompts: list[str] = []

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        self.prompts.append(options.prompt)
        for name, content in self.files.items():
            (options.workspace_dir / name).write_text(content, encoding="utf-8")
            yield AgentProgress(output=f"wrote {name}\n")
        yield AgentProgress(
            done=True,
            exit_code=0,
            stats=AgentStats(requests=2, input_tokens=1000, output_tokens=200, duration_seconds=1.5),
        )


class PatientRunner:
    """Emits partial stats, then waits for cancellation like a well-behaved adapter."""

    def __init__(self, stats: AgentStats | None = None) -> None:
        self.stats = stats
        self.started = threading.Event()

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        yield AgentProgress(output="working\n", stats=self.stats)
        self.started.set()
        while not options.cancel_token.wait(0.01):
            pass
        yield AgentProgress(output="stopping\n")
        yield AgentProgress(done=True, exit_code=-1)


class StubbornRunner:
    """Ignores cancellation until ``release`` is set."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        yield AgentProgress(output="busy\n")
        self.release.wait(30)
        yield AgentProgress(done=True, exit_code=0)


class ExplodingRunner:
    def run(self, options: AgentRunOptions) -> Iterator[AgentProgress]:
        yield AgentProgress(output="about to fail\n")
        time.sleep(0.01)
        raise RuntimeError("adapter blew up")


@pytest.fixture
def runners() -> dict[str, type]:
    return {
        "writing": WritingRunner,
        "patient": PatientRunner,
        "stubborn": StubbornRunner,
        "exploding": ExplodingRunner,
    }
