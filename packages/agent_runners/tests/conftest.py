from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Callable
from pathlib import Path

import pytest


class RecordingLog:
    def __init__(self) -> None:
        self.chunks: list[str] = []

    def write(self, text: str) -> None:
        self.chunks.append(text)

    @property
    def text(self) -> str:
        return "".join(self.chunks)


@pytest.fixture
def recording_log() -> RecordingLog:
    return RecordingLog()


@pytest.fixture
def make_dummy_agent(tmp_path: Path) -> Callable[[str, str], str]:
    """Write a Python script plus a platform wrapper and return the wrapper path."""

    def _make(name: str, body: str) -> str:
        script = tmp_path / f"{name}.py"
        script.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8", newline="\n")

        if os.name == "nt":
            wrapper = tmp_path / f"{name}.cmd"
            wrapper.write_text(
                f"@echo off\r\n\"{sys.executable}\" \"{script}\" %*\r\n",
                encoding="utf-8",
                newline="\n",
            )
            return str(wrapper)

        wrapper = tmp_path / f"{name}.sh"
        wrapper.write_text(
            "\n".join(
                [
                    "#!/usr/bin/env bash",
                    f"exec \"{sys.executable}\" \"{script}\" \"$@\"",
                    "",
                ]
            ),
            encoding="utf-8",
            newline="\n",
        )
        wrapper.chmod(0o755)
        return str(wrapper)

    return _make
