from __future__ import annotations

import queue
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_runners import AgentProgress, AgentRunner, AgentRunOptions, AgentStats

from eval_runner.cancellation import CancelToken
from eval_runner.runlog import RunLog
from eval_runner.suite import EvalCase, Suite
from eval_runner.variants import Variant

DEFAULT_TIMEOUT_SECONDS = 300.0
# How long to keep waiting for an adapter to wind down after cancellation.
CANCEL_GRACE_SECONDS = 10.0
TIMEOUT_REASON = "timeout"

_DONE = object()


@dataclass(frozen=True)
class _AdapterFailure:
    exc: Exception


@dataclass(frozen=True)
class InvocationResult:
    stats: AgentStats | None
    exit_code: int | None
    timed_out: bool
    cancelled: bool
    abandoned: bool = False


def build_prompt(suite: Suite, variant: Variant, eval_case: EvalCase) -> str:
    parts = [
        suite.preamble,
        variant.preamble,
        eval_case.prompt,
        variant.postamble,
        suite.postamble,
    ]
    return "\n\n".join(p for p in parts if p).strip()


def resolve_timeout(suite: Suite, eval_case: EvalCase) -> float:
    return eval_case.timeout_seconds or suite.timeout_seconds or DEFAULT_TIMEOUT_SECONDS


def invoke_agent(
    runner: AgentRunner,
    *,
    label: str,
    workspace_dir: Path,
    artifacts_dir: Path,
    prompt: str,
    log: RunLog,
    cancel_token: CancelToken,
    timeout_seconds: float,
    rules_file: Path | None = None,
    mcp_servers: Mapping[str, Mapping[str, Any]] | None = None,
    grace_seconds: float = CANCEL_GRACE_SECONDS,
) -> InvocationResult:
    """Drive ``runner`` to completion, racing it against ``timeout_seconds``.

    The adapter gets a child of ``cancel_token`` that the timeout also cancels, so
    the two sources stay distinguishable through ``token.reason``. Output chunks go
    to ``log`` in arrival order and the last non-empty stats win. If the adapter
    ignores cancellation for longer than ``grace_seconds`` it is abandoned.
    """

    token = cancel_token.child()
    options = AgentRunOptions(
        workspace_dir=workspace_dir,
        artifacts_dir=artifacts_dir,
        prompt=prompt,
        cancel_token=token,
        log=log,
        rules_file=rules_file,
        mcp_servers=dict(mcp_servers or {}),
    )

    items: queue.Queue[object] = queue.Queue()

    def _pump() -> None:
        try:
            for progress in runner.run(options):
                items.put(progress)
        except Exception as e:
            items.put(_AdapterFailure(e))
        finally:
            items.put(_DONE)

    timer = threading.Timer(timeout_seconds, token.cancel, args=(TIMEOUT_REASON,))
    timer.daemon = True
    pump = threading.Thread(target=_pump, name=f"terca-agent-{label}", daemon=True)

    stats: AgentStats | None = None
    exit_code: int | None = None
    abandoned = False
    cancelled_at: float | None = None

    log.section_start("agent", label)
    start = time.monotonic()
    timer.start()
    pump.start()
    try:
        while True:
            if cancelled_at is None and token.is_set():
                cancelled_at = time.monotonic()
            try:
                item = items.get(timeout=0.05)
            except queue.Empty:
                if cancelled_at is not None and time.monotonic() - cancelled_at > grace_seconds:
                    abandoned = True
                    log.notice(f"Agent {label} did not stop {grace_seconds:.0f}s after cancellation")
                    break
                continue
            if item is _DONE:
                break
            if isinstance(item, _AdapterFailure):
                raise item.exc
            if not isinstance(item, AgentProgress):
                continue
            if item.output:
                log.write(item.output)
            if item.stats is not None:
                stats = item.stats
            if item.exit_code is not None:
                exit_code = item.exit_code
    finally:
        timer.cancel()
        token.detach()
    elapsed = time.monotonic() - start
    log.section_end("agent", label)

    timed_out = token.reason == TIMEOUT_REASON
    if timed_out:
        stats = stats.with_timed_out() if stats is not None else AgentStats(
            duration_seconds=elapsed, timed_out=True
        )
    return InvocationResult(
        stats=stats,
        exit_code=exit_code,
        timed_out=timed_out,
        cancelled=token.is_set() and not timed_out,
        abandoned=abandoned,
    )
