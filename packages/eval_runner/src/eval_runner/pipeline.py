from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from agent_runners import AgentRegistry, AgentStats

from eval_runner.actions import ActionContext, ActionError, run_before_actions, run_logged_command
from eval_runner.cancellation import CancelToken
from eval_runner.checks import CheckContext, CheckResult, run_checks
from eval_runner.display import RunDisplayState
from eval_runner.invocation import build_prompt, invoke_agent, resolve_timeout
from eval_runner.pathing import run_dir_for
from eval_runner.planner import RunTask
from eval_runner.runlog import RunLog
from eval_runner.suite import Suite
from eval_runner.workspace import build_workspace

LOG_FILENAME = "run.log"
ARTIFACTS_DIRNAME = "artifacts"


class RunStepError(ValueError):
    def __init__(
        self,
        message: str,
        *,
        step: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.step = step
        self.code = code or f"{step}_failed"
        self.details = dict(details) if isinstance(details, dict) else {}
        self.hint = hint


@contextmanager
def _step(name: str) -> Iterator[None]:
    try:
        yield
    except RunStepError:
        raise
    except Exception as e:
        details: dict[str, Any] = {"error_type": type(e).__name__}
        hint = getattr(e, "hint", None)
        raise RunStepError(
            f"{name} failed: {e}",
            step=name,
            details=details,
            hint=hint if isinstance(hint, str) else None,
        ) from e


@dataclass(frozen=True)
class RunOutcome:
    results: dict[str, CheckResult]
    stats: AgentStats | None
    run_dir: Path | None = None

    def results_dict(self) -> dict[str, dict[str, Any]]:
        return {name: result.to_dict() for name, result in self.results.items()}

    def stats_dict(self) -> dict[str, Any] | None:
        return self.stats.to_dict() if self.stats is not None else None


class Executor(Protocol):
    def execute(
        self, task: RunTask, state: RunDisplayState, cancel_token: CancelToken
    ) -> RunOutcome: ...


class RunExecutor:
    """Runs one task end to end: run dir, workspace, actions, agent, checks."""

    def __init__(
        self,
        *,
        suite: Suite,
        group_dir: Path,
        registry: AgentRegistry,
        runs_dir: Path | None = None,
    ) -> None:
        self.suite = suite
        self.group_dir = group_dir
        self.registry = registry
        self.runs_dir = runs_dir

    def prepare_run_dir(self, task: RunTask) -> Path:
        run_dir = run_dir_for(
            self.group_dir,
            eval_name=task.eval_case.name,
            environment=task.variant.environment,
            experiment=task.variant.experiment,
            repetition=task.repetition,
        )
        (run_dir / ARTIFACTS_DIRNAME).mkdir(parents=True, exist_ok=True)
        return run_dir

    def execute(
        self, task: RunTask, state: RunDisplayState, cancel_token: CancelToken
    ) -> RunOutcome:
        state.set_message("preparing run directory")
        with _step("prepare_run_dir"):
            run_dir = self.prepare_run_dir(task)
            log = RunLog(run_dir / LOG_FILENAME)
        state.set_log_file(log.path)
        try:
            return self._execute(task, state, cancel_token, run_dir=run_dir, log=log)
        finally:
            log.close()

    def _execute(
        self,
        task: RunTask,
        state: RunDisplayState,
        cancel_token: CancelToken,
        *,
        run_dir: Path,
        log: RunLog,
    ) -> RunOutcome:
        suite = self.suite
        eval_case = task.eval_case
        variant = task.variant

        state.set_message("building workspace")
        with _step("build_workspace"):
            workspace = build_workspace(
                run_dir,
                suite=suite,
                eval_case=eval_case,
                exclude=[self.runs_dir] if self.runs_dir is not None else (),
            )

        with _step("before_actions"):
            actions = [*suite.before, *variant.before, *eval_case.before]
            run_before_actions(
                actions,
                ActionContext(workspace_dir=workspace, root=suite.root, log=log, state=state),
            )

        if variant.command:
            state.set_message(f"variant: running `{variant.command}`")
            with _step("variant_command"):
                try:
                    run_logged_command(
                        variant.command, cwd=workspace, log=log, kind="variant command"
                    )
                except ActionError as e:
                    log.write(f"{e}\n")

        with _step("invoke_agent"):
            stats = self._invoke_agent(
                task, state, cancel_token, workspace=workspace, run_dir=run_dir, log=log
            )

        with _step("evaluate"):
            results = run_checks(
                eval_case.checks,
                CheckContext(workspace_dir=workspace, log=log),
                state=state,
            )
        return RunOutcome(results=results, stats=stats, run_dir=run_dir)

    def _invoke_agent(
        self,
        task: RunTask,
        state: RunDisplayState,
        cancel_token: CancelToken,
        *,
        workspace: Path,
        run_dir: Path,
        log: RunLog,
    ) -> AgentStats | None:
        agent = task.variant.agent
        runner = self.registry.create(agent)
        if runner is None:
            if agent:
                log.notice(f"Unknown agent: {agent}, skipping")
            else:
                log.notice("No agent configured, skipping")
            return None

        rules_file = None
        if task.variant.rules:
            rules_file = (self.suite.root / task.variant.rules).resolve()

        state.set_message(f"agent `{agent}` running...")
        result = invoke_agent(
            runner,
            label=str(agent),
            workspace_dir=workspace,
            artifacts_dir=run_dir / ARTIFACTS_DIRNAME,
            prompt=build_prompt(self.suite, task.variant, task.eval_case),
            log=log,
            cancel_token=cancel_token,
            timeout_seconds=resolve_timeout(self.suite, task.eval_case),
            rules_file=rules_file,
            mcp_servers=task.variant.mcp_servers,
        )
        if result.timed_out:
            log.notice(f"Agent {agent} timed out")
        return result.stats
