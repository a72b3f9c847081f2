from eval_runner.actions import ActionContext, ActionError, BeforeAction, run_before_actions
from eval_runner.cancellation import CancelToken
from eval_runner.checks import Check, CheckContext, CheckResult, run_checks
from eval_runner.display import RunDisplayState, initial_states
from eval_runner.invocation import (
    DEFAULT_TIMEOUT_SECONDS,
    InvocationResult,
    build_prompt,
    invoke_agent,
    resolve_timeout,
)
from eval_runner.pathing import allocate_run_group_dir, default_runs_dir, run_dir_for
from eval_runner.pipeline import RunExecutor, RunOutcome, RunStepError
from eval_runner.planner import RunTask, SelectionError, plan_runs
from eval_runner.runlog import RunLog
from eval_runner.scheduler import Scheduler, default_concurrency
from eval_runner.suite import EvalCase, Suite, SuiteConfigError, load_suite
from eval_runner.variants import Variant, expand_matrix, expand_variants, matrix_environments
from eval_runner.workspace import build_workspace

__all__ = [
    "DEFAULT_TIMEOUT_SECONDS",
    "ActionContext",
    "ActionError",
    "BeforeAction",
    "CancelToken",
    "Check",
    "CheckContext",
    "CheckResult",
    "EvalCase",
    "InvocationResult",
    "RunDisplayState",
    "RunExecutor",
    "RunLog",
    "RunOutcome",
    "RunStepError",
    "RunTask",
    "Scheduler",
    "SelectionError",
    "Suite",
    "SuiteConfigError",
    "Variant",
    "allocate_run_group_dir",
    "build_prompt",
    "build_workspace",
    "default_concurrency",
    "default_runs_dir",
    "expand_matrix",
    "expand_variants",
    "initial_states",
    "invoke_agent",
    "load_suite",
    "matrix_environments",
    "plan_runs",
    "resolve_timeout",
    "run_before_actions",
    "run_checks",
    "run_dir_for",
]
