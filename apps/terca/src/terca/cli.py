from __future__ import annotations

import argparse
import signal
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path
from types import FrameType
from typing import TextIO

from agent_runners import AgentRegistry, default_registry
from eval_runner import (
    CancelToken,
    RunExecutor,
    RunTask,
    Scheduler,
    SelectionError,
    Suite,
    SuiteConfigError,
    allocate_run_group_dir,
    default_concurrency,
    default_runs_dir,
    initial_states,
    load_suite,
    plan_runs,
)
from run_results import (
    RESULTS_FILENAME,
    ResultsFileError,
    ResultsWriter,
    RunRecord,
    count_outcomes,
    load_results,
    summarize,
)

from terca.render import StatusPrinter, format_plan, format_summary

INTERRUPT_EXIT_CODE = 130
INTERRUPT_WINDOW_SECONDS = 1.0
INTERRUPT_REASON = "interrupted"


class InterruptHandler:
    """Two-stage SIGINT: the first press cancels ``token``, a second one soon after exits."""

    def __init__(
        self,
        token: CancelToken,
        *,
        err: TextIO | None = None,
        window_seconds: float = INTERRUPT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.token = token
        self.err = err
        self.window_seconds = window_seconds
        self.clock = clock
        self._last: float | None = None

    def __call__(self, signum: int, frame: FrameType | None) -> None:
        now = self.clock()
        if self._last is not None and now - self._last <= self.window_seconds:
            raise SystemExit(INTERRUPT_EXIT_CODE)
        self._last = now
        self.token.cancel(INTERRUPT_REASON)
        print(
            "\nCtrl+C received, finishing in-progress runs... (press again to exit now)",
            file=self.err or sys.stderr,
            flush=True,
        )


def _add_selection_args(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Project root holding terca.yaml and eval.terca.yaml files (default: cwd).",
    )
    p.add_argument(
        "--test",
        action="append",
        default=None,
        metavar="NAME",
        help="Only run this eval (repeatable).",
    )
    p.add_argument(
        "--environment",
        action="append",
        default=None,
        metavar="NAME",
        help="Only run this environment (repeatable).",
    )
    p.add_argument(
        "--experiment",
        action="append",
        default=None,
        metavar="NAME",
        help="Only run this experiment (repeatable).",
    )
    p.add_argument(
        "--repetitions",
        type=int,
        default=None,
        help="Override the suite-level repetition count.",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the terca CLI argument parser."""
    parser = argparse.ArgumentParser(prog="terca")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run_p = sub.add_parser("run", help="Run every selected eval x variant x repetition.")
    _add_selection_args(run_p)
    run_p.add_argument(
        "--runs-dir",
        type=Path,
        default=None,
        help="Where run groups are created (default: $TERCA_RUNS_DIR or <root>/.terca/runs).",
    )
    run_p.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Parallel runs (default: suite concurrency, else CPU count).",
    )

    plan_p = sub.add_parser("plan", help="Validate the suite and list planned runs.")
    _add_selection_args(plan_p)

    summary_p = sub.add_parser("summary", help="Summarize an existing results.json.")
    summary_p.add_argument("path", type=Path, help="Path to results.json or its run group dir.")
    return parser


def _print_config_error(e: SuiteConfigError | SelectionError) -> None:
    print(str(e), file=sys.stderr)
    if e.hint:
        print(f"Hint: {e.hint}", file=sys.stderr)


def _plan(args: argparse.Namespace) -> tuple[Suite, list[RunTask]]:
    suite = load_suite(args.root)
    tasks = plan_runs(
        suite,
        tests=args.test,
        environments=args.environment,
        experiments=args.experiment,
        repetitions=args.repetitions,
    )
    return suite, tasks


def _cmd_plan(args: argparse.Namespace) -> int:
    try:
        suite, tasks = _plan(args)
    except (SuiteConfigError, SelectionError) as e:
        _print_config_error(e)
        return 2
    print(f"Suite: {suite.name} ({suite.root})")
    print(format_plan(tasks))
    return 0


def _cmd_run(args: argparse.Namespace, *, registry: AgentRegistry | None = None) -> int:
    try:
        suite, tasks = _plan(args)
    except (SuiteConfigError, SelectionError) as e:
        _print_config_error(e)
        return 2
    if not tasks:
        print("No runs selected.", file=sys.stderr)
        return 0

    runs_dir = args.runs_dir if args.runs_dir is not None else default_runs_dir(suite.root)
    group_dir = allocate_run_group_dir(runs_dir)
    writer = ResultsWriter(group_dir / RESULTS_FILENAME)
    executor = RunExecutor(
        suite=suite,
        group_dir=group_dir,
        registry=registry or default_registry(),
        runs_dir=runs_dir,
    )
    scheduler = Scheduler(executor, writer)
    concurrency = args.concurrency or suite.concurrency or default_concurrency()
    states = initial_states(tasks)
    token = CancelToken()

    print(f"Running {len(tasks)} run(s) with concurrency {concurrency} -> {group_dir}")

    failure: list[BaseException] = []

    def _run() -> None:
        try:
            scheduler.run(tasks, concurrency=concurrency, cancel_token=token, states=states)
        except Exception as e:
            failure.append(e)

    # Signal handlers can only be installed from the main thread.
    install_handler = threading.current_thread() is threading.main_thread()
    previous_handler = (
        signal.signal(signal.SIGINT, InterruptHandler(token)) if install_handler else None
    )

    printer = StatusPrinter()
    worker = threading.Thread(target=_run, name="terca-scheduler", daemon=True)
    try:
        worker.start()
        while worker.is_alive():
            for line in printer.changes(states):
                print(line, flush=True)
            worker.join(timeout=0.1)
        for line in printer.changes(states):
            print(line, flush=True)
    finally:
        if install_handler:
            signal.signal(signal.SIGINT, previous_handler or signal.default_int_handler)

    if failure:
        print(f"Run aborted: {failure[0]}", file=sys.stderr)
        return 1

    records = writer.records
    print(format_summary(summarize(records), count_outcomes(records)))
    print(f"\nResults: {writer.path}")
    if token.is_set():
        print(f"Cancelled ({token.reason}); {len(records)}/{len(tasks)} run(s) recorded.")
    return 0 if _all_passed(records) and len(records) == len(tasks) else 1


def _all_passed(records: list[RunRecord]) -> bool:
    return all(r.passed for r in records)


def _cmd_summary(args: argparse.Namespace) -> int:
    path: Path = args.path
    if path.is_dir():
        path = path / RESULTS_FILENAME
    if not path.exists():
        print(f"No results file at {path}", file=sys.stderr)
        return 2
    try:
        records = load_results(path)
    except ResultsFileError as e:
        print(str(e), file=sys.stderr)
        print(f"Hint: {e.hint}", file=sys.stderr)
        return 2
    print(format_summary(summarize(records), count_outcomes(records)))
    return 0 if _all_passed(records) else 1


def main(argv: list[str] | None = None) -> None:
    """Run the CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.cmd == "run":
        raise SystemExit(_cmd_run(args))
    if args.cmd == "plan":
        raise SystemExit(_cmd_plan(args))
    if args.cmd == "summary":
        raise SystemExit(_cmd_summary(args))
    raise SystemExit(2)


if __name__ == "__main__":
    main()
