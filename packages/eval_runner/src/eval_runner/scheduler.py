from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Sequence

from run_results import ResultsWriter, RunRecord, error_payload

from eval_runner.cancellation import CancelToken
from eval_runner.display import RunDisplayState
from eval_runner.pipeline import Executor
from eval_runner.planner import RunTask

PERSISTENCE_FAILED_REASON = "persistence_failed"


def default_concurrency() -> int:
    return os.cpu_count() or 1


class Scheduler:
    """Bounded worker pool over a shared FIFO of run tasks.

    Each worker pops a task, runs it through the executor and appends the record
    to the results writer before taking the next one. Cancelling the token clears
    the queue; tasks already taken run to completion.
    """

    def __init__(self, executor: Executor, results_writer: ResultsWriter | None = None) -> None:
        self.executor = executor
        self.results_writer = results_writer

    def _execute_one(
        self, task: RunTask, state: RunDisplayState, cancel_token: CancelToken
    ) -> RunRecord:
        variant = task.variant
        base = {
            "id": task.id,
            "eval": task.eval_case.name,
            "environment": variant.environment,
            "experiment": variant.experiment,
            "repetition": task.repetition,
            "variant": variant.to_dict(),
        }
        try:
            outcome = self.executor.execute(task, state, cancel_token)
        except Exception as e:
            payload = error_payload(e, step=getattr(e, "step", None))
            state.fail(payload)
            return RunRecord(**base, error=payload)

        results = outcome.results_dict()
        stats = outcome.stats_dict()
        state.complete(results=results, stats=stats)
        return RunRecord(**base, results=results, stats=stats)

    def run(
        self,
        tasks: Sequence[RunTask],
        *,
        concurrency: int | None = None,
        cancel_token: CancelToken | None = None,
        states: Sequence[RunDisplayState] | None = None,
    ) -> list[RunRecord]:
        """Block until every task ran or the queue was drained by cancellation.

        Returns the records produced, in completion order.
        """

        token = cancel_token or CancelToken()
        pending: deque[RunTask] = deque(tasks)
        lock = threading.Lock()
        records: list[RunRecord] = []
        persist_errors: list[Exception] = []
        states_by_id = {s.id: s for s in states or ()}

        def _drain(_reason: str) -> None:
            with lock:
                pending.clear()

        def _next_task() -> RunTask | None:
            with lock:
                if token.is_set() or not pending:
                    return None
                return pending.popleft()

        def _worker() -> None:
            while True:
                task = _next_task()
                if task is None:
                    return
                state = states_by_id.get(task.id) or RunDisplayState(id=task.id, name=task.name)
                record = self._execute_one(task, state, token)
                with lock:
                    records.append(record)
                if self.results_writer is None:
                    continue
                try:
                    self.results_writer.append(record)
                except OSError as e:
                    with lock:
                        persist_errors.append(e)
                    token.cancel(PERSISTENCE_FAILED_REASON)
                    return

        token.add_callback(_drain)
        workers = max(1, min(concurrency or default_concurrency(), len(tasks) or 1))
        threads = [
            threading.Thread(target=_worker, name=f"terca-worker-{i}", daemon=True)
            for i in range(1, workers + 1)
        ]
        try:
            for t in threads:
                t.start()
            for t in threads:
                t.join()
        finally:
            token.remove_callback(_drain)

        if persist_errors:
            raise persist_errors[0]
        return list(records)
