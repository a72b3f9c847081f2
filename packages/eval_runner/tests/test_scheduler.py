from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from eval_runner import (
    CancelToken,
    CheckResult,
    EvalCase,
    RunDisplayState,
    RunOutcome,
    RunStepError,
    Scheduler,
    Suite,
    initial_states,
    plan_runs,
)
from eval_runner.display import COMPLETE, ERROR
from eval_runner.planner import RunTask
from eval_runner.scheduler import PERSISTENCE_FAILED_REASON
from run_results import ResultsWriter, load_results


def _tasks(tmp_path: Path, count: int) -> list[RunTask]:
    suite = Suite(
        name="s",
        root=tmp_path,
        evals=(EvalCase(name="e", prompt="p"),),
        repetitions=count,
    )
    return plan_runs(suite)


class FakeExecutor:
    def __init__(
        self,
        *,
        delay: float = 0.0,
        fail_ids: frozenset[int] = frozenset(),
        cancel_after: int | None = None,
    ) -> None:
        self.delay = delay
        self.fail_ids = fail_ids
        self.cancel_after = cancel_after
        self.executed: list[int] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def execute(self, task: RunTask, state: RunDisplayState, cancel_token: CancelToken) -> RunOutcome:
        state.set_message("working")
        with self._lock:
            self.executed.append(task.id)
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            if self.cancel_after is not None and len(self.executed) == self.cancel_after:
                cancel_token.cancel("interrupted")
        try:
            time.sleep(self.delay)
            if task.id in self.fail_ids:
                raise RunStepError("build_workspace failed: disk full", step="build_workspace")
            return RunOutcome(results={"check": CheckResult(1.0, "ok")}, stats=None)
        finally:
            with self._lock:
                self.active -= 1


def test_runs_every_task_and_updates_states(tmp_path: Path) -> None:
    tasks = _tasks(tmp_path, 5)
    states = initial_states(tasks)
    writer = ResultsWriter(tmp_path / "results.json")

    records = Scheduler(FakeExecutor(), writer).run(tasks, concurrency=2, states=states)

    assert sorted(r.id for r in records) == [1, 2, 3, 4, 5]
    assert all(r.passed for r in records)
    assert all(s.status == COMPLETE for s in states)
    assert states[0].results == {"check": {"score": 1.0, "message": "ok"}}
    assert sorted(r.id for r in load_results(writer.path)) == [1, 2, 3, 4, 5]


def test_concurrency_is_bounded(tmp_path: Path) -> None:
    executor = FakeExecutor(delay=0.05)
    records = Scheduler(executor).run(_tasks(tmp_path, 9), concurrency=3)

    assert len(records) == 9
    assert 1 <= executor.max_active <= 3


def test_failure_is_isolated_to_its_record(tmp_path: Path) -> None:
    tasks = _tasks(tmp_path, 3)
    states = initial_states(tasks)

    records = Scheduler(FakeExecutor(fail_ids=frozenset({2}))).run(tasks, concurrency=1, states=states)

    by_id = {r.id: r for r in records}
    assert by_id[1].passed and by_id[3].passed
    failed = by_id[2]
    assert failed.is_error
    assert failed.results is None
    assert failed.error is not None
    assert failed.error["type"] == "RunStepError"
    assert failed.error["step"] == "build_workspace"
    assert "disk full" in failed.error["message"]
    assert states[1].status == ERROR


@pytest.mark.parametrize("k", [1, 3])
def test_cancel_stops_dequeuing(tmp_path: Path, k: int) -> None:
    tasks = _tasks(tmp_path, 10)
    token = CancelToken()
    writer = ResultsWriter(tmp_path / "results.json")
    executor = FakeExecutor(cancel_after=k)

    records = Scheduler(executor, writer).run(tasks, concurrency=1, cancel_token=token)

    assert token.reason == "interrupted"
    assert [r.id for r in records] == list(range(1, k + 1))
    assert [r.id for r in load_results(writer.path)] == list(range(1, k + 1))
    assert executor.executed == list(range(1, k + 1))


def test_cancel_before_start_runs_nothing(tmp_path: Path) -> None:
    token = CancelToken()
    token.cancel()
    executor = FakeExecutor()
    assert Scheduler(executor).run(_tasks(tmp_path, 3), cancel_token=token) == []
    assert executor.executed == []


def test_persistence_failure_cancels_and_raises(tmp_path: Path) -> None:
    class BrokenWriter(ResultsWriter):
        def append(self, record) -> None:
            raise OSError("disk full")

    token = CancelToken()
    with pytest.raises(OSError, match="disk full"):
        Scheduler(FakeExecutor(), BrokenWriter(tmp_path / "results.json")).run(
            _tasks(tmp_path, 4), concurrency=1, cancel_token=token
        )
    assert token.reason == PERSISTENCE_FAILED_REASON


def test_empty_task_list(tmp_path: Path) -> None:
    assert Scheduler(FakeExecutor()).run([]) == []
