from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
import yaml

from eval_runner import CancelToken
from terca.cli import INTERRUPT_EXIT_CODE, InterruptHandler, main


def _write_project(root: Path, *, second_check: str = "seed.txt") -> None:
    root.mkdir(parents=True, exist_ok=True)
    (root / "terca.yaml").write_text(
        yaml.safe_dump(
            {
                "name": "demo",
                "repetitions": 2,
                "before": [{"files": {"seed.txt": "seed"}}],
                "environments": [{"name": "local"}],
                "experiments": [{"name": "baseline"}, {"name": "tweaked"}],
            }
        ),
        encoding="utf-8",
    )
    eval_dir = root / "evals" / "seeded"
    eval_dir.mkdir(parents=True)
    (eval_dir / "eval.terca.yaml").write_text(
        yaml.safe_dump(
            {
                "prompt": "Nothing to do.",
                "tests": [
                    {"name": "seed-present", "fileExists": "seed.txt"},
                    {"name": "second", "fileExists": second_check},
                ],
            }
        ),
        encoding="utf-8",
    )


def _run(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return int(exc_info.value.code or 0)


def test_plan_lists_runs(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_project(tmp_path / "proj")

    code = _run(["plan", "--root", str(tmp_path / "proj"), "--experiment", "tweaked"])

    out = capsys.readouterr().out
    assert code == 0
    assert "Suite: demo" in out
    assert "001 seeded (local.tweaked rep 1)" in out
    assert "002 seeded (local.tweaked rep 2)" in out
    assert "2 run(s) planned." in out


def test_plan_unknown_selection_exits_2(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_project(tmp_path / "proj")

    code = _run(["plan", "--root", str(tmp_path / "proj"), "--test", "missing"])

    err = capsys.readouterr().err
    assert code == 2
    assert "Unknown test name(s): missing" in err
    assert "Hint: Run `terca plan`" in err


def test_invalid_config_exits_2(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    root = tmp_path / "proj"
    root.mkdir()
    (root / "terca.yaml").write_text("repetitions: zero\n", encoding="utf-8")

    code = _run(["run", "--root", str(root), "--runs-dir", str(tmp_path / "runs")])

    assert code == 2
    assert "$.repetitions" in capsys.readouterr().err
    assert not (tmp_path / "runs").exists()


def test_run_writes_results_and_summary(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_project(tmp_path / "proj")
    runs = tmp_path / "runs"

    code = _run(["run", "--root", str(tmp_path / "proj"), "--runs-dir", str(runs), "--concurrency", "2"])

    out = capsys.readouterr().out
    assert code == 0
    (group,) = runs.iterdir()
    data = json.loads((group / "results.json").read_text(encoding="utf-8"))
    assert sorted(r["id"] for r in data["runs"]) == [1, 2, 3, 4]
    assert all(r["stats"] is None for r in data["runs"])
    assert (group / "seeded" / "local.baseline.01" / "workspace" / "seed.txt").exists()
    log = (group / "seeded" / "local.tweaked.02" / "run.log").read_text(encoding="utf-8")
    assert "No agent configured, skipping" in log

    assert "=== Terca Run Summary ===" in out
    assert "=== local: baseline ===" in out
    assert "- seeded: PASS (2/2)" in out
    assert "4 passed, 0 failed, 0 errored" in out
    assert f"Results: {group / 'results.json'}" in out


def test_run_with_failing_check_exits_1(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _write_project(tmp_path / "proj", second_check="never-created.txt")
    runs = tmp_path / "runs"

    code = _run(
        ["run", "--root", str(tmp_path / "proj"), "--runs-dir", str(runs), "--experiment", "baseline"]
    )

    out = capsys.readouterr().out
    assert code == 1
    assert "FAIL: second" in out
    assert "- seeded: FAIL (0/2)" in out
    assert "0 passed, 2 failed, 0 errored" in out


def test_summary_command_reads_existing_results(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    group = tmp_path / "2026-01-02-001"
    group.mkdir()
    runs = [
        {
            "id": 1,
            "eval": "e",
            "environment": "claude",
            "experiment": "default",
            "repetition": 1,
            "results": {"c": {"score": 1.0, "message": ""}},
            "stats": {"durationSeconds": 2.0, "inputTokens": 4000, "outputTokens": 1000},
        },
        {
            "id": 2,
            "eval": "e",
            "environment": "claude",
            "experiment": "default",
            "repetition": 2,
            "error": {"type": "RunStepError", "message": "boom", "stack": ""},
        },
    ]
    (group / "results.json").write_text(json.dumps({"runs": runs}), encoding="utf-8")

    code = _run(["summary", str(group)])

    out = capsys.readouterr().out
    assert code == 1
    assert "- e: FAIL (1/2), avg 1.0s, token avg: 2K in / 0K out / 0K cached, 1 error(s)" in out
    assert "1 passed, 0 failed, 1 errored" in out


def test_summary_missing_or_corrupt_file_exits_2(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    assert _run(["summary", str(tmp_path / "nowhere")]) == 2
    assert "No results file" in capsys.readouterr().err

    bad = tmp_path / "results.json"
    bad.write_text('{"runs": [', encoding="utf-8")
    assert _run(["summary", str(bad)]) == 2


def test_interrupt_handler_two_stage() -> None:
    now = [100.0]
    token = CancelToken()
    err = io.StringIO()
    handler = InterruptHandler(token, err=err, clock=lambda: now[0])

    handler(2, None)
    assert token.reason == "interrupted"
    assert "finishing in-progress runs" in err.getvalue()

    now[0] += 0.5
    with pytest.raises(SystemExit) as exc_info:
        handler(2, None)
    assert exc_info.value.code == INTERRUPT_EXIT_CODE


def test_interrupt_presses_far_apart_do_not_exit() -> None:
    now = [0.0]
    handler = InterruptHandler(CancelToken(), err=io.StringIO(), clock=lambda: now[0])
    handler(2, None)
    now[0] += 5.0
    handler(2, None)
    now[0] += 5.0
    handler(2, None)
