from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from run_results import ResultsFileError, ResultsWriter, RunRecord, error_payload, load_results


def _record(run_id: int, *, score: float = 1.0) -> RunRecord:
    return RunRecord(
        id=run_id,
        eval="make-file",
        environment="local",
        experiment="default",
        repetition=1,
        variant={"name": "local", "agent": "claude-code"},
        results={"exists": {"score": score, "message": "ok"}},
        stats={"requests": 1, "inputTokens": 10, "timedOut": False},
    )


def test_append_rewrites_whole_file(tmp_path: Path) -> None:
    path = tmp_path / "group" / "results.json"
    writer = ResultsWriter(path)

    writer.append(_record(1))
    first = json.loads(path.read_text(encoding="utf-8"))
    assert [r["id"] for r in first["runs"]] == [1]

    writer.append(_record(2, score=0.0))
    second = json.loads(path.read_text(encoding="utf-8"))
    assert [r["id"] for r in second["runs"]] == [1, 2]
    assert second["runs"][1]["results"]["exists"]["score"] == 0.0


def test_error_record_omits_results(tmp_path: Path) -> None:
    try:
        raise RuntimeError("workspace setup exploded")
    except RuntimeError as exc:
        payload = error_payload(exc, step="build_workspace")

    record = RunRecord(
        id=3,
        eval="broken",
        environment="default",
        experiment="default",
        repetition=2,
        error=payload,
    )
    data = record.to_dict()
    assert "results" not in data
    assert data["error"]["message"] == "workspace setup exploded"
    assert data["error"]["step"] == "build_workspace"
    assert "RuntimeError" in data["error"]["stack"]
    assert record.is_error
    assert not record.passed


def test_concurrent_appends_keep_every_record(tmp_path: Path) -> None:
    path = tmp_path / "results.json"
    writer = ResultsWriter(path)

    threads = [threading.Thread(target=writer.append, args=(_record(i),)) for i in range(1, 21)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    loaded = load_results(path)
    assert sorted(r.id for r in loaded) == list(range(1, 21))


def test_load_results_round_trips_and_tolerates_missing_file(tmp_path: Path) -> None:
    assert load_results(tmp_path / "nope.json") == []

    path = tmp_path / "results.json"
    writer = ResultsWriter(path)
    writer.append(_record(1, score=0.0))
    (loaded,) = load_results(path)
    assert loaded.failed_checks == ["exists"]
    assert loaded.variant["agent"] == "claude-code"


def test_load_results_reports_truncated_file(tmp_path: Path) -> None:
    path = tmp_path / "results.json"
    path.write_text('{"runs": [{"id": 1,', encoding="utf-8")
    with pytest.raises(ResultsFileError) as excinfo:
        load_results(path)
    assert excinfo.value.path == path


def test_from_dict_accepts_legacy_test_key() -> None:
    record = RunRecord.from_dict({"id": 4, "test": "old-name", "results": {}})
    assert record.eval == "old-name"
    assert record.passed
