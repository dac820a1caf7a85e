import json

import pytest

from pipeflow.history import RunHistory, run_record
from pipeflow.models import ActionRef, Event, JobRun, JobState, StepResult, StepStatus
from pipeflow.publish import PublishResult, PublishSkipped


def finished_run(state=JobState.SUCCEEDED, publish=None):
    run = JobRun(workflow="CI", job="build", event=Event("push", "main", "abc123"))
    run.state = state
    run.results = [
        StepResult(index=0, name="Build", status=StepStatus.SUCCEEDED, exit_code=0,
                   duration=1.23456, stdout="lots of output"),
    ]
    run.publish = publish
    return run


def test_record_omits_output():
    record = run_record(finished_run())
    assert record["state"] == "succeeded"
    assert record["event"] == {"kind": "push", "branch": "main", "sha": "abc123"}
    assert record["steps"] == [
        {"index": 0, "name": "Build", "status": "succeeded", "exit_code": 0, "duration": 1.235, "error": None},
    ]
    assert "lots of output" not in json.dumps(record)


def test_publish_records():
    skipped = run_record(finished_run(publish=PublishSkipped("branch 'dev' is not allowed")))
    assert skipped["publish"] == {"status": "skipped", "reason": "branch 'dev' is not allowed"}

    failed = run_record(finished_run(publish=PublishResult(ok=False, action=str(ActionRef.parse("a/b@v1")),
                                                           error="denied")))
    assert failed["publish"]["status"] == "failed"
    assert failed["publish"]["action"] == "a/b@v1"
    assert failed["publish"]["error"] == "denied"


def test_append_and_read(tmp_path):
    history = RunHistory(str(tmp_path / "nested" / "runs.jsonl"))
    assert history.records() == []
    history.append(finished_run())
    history.append(finished_run(state=JobState.FAILED))
    assert [r["state"] for r in history.records()] == ["succeeded", "failed"]


def test_rejects_unfinished_runs(tmp_path):
    history = RunHistory(str(tmp_path / "runs.jsonl"))
    with pytest.raises(ValueError, match="still running"):
        history.append(finished_run(state=JobState.RUNNING))
