import dataclasses

import pytest

from pipeflow.models import (
    ActionRef,
    Event,
    JobRun,
    JobState,
    RunCommand,
    StepResult,
    StepStatus,
    TriggerRule,
    UsesAction,
    WorkflowDefinition,
    step_display_name,
)


def test_run_command_defaults():
    step = RunCommand(command="pip install -r requirements.txt")
    assert step.env == {}
    assert step.condition is None
    assert step.timeout is None
    assert step.working_directory is None


def test_action_ref_parse():
    ref = ActionRef.parse("peaceiris/actions-gh-pages@v3.7.3")
    assert ref.name == "peaceiris/actions-gh-pages"
    assert ref.version == "v3.7.3"
    assert str(ref) == "peaceiris/actions-gh-pages@v3.7.3"


def test_action_ref_without_version():
    ref = ActionRef.parse("local/thing")
    assert ref.version == ""
    assert str(ref) == "local/thing"


def test_step_display_names():
    assert step_display_name(RunCommand(command="cargo build\ncargo test")) == "cargo build"
    assert step_display_name(UsesAction(ref=ActionRef.parse("actions/checkout@v3"))) == "Action: actions/checkout@v3"
    assert step_display_name(RunCommand(command="make", name="Build")) == "Build"


def test_workflow_is_frozen():
    wf = WorkflowDefinition(name="CI")
    assert wf.jobs == {}
    with pytest.raises(dataclasses.FrozenInstanceError):
        wf.name = "other"


def test_workflow_mappings_are_read_only():
    wf = WorkflowDefinition(name="CI")
    with pytest.raises(TypeError):
        wf.env["X"] = "1"


def test_trigger_rule_hashable():
    rule = TriggerRule(kind="push", branches=frozenset({"main"}))
    assert {rule, TriggerRule(kind="push", branches=frozenset({"main"}))} == {rule}


def test_event_ref():
    assert Event(kind="push", branch="main").ref == "refs/heads/main"


def test_job_run_defaults():
    run = JobRun(workflow="CI", job="build", event=Event("push", "main"))
    assert run.state is JobState.PENDING
    assert run.results == []
    assert run.duration is None
    assert len(run.run_id) == 12


def test_terminal_states():
    assert not JobState.PENDING.terminal
    assert not JobState.RUNNING.terminal
    assert JobState.SUCCEEDED.terminal
    assert JobState.FAILED.terminal
    assert JobState.CANCELLED.terminal


def test_step_result_ok():
    assert StepResult(index=0, name="a", status=StepStatus.SUCCEEDED, exit_code=0).ok
    assert StepResult(index=0, name="a", status=StepStatus.SKIPPED).ok
    assert not StepResult(index=0, name="a", status=StepStatus.FAILED, exit_code=1).ok


def test_status_values():
    assert JobState.SUCCEEDED.value == "succeeded"
    assert JobState.CANCELLED.value == "cancelled"
    assert StepStatus.SKIPPED.value == "skipped"
