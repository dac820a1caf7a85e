import logging

import yaml

from pipeflow.errors import WorkflowError
from pipeflow.models import (
    ActionRef,
    JobDefinition,
    PublishSpec,
    RunCommand,
    TriggerRule,
    UsesAction,
    WorkflowDefinition,
    frozen_map,
)

logger = logging.getLogger(__name__)

# Actions whose only job is to ship a built directory somewhere. When one of
# these is the last step of a job it becomes the job's publish stage.
DEFAULT_PUBLISH_ACTIONS = frozenset({
    "peaceiris/actions-gh-pages",
})


def parse_workflow(path: str, publish_actions=DEFAULT_PUBLISH_ACTIONS) -> WorkflowDefinition:
    with open(path) as f:
        raw = yaml.safe_load(f)
    return build_workflow(raw, publish_actions=publish_actions)


def parse_workflow_string(text: str, publish_actions=DEFAULT_PUBLISH_ACTIONS) -> WorkflowDefinition:
    return build_workflow(yaml.safe_load(text), publish_actions=publish_actions)


def build_workflow(raw, publish_actions=DEFAULT_PUBLISH_ACTIONS) -> WorkflowDefinition:
    if not isinstance(raw, dict):
        raise WorkflowError(f"Invalid workflow file: expected YAML mapping, got {type(raw).__name__}")

    # PyYAML parses bare `on:` as boolean True; normalize it
    if True in raw:
        raw["on"] = raw.pop(True)

    if not isinstance(raw.get("jobs"), dict) or not raw["jobs"]:
        raise WorkflowError("Invalid workflow file: no 'jobs' section found")

    name = str(raw.get("name", "Unnamed Workflow"))
    triggers = _parse_triggers(raw.get("on", {}))
    workflow_env = _str_dict(raw.get("env") or {}, "env")

    push_branches = frozenset().union(*[r.branches for r in triggers if r.kind == "push"])

    jobs = {}
    for job_id, job_raw in raw["jobs"].items():
        if not isinstance(job_raw, dict):
            raise WorkflowError(f"Job '{job_id}' must be a mapping")
        jobs[str(job_id)] = _parse_job(str(job_id), job_raw, push_branches, publish_actions)

    return WorkflowDefinition(
        name=name,
        triggers=tuple(triggers),
        jobs=frozen_map(jobs),
        env=frozen_map(workflow_env),
    )


def _parse_triggers(trigger_raw) -> list[TriggerRule]:
    if isinstance(trigger_raw, str):
        return [TriggerRule(kind=trigger_raw)]
    if isinstance(trigger_raw, list):
        return [TriggerRule(kind=str(t)) for t in trigger_raw]
    if not isinstance(trigger_raw, dict):
        raise WorkflowError("Invalid workflow file: 'on' must be a string, list or mapping")

    rules = []
    for kind, filters in trigger_raw.items():
        filters = filters or {}
        if not isinstance(filters, dict):
            raise WorkflowError(f"Trigger '{kind}' filters must be a mapping")
        rules.append(TriggerRule(
            kind=str(kind),
            branches=frozenset(_str_list(filters.get("branches"), f"on.{kind}.branches")),
            branches_ignore=frozenset(_str_list(filters.get("branches-ignore"), f"on.{kind}.branches-ignore")),
        ))
    return rules


def _parse_job(job_id: str, job_raw: dict, push_branches: frozenset, publish_actions) -> JobDefinition:
    runs_on = str(job_raw.get("runs-on", "ubuntu-latest"))
    job_env = _str_dict(job_raw.get("env") or {}, f"jobs.{job_id}.env")
    timeout = _minutes(job_raw.get("timeout-minutes"), f"jobs.{job_id}.timeout-minutes")

    steps_raw = job_raw.get("steps") or []
    if not isinstance(steps_raw, list):
        raise WorkflowError(f"Job '{job_id}': 'steps' must be a list")
    steps = [_parse_step(job_id, i, s) for i, s in enumerate(steps_raw)]

    publish = None
    if "publish" in job_raw:
        publish = _parse_publish(job_id, job_raw["publish"], push_branches)
    elif steps and isinstance(steps[-1], UsesAction) and steps[-1].ref.name in publish_actions:
        last = steps.pop()
        publish = PublishSpec(
            action=last.ref,
            inputs=last.inputs,
            branches=push_branches,
            condition=last.condition,
            name=last.name,
        )
        logger.debug("Job '%s': trailing '%s' step becomes the publish stage", job_id, last.ref)

    if not steps:
        raise WorkflowError(f"Job '{job_id}' has no steps")

    return JobDefinition(
        name=job_id,
        runs_on=runs_on,
        steps=tuple(steps),
        env=frozen_map(job_env),
        timeout=timeout,
        publish=publish,
    )


def _parse_step(job_id: str, index: int, step_raw):
    where = f"jobs.{job_id}.steps[{index}]"
    if not isinstance(step_raw, dict):
        raise WorkflowError(f"{where} must be a mapping")

    common = dict(
        name=str(step_raw.get("name", "")),
        env=frozen_map(_str_dict(step_raw.get("env") or {}, f"{where}.env")),
        condition=_condition(step_raw.get("if")),
        timeout=_minutes(step_raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
    )

    if "uses" in step_raw and "run" in step_raw:
        raise WorkflowError(f"{where} cannot have both 'uses' and 'run'")

    if "uses" in step_raw:
        return UsesAction(
            ref=ActionRef.parse(str(step_raw["uses"])),
            inputs=frozen_map(_str_dict(step_raw.get("with") or {}, f"{where}.with")),
            **common,
        )
    if "run" in step_raw:
        working_dir = step_raw.get("working-directory")
        return RunCommand(
            command=str(step_raw["run"]).strip(),
            working_directory=str(working_dir) if working_dir is not None else None,
            **common,
        )
    raise WorkflowError(f"{where} needs either 'uses' or 'run'")


def _parse_publish(job_id: str, publish_raw, push_branches: frozenset) -> PublishSpec:
    where = f"jobs.{job_id}.publish"
    if not isinstance(publish_raw, dict) or "uses" not in publish_raw:
        raise WorkflowError(f"{where} must be a mapping with a 'uses' key")
    branches = publish_raw.get("branches")
    events = publish_raw.get("events")
    return PublishSpec(
        action=ActionRef.parse(str(publish_raw["uses"])),
        inputs=frozen_map(_str_dict(publish_raw.get("with") or {}, f"{where}.with")),
        branches=frozenset(_str_list(branches, f"{where}.branches")) if branches is not None else push_branches,
        events=frozenset(_str_list(events, f"{where}.events")) if events is not None else frozenset({"push"}),
        condition=_condition(publish_raw.get("if")),
        name=str(publish_raw.get("name", "")),
    )


def _condition(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value).strip()


def _minutes(value, where: str) -> float | None:
    if value is None:
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise WorkflowError(f"{where} must be a number, got {value!r}") from None
    if minutes <= 0:
        raise WorkflowError(f"{where} must be positive")
    return minutes * 60


def _str_list(value, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise WorkflowError(f"{where} must be a list of strings")
    return [str(v) for v in value]


def _str_dict(d, where: str = "env") -> dict:
    if not isinstance(d, dict):
        raise WorkflowError(f"{where} must be a mapping")
    result = {}
    for k, v in d.items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        else:
            result[str(k)] = str(v)
    return result
