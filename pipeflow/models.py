from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Union


def frozen_map(d: Mapping | None = None) -> Mapping:
    return MappingProxyType(dict(d or {}))


class JobState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED)


class StepStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class Event:
    kind: str
    branch: str
    sha: str = ""

    @property
    def ref(self) -> str:
        return f"refs/heads/{self.branch}"


@dataclass(frozen=True)
class TriggerRule:
    kind: str
    branches: frozenset = frozenset()
    branches_ignore: frozenset = frozenset()


@dataclass(frozen=True)
class ActionRef:
    name: str
    version: str = ""

    @classmethod
    def parse(cls, ref: str) -> ActionRef:
        name, _, version = ref.strip().partition("@")
        return cls(name=name, version=version)

    def __str__(self) -> str:
        return f"{self.name}@{self.version}" if self.version else self.name


@dataclass(frozen=True)
class UsesAction:
    ref: ActionRef
    inputs: Mapping = field(default_factory=frozen_map)
    name: str = ""
    env: Mapping = field(default_factory=frozen_map)
    condition: str | None = None
    timeout: float | None = None


@dataclass(frozen=True)
class RunCommand:
    command: str
    name: str = ""
    env: Mapping = field(default_factory=frozen_map)
    condition: str | None = None
    timeout: float | None = None
    working_directory: str | None = None


Step = Union[UsesAction, RunCommand]


@dataclass(frozen=True)
class PublishSpec:
    action: ActionRef
    inputs: Mapping = field(default_factory=frozen_map)
    branches: frozenset = frozenset()
    events: frozenset = frozenset({"push"})
    condition: str | None = None
    name: str = ""


@dataclass(frozen=True)
class JobDefinition:
    name: str
    runs_on: str
    steps: tuple = ()
    env: Mapping = field(default_factory=frozen_map)
    timeout: float | None = None
    publish: PublishSpec | None = None


@dataclass(frozen=True)
class WorkflowDefinition:
    name: str
    triggers: tuple = ()
    jobs: Mapping = field(default_factory=frozen_map)
    env: Mapping = field(default_factory=frozen_map)


@dataclass(frozen=True)
class StepResult:
    index: int
    name: str
    status: StepStatus
    exit_code: int | None = None
    duration: float = 0.0
    stdout: str = ""
    stderr: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (StepStatus.SUCCEEDED, StepStatus.SKIPPED)


@dataclass(frozen=True)
class Halted:
    """Yielded once by the step executor when a job stops before its last step."""

    status: StepStatus
    index: int
    reason: str = ""


@dataclass
class JobRun:
    workflow: str
    job: str
    event: Event
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: JobState = JobState.PENDING
    results: list[StepResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    publish: object | None = None
    error: str | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


def step_display_name(step: Step) -> str:
    if step.name:
        return step.name
    if isinstance(step, UsesAction):
        return f"Action: {step.ref}"
    return step.command.split("\n")[0]
