import logging
from datetime import datetime, timezone

from pipeflow.actions import ActionRegistry
from pipeflow.backends import CancelToken
from pipeflow.environment import EnvironmentChain, runner_context
from pipeflow.errors import CancelledError, InvalidTransition, StepExecutionError
from pipeflow.executor import StepExecutor
from pipeflow.models import Event, Halted, JobRun, JobState, StepStatus, WorkflowDefinition, frozen_map
from pipeflow.publish import PublishResult, maybe_publish

logger = logging.getLogger(__name__)

TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.CANCELLED},
    JobState.RUNNING: {JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELLED},
}


class JobRunner:
    """Owns one JobRun from dispatch to its terminal state.

    Runners for the same workflow share only the frozen WorkflowDefinition;
    the JobRun, environment chain, backend and cancel token are per runner.
    """

    def __init__(self, workflow: WorkflowDefinition, job_name: str, event: Event, backend, *,
                 secrets=None, actions: ActionRegistry | None = None, publishers=None,
                 step_timeout: float | None = None, unknown_actions: str = "skip"):
        if job_name not in workflow.jobs:
            raise KeyError(f"Workflow '{workflow.name}' has no job '{job_name}'")
        self.workflow = workflow
        self.job = workflow.jobs[job_name]
        self.backend = backend
        self.secrets = secrets
        self.publishers = publishers
        self.executor = StepExecutor(backend, actions=actions, default_timeout=step_timeout,
                                     unknown_actions=unknown_actions)
        self.cancel_token = CancelToken()
        self.chain: EnvironmentChain | None = None
        self.job_run = JobRun(workflow=workflow.name, job=job_name, event=event)

    @property
    def state(self) -> JobState:
        return self.job_run.state

    def cancel(self, reason: str = "cancelled") -> None:
        self.cancel_token.cancel(reason)

    def _transition(self, target: JobState) -> None:
        current = self.job_run.state
        if target not in TRANSITIONS.get(current, ()):
            raise InvalidTransition(current, target)
        self.job_run.state = target
        if target.terminal:
            self.job_run.finished_at = datetime.now(timezone.utc)
        logger.debug("[%s] %s -> %s", self.job.name, current.value, target.value)

    def run(self) -> JobRun:
        run = self.job_run
        if run.state is not JobState.PENDING:
            raise InvalidTransition(run.state, JobState.RUNNING)

        if self.cancel_token.is_set():
            run.error = self.cancel_token.reason
            self._transition(JobState.CANCELLED)
            return run

        run.started_at = datetime.now(timezone.utc)
        self._transition(JobState.RUNNING)
        logger.info("[%s] started (%s on %s)", self.job.name, run.event.kind, run.event.branch)

        halted = None
        try:
            halted = self._execute()
        except CancelledError as e:
            halted = Halted(StepStatus.CANCELLED, len(run.results), str(e))
        except StepExecutionError as e:
            run.error = str(e)
            halted = Halted(StepStatus.FAILED, len(run.results), str(e))
        except Exception as e:
            logger.exception("[%s] crashed", self.job.name)
            run.error = f"{type(e).__name__}: {e}"
            halted = Halted(StepStatus.FAILED, len(run.results), run.error)

        if halted is None:
            self._transition(JobState.SUCCEEDED)
        elif halted.status is StepStatus.CANCELLED or self.cancel_token.is_set():
            run.error = run.error or halted.reason
            self._transition(JobState.CANCELLED)
        else:
            run.error = run.error or halted.reason
            self._transition(JobState.FAILED)

        logger.info("[%s] %s after %d/%d steps", self.job.name, run.state.value,
                    len(run.results), len(self.job.steps))

        if run.state is JobState.SUCCEEDED and self.job.publish is not None:
            run.publish = self._publish()
        return run

    def _execute(self) -> Halted | None:
        event = self.job_run.event
        base = self.backend.base_environment(event)
        self.chain = EnvironmentChain(
            process=frozen_map(base),
            workflow=self.workflow.env,
            job=self.job.env,
            secrets=self.secrets,
            context=frozen_map(runner_context(event, self.backend.workspace)),
        )

        try:
            self.backend.setup(self.job, base)
            # setup may pull an image; a cancel that arrived meanwhile wins
            self.cancel_token.raise_if_set()
            for item in self.executor.run(self.job, self.chain, self.cancel_token):
                if isinstance(item, Halted):
                    return item
                self.job_run.results.append(item)
        finally:
            self.backend.cleanup()
        return None

    def _publish(self):
        spec = self.job.publish
        try:
            return maybe_publish(
                self.job_run, spec,
                secrets=self.chain.secrets,
                publishers=self.publishers,
                workspace=getattr(self.backend, "workdir", "."),
                context=self.chain.context,
                env=self.chain.resolve(),
            )
        except Exception as e:
            logger.exception("[%s] publish crashed", self.job.name)
            return PublishResult(ok=False, action=str(spec.action), error=f"{type(e).__name__}: {e}")
