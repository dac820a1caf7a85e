import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from pipeflow.actions import ActionRegistry, default_registry
from pipeflow.backends import make_backend
from pipeflow.config import EngineConfig
from pipeflow.history import RunHistory
from pipeflow.models import Event, JobRun, TriggerRule, WorkflowDefinition
from pipeflow.publish import default_publishers
from pipeflow.runner import JobRunner
from pipeflow.triggers import matches

logger = logging.getLogger(__name__)


@dataclass
class JobHandle:
    rule: TriggerRule
    runner: JobRunner
    future: Future

    @property
    def run_id(self) -> str:
        return self.runner.job_run.run_id

    @property
    def job_run(self) -> JobRun:
        return self.runner.job_run

    def cancel(self, reason: str = "cancelled") -> None:
        self.runner.cancel(reason)

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> JobRun:
        return self.future.result(timeout)


class Engine:
    """Turns events into concurrently running JobRuns.

    One JobRun is started per (trigger rule, job) pair the event matches.
    Runs never share mutable state, and a run that fails, crashes or is
    cancelled leaves the engine ready for the next event.
    """

    def __init__(self, workflow: WorkflowDefinition, config: EngineConfig | None = None, *,
                 secrets=None, backend_factory=None, actions: ActionRegistry | None = None,
                 publishers=None, history: RunHistory | None = None):
        self.workflow = workflow
        self.config = config or EngineConfig()
        self.secrets = secrets
        self.actions = actions or default_registry()
        self.publishers = default_publishers() if publishers is None else publishers
        if history is None and self.config.history_path:
            history = RunHistory(self.config.history_path)
        self.history = history
        self._backend_factory = backend_factory or (
            lambda: make_backend(self.config.backend, self.config.workdir))
        self._pool = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="pipeflow")
        self._handles: dict[str, JobHandle] = {}
        self._lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(cancel=exc_type is not None)

    def plan(self, event: Event) -> list[tuple]:
        """Matching (rule, job name) pairs, in job order then rule kind."""
        order = {name: i for i, name in enumerate(self.workflow.jobs)}
        return sorted(matches(event, self.workflow), key=lambda p: (order[p[1]], p[0].kind))

    def submit(self, event: Event) -> list[JobHandle]:
        pairs = self.plan(event)
        if not pairs:
            logger.info("No trigger in '%s' matches %s on '%s'", self.workflow.name, event.kind, event.branch)
            return []

        handles = []
        for rule, job_name in pairs:
            runner = JobRunner(
                self.workflow, job_name, event, self._backend_factory(),
                secrets=self.secrets,
                actions=self.actions,
                publishers=self.publishers,
                step_timeout=self.config.step_timeout,
                unknown_actions=self.config.unknown_actions,
            )
            future = self._pool.submit(self._execute, runner)
            handle = JobHandle(rule=rule, runner=runner, future=future)
            with self._lock:
                self._handles[handle.run_id] = handle
            future.add_done_callback(lambda _f, run_id=handle.run_id: self._forget(run_id))
            handles.append(handle)
        return handles

    def dispatch(self, event: Event) -> list[JobRun]:
        """Submit the event and wait for every run it started."""
        return [h.result() for h in self.submit(event)]

    def _execute(self, runner: JobRunner) -> JobRun:
        run = runner.run()
        if self.history is not None:
            try:
                self.history.append(run)
            except OSError as e:
                logger.error("Could not record run %s in %s: %s", run.run_id, self.history.path, e)
        return run

    def _forget(self, run_id: str) -> None:
        with self._lock:
            self._handles.pop(run_id, None)

    def active(self) -> list[JobHandle]:
        with self._lock:
            return list(self._handles.values())

    def cancel(self, run_id: str, reason: str = "cancelled") -> bool:
        with self._lock:
            handle = self._handles.get(run_id)
        if handle is None:
            return False
        handle.cancel(reason)
        return True

    def cancel_all(self, reason: str = "cancelled") -> None:
        for handle in self.active():
            handle.cancel(reason)

    def shutdown(self, wait: bool = True, cancel: bool = False) -> None:
        if cancel:
            self.cancel_all("engine shutting down")
        self._pool.shutdown(wait=wait)
