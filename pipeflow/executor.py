"""Runs the steps of one job, in order, stopping at the first failure."""
import logging
import time
from typing import Iterator

from pipeflow.actions import ActionCall, ActionRegistry, default_registry
from pipeflow.backends import CANCELLED, TIMEOUT, CancelToken
from pipeflow.conditions import ConditionContext, ConditionError, evaluate
from pipeflow.environment import EnvironmentChain, ResolvedEnvironment
from pipeflow.errors import MissingSecret, StepExecutionError
from pipeflow.models import (
    Halted,
    JobDefinition,
    RunCommand,
    StepResult,
    StepStatus,
    UsesAction,
    step_display_name,
)

logger = logging.getLogger(__name__)

UNKNOWN_ACTION_POLICIES = ("skip", "fail")


class StepExecutor:
    def __init__(self, backend, actions: ActionRegistry | None = None,
                 default_timeout: float | None = None, unknown_actions: str = "skip"):
        if unknown_actions not in UNKNOWN_ACTION_POLICIES:
            raise ValueError(f"unknown_actions must be one of {UNKNOWN_ACTION_POLICIES}")
        self.backend = backend
        self.actions = actions or default_registry()
        self.default_timeout = default_timeout
        self.unknown_actions = unknown_actions

    def run(self, job: JobDefinition, chain: EnvironmentChain,
            cancel: CancelToken | None = None) -> Iterator[StepResult | Halted]:
        """Yield one StepResult per finished step.

        After a failed or cancelled step a single ``Halted`` follows and the
        generator ends; remaining steps are never started.
        """
        job_deadline = time.monotonic() + job.timeout if job.timeout else None

        for index, step in enumerate(job.steps):
            if cancel is not None and cancel.is_set():
                yield Halted(StepStatus.CANCELLED, index, cancel.reason or CANCELLED)
                return
            if job_deadline is not None and time.monotonic() >= job_deadline:
                yield Halted(StepStatus.CANCELLED, index, f"job timed out after {job.timeout:g}s")
                return

            result = self.run_step(index, step, chain, cancel, self._timeout_for(step, job_deadline))
            yield result

            if result.status in (StepStatus.FAILED, StepStatus.CANCELLED):
                yield Halted(result.status, index, result.error or f"exit code {result.exit_code}")
                return

    def _timeout_for(self, step, job_deadline: float | None) -> float | None:
        timeout = step.timeout or self.default_timeout
        if job_deadline is not None:
            remaining = max(job_deadline - time.monotonic(), 0.001)
            timeout = min(timeout, remaining) if timeout else remaining
        return timeout

    def run_step(self, index: int, step, chain: EnvironmentChain,
                 cancel: CancelToken | None = None, timeout: float | None = None) -> StepResult:
        name = step_display_name(step)
        started = time.monotonic()
        env = None

        def scrub(text):
            return chain.redact(text, env.secret_values if env is not None else ())

        def finish(status, outcome=None, error=None):
            return StepResult(
                index=index,
                name=name,
                status=status,
                exit_code=outcome.exit_code if outcome else None,
                duration=time.monotonic() - started,
                stdout=scrub(outcome.stdout) if outcome else "",
                stderr=scrub(outcome.stderr) if outcome else "",
                error=scrub(error) if error else None,
            )

        try:
            env = chain.resolve(step.env)
            if step.condition is not None and not self._condition_holds(step.condition, chain, env):
                logger.info("⊘ %s (condition not met)", name)
                return finish(StepStatus.SKIPPED)

            logger.info("▶ %s", name)
            if isinstance(step, UsesAction):
                handler = self.actions.lookup(step)
                if handler is None:
                    if self.unknown_actions == "fail":
                        return finish(StepStatus.FAILED, error=f"No handler for action {step.ref}")
                    logger.info("⊘ %s (no local handler for %s)", name, step.ref)
                    return finish(StepStatus.SKIPPED)
                inputs, env = self._expand_inputs(step, chain, env)
                outcome = handler(ActionCall(
                    step=step, inputs=inputs, env=env, backend=self.backend,
                    cancel=cancel, timeout=timeout,
                ))
            elif isinstance(step, RunCommand):
                outcome = self.backend.execute(
                    step.command, env,
                    working_directory=step.working_directory,
                    cancel=cancel, timeout=timeout,
                )
            else:
                raise StepExecutionError(f"Unsupported step type {type(step).__name__}")
        except (MissingSecret, StepExecutionError, ConditionError) as e:
            logger.error("✗ %s: %s", name, scrub(str(e)))
            return finish(StepStatus.FAILED, error=str(e))
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.error("✗ %s crashed: %s", name, scrub(error))
            return finish(StepStatus.FAILED, error=error)

        if outcome.interrupted == TIMEOUT:
            logger.warning("✗ %s timed out after %gs", name, timeout)
            return finish(StepStatus.CANCELLED, outcome, f"timed out after {timeout:g}s")
        if outcome.interrupted == CANCELLED:
            logger.warning("✗ %s cancelled", name)
            return finish(StepStatus.CANCELLED, outcome, cancel.reason if cancel else CANCELLED)
        if outcome.exit_code != 0:
            logger.error("✗ %s failed (exit code %s)", name, outcome.exit_code)
            return finish(StepStatus.FAILED, outcome, f"exit code {outcome.exit_code}")

        logger.info("✓ %s", name)
        return finish(StepStatus.SUCCEEDED, outcome)

    @staticmethod
    def _expand_inputs(step: UsesAction, chain: EnvironmentChain, env: ResolvedEnvironment):
        """Expand ``with:`` inputs; secrets they pull in join the redaction set."""
        inputs = {}
        secret_values = set(env.secret_values)
        for key, value in step.inputs.items():
            inputs[key], used = chain.expand(value)
            secret_values.update(used)
        return inputs, ResolvedEnvironment(env, env.secret_keys, secret_values)

    @staticmethod
    def _condition_holds(condition: str, chain: EnvironmentChain, env: ResolvedEnvironment) -> bool:
        # Earlier steps all succeeded, otherwise this one would not be reached.
        ctx = ConditionContext(github=chain.context, env=env, status="success")
        return evaluate(condition, ctx)
