"""The publish stage of a job.

``maybe_publish`` runs only after a job succeeded, and re-checks the event
against the publish stage's own allow-lists. Anything it cannot decide with
certainty ends in ``PublishSkipped``.
"""
import logging
import os
import shutil
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Mapping, Protocol

from pipeflow.conditions import ConditionContext, ConditionError, evaluate
from pipeflow.environment import known_secret_values, redact, substitute
from pipeflow.errors import MissingSecret, PublishError
from pipeflow.models import JobRun, JobState, PublishSpec
from pipeflow.triggers import matches_any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishSkipped:
    reason: str


@dataclass(frozen=True)
class PublishResult:
    ok: bool
    action: str
    location: str = ""
    error: str | None = None
    duration: float = 0.0


class Publisher(Protocol):
    def publish(self, directory: str, credentials: Mapping, inputs: Mapping) -> str: ...


class DirectoryPublisher:
    """Copies the built directory into a local sink."""

    def __init__(self, target: str, clean: bool = True):
        self.target = os.path.abspath(target)
        self.clean = clean

    def publish(self, directory: str, credentials: Mapping, inputs: Mapping) -> str:
        if not os.path.isdir(directory):
            raise PublishError(f"Nothing to publish: {directory} is not a directory")
        try:
            if self.clean and os.path.isdir(self.target):
                shutil.rmtree(self.target)
            shutil.copytree(directory, self.target, dirs_exist_ok=True)
        except OSError as e:
            raise PublishError(f"Copy to {self.target} failed: {e}") from e
        return self.target


class GitPagesPublisher:
    """Force-pushes a directory as the single commit of a branch.

    Mirrors what ``peaceiris/actions-gh-pages`` does: ``publish_dir`` is the
    content, ``publish_branch`` the branch (default ``gh-pages``) and
    ``github_token`` authenticates against ``github.com/<repository>``.
    ``repository`` may also be a URL or local path, used verbatim.
    """

    def __init__(self, repository: str | None = None, branch: str = "gh-pages",
                 host: str = "github.com", run=subprocess.run):
        self.repository = repository
        self.branch = branch
        self.host = host
        self._run = run

    def remote_url(self, repository: str, token: str | None) -> str:
        if "://" in repository or repository.startswith(("/", ".", "git@")):
            return repository
        if not token:
            raise PublishError("github_token is required to push to " + self.host)
        return f"https://x-access-token:{token}@{self.host}/{repository}.git"

    def publish(self, directory: str, credentials: Mapping, inputs: Mapping) -> str:
        repository = inputs.get("external_repository") or self.repository or os.environ.get("GITHUB_REPOSITORY")
        if not repository:
            raise PublishError("No repository to publish to")
        branch = inputs.get("publish_branch") or self.branch
        if not os.path.isdir(directory):
            raise PublishError(f"Nothing to publish: {directory} is not a directory")

        token = credentials.get("github_token") or credentials.get("personal_token")
        url = self.remote_url(repository, token)
        message = inputs.get("commit_message") or "Deploy"

        with tempfile.TemporaryDirectory(prefix="pipeflow-pages-") as tmp:
            shutil.copytree(directory, tmp, dirs_exist_ok=True)
            self._git(tmp, token, "init", "-q")
            self._git(tmp, token, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
            self._git(tmp, token, "add", "-A")
            self._git(tmp, token, "-c", "user.name=pipeflow", "-c", "user.email=pipeflow@localhost",
                      "commit", "-q", "--allow-empty", "-m", message)
            self._git(tmp, token, "push", "-q", "--force", url, f"HEAD:refs/heads/{branch}")
        return f"{repository}#{branch}"

    def _git(self, cwd: str, token: str | None, *args: str) -> None:
        try:
            self._run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise PublishError("git is not installed") from e
        except subprocess.CalledProcessError as e:
            secrets = [token] if token else []
            detail = redact((e.stderr or "").strip(), secrets)
            raise PublishError(f"git {args[0]} failed: {detail}") from None


def default_publishers() -> dict:
    return {"peaceiris/actions-gh-pages": GitPagesPublisher()}


def maybe_publish(job_run: JobRun, spec: PublishSpec, secrets=None, publishers: Mapping[str, Publisher] | None = None,
                  workspace: str = ".", context: Mapping | None = None, env: Mapping | None = None):
    """Run the publish action for a succeeded run, or say why not.

    ``env`` is the job's resolved environment, readable as ``env.NAME`` in
    the publish condition.
    """
    if job_run.state is not JobState.SUCCEEDED:
        return PublishSkipped(f"job is {job_run.state.value}, not succeeded")

    event = job_run.event
    if event.kind not in spec.events:
        return PublishSkipped(f"'{event.kind}' events do not publish")
    if not spec.branches:
        return PublishSkipped("no publish branches configured")
    if not matches_any(event.branch, spec.branches):
        return PublishSkipped(f"branch '{event.branch}' is not in the publish allow-list")

    if spec.condition is not None:
        try:
            allowed = evaluate(spec.condition, ConditionContext(github=context or {}, env=env or {}, status="success"))
        except ConditionError as e:
            return PublishSkipped(f"condition could not be evaluated: {e}")
        if not allowed:
            return PublishSkipped(f"condition '{spec.condition}' is false")

    publisher = (publishers or {}).get(spec.action.name)
    if publisher is None:
        return PublishSkipped(f"no publisher registered for {spec.action.name}")

    started = time.monotonic()
    action = str(spec.action)
    inputs, credentials, used = {}, {}, list(known_secret_values(secrets))
    try:
        for key, value in spec.inputs.items():
            text, secret_values = substitute(value, secrets, context)
            if secret_values:
                credentials[key] = text
                used.extend(secret_values)
            else:
                inputs[key] = text
    except MissingSecret as e:
        logger.error("Publish %s: %s", action, e)
        return PublishResult(ok=False, action=action, error=str(e), duration=time.monotonic() - started)

    directory = os.path.join(workspace, inputs.get("publish_dir", "public"))
    logger.info("Publishing %s via %s", directory, action)
    try:
        location = publisher.publish(directory, credentials, inputs)
    except PublishError as e:
        message = redact(str(e), used)
        logger.error("Publish %s failed: %s", action, message)
        return PublishResult(ok=False, action=action, error=message, duration=time.monotonic() - started)

    logger.info("Published to %s", redact(location, used))
    return PublishResult(ok=True, action=action, location=redact(location, used),
                         duration=time.monotonic() - started)
