import logging
import os
import shlex
import shutil
import signal
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from pipeflow.environment import runner_defaults, without_secret_vars
from pipeflow.errors import CancelledError, StepExecutionError
from pipeflow.models import Event, JobDefinition

logger = logging.getLogger(__name__)

IMAGE_MAP = {
    "ubuntu-latest": "ubuntu:22.04",
    "ubuntu-24.04": "ubuntu:24.04",
    "ubuntu-22.04": "ubuntu:22.04",
    "ubuntu-20.04": "ubuntu:20.04",
}
FALLBACK_IMAGE = "ubuntu:22.04"

CONTAINER_WORKSPACE = "/workspace"

CANCELLED = "cancelled"
TIMEOUT = "timeout"


class CancelToken:
    """Set once to stop a run; the currently running step is killed."""

    def __init__(self):
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_set(self) -> None:
        if self._event.is_set():
            raise CancelledError(self.reason)


@dataclass
class ExecOutcome:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    interrupted: str | None = None


def image_for(runs_on: str) -> str:
    image = IMAGE_MAP.get(runs_on)
    if image is None:
        logger.warning("'%s' has no local Docker mapping. Using %s as fallback.", runs_on, FALLBACK_IMAGE)
        return FALLBACK_IMAGE
    return image


def default_shell() -> list[str]:
    if shutil.which("bash"):
        return ["bash", "--noprofile", "--norc", "-e", "-o", "pipefail", "-c"]
    return ["sh", "-e", "-c"]


def _deadline(timeout: float | None) -> float | None:
    return time.monotonic() + timeout if timeout else None


def _interrupted(cancel: CancelToken | None, deadline: float | None) -> str | None:
    if cancel is not None and cancel.is_set():
        return CANCELLED
    if deadline is not None and time.monotonic() >= deadline:
        return TIMEOUT
    return None


class LocalShellBackend:
    """Runs each step as a child shell process on this machine."""

    def __init__(self, workdir: str = ".", shell: list[str] | None = None, poll_interval: float = 0.05):
        self.workdir = os.path.abspath(workdir)
        self.shell = shell or default_shell()
        self.poll_interval = poll_interval

    @property
    def workspace(self) -> str:
        return self.workdir

    def base_environment(self, event: Event) -> dict:
        return {**without_secret_vars(os.environ), **runner_defaults(event, self.workdir)}

    def setup(self, job: JobDefinition, env: dict) -> None:
        if not os.path.isdir(self.workdir):
            raise StepExecutionError(f"Workspace not found: {self.workdir}")

    def execute(self, command: str, env, working_directory: str | None = None,
                cancel: CancelToken | None = None, timeout: float | None = None) -> ExecOutcome:
        cwd = os.path.join(self.workdir, working_directory) if working_directory else self.workdir
        if not os.path.isdir(cwd):
            raise StepExecutionError(f"Working directory not found: {cwd}")

        with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
            try:
                proc = subprocess.Popen(
                    [*self.shell, command],
                    cwd=cwd,
                    env=dict(env),
                    stdout=out,
                    stderr=err,
                    start_new_session=True,
                )
            except OSError as e:
                raise StepExecutionError(f"Could not start {self.shell[0]}: {e}") from e

            interrupted = self._wait(proc, cancel, _deadline(timeout))

            out.seek(0)
            err.seek(0)
            return ExecOutcome(
                exit_code=proc.returncode,
                stdout=out.read().decode("utf-8", errors="replace"),
                stderr=err.read().decode("utf-8", errors="replace"),
                interrupted=interrupted,
            )

    def _wait(self, proc: subprocess.Popen, cancel, deadline) -> str | None:
        while True:
            try:
                proc.wait(timeout=self.poll_interval)
                return None
            except subprocess.TimeoutExpired:
                pass
            reason = _interrupted(cancel, deadline)
            if reason is not None:
                self._kill(proc)
                return reason

    @staticmethod
    def _kill(proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.wait()

    def cleanup(self) -> None:
        pass


class DockerBackend:
    """One container per job run; each step is an exec inside it."""

    workspace = CONTAINER_WORKSPACE

    def __init__(self, workdir: str = ".", client=None, poll_interval: float = 0.1):
        self.workdir = os.path.abspath(workdir)
        self.client = client
        self.poll_interval = poll_interval
        self.container = None
        self._container_name = ""

    @property
    def container_id(self) -> str:
        if self.container is None:
            return ""
        return self.container.id

    def base_environment(self, event: Event) -> dict:
        return {
            **runner_defaults(event, CONTAINER_WORKSPACE),
            "RUNNER_OS": "Linux",
            "RUNNER_TEMP": "/tmp",
            "DEBIAN_FRONTEND": "noninteractive",
        }

    def _connect(self):
        if self.client is None:
            try:
                self.client = docker.from_env()
                self.client.ping()
            except DockerException as e:
                raise StepExecutionError(f"Can't connect to Docker. Is the daemon running? ({e})") from e
        return self.client

    def setup(self, job: JobDefinition, env: dict) -> None:
        client = self._connect()
        image = image_for(job.runs_on)
        self._container_name = f"pipeflow-{job.name}-{os.getpid()}-{threading.get_ident()}"

        try:
            try:
                client.images.get(image)
            except ImageNotFound:
                logger.info("Pulling %s", image)
                client.images.pull(image)

            # Remove stale container with same name
            try:
                old = client.containers.get(self._container_name)
                old.remove(force=True)
            except NotFound:
                pass

            self.container = client.containers.run(
                image=image,
                command="sleep infinity",
                volumes={
                    self.workdir: {"bind": CONTAINER_WORKSPACE, "mode": "rw"},
                },
                working_dir=CONTAINER_WORKSPACE,
                environment=dict(env),
                name=self._container_name,
                detach=True,
            )
        except APIError as e:
            raise StepExecutionError(f"Could not start container from {image}: {e}") from e

    def execute(self, command: str, env, working_directory: str | None = None,
                cancel: CancelToken | None = None, timeout: float | None = None) -> ExecOutcome:
        if self.container is None:
            raise StepExecutionError("Docker backend not set up. Call setup() first.")

        if working_directory and not working_directory.startswith("/"):
            working_directory = f"{CONTAINER_WORKSPACE}/{working_directory}"
        cmd = f"bash --noprofile --norc -e -o pipefail -c {shlex.quote(command)}"

        box = {}

        def target():
            try:
                box["result"] = self.container.exec_run(
                    cmd,
                    environment=dict(env),
                    workdir=working_directory or CONTAINER_WORKSPACE,
                    demux=True,
                )
            except Exception as e:
                # also covers requests errors when the daemon goes away
                box["error"] = e

        worker = threading.Thread(target=target, daemon=True)
        worker.start()

        deadline = _deadline(timeout)
        while worker.is_alive():
            worker.join(self.poll_interval)
            reason = _interrupted(cancel, deadline)
            if reason is not None and worker.is_alive():
                # exec has no kill of its own; stopping the container aborts it
                self._kill_container()
                worker.join(5)
                return ExecOutcome(exit_code=None, interrupted=reason)

        if "error" in box:
            raise StepExecutionError(f"docker exec failed: {box['error']}") from box["error"]
        if "result" not in box:
            raise StepExecutionError("docker exec returned no result")

        result = box["result"]
        stdout, stderr = result.output if result.output else (None, None)
        return ExecOutcome(
            exit_code=result.exit_code,
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
        )

    def _kill_container(self) -> None:
        try:
            self.container.kill()
        except DockerException as e:
            logger.debug("Killing %s failed: %s", self._container_name, e)

    def cleanup(self) -> None:
        if self.container is not None:
            try:
                self.container.stop(timeout=3)
            except DockerException:
                pass
            try:
                self.container.remove(force=True)
            except DockerException as e:
                logger.warning("Could not remove container %s: %s", self._container_name, e)
            self.container = None


BACKENDS = {
    "local": LocalShellBackend,
    "docker": DockerBackend,
}


def make_backend(name: str, workdir: str = "."):
    try:
        cls = BACKENDS[name]
    except KeyError:
        raise ValueError(f"Unknown backend '{name}' (choose from {', '.join(BACKENDS)})") from None
    return cls(workdir=workdir)
