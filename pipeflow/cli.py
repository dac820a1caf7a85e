import logging
import os
import sys

import yaml

from pipeflow import __version__
from pipeflow.config import EngineConfig
from pipeflow.engine import Engine
from pipeflow.environment import SECRET_ENV_PREFIX, ChainedSecretStore, EnvSecretStore, load_secrets_file
from pipeflow.logging_config import setup_logging
from pipeflow.models import Event, JobState, StepStatus
from pipeflow.parser import parse_workflow
from pipeflow.publish import PublishResult, PublishSkipped
from pipeflow.triggers import matches

STATE_ICONS = {
    JobState.SUCCEEDED: "✓",
    JobState.FAILED: "✗",
    JobState.CANCELLED: "⊘",
}

STEP_ICONS = {
    StepStatus.SUCCEEDED: "✓",
    StepStatus.FAILED: "✗",
    StepStatus.CANCELLED: "⊘",
    StepStatus.SKIPPED: "-",
}


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    try:
        sys.exit(_run(argv))
    except KeyboardInterrupt:
        print()
        sys.exit(130)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print("Error: Invalid YAML syntax")
        print(f"  {e}")
        sys.exit(1)


def _option(argv: list, name: str, default=None):
    if name not in argv:
        return default
    idx = argv.index(name)
    if idx + 1 >= len(argv) or argv[idx + 1].startswith("--"):
        raise ValueError(f"{name} requires a value")
    return argv[idx + 1]


def _run(argv: list) -> int:
    if len(argv) == 1 and argv[0] in ("--version", "-V"):
        print(f"pipeflow {__version__}")
        return 0

    if not argv or argv[0] in ("--help", "-h"):
        _print_help()
        return 0 if argv else 1

    command = argv[0]
    if command not in ("run", "match") or len(argv) < 2:
        _print_help()
        return 1

    if argv[1] in ("--help", "-h"):
        _print_help()
        return 0

    workflow_path = argv[1]
    if not os.path.exists(workflow_path):
        print(f"Error: File not found: {workflow_path}")
        return 1
    if not os.path.isfile(workflow_path):
        print(f"Error: Not a file: {workflow_path}")
        return 1

    options = argv[2:]
    event = Event(
        kind=_option(options, "--event", "push"),
        branch=_option(options, "--branch", "main"),
        sha=_option(options, "--sha", ""),
    )
    workflow = parse_workflow(workflow_path)

    if command == "match":
        return _match(workflow, event)
    return _execute(workflow, event, options)


def _match(workflow, event) -> int:
    pairs = sorted(matches(event, workflow), key=lambda p: (p[1], p[0].kind))
    if not pairs:
        print(f"No jobs in '{workflow.name}' run for {event.kind} on '{event.branch}'")
        return 1
    for rule, job_name in pairs:
        print(f"{job_name}  (on {rule.kind})")
    return 0


def _execute(workflow, event, options: list) -> int:
    config = EngineConfig.from_env(dotenv_path=".env")
    overrides = {
        "workdir": _option(options, "--workdir"),
        "backend": _option(options, "--backend"),
        "history_path": _option(options, "--history"),
    }
    workers = _option(options, "--max-workers")
    timeout = _option(options, "--timeout")
    config = EngineConfig(
        max_workers=int(workers) if workers else config.max_workers,
        step_timeout=float(timeout) if timeout else config.step_timeout,
        backend=overrides["backend"] or config.backend,
        unknown_actions=config.unknown_actions,
        history_path=overrides["history_path"] or config.history_path,
        workdir=os.path.abspath(overrides["workdir"] or config.workdir),
        log_level="DEBUG" if "--verbose" in options else config.log_level,
    )
    setup_logging(getattr(logging, config.log_level, logging.INFO))

    secrets = EnvSecretStore(prefix=SECRET_ENV_PREFIX)
    secrets_file = _option(options, "--secrets-file")
    if secrets_file:
        if not os.path.isfile(secrets_file):
            print(f"Error: Secrets file not found: {secrets_file}")
            return 1
        secrets = ChainedSecretStore(load_secrets_file(secrets_file), secrets)

    print(f"Workflow: {workflow.name}")
    print(f"Event:    {event.kind} on '{event.branch}'")
    print(f"Backend:  {config.backend} ({config.workdir})")

    engine = Engine(workflow, config, secrets=secrets)
    handles = engine.submit(event)
    if not handles:
        print("\nNo jobs triggered.")
        engine.shutdown()
        return 0

    try:
        runs = [h.result() for h in handles]
    except KeyboardInterrupt:
        print("\nCancelling...")
        engine.shutdown(cancel=True)
        raise
    engine.shutdown()

    for run in runs:
        _print_run(run)
    return 0 if all(r.state is JobState.SUCCEEDED for r in runs) else 1


def _print_run(run) -> None:
    print(f"\n{STATE_ICONS.get(run.state, ' ')} {run.job} [{run.run_id}]: {run.state.value}")
    for result in run.results:
        print(f"  {STEP_ICONS[result.status]} {result.index + 1}. {result.name} ({result.duration:.1f}s)")
        if result.status in (StepStatus.FAILED, StepStatus.CANCELLED):
            for line in (result.stdout + result.stderr).rstrip().split("\n")[-20:]:
                if line:
                    print(f"      {line}")
    if run.error and run.state is not JobState.SUCCEEDED:
        print(f"  {run.error}")
    if isinstance(run.publish, PublishSkipped):
        print(f"  publish skipped: {run.publish.reason}")
    elif isinstance(run.publish, PublishResult):
        if run.publish.ok:
            print(f"  published to {run.publish.location}")
        else:
            print(f"  publish failed: {run.publish.error}")


def _print_help():
    print(f"pipeflow {__version__} — workflow runner for push / pull request pipelines")
    print()
    print("Usage: pipeflow run <workflow.yml> [options]")
    print("       pipeflow match <workflow.yml> [--event KIND] [--branch NAME]")
    print()
    print("Options:")
    print("  --event <kind>         Triggering event kind (default: push)")
    print("  --branch <name>        Triggering branch (default: main)")
    print("  --sha <sha>            Commit the event refers to")
    print("  --workdir <path>       Workspace directory (default: .)")
    print("  --backend <name>       local or docker (default: local)")
    print("  --secrets-file <path>  .env file with secrets")
    print("  --history <path>       Append finished runs to this JSON Lines file")
    print("  --max-workers <n>      Job runs executed at once")
    print("  --timeout <seconds>    Per-step timeout")
    print("  --verbose              Debug logging")
    print("  --version, -V          Show version")
    print("  --help, -h             Show this help")
    print()
    print("Secrets are read from PIPEFLOW_SECRET_<NAME> environment variables")
    print("and from --secrets-file.")
    print()
    print("Example:")
    print("  pipeflow run .github/workflows/ci.yml --event pull_request --branch main")


if __name__ == "__main__":
    main()
