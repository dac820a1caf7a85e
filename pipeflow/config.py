"""
Engine settings.

Environment variables (all optional):
    PIPEFLOW_MAX_WORKERS      job runs executed at once (default: 4)
    PIPEFLOW_STEP_TIMEOUT     seconds before a step is cancelled (default: none)
    PIPEFLOW_BACKEND          "local" or "docker" (default: local)
    PIPEFLOW_UNKNOWN_ACTIONS  "skip" or "fail" for actions with no handler
    PIPEFLOW_HISTORY          path of the JSON Lines run history
    PIPEFLOW_WORKDIR          workspace directory (default: .)
    PIPEFLOW_LOG_LEVEL        logging level name (default: INFO)

A ``.env`` file can supply the same variables; real environment wins.
"""
import os
from dataclasses import dataclass

from dotenv import dotenv_values

from pipeflow.backends import BACKENDS
from pipeflow.executor import UNKNOWN_ACTION_POLICIES


@dataclass
class EngineConfig:
    max_workers: int = 4
    step_timeout: float | None = None
    backend: str = "local"
    unknown_actions: str = "skip"
    history_path: str | None = None
    workdir: str = "."
    log_level: str = "INFO"

    def __post_init__(self):
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.step_timeout is not None and self.step_timeout <= 0:
            raise ValueError("step_timeout must be positive")
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown backend '{self.backend}' (choose from {', '.join(BACKENDS)})")
        if self.unknown_actions not in UNKNOWN_ACTION_POLICIES:
            raise ValueError(f"unknown_actions must be one of {', '.join(UNKNOWN_ACTION_POLICIES)}")

    @classmethod
    def from_env(cls, environ=None, dotenv_path: str | None = None) -> "EngineConfig":
        values = {}
        if dotenv_path and os.path.exists(dotenv_path):
            values.update({k: v for k, v in dotenv_values(dotenv_path).items() if v is not None})
        values.update(os.environ if environ is None else environ)

        timeout = values.get("PIPEFLOW_STEP_TIMEOUT")
        return cls(
            max_workers=int(values.get("PIPEFLOW_MAX_WORKERS", 4)),
            step_timeout=float(timeout) if timeout else None,
            backend=values.get("PIPEFLOW_BACKEND", "local"),
            unknown_actions=values.get("PIPEFLOW_UNKNOWN_ACTIONS", "skip"),
            history_path=values.get("PIPEFLOW_HISTORY") or None,
            workdir=values.get("PIPEFLOW_WORKDIR", "."),
            log_level=values.get("PIPEFLOW_LOG_LEVEL", "INFO").upper(),
        )
