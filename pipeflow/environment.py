"""Environment resolution for steps.

Four scopes feed a step's environment, narrowest wins:

    step > job > workflow > process

Values in the workflow, job and step scopes may embed ``${{ ... }}``
placeholders. ``secrets.NAME`` is looked up in a ``SecretStore`` at
resolution time and raises ``MissingSecret`` when absent; ``github.NAME``
reads the run context; any other expression becomes the empty string.

The result is a ``ResolvedEnvironment``: an immutable mapping that remembers
which keys were secret-backed so output can be redacted before it is logged.
"""
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

from dotenv import dotenv_values

from pipeflow.errors import MissingSecret
from pipeflow.models import Event, frozen_map

PLACEHOLDER = re.compile(r"\$\{\{\s*(.*?)\s*\}\}")
REDACTED = "***"
SECRET_ENV_PREFIX = "PIPEFLOW_SECRET_"


class SecretStore(Protocol):
    def get(self, name: str) -> str | None: ...


class DictSecretStore:
    def __init__(self, secrets: Mapping | None = None):
        self._secrets = {str(k): str(v) for k, v in (secrets or {}).items() if v is not None}

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)

    def known_values(self) -> set[str]:
        return set(self._secrets.values())

    def __contains__(self, name: str) -> bool:
        return name in self._secrets


class EnvSecretStore:
    """Reads secrets from the process environment, optionally under a prefix."""

    def __init__(self, prefix: str = "", environ: Mapping | None = None):
        self.prefix = prefix
        self._environ = os.environ if environ is None else environ

    def get(self, name: str) -> str | None:
        return self._environ.get(f"{self.prefix}{name}")

    def known_values(self) -> set[str]:
        # without a prefix every variable would count as a secret
        if not self.prefix:
            return set()
        return {v for k, v in self._environ.items() if k.startswith(self.prefix)}


class ChainedSecretStore:
    def __init__(self, *stores):
        self.stores = stores

    def get(self, name: str) -> str | None:
        for store in self.stores:
            value = store.get(name)
            if value is not None:
                return value
        return None

    def known_values(self) -> set[str]:
        return set().union(*(known_secret_values(s) for s in self.stores))


def known_secret_values(store) -> set[str]:
    """Every value ``store`` can hand out, where the store can enumerate them."""
    if store is None or not hasattr(store, "known_values"):
        return set()
    return set(store.known_values())


class RunSecrets:
    """Secret lookups for a single run.

    Remembers every value it serves, on top of the values the wrapped store
    can enumerate up front, so output from any step of the run can be
    scrubbed of any secret the run has seen.
    """

    def __init__(self, store=None):
        self.store = store
        self._seen = {v for v in known_secret_values(store) if v}

    def get(self, name: str) -> str | None:
        value = self.store.get(name) if self.store is not None else None
        if value:
            self._seen.add(value)
        return value

    def known_values(self) -> set[str]:
        return set(self._seen)


def load_secrets_file(path: str) -> DictSecretStore:
    return DictSecretStore(dotenv_values(path))


def without_secret_vars(environ: Mapping, prefix: str = SECRET_ENV_PREFIX) -> dict:
    return {k: v for k, v in environ.items() if not k.startswith(prefix)}


class ResolvedEnvironment(Mapping):
    def __init__(self, values: Mapping, secret_keys=frozenset(), secret_values=frozenset()):
        self._values = dict(values)
        self.secret_keys = frozenset(secret_keys)
        self.secret_values = frozenset(v for v in secret_values if v)

    def __getitem__(self, key):
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def __eq__(self, other):
        if isinstance(other, ResolvedEnvironment):
            return self._values == other._values and self.secret_keys == other.secret_keys
        return dict(self._values) == other

    __hash__ = None

    def __repr__(self) -> str:
        shown = {k: (REDACTED if k in self.secret_keys else v) for k, v in self._values.items()}
        return f"ResolvedEnvironment({shown!r})"

    def redact(self, text: str) -> str:
        return redact(text, self.secret_values)


def redact(text: str, secret_values) -> str:
    if not text:
        return text
    for value in sorted(secret_values, key=len, reverse=True):
        if value:
            text = text.replace(value, REDACTED)
    return text


def substitute(value: str, secrets: SecretStore | None = None, context: Mapping | None = None):
    """Expand placeholders in one value.

    Returns ``(text, used_secrets)`` where ``used_secrets`` lists the secret
    values that were spliced in.
    """
    used = []

    def expand(match):
        expr = match.group(1)
        scope, _, key = expr.partition(".")
        if scope == "secrets":
            secret = secrets.get(key) if secrets is not None else None
            if secret is None:
                raise MissingSecret(key)
            used.append(secret)
            return secret
        if scope == "github":
            return str((context or {}).get(key, ""))
        return ""

    return PLACEHOLDER.sub(expand, value), used


def resolve(process_env, workflow_env, job_env, step_env, *, secrets=None, context=None) -> ResolvedEnvironment:
    winners = {}
    for scope, layer in enumerate((process_env, workflow_env, job_env, step_env)):
        for key, value in (layer or {}).items():
            winners[key] = (scope, value)

    values = {}
    secret_keys = set()
    secret_values = set()
    for key, (scope, value) in winners.items():
        if scope == 0:
            values[key] = value
            continue
        text, used = substitute(value, secrets, context)
        values[key] = text
        if used:
            secret_keys.add(key)
            secret_values.update(used)
    return ResolvedEnvironment(values, secret_keys, secret_values)


def runner_context(event: Event, workspace: str = "/workspace") -> dict:
    """Values readable as ``${{ github.* }}``."""
    return {
        "event_name": event.kind,
        "ref": event.ref,
        "ref_name": event.branch,
        "sha": event.sha,
        "workspace": workspace,
    }


def runner_defaults(event: Event, workspace: str = "/workspace") -> dict:
    # Default env vars to match GitHub Actions runner
    return {
        "CI": "true",
        "GITHUB_ACTIONS": "true",
        "GITHUB_EVENT_NAME": event.kind,
        "GITHUB_REF": event.ref,
        "GITHUB_REF_NAME": event.branch,
        "GITHUB_SHA": event.sha,
        "GITHUB_WORKSPACE": workspace,
    }


@dataclass(frozen=True)
class EnvironmentChain:
    """The process, workflow and job scopes of one run, fixed at dispatch.

    ``secrets`` is wrapped in a ``RunSecrets`` so ``redact`` covers every
    secret any step of the run has pulled in.
    """

    process: Mapping = field(default_factory=frozen_map)
    workflow: Mapping = field(default_factory=frozen_map)
    job: Mapping = field(default_factory=frozen_map)
    secrets: object = None
    context: Mapping = field(default_factory=frozen_map)

    def __post_init__(self):
        if not isinstance(self.secrets, RunSecrets):
            object.__setattr__(self, "secrets", RunSecrets(self.secrets))

    def resolve(self, step_env: Mapping | None = None) -> ResolvedEnvironment:
        return resolve(
            self.process, self.workflow, self.job, step_env or {},
            secrets=self.secrets, context=self.context,
        )

    def expand(self, value: str):
        return substitute(value, self.secrets, self.context)

    def redact(self, text: str, extra=()) -> str:
        return redact(text, self.secrets.known_values() | set(extra))
