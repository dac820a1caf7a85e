from dataclasses import dataclass
from typing import Callable, Mapping

from pipeflow.backends import ExecOutcome
from pipeflow.errors import StepExecutionError
from pipeflow.models import UsesAction


@dataclass
class ActionCall:
    step: UsesAction
    inputs: Mapping
    env: Mapping
    backend: object
    cancel: object = None
    timeout: float | None = None


ActionHandler = Callable[[ActionCall], ExecOutcome]


def checkout(call: ActionCall) -> ExecOutcome:
    # The workspace is the checked-out tree already.
    return ExecOutcome(exit_code=0, stdout=f"Using workspace at {call.backend.workspace}\n")


def command_action(template: str) -> ActionHandler:
    """Turn an action into a shell command.

    ``{version}`` and any ``with:`` input can be referenced in the template.
    """

    def handler(call: ActionCall) -> ExecOutcome:
        fields = {**call.inputs, "version": call.step.ref.version}
        try:
            command = template.format_map(fields)
        except KeyError as e:
            raise StepExecutionError(f"{call.step.ref} is missing input {e}") from None
        return call.backend.execute(command, call.env, cancel=call.cancel, timeout=call.timeout)

    return handler


class ActionRegistry:
    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name] = handler

    def register_command(self, name: str, template: str) -> None:
        self.register(name, command_action(template))

    def lookup(self, step: UsesAction) -> ActionHandler | None:
        return self._handlers.get(step.ref.name)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers


def default_registry() -> ActionRegistry:
    registry = ActionRegistry()
    registry.register("actions/checkout", checkout)
    return registry
