class PipeflowError(Exception):
    """Base class for errors raised by pipeflow."""


class WorkflowError(PipeflowError, ValueError):
    """The workflow document is malformed."""


class MissingSecret(PipeflowError):
    def __init__(self, name: str):
        super().__init__(f"Secret '{name}' is not available")
        self.name = name


class StepExecutionError(PipeflowError):
    """A step could not be started, or its backend failed while running it."""


class CancelledError(PipeflowError):
    """Raised inside a run when it was cancelled or timed out."""


class PublishError(PipeflowError):
    """The publish action failed (credentials, network, sink)."""


class InvalidTransition(PipeflowError):
    def __init__(self, current, target):
        super().__init__(f"Cannot move job from {current.value} to {target.value}")
        self.current = current
        self.target = target
