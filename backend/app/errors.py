"""Error taxonomy shared by the command store, dispatcher and report scheduler."""


class DispatchError(Exception):
    """Base class for all domain errors raised by this service."""


class ValidationError(DispatchError):
    """Malformed input, rejected before any write."""


class InvalidTransitionError(DispatchError):
    """A command or job is not in the state the operation requires."""


class NotFoundError(DispatchError):
    """Unknown device, command, employee or job."""


class ExecutionError(DispatchError):
    """Report generation or delivery failed."""
