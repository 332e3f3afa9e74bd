"""Error taxonomy for the lifecycle engine.

Only definition errors (at load time), unknown events, busy instances and fatal
action failures reach callers. Guard misses and degraded side effects are
absorbed and logged by the engine.
"""

from __future__ import annotations


class LifecycleError(Exception):
    """Base class for all engine errors."""


class DefinitionError(LifecycleError):
    """A state machine definition is malformed; the object type is not served."""

    def __init__(self, object_type: str, problems: list[str] | str) -> None:
        self.object_type = object_type
        self.problems = [problems] if isinstance(problems, str) else list(problems)
        joined = "; ".join(self.problems)
        super().__init__(f"Invalid state machine definition for {object_type!r}: {joined}")


class ExpressionSyntaxError(DefinitionError):
    """A guard or formula string could not be parsed."""

    def __init__(self, source: str, position: int, message: str) -> None:
        self.source = source
        self.position = position
        super().__init__("<expression>", f"{message} at position {position} in {source!r}")


class ExpressionEvaluationError(LifecycleError):
    """A formula could not produce a value."""


class UnknownObjectTypeError(LifecycleError):
    def __init__(self, object_type: str) -> None:
        self.object_type = object_type
        super().__init__(f"No state machine definition loaded for object type {object_type!r}")


class UnknownEventError(LifecycleError):
    """The event name is not declared anywhere for the object type."""

    def __init__(self, object_type: str, event: str) -> None:
        self.object_type = object_type
        self.event = event
        super().__init__(f"Event {event!r} is not declared for object type {object_type!r}")


class InstanceNotFoundError(LifecycleError):
    def __init__(self, object_type: str, entity_id: str) -> None:
        self.object_type = object_type
        self.entity_id = entity_id
        super().__init__(f"No lifecycle instance for {object_type}/{entity_id}")


class InstanceExistsError(LifecycleError):
    def __init__(self, object_type: str, entity_id: str) -> None:
        self.object_type = object_type
        self.entity_id = entity_id
        super().__init__(f"Lifecycle instance already exists for {object_type}/{entity_id}")


class TransitionConflict(LifecycleError):
    """The stored version moved since the instance was read."""

    def __init__(self, object_type: str, entity_id: str, expected: int, actual: int | None) -> None:
        self.object_type = object_type
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {object_type}/{entity_id}: expected {expected}, found {actual}"
        )


class BusyError(LifecycleError):
    """Conflict retries were exhausted; the caller may resubmit later."""

    def __init__(self, object_type: str, entity_id: str, attempts: int) -> None:
        self.object_type = object_type
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"Instance {object_type}/{entity_id} is busy after {attempts} conflicting attempts"
        )


class SubmitTimeoutError(BusyError):
    """The instance's lane did not finish the submission in time.

    The submission stays queued and may still be applied later.
    """

    def __init__(self, object_type: str, entity_id: str, timeout: float) -> None:
        self.object_type = object_type
        self.entity_id = entity_id
        self.attempts = 0
        self.timeout = timeout
        LifecycleError.__init__(
            self, f"Instance {object_type}/{entity_id} did not answer within {timeout:g}s"
        )


class ActionExecutionFailure(LifecycleError):
    """Base class for action failures."""

    def __init__(self, message: str, *, action_index: int | None = None) -> None:
        self.action_index = action_index
        super().__init__(message)


class FatalActionError(ActionExecutionFailure):
    """A field update could not be computed; the whole transition was rolled back."""


class DegradedActionError(ActionExecutionFailure):
    """An external side effect exhausted its retries; the transition still stands."""
