"""Public submission surface of the engine.

Callers (CRUD hooks, administrative tools, the timeout scheduler) submit events
here. Event names are validated before queueing, so an undeclared event fails
immediately in the caller's thread. Everything else runs on the instance's lane.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import TypeVar

from crm_lifecycle.statemachine.definitions.model import RECORD_UPDATED
from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry
from crm_lifecycle.statemachine.errors import SubmitTimeoutError, UnknownEventError
from crm_lifecycle.statemachine.runtime.clock import Clock
from crm_lifecycle.statemachine.runtime.instance import (
    Event,
    EventOrigin,
    Instance,
    TransitionResult,
)
from crm_lifecycle.statemachine.runtime.lanes import LaneDispatcher
from crm_lifecycle.statemachine.runtime.transitions import Applied, TransitionExecutor

logger = logging.getLogger(__name__)

FieldChangeListener = Callable[[str, Mapping[str, object]], TransitionResult]

T = TypeVar("T")


class EventIngress:
    def __init__(
        self,
        *,
        registry: DefinitionRegistry,
        executor: TransitionExecutor,
        lanes: LaneDispatcher,
        clock: Clock,
        submit_timeout_seconds: float = 30.0,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._lanes = lanes
        self._clock = clock
        self._timeout = submit_timeout_seconds

    def _validate(self, event: Event) -> None:
        definition = self._registry.get(event.object_type)
        if not definition.declares_event(event.name):
            raise UnknownEventError(event.object_type, event.name)

    def _wait(self, future: Future[T], object_type: str, entity_id: str) -> T:
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError as e:
            logger.warning(
                "Timed out waiting for instance lane",
                extra={"object_type": object_type, "entity_id": entity_id, "timeout": self._timeout},
            )
            raise SubmitTimeoutError(object_type, entity_id, self._timeout) from e

    def submit(self, event: Event) -> Future[Applied]:
        """Queue an event on its instance's lane.

        Raises:
            UnknownObjectTypeError: If no definition serves the object type.
            UnknownEventError: If the event name is not declared for the object type.
        """

        self._validate(event)
        return self._lanes.submit(event.object_type, event.entity_id, self._executor.handle, event)

    def submit_event(
        self,
        object_type: str,
        entity_id: str,
        event_name: str,
        payload: Mapping[str, object] | None = None,
        origin: EventOrigin = "user",
    ) -> TransitionResult:
        """Submit an event and wait for its result.

        Errors raised while applying the event (not found, busy, fatal action
        failure) are re-raised here. A lane that does not answer within the
        submit timeout raises SubmitTimeoutError.
        """

        event = Event(
            object_type=object_type,
            entity_id=entity_id,
            name=event_name,
            payload=dict(payload or {}),
            origin=origin,
            timestamp=self._clock.now(),
        )
        return self._wait(self.submit(event), object_type, entity_id).result

    def fire_and_forget(self, event: Event) -> Future[Applied]:
        """Queue an event without waiting; its outcome is only logged."""

        future = self.submit(event)
        future.add_done_callback(lambda f: _log_outcome(event, f))
        return future

    def report_field_changes(
        self,
        object_type: str,
        entity_id: str,
        changes: Mapping[str, object],
        *,
        event_name: str = RECORD_UPDATED,
    ) -> TransitionResult:
        """Entry point for CRUD hooks, called after their own commit."""

        return self.submit_event(object_type, entity_id, event_name, changes, origin="user")

    def field_change_listener(self, object_type: str) -> FieldChangeListener:
        """A callable a CRUD layer can subscribe to its post-commit hook for `object_type`."""

        self._registry.get(object_type)

        def listener(entity_id: str, changes: Mapping[str, object]) -> TransitionResult:
            return self.report_field_changes(object_type, entity_id, changes)

        return listener

    def create_instance(
        self, object_type: str, entity_id: str, fields: Mapping[str, object] | None = None
    ) -> Instance:
        """Bind an entity to its workflow and wait until its entry actions have run."""

        self._registry.get(object_type)
        applied = self._wait(
            self._lanes.submit(
                object_type, entity_id, self._executor.create, object_type, entity_id, fields
            ),
            object_type,
            entity_id,
        )
        if applied.dispatch is not None:
            applied.dispatch.result()
        if applied.instance is None:
            raise RuntimeError("instance creation returned no instance")
        return applied.instance

    def discard_instance(self, object_type: str, entity_id: str) -> None:
        self._wait(
            self._lanes.submit(object_type, entity_id, self._executor.discard, object_type, entity_id),
            object_type,
            entity_id,
        )

    def get_instance(self, object_type: str, entity_id: str) -> Instance | None:
        return self._executor.store.get(object_type, entity_id)


def _log_outcome(event: Event, future: Future[Applied]) -> None:
    extra: dict[str, object] = {
        "object_type": event.object_type,
        "entity_id": event.entity_id,
        "event": event.name,
        "origin": event.origin,
    }
    if future.cancelled():
        logger.info("Queued event cancelled", extra=extra)
        return
    error = future.exception()
    if error is not None:
        logger.error(
            "Queued event failed",
            extra={**extra, "error": f"{type(error).__name__}: {error}"},
        )
        return
    result = future.result().result
    logger.info(
        "Queued event applied",
        extra={
            **extra,
            "accepted": result.accepted,
            "from_state": result.from_state,
            "to_state": result.to_state,
            "reason": result.reason.value,
        },
    )

