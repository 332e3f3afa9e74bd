"""The deterministic transition algorithm.

For one event against one instance, under that instance's lock:

1. load the instance and its version;
2. select the transitions declared for (current state, event);
3. take the first whose guard holds or is absent; no match is a recorded no-op;
4. stage the transition's actions followed by the target state's entry actions;
5. commit state, entry time, version + 1, field updates and the new wake time in
   one versioned write; on a version conflict start over, up to a bounded count.

External side effects are recorded with the commit and dispatched after the lock
is released.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import uuid
from collections.abc import Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from crm_lifecycle.statemachine.definitions.model import (
    RECORD_UPDATED,
    ActionSpec,
    State,
    StateMachineDefinition,
    Transition,
)
from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry
from crm_lifecycle.statemachine.errors import (
    BusyError,
    DefinitionError,
    InstanceNotFoundError,
    TransitionConflict,
    UnknownEventError,
)
from crm_lifecycle.statemachine.expressions import EntityResolver, EvaluationContext, evaluate_guard
from crm_lifecycle.statemachine.runtime.actions import ActionExecutor, PreparedAction, StagedActions
from crm_lifecycle.statemachine.runtime.clock import Clock
from crm_lifecycle.statemachine.runtime.instance import (
    ActionExecutionRecord,
    Event,
    Instance,
    Outcome,
    TransitionResult,
)
from crm_lifecycle.statemachine.runtime.store import PersistenceStore

logger = logging.getLogger(__name__)


class InstanceLocks:
    """A fixed set of locks striped by instance key."""

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_key(self, object_type: str, entity_id: str) -> threading.Lock:
        digest = hashlib.sha1(f"{object_type}:{entity_id}".encode()).digest()
        return self._locks[int.from_bytes(digest[:4], "big") % len(self._locks)]


@dataclass(slots=True)
class _Applied:
    result: TransitionResult
    committed: Instance | None = None
    prepared: list[PreparedAction] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class Applied:
    """A handled event plus the dispatch of its side effects (if any)."""

    result: TransitionResult
    instance: Instance | None
    dispatch: Future[None] | None = None


def wake_time(state: State, entered_at: datetime) -> datetime | None:
    if state.timeout is None:
        return None
    return entered_at + state.timeout.duration


def _is_stale(instance: Instance, event: Event, timeout_event: str, now: datetime) -> bool:
    """A timer fires only for the exact state entry and wake time it was read with."""

    return (
        timeout_event != event.name
        or instance.next_wake_at is None
        or instance.state_entered_at != event.expected_state_entered_at
        or instance.next_wake_at != event.expected_wake_at
        or instance.next_wake_at > now
    )


def _notification_context(instance: Instance) -> dict[str, Any]:
    return instance.model_dump(mode="json", include={"object_type", "entity_id", "state", "fields"})


class TransitionExecutor:
    def __init__(
        self,
        *,
        registry: DefinitionRegistry,
        store: PersistenceStore,
        actions: ActionExecutor,
        clock: Clock,
        resolver: EntityResolver | None = None,
        max_conflict_retries: int = 3,
        locks: InstanceLocks | None = None,
    ) -> None:
        self._registry = registry
        self._store = store
        self._actions = actions
        self._clock = clock
        self._resolver = resolver
        self._max_conflict_retries = max_conflict_retries
        self._locks = locks or InstanceLocks()

    @property
    def store(self) -> PersistenceStore:
        return self._store

    def context(self, instance: Instance, fields: Mapping[str, object], now: datetime) -> EvaluationContext:
        values = dict(fields)
        values.setdefault("id", instance.entity_id)
        return EvaluationContext(fields=values, now=now, resolver=self._resolver)

    # -- public operations -------------------------------------------------

    def handle(self, event: Event) -> Applied:
        """Apply one event, retrying the whole algorithm on version conflicts.

        Raises:
            UnknownObjectTypeError: If no definition serves the object type.
            UnknownEventError: If the event name is declared nowhere for the object type.
            InstanceNotFoundError: If the instance does not exist.
            FatalActionError: If a field update failed; nothing was persisted.
            BusyError: If conflicts persisted past the retry budget.
        """

        conflicts = 0
        while True:
            definition = self._registry.get(event.object_type)
            if not definition.declares_event(event.name):
                raise UnknownEventError(event.object_type, event.name)
            with self._locks.for_key(event.object_type, event.entity_id):
                instance = self._store.get(event.object_type, event.entity_id)
                if instance is None:
                    raise InstanceNotFoundError(event.object_type, event.entity_id)
                try:
                    applied = self._apply(definition, instance, event)
                except TransitionConflict as e:
                    conflicts += 1
                    if conflicts > self._max_conflict_retries:
                        logger.warning(
                            "Conflict retries exhausted",
                            extra={
                                "object_type": event.object_type,
                                "entity_id": event.entity_id,
                                "event": event.name,
                                "attempts": conflicts,
                            },
                        )
                        raise BusyError(event.object_type, event.entity_id, conflicts) from e
                    logger.info(
                        "Version conflict; retrying against fresh state",
                        extra={
                            "object_type": event.object_type,
                            "entity_id": event.entity_id,
                            "event": event.name,
                            "expected": e.expected,
                            "actual": e.actual,
                        },
                    )
                    continue
                records = self._record(applied)
            return self._dispatch(applied, records)

    def create(
        self, object_type: str, entity_id: str, fields: Mapping[str, object] | None = None
    ) -> Applied:
        """Bind a new entity to the initial state, staging its entry actions.

        Raises:
            InstanceExistsError: If the entity already has an instance.
            FatalActionError: If an entry field update failed; nothing was persisted.
        """

        definition = self._registry.get(object_type)
        initial = definition.initial_state
        with self._locks.for_key(object_type, entity_id):
            now = self._clock.now()
            draft = Instance(
                entity_id=entity_id,
                object_type=object_type,
                state=initial.name,
                state_entered_at=now,
                version=1,
                next_wake_at=wake_time(initial, now),
                incarnation=uuid.uuid4().hex,
                fields=dict(fields or {}),
                created_at=now,
                updated_at=now,
            )
            staged = self._actions.stage(initial.on_entry, self.context(draft, draft.fields, now))
            instance = draft.model_copy(update={"fields": {**draft.fields, **staged.field_updates}})
            self._store.create(instance)
            logger.info(
                "Lifecycle instance created",
                extra={
                    "object_type": object_type,
                    "entity_id": entity_id,
                    "state": initial.name,
                    "next_wake_at": instance.next_wake_at,
                },
            )
            applied = _Applied(
                result=TransitionResult(
                    accepted=True,
                    from_state="",
                    to_state=initial.name,
                    reason=Outcome.CREATED,
                    version=instance.version,
                ),
                committed=instance,
                prepared=staged.external,
            )
            records = self._record(applied)
        return self._dispatch(applied, records)

    def discard(self, object_type: str, entity_id: str) -> None:
        """Delete an instance; its pending timer goes with it."""

        with self._locks.for_key(object_type, entity_id):
            if not self._store.delete(object_type, entity_id):
                raise InstanceNotFoundError(object_type, entity_id)
        logger.info(
            "Lifecycle instance discarded",
            extra={"object_type": object_type, "entity_id": entity_id},
        )

    def reconcile_timer(self, object_type: str, entity_id: str) -> Instance | None:
        """Re-derive an instance's wake time from its state's current timeout spec.

        Instances whose state no longer declares a timeout lose their wake time;
        instances whose state declares one but carry none are armed at
        `state_entered_at + duration`, unless a false timeout guard disarmed
        the timer for the current state entry.
        """

        definition = self._registry.get(object_type)
        with self._locks.for_key(object_type, entity_id):
            instance = self._store.get(object_type, entity_id)
            if instance is None:
                return None
            state = self._state(definition, instance)
            if state.timeout is None:
                expected = None
            elif instance.next_wake_at is not None or instance.timer_disarmed:
                return instance
            else:
                expected = wake_time(state, instance.state_entered_at)
            if expected == instance.next_wake_at:
                return instance
            updated = instance.model_copy(
                update={
                    "next_wake_at": expected,
                    "version": instance.version + 1,
                    "updated_at": self._clock.now(),
                }
            )
            self._store.commit(updated, expected_version=instance.version)
            logger.info(
                "Timer reconciled",
                extra={
                    "object_type": object_type,
                    "entity_id": entity_id,
                    "state": instance.state,
                    "next_wake_at": expected,
                },
            )
            return updated

    # -- algorithm -----------------------------------------------------------

    def _state(self, definition: StateMachineDefinition, instance: Instance) -> State:
        state = definition.state(instance.state)
        if state is None:
            raise DefinitionError(
                definition.object_type,
                f"instance {instance.entity_id!r} is in state {instance.state!r}, "
                "which the loaded definition does not declare",
            )
        return state

    def _apply(self, definition: StateMachineDefinition, instance: Instance, event: Event) -> _Applied:
        now = self._clock.now()
        state = self._state(definition, instance)
        fields = {**instance.fields, **event.payload}
        ctx = self.context(instance, fields, now)

        if event.origin == "timeout":
            return self._apply_timeout(definition, state, instance, event, fields, ctx)

        transition = self._select(state.transitions_for(event.name), ctx)
        if transition is None:
            logger.debug(
                "No transition matched; event ignored",
                extra={
                    "object_type": instance.object_type,
                    "entity_id": instance.entity_id,
                    "event": event.name,
                    "state": state.name,
                },
            )
            return self._fields_only(instance, event, fields, now, Outcome.NO_MATCHING_TRANSITION)

        return self._transition(
            definition, instance, event, fields, ctx, transition.target, transition.actions
        )

    def _select(self, candidates: tuple[Transition, ...], ctx: EvaluationContext) -> Transition | None:
        for candidate in candidates:
            if evaluate_guard(candidate.guard, ctx):
                return candidate
        return None

    def _transition(
        self,
        definition: StateMachineDefinition,
        instance: Instance,
        event: Event,
        fields: dict[str, object],
        ctx: EvaluationContext,
        target_name: str,
        actions: tuple[ActionSpec, ...],
    ) -> _Applied:
        target = definition.states[target_name]
        staged = self._actions.stage(actions, ctx)
        staged = self._actions.stage(
            target.on_entry, ctx, start_index=len(actions), staged=staged
        )
        now = ctx.now
        committed = instance.model_copy(
            update={
                "state": target.name,
                "state_entered_at": now,
                "version": instance.version + 1,
                "next_wake_at": wake_time(target, now),
                "timer_disarmed": False,
                "state_seq": instance.state_seq + 1,
                "fields": {**fields, **staged.field_updates},
                "updated_at": now,
            }
        )
        self._store.commit(committed, expected_version=instance.version)
        logger.info(
            "Transition committed",
            extra={
                "object_type": instance.object_type,
                "entity_id": instance.entity_id,
                "event": event.name,
                "origin": event.origin,
                "from_state": instance.state,
                "to_state": target.name,
                "version": committed.version,
                "next_wake_at": committed.next_wake_at,
            },
        )
        return _Applied(
            result=TransitionResult(
                accepted=True,
                from_state=instance.state,
                to_state=target.name,
                reason=Outcome.TRANSITIONED,
                version=committed.version,
                event=event.name,
            ),
            committed=committed,
            prepared=staged.external,
        )

    def _fields_only(
        self,
        instance: Instance,
        event: Event,
        fields: dict[str, object],
        now: datetime,
        reason: Outcome,
    ) -> _Applied:
        """Absorb reported field changes without changing state or timer."""

        result = TransitionResult(
            accepted=False,
            from_state=instance.state,
            to_state=instance.state,
            reason=reason,
            version=instance.version,
            event=event.name,
        )
        if fields == instance.fields:
            return _Applied(result=result)
        committed = instance.model_copy(
            update={"fields": fields, "version": instance.version + 1, "updated_at": now}
        )
        self._store.commit(committed, expected_version=instance.version)
        if event.name == RECORD_UPDATED:
            logger.debug(
                "Field changes recorded",
                extra={
                    "object_type": instance.object_type,
                    "entity_id": instance.entity_id,
                    "fields": sorted(event.payload),
                },
            )
        return _Applied(
            result=TransitionResult(
                accepted=False,
                from_state=instance.state,
                to_state=instance.state,
                reason=reason,
                version=committed.version,
                event=event.name,
            ),
            committed=committed,
        )

    def _apply_timeout(
        self,
        definition: StateMachineDefinition,
        state: State,
        instance: Instance,
        event: Event,
        fields: dict[str, object],
        ctx: EvaluationContext,
    ) -> _Applied:
        timeout = state.timeout
        if timeout is None or _is_stale(instance, event, timeout.event, ctx.now):
            logger.info(
                "Stale timeout ignored",
                extra={
                    "object_type": instance.object_type,
                    "entity_id": instance.entity_id,
                    "event": event.name,
                    "state": state.name,
                },
            )
            return _Applied(
                result=TransitionResult(
                    accepted=False,
                    from_state=state.name,
                    to_state=state.name,
                    reason=Outcome.STALE_TIMEOUT,
                    version=instance.version,
                    event=event.name,
                )
            )

        extra = {
            "object_type": instance.object_type,
            "entity_id": instance.entity_id,
            "event": event.name,
            "state": state.name,
        }
        if evaluate_guard(timeout.condition, ctx):
            if timeout.target is not None:
                return self._transition(
                    definition, instance, event, fields, ctx, timeout.target, timeout.actions
                )
            transition = self._select(state.transitions_for(timeout.event), ctx)
            if transition is not None:
                return self._transition(
                    definition, instance, event, fields, ctx, transition.target, transition.actions
                )
            logger.info("Timeout reminder fired", extra=extra)
            staged = self._actions.stage(timeout.actions, ctx)
            return self._rearm(instance, event, fields, ctx.now, timeout.duration, staged, Outcome.REMINDER_SENT)

        if timeout.target is None:
            logger.info("Timeout condition false; re-armed", extra=extra)
            return self._rearm(
                instance, event, fields, ctx.now, timeout.duration, StagedActions(), Outcome.TIMEOUT_REARMED
            )

        logger.info("Timeout condition false; timer disarmed", extra=extra)
        committed = instance.model_copy(
            update={
                "next_wake_at": None,
                "timer_disarmed": True,
                "version": instance.version + 1,
                "fields": fields,
                "updated_at": ctx.now,
            }
        )
        self._store.commit(committed, expected_version=instance.version)
        return _Applied(
            result=TransitionResult(
                accepted=False,
                from_state=state.name,
                to_state=state.name,
                reason=Outcome.TIMEOUT_DISARMED,
                version=committed.version,
                event=event.name,
            ),
            committed=committed,
        )

    def _rearm(
        self,
        instance: Instance,
        event: Event,
        fields: dict[str, object],
        now: datetime,
        duration: timedelta,
        staged: StagedActions,
        reason: Outcome,
    ) -> _Applied:
        committed = instance.model_copy(
            update={
                "next_wake_at": now + duration,
                "version": instance.version + 1,
                "fields": {**fields, **staged.field_updates},
                "updated_at": now,
            }
        )
        self._store.commit(committed, expected_version=instance.version)
        return _Applied(
            result=TransitionResult(
                accepted=reason == Outcome.REMINDER_SENT,
                from_state=instance.state,
                to_state=instance.state,
                reason=reason,
                version=committed.version,
                event=event.name,
            ),
            committed=committed,
            prepared=staged.external,
        )

    # -- post-commit -----------------------------------------------------------

    def _record(self, applied: _Applied) -> list[ActionExecutionRecord]:
        if applied.committed is None or not applied.prepared:
            return []
        return self._actions.record(
            applied.committed,
            applied.prepared,
            context=_notification_context(applied.committed),
        )

    def _dispatch(self, applied: _Applied, records: list[ActionExecutionRecord]) -> Applied:
        dispatch = self._actions.dispatch(records) if records else None
        return Applied(result=applied.result, instance=applied.committed, dispatch=dispatch)
