"""Runtime records: instances, events, results and action execution records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

EventOrigin = Literal["user", "timeout", "admin"]


class Instance(BaseModel):
    """The live state machine association bound to one business entity.

    `fields` is the workflow's snapshot of the entity's values. It is updated
    by field-update actions and by field changes reported from the CRUD layer,
    always in the same versioned write as state and wake time.

    `incarnation` is assigned once at creation so a discarded and re-created
    entity never reuses the idempotency keys of its predecessor. `state_seq`
    counts state entries; unlike `version` it does not move on fields-only
    commits. `timer_disarmed` records that a false timeout guard with an
    explicit target stopped the timer for the current state entry.
    """

    entity_id: str
    object_type: str
    state: str
    state_entered_at: datetime
    version: int = Field(default=1, ge=1)
    next_wake_at: datetime | None = None
    timer_disarmed: bool = False
    incarnation: str = ""
    state_seq: int = Field(default=0, ge=0)
    fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple[str, str]:
        return (self.object_type, self.entity_id)


@dataclass(frozen=True, slots=True)
class Event:
    """A request to drive one instance through its state machine.

    Timeout events carry the `state_entered_at` / `next_wake_at` pair captured
    when the timer was read; they are honoured only if both still match.
    """

    object_type: str
    entity_id: str
    name: str
    payload: dict[str, object] = field(default_factory=dict)
    origin: EventOrigin = "user"
    timestamp: datetime | None = None
    expected_state_entered_at: datetime | None = None
    expected_wake_at: datetime | None = None


class Outcome(str, Enum):
    TRANSITIONED = "transitioned"
    NO_MATCHING_TRANSITION = "no_matching_transition"
    STALE_TIMEOUT = "stale_timeout"
    TIMEOUT_REARMED = "timeout_rearmed"
    TIMEOUT_DISARMED = "timeout_disarmed"
    TIMER_RECONCILED = "timer_reconciled"
    REMINDER_SENT = "reminder_sent"
    CREATED = "created"


@dataclass(frozen=True, slots=True)
class TransitionResult:
    accepted: bool
    from_state: str
    to_state: str
    reason: Outcome
    version: int | None = None
    event: str = ""

    def to_json(self) -> dict[str, object]:
        return {
            "accepted": self.accepted,
            "fromState": self.from_state,
            "toState": self.to_state,
            "reason": self.reason.value,
            "version": self.version,
            "event": self.event,
        }


ActionStatus = Literal["pending", "done", "degraded"]
ActionKind = Literal["emailAlert", "taskCreation", "customAction"]


class ActionExecutionRecord(BaseModel):
    """Durable bookkeeping for one external side effect.

    `payload` holds the fully rendered action (recipients, subject, params) so
    a pending record can be re-dispatched after a restart without re-evaluating
    templates against newer field values.
    """

    idempotency_key: str
    object_type: str
    entity_id: str
    transition_seq: int
    action_index: int
    incarnation: str = ""
    state_seq: int = 0
    kind: ActionKind
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    status: ActionStatus = "pending"
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


def idempotency_key(
    object_type: str, entity_id: str, incarnation: str, transition_seq: int, action_index: int
) -> str:
    return f"{object_type}:{entity_id}:{incarnation}:{transition_seq}:{action_index}"
