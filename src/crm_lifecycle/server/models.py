"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class CreateInstanceRequest(BaseModel):
    entity_id: str = Field(min_length=1)
    fields: dict[str, Any] = Field(default_factory=dict)


class SubmitEventRequest(BaseModel):
    event: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    origin: Literal["user", "admin"] = "user"


class FieldChangesRequest(BaseModel):
    changes: dict[str, Any] = Field(min_length=1)


class ApiTransitionResult(BaseModel):
    accepted: bool
    from_state: str
    to_state: str
    reason: str
    version: int | None = None
    event: str = ""


class ApiInstance(BaseModel):
    object_type: str
    entity_id: str
    state: str
    state_entered_at: datetime
    version: int
    next_wake_at: datetime | None = None
    incarnation: str = ""
    state_seq: int = 0
    fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class ApiActionRecord(BaseModel):
    idempotency_key: str
    transition_seq: int
    action_index: int
    kind: str
    status: str
    attempts: int
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class ApiState(BaseModel):
    name: str
    label: str
    is_final: bool
    events: list[str]
    timeout_event: str | None = None
    timeout_seconds: float | None = None


class ApiDefinition(BaseModel):
    name: str
    object_type: str
    label: str
    initial: str
    states: list[ApiState]
    events: list[str]


class SweepResult(BaseModel):
    submitted: int
