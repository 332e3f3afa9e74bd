"""Test configuration and fixtures."""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from crm_lifecycle.statemachine.collaborators import CustomActionRegistry
from crm_lifecycle.statemachine.config import LifecycleSettings
from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry
from crm_lifecycle.statemachine.lifecycle import LifecycleEngine, build_engine
from crm_lifecycle.statemachine.runtime.adapters import (
    InMemoryEntityResolver,
    InMemoryTaskService,
    default_case_handlers,
)
from crm_lifecycle.statemachine.runtime.clock import ManualClock
from crm_lifecycle.statemachine.runtime.store import PersistenceStore

START = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


class RecordingNotifier:
    """Notifier that fails its first `failures` calls, then records deliveries."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.sent: list[dict[str, Any]] = []

    def send(
        self,
        *,
        template: str,
        recipients: list[str],
        context: Mapping[str, object],
        idempotency_key: str,
    ) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError(f"mail relay unavailable (call {self.calls})")
        self.sent.append(
            {
                "template": template,
                "recipients": list(recipients),
                "context": dict(context),
                "idempotency_key": idempotency_key,
            }
        )

    def templates(self) -> list[str]:
        return [s["template"] for s in self.sent]


TICKET_DEFINITION: dict[str, Any] = {
    "name": "ticket_lifecycle",
    "label": "Ticket Lifecycle",
    "object": "ticket",
    "initial": "new",
    "states": [
        {
            "name": "new",
            "label": "New",
            "onEntry": [
                {"type": "fieldUpdate", "field": "status", "value": "New"},
                {"type": "fieldUpdate", "field": "received_date", "value": "NOW()"},
            ],
            "transitions": [
                {"to": "assigned", "event": "assign", "guard": "owner != NULL"},
                {"to": "escalated", "event": "triage", "guard": "priority = \"Critical\""},
                {"to": "assigned", "event": "triage", "guard": "priority IN [High, Critical]"},
            ],
        },
        {
            "name": "assigned",
            "label": "Assigned",
            "onEntry": [{"type": "fieldUpdate", "field": "status", "value": "In Progress"}],
            "transitions": [
                {"to": "resolved", "event": "resolve", "guard": "resolution != NULL"},
                {"to": "escalated", "event": "escalate"},
                {
                    "to": "assigned",
                    "event": "reassign",
                    "actions": [
                        {"type": "fieldUpdate", "field": "reassigned", "formula": "reassigned + 1"}
                    ],
                },
            ],
            "timeout": {
                "duration": 4,
                "unit": "hours",
                "event": "auto_escalate",
                "to": "escalated",
                "condition": "priority IN [High, Critical] AND owner_responded = false",
            },
        },
        {
            "name": "escalated",
            "label": "Escalated",
            "onEntry": [
                {"type": "fieldUpdate", "field": "status", "value": "Escalated"},
                {"type": "fieldUpdate", "field": "priority", "value": "Critical"},
            ],
            "transitions": [{"to": "resolved", "event": "resolve"}],
        },
        {
            "name": "resolved",
            "label": "Resolved",
            "onEntry": [
                {"type": "fieldUpdate", "field": "status", "value": "Resolved"},
                {"type": "emailAlert", "template": "ticket_resolved", "recipients": ["${contact.email}"]},
            ],
            "transitions": [{"to": "closed", "event": "close"}],
            "timeout": {
                "duration": 24,
                "unit": "hours",
                "event": "auto_close",
                "to": "closed",
                "condition": "customer_response = NULL",
            },
        },
        {
            "name": "closed",
            "label": "Closed",
            "type": "final",
            "onEntry": [
                {"type": "fieldUpdate", "field": "status", "value": "Closed"},
                {"type": "fieldUpdate", "field": "closed_date", "value": "NOW()"},
            ],
            "transitions": [
                {
                    "to": "assigned",
                    "event": "reopen",
                    "guard": "DAYS_BETWEEN(closed_date, NOW()) <= 30",
                }
            ],
        },
    ],
}


@pytest.fixture
def ticket_definition() -> dict[str, Any]:
    """A fresh, mutable copy of the ticket lifecycle definition."""
    return copy.deepcopy(TICKET_DEFINITION)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def handlers() -> CustomActionRegistry:
    return default_case_handlers()


def make_settings(state_path: Path, **overrides: object) -> LifecycleSettings:
    values: dict[str, object] = {
        "LIFECYCLE_STATE_PATH": str(state_path),
        "LIFECYCLE_LANE_COUNT": 2,
        "LIFECYCLE_ACTION_WORKERS": 0,
        "LIFECYCLE_ACTION_BACKOFF_BASE_SECONDS": 0,
        "LIFECYCLE_ACTION_BACKOFF_MAX_SECONDS": 0,
        "LIFECYCLE_SUBMIT_TIMEOUT_SECONDS": 5,
    }
    values.update(overrides)
    return LifecycleSettings(_env_file=None, **values)  # type: ignore[arg-type]


EngineFactory = Callable[..., LifecycleEngine]


@pytest.fixture
def engine_factory(
    tmp_path: Path,
    clock: ManualClock,
    notifier: RecordingNotifier,
    handlers: CustomActionRegistry,
) -> Iterator[EngineFactory]:
    """Build in-memory engines over given definitions; all are stopped at teardown."""

    built: list[LifecycleEngine] = []

    def factory(
        *definitions: Mapping[str, Any],
        resolver: InMemoryEntityResolver | None = None,
        store: PersistenceStore | None = None,
        **settings: object,
    ) -> LifecycleEngine:
        registry = DefinitionRegistry(handlers)
        for raw in definitions:
            registry.register(raw)
        engine = build_engine(
            make_settings(tmp_path / "state", **settings),
            clock=clock,
            registry=registry,
            store=store,
            resolver=resolver or InMemoryEntityResolver(),
            notifier=notifier,
            task_service=InMemoryTaskService(),
            sleep=lambda _seconds: None,
            persistent=False,
        )
        built.append(engine)
        return engine

    yield factory

    for engine in built:
        engine.stop()
