"""Timeout firing, staleness and timer recovery."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from crm_lifecycle.statemachine.lifecycle import LifecycleEngine
from crm_lifecycle.statemachine.runtime.adapters import InMemoryEntityResolver
from crm_lifecycle.statemachine.runtime.clock import ManualClock
from crm_lifecycle.statemachine.runtime.instance import (
    Event,
    Instance,
    Outcome,
    TransitionResult,
    idempotency_key,
)

from conftest import START, EngineFactory, RecordingNotifier


def _ticket(engine: LifecycleEngine, entity_id: str = "T-1", **fields: Any) -> Instance:
    values: dict[str, Any] = {
        "owner": "u-1",
        "contact": "p-1",
        "priority": "High",
        "owner_responded": False,
        "customer_response": None,
    }
    values.update(fields)
    return engine.ingress.create_instance("ticket", entity_id, values)


def _get(engine: LifecycleEngine, entity_id: str = "T-1", object_type: str = "ticket") -> Instance:
    instance = engine.ingress.get_instance(object_type, entity_id)
    assert instance is not None
    return instance


def _sweep(engine: LifecycleEngine) -> list[TransitionResult]:
    return [future.result().result for future in engine.sweep()]


def _timeout_event(instance: Instance, name: str) -> Event:
    return Event(
        object_type=instance.object_type,
        entity_id=instance.entity_id,
        name=name,
        origin="timeout",
        expected_state_entered_at=instance.state_entered_at,
        expected_wake_at=instance.next_wake_at,
    )


def test_assignment_arms_timer_and_due_sweep_escalates(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    assert _get(engine).next_wake_at == START + timedelta(hours=4)

    clock.advance(timedelta(hours=3, minutes=59))
    assert _sweep(engine) == []

    clock.advance(timedelta(minutes=1))
    [result] = _sweep(engine)

    instance = _get(engine)
    assert result.accepted
    assert result.reason == Outcome.TRANSITIONED
    assert (result.from_state, result.to_state) == ("assigned", "escalated")
    assert instance.state == "escalated"
    assert instance.fields["priority"] == "Critical"
    assert instance.next_wake_at is None


def test_false_timeout_condition_disarms_timer(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    engine.ingress.report_field_changes("ticket", "T-1", {"owner_responded": True})

    clock.advance(timedelta(hours=4))
    [result] = _sweep(engine)

    instance = _get(engine)
    assert result.accepted is False
    assert result.reason == Outcome.TIMEOUT_DISARMED
    assert instance.state == "assigned"
    assert instance.next_wake_at is None
    assert _sweep(engine) == []


def test_degraded_email_does_not_block_auto_close(
    engine_factory: EngineFactory,
    ticket_definition: dict[str, Any],
    clock: ManualClock,
    notifier: RecordingNotifier,
) -> None:
    resolver = InMemoryEntityResolver(aliases={"contact": "person"})
    resolver.add("person", "p-1", {"email": "customer@example.com"})
    engine = engine_factory(ticket_definition, resolver=resolver)
    notifier.failures = 3

    _ticket(engine, "T1")
    engine.ingress.submit_event("ticket", "T1", "assign")
    resolved = engine.ingress.submit_event("ticket", "T1", "resolve", {"resolution": "fixed"})
    assert resolved.to_state == "resolved"
    assert resolved.version == 3

    key = idempotency_key("ticket", "T1", _get(engine, "T1").incarnation, 3, 1)
    record = engine.action_records.get(key)
    assert record is not None
    assert record.status == "degraded"
    assert record.attempts == 3
    assert record.payload["recipients"] == ["customer@example.com"]
    assert "mail relay unavailable" in (record.last_error or "")
    assert notifier.sent == []
    assert _get(engine, "T1").state == "resolved"

    clock.advance(timedelta(hours=24))
    [result] = _sweep(engine)

    assert result.to_state == "closed"
    assert _get(engine, "T1").fields["closed_date"] == START + timedelta(hours=24)


def test_customer_response_keeps_resolved_ticket_open(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    engine.ingress.submit_event("ticket", "T-1", "resolve", {"resolution": "fixed"})
    engine.ingress.report_field_changes("ticket", "T-1", {"customer_response": "still broken"})

    clock.advance(timedelta(hours=24))
    [result] = _sweep(engine)

    assert result.reason == Outcome.TIMEOUT_DISARMED
    assert _get(engine).state == "resolved"


def test_reopen_window_is_thirty_days(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    for entity_id in ("T-A", "T-B"):
        _ticket(engine, entity_id)
        engine.ingress.submit_event("ticket", entity_id, "assign")
        engine.ingress.submit_event("ticket", entity_id, "resolve", {"resolution": "fixed"})
        engine.ingress.submit_event("ticket", entity_id, "close")
        assert _get(engine, entity_id).state == "closed"

    clock.advance(timedelta(days=29))
    accepted = engine.ingress.submit_event("ticket", "T-A", "reopen")

    clock.advance(timedelta(days=2))
    rejected = engine.ingress.submit_event("ticket", "T-B", "reopen")

    assert accepted.accepted
    assert _get(engine, "T-A").state == "assigned"
    assert rejected.accepted is False
    assert rejected.reason == Outcome.NO_MATCHING_TRANSITION
    assert _get(engine, "T-B").state == "closed"


def test_duplicate_timeout_delivery_is_stale(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    clock.advance(timedelta(hours=4))
    event = _timeout_event(_get(engine), "auto_escalate")

    first = engine.ingress.submit(event).result(timeout=5).result
    second = engine.ingress.submit(event).result(timeout=5).result

    assert first.reason == Outcome.TRANSITIONED
    assert second.accepted is False
    assert second.reason == Outcome.STALE_TIMEOUT
    assert _get(engine).version == first.version


def test_timeout_before_wake_time_is_stale(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    clock.advance(timedelta(hours=1))

    result = engine.ingress.submit(_timeout_event(_get(engine), "auto_escalate")).result(timeout=5).result

    assert result.reason == Outcome.STALE_TIMEOUT
    assert _get(engine).state == "assigned"


def test_leaving_a_state_cancels_its_timeout(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    armed = _get(engine)

    clock.advance(timedelta(hours=1))
    engine.ingress.submit_event("ticket", "T-1", "escalate")
    clock.advance(timedelta(hours=3))

    assert _get(engine).next_wake_at is None
    assert _sweep(engine) == []
    late = engine.ingress.submit(_timeout_event(armed, "auto_escalate")).result(timeout=5).result
    assert late.reason == Outcome.STALE_TIMEOUT
    assert _get(engine).state == "escalated"


def test_reentry_timer_ignores_previous_wake_time(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine, reassigned=0)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    first = _get(engine)

    clock.advance(timedelta(hours=2))
    engine.ingress.submit_event("ticket", "T-1", "reassign")
    clock.advance(timedelta(hours=2))

    stale = engine.ingress.submit(_timeout_event(first, "auto_escalate")).result(timeout=5).result
    assert stale.reason == Outcome.STALE_TIMEOUT
    assert _sweep(engine) == []

    clock.advance(timedelta(hours=2))
    [result] = _sweep(engine)
    assert result.to_state == "escalated"


def test_discarded_instance_is_never_swept(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    engine.ingress.discard_instance("ticket", "T-1")

    clock.advance(timedelta(days=1))

    assert _sweep(engine) == []


DEAL_DEFINITION: dict[str, Any] = {
    "name": "deal_followup",
    "object": "deal",
    "states": [
        {
            "name": "negotiating",
            "initial": True,
            "transitions": [
                {"to": "stalled", "event": "remind", "guard": "reminders >= 2"},
                {"to": "won", "event": "win"},
            ],
            "timeout": {
                "duration": 2,
                "unit": "days",
                "event": "remind",
                "condition": "active = true",
                "actions": [
                    {"type": "fieldUpdate", "field": "reminders", "formula": "reminders + 1"},
                    {"type": "emailAlert", "template": "deal_reminder", "recipients": ["${owner.email}"]},
                ],
            },
        },
        {"name": "stalled", "transitions": [{"to": "won", "event": "win"}]},
        {"name": "won", "type": "final"},
    ],
}


def _deal_engine(engine_factory: EngineFactory) -> LifecycleEngine:
    resolver = InMemoryEntityResolver()
    resolver.add("owner", "u-1", {"email": "rep@example.com"})
    engine = engine_factory(DEAL_DEFINITION, resolver=resolver)
    engine.ingress.create_instance("deal", "D-1", {"owner": "u-1", "active": True, "reminders": 0})
    return engine


def test_reminder_timeout_runs_actions_and_rearms(
    engine_factory: EngineFactory, clock: ManualClock, notifier: RecordingNotifier
) -> None:
    engine = _deal_engine(engine_factory)

    clock.advance(timedelta(days=2))
    [result] = _sweep(engine)

    deal = _get(engine, "D-1", "deal")
    assert result.accepted
    assert result.reason == Outcome.REMINDER_SENT
    assert deal.state == "negotiating"
    assert deal.state_entered_at == START
    assert deal.fields["reminders"] == 1
    assert deal.next_wake_at == START + timedelta(days=4)
    assert notifier.templates() == ["deal_reminder"]
    assert notifier.sent[0]["idempotency_key"] == idempotency_key("deal", "D-1", deal.incarnation, deal.version, 1)


def test_reminder_timeout_follows_declared_transition_once_guard_holds(
    engine_factory: EngineFactory, clock: ManualClock, notifier: RecordingNotifier
) -> None:
    engine = _deal_engine(engine_factory)

    for _ in range(2):
        clock.advance(timedelta(days=2))
        [reminder] = _sweep(engine)
        assert reminder.reason == Outcome.REMINDER_SENT

    clock.advance(timedelta(days=2))
    [result] = _sweep(engine)

    deal = _get(engine, "D-1", "deal")
    assert result.reason == Outcome.TRANSITIONED
    assert deal.state == "stalled"
    assert deal.next_wake_at is None
    assert len(notifier.sent) == 2


def test_false_reminder_condition_rearms_without_actions(
    engine_factory: EngineFactory, clock: ManualClock, notifier: RecordingNotifier
) -> None:
    engine = _deal_engine(engine_factory)
    engine.ingress.report_field_changes("deal", "D-1", {"active": False})

    clock.advance(timedelta(days=2, hours=3))
    [result] = _sweep(engine)

    deal = _get(engine, "D-1", "deal")
    assert result.accepted is False
    assert result.reason == Outcome.TIMEOUT_REARMED
    assert deal.next_wake_at == START + timedelta(days=4, hours=3)
    assert deal.fields["reminders"] == 0
    assert notifier.sent == []


def test_recover_leaves_disarmed_timer_alone(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    engine.ingress.report_field_changes("ticket", "T-1", {"owner_responded": True})
    clock.advance(timedelta(hours=4))
    _sweep(engine)
    assert _get(engine).next_wake_at is None
    assert _get(engine).timer_disarmed

    engine.ingress.report_field_changes("ticket", "T-1", {"owner_responded": False})
    assert engine.scheduler.recover() == 0
    engine.reload_definition(ticket_definition)

    assert _get(engine).next_wake_at is None
    assert _sweep(engine) == []
    assert _get(engine).state == "assigned"

    engine.ingress.submit_event("ticket", "T-1", "resolve", {"resolution": "fixed"})
    instance = _get(engine)
    assert instance.state == "resolved"
    assert instance.timer_disarmed is False
    assert instance.next_wake_at == START + timedelta(hours=28)


def test_reload_without_timeout_clears_wake_times(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any]
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    assert _get(engine).next_wake_at is not None

    del ticket_definition["states"][1]["timeout"]
    engine.reload_definition(ticket_definition)

    assert _get(engine).next_wake_at is None
    assert engine.registry.get("ticket").state("assigned").timeout is None


def test_start_recovers_timers_without_background_thread(
    engine_factory: EngineFactory, ticket_definition: dict[str, Any], clock: ManualClock
) -> None:
    engine = engine_factory(ticket_definition)
    _ticket(engine)
    engine.ingress.submit_event("ticket", "T-1", "assign")
    instance = _get(engine)
    engine.store.commit(
        instance.model_copy(update={"next_wake_at": None, "version": instance.version + 1}),
        expected_version=instance.version,
    )

    engine.start(background_sweep=False)

    assert _get(engine).next_wake_at == START + timedelta(hours=4)
