from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient

from crm_lifecycle.server.app import create_app
from crm_lifecycle.statemachine.runtime.clock import ManualClock

from conftest import START, EngineFactory


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    engine_factory: EngineFactory,
    ticket_definition: dict[str, Any],
) -> Iterator[TestClient]:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LIFECYCLE_SCHEDULER_ENABLED", "false")
    engine = engine_factory(ticket_definition)
    with TestClient(create_app(engine)) as test_client:
        yield test_client


def _create(client: TestClient, entity_id: str = "T-1", **fields: Any) -> dict[str, Any]:
    body = {"entity_id": entity_id, "fields": {"owner": "u-1", "priority": "High", "owner_responded": False, **fields}}
    resp = client.post("/api/v1/instances/ticket", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_definitions(client: TestClient) -> None:
    assert client.get("/api/v1/health").json() == {"status": "ok"}

    [definition] = client.get("/api/v1/definitions").json()
    assert definition["object_type"] == "ticket"
    assert definition["initial"] == "new"
    assigned = next(s for s in definition["states"] if s["name"] == "assigned")
    assert assigned["timeout_event"] == "auto_escalate"
    assert assigned["timeout_seconds"] == 4 * 3600
    assert "record_updated" in definition["events"]

    assert client.get("/api/v1/definitions/contract").status_code == 404


def test_instance_lifecycle_over_http(client: TestClient) -> None:
    created = _create(client)
    assert created["state"] == "new"
    assert created["fields"]["status"] == "New"

    resp = client.post("/api/v1/instances/ticket/T-1/events", json={"event": "assign"})
    assert resp.status_code == 200
    assert resp.json() == {
        "accepted": True,
        "from_state": "new",
        "to_state": "assigned",
        "reason": "transitioned",
        "version": 2,
        "event": "assign",
    }

    ignored = client.post("/api/v1/instances/ticket/T-1/events", json={"event": "resolve"}).json()
    assert ignored["accepted"] is False
    assert ignored["reason"] == "no_matching_transition"

    changed = client.post(
        "/api/v1/instances/ticket/T-1/field-changes", json={"changes": {"owner_responded": True}}
    ).json()
    assert changed["version"] == 3

    instance = client.get("/api/v1/instances/ticket/T-1").json()
    assert instance["state"] == "assigned"
    assert instance["fields"]["owner_responded"] is True
    assert instance["next_wake_at"] == (START + timedelta(hours=4)).isoformat().replace("+00:00", "Z")

    assert client.delete("/api/v1/instances/ticket/T-1").status_code == 204
    assert client.get("/api/v1/instances/ticket/T-1").status_code == 404


def test_error_status_codes(client: TestClient) -> None:
    _create(client)

    assert client.post("/api/v1/instances/ticket", json={"entity_id": "T-1"}).status_code == 409
    assert client.post("/api/v1/instances/lead", json={"entity_id": "L-1"}).status_code == 404
    assert client.post("/api/v1/instances/ticket/T-404/events", json={"event": "assign"}).status_code == 404
    unknown = client.post("/api/v1/instances/ticket/T-1/events", json={"event": "teleport"})
    assert unknown.status_code == 422
    assert "teleport" in unknown.json()["detail"]
    assert client.post("/api/v1/instances/ticket/T-1/field-changes", json={"changes": {}}).status_code == 422
    assert client.delete("/api/v1/instances/ticket/T-404").status_code == 404

    client.post("/api/v1/instances/ticket/T-1/events", json={"event": "assign"})
    fatal = client.post("/api/v1/instances/ticket/T-1/events", json={"event": "reassign"})
    assert fatal.status_code == 422


def test_sweep_endpoint_fires_due_timeouts(client: TestClient, clock: ManualClock) -> None:
    _create(client)
    client.post("/api/v1/instances/ticket/T-1/events", json={"event": "assign"})

    clock.advance(timedelta(hours=4))
    assert client.post("/api/v1/sweep").json() == {"submitted": 1}

    # Queued behind the timeout event on the same lane.
    client.post("/api/v1/instances/ticket/T-1/field-changes", json={"changes": {"note": "x"}})
    assert client.get("/api/v1/instances/ticket/T-1").json()["state"] == "escalated"


def test_definition_reload_checks_object_type(client: TestClient, ticket_definition: dict[str, Any]) -> None:
    mismatch = client.put("/api/v1/definitions/lead", json=ticket_definition)
    assert mismatch.status_code == 400

    ticket_definition["states"][0]["transitions"][0]["to"] = "nowhere"
    invalid = client.put("/api/v1/definitions/ticket", json=ticket_definition)
    assert invalid.status_code == 400
    assert "nowhere" in invalid.json()["detail"]

    ticket_definition["states"][0]["transitions"][0]["to"] = "assigned"
    ticket_definition["label"] = "Support Ticket"
    reloaded = client.put("/api/v1/definitions/ticket", json=ticket_definition)
    assert reloaded.status_code == 200
    assert reloaded.json()["label"] == "Support Ticket"


def test_action_records_are_listed(client: TestClient) -> None:
    created = _create(client, contact="p-1")
    client.post("/api/v1/instances/ticket/T-1/events", json={"event": "assign"})
    client.post("/api/v1/instances/ticket/T-1/events", json={"event": "resolve", "payload": {"resolution": "ok"}})

    [record] = client.get("/api/v1/instances/ticket/T-1/actions").json()

    assert record["idempotency_key"] == f"ticket:T-1:{created['incarnation']}:3:1"
    assert record["kind"] == "emailAlert"
    assert record["status"] == "degraded"
    assert record["last_error"] == "no recipients resolved"


def test_lane_timeout_is_reported_as_conflict(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    engine_factory: EngineFactory,
    ticket_definition: dict[str, Any],
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LIFECYCLE_SCHEDULER_ENABLED", "false")
    engine = engine_factory(ticket_definition, LIFECYCLE_SUBMIT_TIMEOUT_SECONDS=0.05)
    gate = threading.Event()

    with TestClient(create_app(engine)) as client:
        _create(client)
        blocker = engine.lanes.submit("ticket", "T-1", gate.wait, 5)
        try:
            resp = client.post("/api/v1/instances/ticket/T-1/events", json={"event": "assign"})
        finally:
            gate.set()
        blocker.result(timeout=5)

    assert resp.status_code == 409
    assert "did not answer" in resp.json()["detail"]
