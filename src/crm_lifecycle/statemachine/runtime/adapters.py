"""Default collaborator implementations.

The engine only needs the protocols in `crm_lifecycle.statemachine.collaborators`.
These adapters cover local runs and tests: related records held in memory,
alerts written to the log or POSTed to a webhook, and tasks kept in a list.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import requests

from crm_lifecycle.statemachine.collaborators import CustomActionHandler, CustomActionRegistry

logger = logging.getLogger(__name__)


class InMemoryEntityResolver:
    """Related records keyed by (relation, reference).

    `owner` / `u-1` resolves to whatever was registered with
    `add("owner", "u-1", {...})`. Relations can also be aliased onto a shared
    collection, e.g. `owner`, `manager` and `contact` onto `user`.
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._lock = threading.Lock()
        self._aliases = dict(aliases or {})
        self._records: dict[tuple[str, str], dict[str, object]] = {}

    def _collection(self, relation: str) -> str:
        return self._aliases.get(relation, relation)

    def add(self, relation: str, ref: object, record: Mapping[str, object]) -> None:
        with self._lock:
            self._records[(self._collection(relation), str(ref))] = dict(record)

    def resolve(self, relation: str, ref: object) -> Mapping[str, object] | None:
        if ref is None:
            return None
        with self._lock:
            record = self._records.get((self._collection(relation), str(ref)))
            return None if record is None else dict(record)


@dataclass(frozen=True, slots=True)
class SentAlert:
    template: str
    recipients: tuple[str, ...]
    context: Mapping[str, object]
    idempotency_key: str


class LoggingNotifier:
    """Notifier that records alerts and writes them to the log.

    Repeated deliveries with an already-seen idempotency key are dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sent: dict[str, SentAlert] = {}

    def send(
        self,
        *,
        template: str,
        recipients: list[str],
        context: Mapping[str, object],
        idempotency_key: str,
    ) -> None:
        with self._lock:
            if idempotency_key in self._sent:
                logger.debug("Duplicate alert suppressed", extra={"idempotency_key": idempotency_key})
                return
            self._sent[idempotency_key] = SentAlert(
                template=template,
                recipients=tuple(recipients),
                context=dict(context),
                idempotency_key=idempotency_key,
            )
        logger.info(
            "Alert sent",
            extra={
                "template": template,
                "recipients": recipients,
                "idempotency_key": idempotency_key,
            },
        )

    @property
    def sent(self) -> list[SentAlert]:
        with self._lock:
            return list(self._sent.values())


class WebhookNotifier:
    """POSTs alerts as JSON to an HTTP endpoint.

    The idempotency key is sent as the `Idempotency-Key` header so the receiving
    mailer can drop redelivered alerts.
    """

    def __init__(
        self,
        *,
        url: str,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        if not url.strip():
            raise ValueError("Webhook URL is required")
        self._url = url.strip()
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Content-Type": "application/json",
                "User-Agent": "crm-lifecycle",
            }
        )

    def send(
        self,
        *,
        template: str,
        recipients: list[str],
        context: Mapping[str, object],
        idempotency_key: str,
    ) -> None:
        payload: dict[str, Any] = {
            "template": template,
            "recipients": recipients,
            "context": {k: _jsonable(v) for k, v in context.items()},
        }
        resp = self._session.post(
            self._url,
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        logger.info(
            "Alert posted to webhook",
            extra={"template": template, "idempotency_key": idempotency_key, "status": resp.status_code},
        )

    def close(self) -> None:
        self._session.close()


def _jsonable(value: object) -> object:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    if value is None or isinstance(value, str | int | float | bool):
        return value
    return str(value)


@dataclass(frozen=True, slots=True)
class CreatedTask:
    subject: str
    assignee: str | None
    due_at: datetime | None
    priority: str | None
    object_type: str
    entity_id: str
    idempotency_key: str


class InMemoryTaskService:
    """Task service keeping created tasks in memory, one per idempotency key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, CreatedTask] = {}

    def create_task(
        self,
        *,
        subject: str,
        assignee: str | None,
        due_at: datetime | None,
        priority: str | None,
        object_type: str,
        entity_id: str,
        idempotency_key: str,
    ) -> None:
        with self._lock:
            if idempotency_key in self._tasks:
                return
            self._tasks[idempotency_key] = CreatedTask(
                subject=subject,
                assignee=assignee,
                due_at=due_at,
                priority=priority,
                object_type=object_type,
                entity_id=entity_id,
                idempotency_key=idempotency_key,
            )
        logger.info(
            "Follow-up task created",
            extra={
                "subject": subject,
                "assignee": assignee,
                "due_at": due_at,
                "object_type": object_type,
                "entity_id": entity_id,
            },
        )

    @property
    def tasks(self) -> list[CreatedTask]:
        with self._lock:
            return list(self._tasks.values())


def _log_handler(name: str) -> CustomActionHandler:
    def handler(
        params: Mapping[str, object],
        *,
        object_type: str,
        entity_id: str,
        idempotency_key: str,
    ) -> None:
        logger.info(
            "Custom action executed",
            extra={
                "handler": name,
                "params": dict(params),
                "object_type": object_type,
                "entity_id": entity_id,
                "idempotency_key": idempotency_key,
            },
        )

    return handler


CASE_HANDLER_NAMES: tuple[str, ...] = ("sendSatisfactionSurvey", "updateCaseMetrics")


def default_case_handlers(registry: CustomActionRegistry | None = None) -> CustomActionRegistry:
    """Registry with log-only implementations of the handlers the case lifecycle names.

    Deployments replace these with real integrations via `register(..., replace=True)`.
    """

    registry = registry or CustomActionRegistry()
    for name in CASE_HANDLER_NAMES:
        if name not in registry:
            registry.register(name, _log_handler(name))
    return registry
