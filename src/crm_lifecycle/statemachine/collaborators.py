"""Contracts for the external collaborators the engine consumes.

The engine never talks to mail servers, task systems or the CRUD layer
directly. It calls these interfaces, which are injected at wiring time.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from datetime import datetime
from typing import Protocol

from crm_lifecycle.statemachine.expressions.evaluator import EntityResolver

logger = logging.getLogger(__name__)

__all__ = [
    "CustomActionHandler",
    "CustomActionRegistry",
    "EntityResolver",
    "Notifier",
    "TaskService",
]


class Notifier(Protocol):
    """Sends a templated alert to a list of recipients."""

    def send(
        self,
        *,
        template: str,
        recipients: list[str],
        context: Mapping[str, object],
        idempotency_key: str,
    ) -> None: ...


class TaskService(Protocol):
    """Creates a follow-up task related to an entity."""

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
    ) -> None: ...


class CustomActionHandler(Protocol):
    def __call__(
        self,
        params: Mapping[str, object],
        *,
        object_type: str,
        entity_id: str,
        idempotency_key: str,
    ) -> None: ...


class CustomActionRegistry:
    """Explicit name -> handler registry for `customAction` steps.

    Definitions resolve handler names against this registry when they are
    loaded, so an unknown name fails at load time rather than mid-transition.
    """

    def __init__(self, handlers: Mapping[str, CustomActionHandler] | None = None) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, CustomActionHandler] = dict(handlers or {})

    def register(self, name: str, handler: CustomActionHandler, *, replace: bool = False) -> None:
        normalized = name.strip()
        if not normalized:
            raise ValueError("handler name is required")
        with self._lock:
            if normalized in self._handlers and not replace:
                raise ValueError(f"Custom action handler already registered: {normalized!r}")
            self._handlers[normalized] = handler
        logger.debug("Custom action handler registered", extra={"handler": normalized})

    def resolve(self, name: str) -> CustomActionHandler | None:
        return self._handlers.get(name.strip())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip() in self._handlers

    def names(self) -> list[str]:
        return sorted(self._handlers)
