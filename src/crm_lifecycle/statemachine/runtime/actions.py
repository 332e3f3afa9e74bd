"""Execution of transition and entry actions.

Actions run in two phases:

- `stage()` runs inside the transition, before commit. Field updates are
  evaluated in order (each one sees the values staged before it) and external
  actions are rendered against the fields as they stand at their position in
  the list. A field update that cannot be computed raises `FatalActionError`
  and nothing is persisted.
- `record()` / `dispatch()` run after the transition committed. Each external
  action gets a durable `ActionExecutionRecord` keyed by
  `(object type, entity id, transition sequence, action index)`, then is sent
  through its collaborator with bounded exponential backoff. Exhausted retries
  mark the record `degraded`; the committed transition stands.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from crm_lifecycle.statemachine.collaborators import CustomActionRegistry, Notifier, TaskService
from crm_lifecycle.statemachine.definitions.model import (
    ActionSpec,
    CustomAction,
    EmailAlert,
    FieldUpdate,
    TaskCreation,
)
from crm_lifecycle.statemachine.errors import FatalActionError
from crm_lifecycle.statemachine.expressions import (
    EvaluationContext,
    evaluate_formula,
    render_template,
    render_text,
)
from crm_lifecycle.statemachine.runtime.clock import Clock
from crm_lifecycle.statemachine.runtime.instance import (
    ActionExecutionRecord,
    ActionKind,
    Instance,
    idempotency_key,
)
from crm_lifecycle.statemachine.runtime.store import ActionRecordStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    jitter: float = 0.2

    def delay(self, attempt: int, rng: Callable[[float, float], float] = random.uniform) -> float:
        """Delay before retry number `attempt` (1-based), capped and jittered."""

        capped = min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)
        spread = capped * self.jitter
        return max(0.0, capped + rng(-spread, spread))


@dataclass(frozen=True, slots=True)
class PreparedAction:
    """An external action rendered against the entity at staging time."""

    index: int
    kind: ActionKind
    payload: dict[str, Any]


@dataclass(slots=True)
class StagedActions:
    field_updates: dict[str, object] = field(default_factory=dict)
    external: list[PreparedAction] = field(default_factory=list)


def _render_recipients(recipients: Sequence[str], ctx: EvaluationContext) -> list[str]:
    resolved: list[str] = []
    for template in recipients:
        value = render_template(template, ctx)
        if value is None:
            continue
        values = value if isinstance(value, list | tuple) else [value]
        for item in values:
            text = str(item).strip()
            if text and text not in resolved:
                resolved.append(text)
    return resolved


def _render_params(value: object, ctx: EvaluationContext) -> object:
    if isinstance(value, str):
        return render_template(value, ctx)
    if isinstance(value, Mapping):
        return {str(k): _render_params(v, ctx) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_render_params(v, ctx) for v in value]
    return value


def _optional_text(template: str | None, ctx: EvaluationContext) -> str | None:
    if template is None:
        return None
    value = render_template(template, ctx)
    return None if value is None else str(value)


class ActionExecutor:
    def __init__(
        self,
        *,
        notifier: Notifier,
        task_service: TaskService,
        handlers: CustomActionRegistry,
        records: ActionRecordStore,
        clock: Clock,
        retry: RetryPolicy | None = None,
        workers: int = 4,
        abandon_superseded: bool = False,
        current_instance: Callable[[str, str], Instance | None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._notifier = notifier
        self._task_service = task_service
        self._handlers = handlers
        self._records = records
        self._clock = clock
        self._retry = retry or RetryPolicy()
        self._abandon_superseded = abandon_superseded
        self._current_instance = current_instance
        self._sleep = sleep
        self._pool = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lifecycle-actions")
            if workers > 0
            else None
        )

    @property
    def records(self) -> ActionRecordStore:
        return self._records

    def stage(
        self,
        actions: Sequence[ActionSpec],
        ctx: EvaluationContext,
        *,
        start_index: int = 0,
        staged: StagedActions | None = None,
    ) -> StagedActions:
        """Evaluate field updates and render external actions, in order.

        Raises:
            FatalActionError: If a field update's value cannot be computed.
        """

        staged = staged or StagedActions()
        for offset, action in enumerate(actions):
            index = start_index + offset
            current = ctx.with_fields({**ctx.fields, **staged.field_updates})
            if isinstance(action, FieldUpdate):
                try:
                    staged.field_updates[action.field] = evaluate_formula(action.value, current)
                except Exception as e:
                    raise FatalActionError(
                        f"Field update of {action.field!r} failed: {e}", action_index=index
                    ) from e
            elif isinstance(action, EmailAlert):
                staged.external.append(
                    PreparedAction(
                        index=index,
                        kind="emailAlert",
                        payload={
                            "template": action.template,
                            "recipients": _render_recipients(action.recipients, current),
                        },
                    )
                )
            elif isinstance(action, TaskCreation):
                staged.external.append(
                    PreparedAction(index=index, kind="taskCreation", payload=self._task_payload(action, current))
                )
            elif isinstance(action, CustomAction):
                staged.external.append(
                    PreparedAction(
                        index=index,
                        kind="customAction",
                        payload={
                            "handler": action.handler_name,
                            "params": _render_params(dict(action.params), current),
                        },
                    )
                )
        return staged

    def _task_payload(self, action: TaskCreation, ctx: EvaluationContext) -> dict[str, Any]:
        due_at: datetime | None = None
        if action.due is not None:
            try:
                value = evaluate_formula(action.due, ctx)
            except Exception:
                logger.warning(
                    "Task due date could not be computed; creating task without one",
                    extra={"due": action.due.source},
                    exc_info=True,
                )
            else:
                if isinstance(value, datetime):
                    due_at = value
        return {
            "subject": render_text(action.subject, ctx),
            "assignee": _optional_text(action.assignee, ctx),
            "due_at": due_at.isoformat() if due_at is not None else None,
            "priority": _optional_text(action.priority, ctx),
        }

    def record(
        self,
        instance: Instance,
        prepared: Sequence[PreparedAction],
        *,
        context: Mapping[str, object],
    ) -> list[ActionExecutionRecord]:
        """Persist one pending record per external action of a committed transition."""

        now = self._clock.now()
        created: list[ActionExecutionRecord] = []
        for action in prepared:
            payload = dict(action.payload)
            if action.kind == "emailAlert":
                payload["context"] = dict(context)
            record = ActionExecutionRecord(
                idempotency_key=idempotency_key(
                    instance.object_type,
                    instance.entity_id,
                    instance.incarnation,
                    instance.version,
                    action.index,
                ),
                object_type=instance.object_type,
                entity_id=instance.entity_id,
                transition_seq=instance.version,
                action_index=action.index,
                incarnation=instance.incarnation,
                state_seq=instance.state_seq,
                kind=action.kind,
                payload=payload,
                created_at=now,
                updated_at=now,
            )
            if action.kind == "emailAlert" and not payload.get("recipients"):
                record = record.model_copy(
                    update={"status": "degraded", "last_error": "no recipients resolved"}
                )
                logger.warning(
                    "Email alert has no resolvable recipients; marked degraded",
                    extra={
                        "object_type": instance.object_type,
                        "entity_id": instance.entity_id,
                        "template": payload.get("template"),
                        "idempotency_key": record.idempotency_key,
                    },
                )
            created.append(self._records.add(record))
        return created

    def dispatch(self, records: Sequence[ActionExecutionRecord]) -> Future[None]:
        """Send the pending records of one transition, in order.

        Runs on the action pool when one is configured; otherwise inline, and the
        returned future is already complete.
        """

        pending = [r for r in records if r.status == "pending"]
        if self._pool is not None and pending:
            return self._pool.submit(self._run_batch, pending)
        future: Future[None] = Future()
        try:
            self._run_batch(pending)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(None)
        return future

    def resume_pending(self) -> Future[None]:
        """Re-dispatch records left pending by an interrupted process."""

        pending = self._records.list_pending()
        if pending:
            logger.info("Resuming pending actions", extra={"count": len(pending)})
        return self.dispatch(pending)

    def shutdown(self, *, wait: bool = True) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=wait)

    def _run_batch(self, records: Sequence[ActionExecutionRecord]) -> None:
        for record in records:
            if self._superseded(record):
                self._records.update(
                    record.idempotency_key,
                    status="degraded",
                    last_error="superseded by a newer transition",
                    updated_at=self._clock.now(),
                )
                logger.info(
                    "Side effect abandoned; instance moved on",
                    extra={
                        "object_type": record.object_type,
                        "entity_id": record.entity_id,
                        "idempotency_key": record.idempotency_key,
                    },
                )
                continue
            self._execute(record)

    def _superseded(self, record: ActionExecutionRecord) -> bool:
        """True once the instance has entered a newer state than the record's transition.

        Fields-only commits move the version but not `state_seq`, so they never
        supersede a transition's side effects.
        """

        if not self._abandon_superseded or self._current_instance is None:
            return False
        current = self._current_instance(record.object_type, record.entity_id)
        if current is None:
            return False
        return current.incarnation != record.incarnation or current.state_seq != record.state_seq

    def _execute(self, record: ActionExecutionRecord) -> ActionExecutionRecord:
        attempt = record.attempts
        last_error = ""
        while attempt < self._retry.max_attempts:
            attempt += 1
            try:
                self._invoke(record)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Side effect attempt failed",
                    extra={
                        "idempotency_key": record.idempotency_key,
                        "kind": record.kind,
                        "attempt": attempt,
                        "error": last_error,
                    },
                )
                record = self._records.update(
                    record.idempotency_key,
                    attempts=attempt,
                    last_error=last_error,
                    updated_at=self._clock.now(),
                )
                if attempt < self._retry.max_attempts:
                    self._sleep(self._retry.delay(attempt))
                continue
            logger.debug(
                "Side effect delivered",
                extra={"idempotency_key": record.idempotency_key, "attempt": attempt},
            )
            return self._records.update(
                record.idempotency_key,
                attempts=attempt,
                status="done",
                last_error=None,
                updated_at=self._clock.now(),
            )

        logger.warning(
            "Side effect degraded after exhausting retries",
            extra={
                "object_type": record.object_type,
                "entity_id": record.entity_id,
                "idempotency_key": record.idempotency_key,
                "kind": record.kind,
                "attempts": attempt,
                "error": last_error,
            },
        )
        return self._records.update(
            record.idempotency_key,
            attempts=attempt,
            status="degraded",
            last_error=last_error or "retries exhausted",
            updated_at=self._clock.now(),
        )

    def _invoke(self, record: ActionExecutionRecord) -> None:
        payload = record.payload
        if record.kind == "emailAlert":
            self._notifier.send(
                template=str(payload["template"]),
                recipients=list(payload.get("recipients") or []),
                context=dict(payload.get("context") or {}),
                idempotency_key=record.idempotency_key,
            )
        elif record.kind == "taskCreation":
            due = payload.get("due_at")
            self._task_service.create_task(
                subject=str(payload.get("subject") or ""),
                assignee=payload.get("assignee"),
                due_at=datetime.fromisoformat(due) if isinstance(due, str) else due,
                priority=payload.get("priority"),
                object_type=record.object_type,
                entity_id=record.entity_id,
                idempotency_key=record.idempotency_key,
            )
        elif record.kind == "customAction":
            name = str(payload["handler"])
            handler = self._handlers.resolve(name)
            if handler is None:
                raise LookupError(f"Custom action handler {name!r} is no longer registered")
            handler(
                dict(payload.get("params") or {}),
                object_type=record.object_type,
                entity_id=record.entity_id,
                idempotency_key=record.idempotency_key,
            )
        else:
            raise ValueError(f"Unknown action kind {record.kind!r}")
