"""Component wiring for the lifecycle engine."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any

from crm_lifecycle.statemachine.collaborators import (
    CustomActionRegistry,
    EntityResolver,
    Notifier,
    TaskService,
)
from crm_lifecycle.statemachine.config import LifecycleSettings
from crm_lifecycle.statemachine.definitions.model import StateMachineDefinition
from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry
from crm_lifecycle.statemachine.runtime.actions import ActionExecutor, RetryPolicy
from crm_lifecycle.statemachine.runtime.adapters import (
    InMemoryEntityResolver,
    InMemoryTaskService,
    LoggingNotifier,
    WebhookNotifier,
    default_case_handlers,
)
from crm_lifecycle.statemachine.runtime.clock import Clock, SystemClock
from crm_lifecycle.statemachine.runtime.ingress import EventIngress
from crm_lifecycle.statemachine.runtime.lanes import LaneDispatcher
from crm_lifecycle.statemachine.runtime.scheduler import TimeoutScheduler
from crm_lifecycle.statemachine.runtime.store import (
    ActionRecordStore,
    InMemoryActionRecordStore,
    InMemoryInstanceStore,
    JsonActionRecordStore,
    JsonInstanceStore,
    PersistenceStore,
)
from crm_lifecycle.statemachine.runtime.transitions import TransitionExecutor

logger = logging.getLogger(__name__)


@dataclass
class LifecycleEngine:
    """All engine components, wired together."""

    registry: DefinitionRegistry
    store: PersistenceStore
    action_records: ActionRecordStore
    clock: Clock
    actions: ActionExecutor
    executor: TransitionExecutor
    lanes: LaneDispatcher
    ingress: EventIngress
    scheduler: TimeoutScheduler
    collaborators: dict[str, Any] = field(default_factory=dict)

    def start(self, *, background_sweep: bool = True) -> None:
        """Recover timers and pending side effects, then start sweeping."""

        self.scheduler.recover()
        self.actions.resume_pending()
        if background_sweep:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.lanes.shutdown(wait=True)
        self.actions.shutdown(wait=True)
        notifier = self.collaborators.get("notifier")
        if isinstance(notifier, WebhookNotifier):
            notifier.close()

    def reload_definition(self, raw: Mapping[str, Any]) -> StateMachineDefinition:
        """Hot-reload a definition and reconcile the timers of its instances."""

        definition = self.registry.reload(raw)
        self.scheduler.recover(definition.object_type)
        return definition

    def sweep(self) -> list[Future[Any]]:
        return list(self.scheduler.sweep())


def _notifier_from_settings(settings: LifecycleSettings) -> Notifier:
    if settings.notify_webhook_url.strip():
        return WebhookNotifier(url=settings.notify_webhook_url)
    return LoggingNotifier()


def build_engine(
    settings: LifecycleSettings,
    *,
    clock: Clock | None = None,
    store: PersistenceStore | None = None,
    action_records: ActionRecordStore | None = None,
    registry: DefinitionRegistry | None = None,
    resolver: EntityResolver | None = None,
    notifier: Notifier | None = None,
    task_service: TaskService | None = None,
    handlers: CustomActionRegistry | None = None,
    sleep: Callable[[float], None] = time.sleep,
    persistent: bool = True,
    load_builtin: bool = True,
) -> LifecycleEngine:
    """Build an engine from settings, with any collaborator overridable.

    With `persistent=True` (the default) instances and action records are kept in
    JSON files under `settings.state_path`; otherwise in memory.
    """

    clock = clock or SystemClock()
    if registry is None:
        registry = DefinitionRegistry(default_case_handlers(handlers))
        if load_builtin:
            registry.load_builtin()
        if settings.definitions_path is not None:
            registry.load_path(settings.definitions_path, replace=True)

    if store is None:
        store = (
            JsonInstanceStore(settings.instances_state_file)
            if persistent
            else InMemoryInstanceStore()
        )
    if action_records is None:
        action_records = (
            JsonActionRecordStore(settings.actions_state_file)
            if persistent
            else InMemoryActionRecordStore()
        )

    resolver = resolver or InMemoryEntityResolver()
    notifier = notifier or _notifier_from_settings(settings)
    task_service = task_service or InMemoryTaskService()

    actions = ActionExecutor(
        notifier=notifier,
        task_service=task_service,
        handlers=registry.handlers,
        records=action_records,
        clock=clock,
        retry=RetryPolicy(
            max_attempts=settings.action_max_attempts,
            backoff_base=settings.action_backoff_base_seconds,
            backoff_max=settings.action_backoff_max_seconds,
        ),
        workers=settings.action_workers,
        abandon_superseded=settings.abandon_superseded_actions,
        current_instance=store.get,
        sleep=sleep,
    )
    executor = TransitionExecutor(
        registry=registry,
        store=store,
        actions=actions,
        clock=clock,
        resolver=resolver,
        max_conflict_retries=settings.max_conflict_retries,
    )
    lanes = LaneDispatcher(settings.lane_count)
    ingress = EventIngress(
        registry=registry,
        executor=executor,
        lanes=lanes,
        clock=clock,
        submit_timeout_seconds=settings.submit_timeout_seconds,
    )
    scheduler = TimeoutScheduler(
        registry=registry,
        store=store,
        ingress=ingress,
        executor=executor,
        clock=clock,
        interval_seconds=settings.sweep_interval_seconds,
    )

    logger.info(
        "Lifecycle engine built",
        extra={
            "object_types": registry.object_types(),
            "lanes": settings.lane_count,
            "action_workers": settings.action_workers,
            "persistent": persistent,
        },
    )
    return LifecycleEngine(
        registry=registry,
        store=store,
        action_records=action_records,
        clock=clock,
        actions=actions,
        executor=executor,
        lanes=lanes,
        ingress=ingress,
        scheduler=scheduler,
        collaborators={
            "resolver": resolver,
            "notifier": notifier,
            "task_service": task_service,
        },
    )
