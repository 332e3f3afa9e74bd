"""Durable timeout scheduling.

Wake times are not held in live timer objects: they are persisted on each
instance (`next_wake_at`) in the same write as the state change that armed them.
The scheduler only polls the store for due instances and submits a synthetic
timeout event carrying the `(state_entered_at, next_wake_at)` pair it read. The
transition executor re-checks that pair under the instance lock and ignores the
event if the instance moved on in the meantime.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from datetime import datetime

from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry
from crm_lifecycle.statemachine.errors import LifecycleError
from crm_lifecycle.statemachine.runtime.clock import Clock
from crm_lifecycle.statemachine.runtime.ingress import EventIngress
from crm_lifecycle.statemachine.runtime.instance import Event, Instance
from crm_lifecycle.statemachine.runtime.store import PersistenceStore
from crm_lifecycle.statemachine.runtime.transitions import Applied, TransitionExecutor

logger = logging.getLogger(__name__)


class TimeoutScheduler:
    def __init__(
        self,
        *,
        registry: DefinitionRegistry,
        store: PersistenceStore,
        ingress: EventIngress,
        executor: TransitionExecutor,
        clock: Clock,
        interval_seconds: float = 30.0,
    ) -> None:
        self._registry = registry
        self._store = store
        self._ingress = ingress
        self._executor = executor
        self._clock = clock
        self._interval = interval_seconds

        self._inflight_lock = threading.Lock()
        self._inflight: set[tuple[str, str, datetime]] = set()

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def _timeout_event(self, instance: Instance) -> Event | None:
        definition = self._registry.find(instance.object_type)
        state = definition.state(instance.state) if definition is not None else None
        if state is None or state.timeout is None:
            logger.warning(
                "Due instance has no timeout in its loaded definition; skipping",
                extra={
                    "object_type": instance.object_type,
                    "entity_id": instance.entity_id,
                    "state": instance.state,
                },
            )
            return None
        return Event(
            object_type=instance.object_type,
            entity_id=instance.entity_id,
            name=state.timeout.event,
            origin="timeout",
            timestamp=self._clock.now(),
            expected_state_entered_at=instance.state_entered_at,
            expected_wake_at=instance.next_wake_at,
        )

    def sweep(self, now: datetime | None = None) -> list[Future[Applied]]:
        """Submit a timeout event for every instance whose wake time has passed.

        Returns the futures of the submitted events; the sweep itself never waits
        on them.
        """

        now = now or self._clock.now()
        submitted: list[Future[Applied]] = []
        for instance in self._store.list_due(now):
            if instance.next_wake_at is None:
                continue
            token = (instance.object_type, instance.entity_id, instance.next_wake_at)
            with self._inflight_lock:
                if token in self._inflight:
                    continue
                self._inflight.add(token)
            event = self._timeout_event(instance)
            if event is None:
                self._release(token)
                continue
            try:
                future = self._ingress.fire_and_forget(event)
            except LifecycleError:
                self._release(token)
                logger.exception(
                    "Timeout event could not be submitted",
                    extra={"object_type": instance.object_type, "entity_id": instance.entity_id},
                )
                continue
            future.add_done_callback(lambda _f, t=token: self._release(t))
            submitted.append(future)
        if submitted:
            logger.info("Timeout sweep submitted events", extra={"count": len(submitted), "now": now})
        return submitted

    def _release(self, token: tuple[str, str, datetime]) -> None:
        with self._inflight_lock:
            self._inflight.discard(token)

    def recover(self, object_type: str | None = None) -> int:
        """Re-derive wake times from each instance's state and its timeout spec.

        Run at startup and after a definition reload. Returns how many instances
        had their timer changed.
        """

        changed = 0
        for instance in self._store.list(object_type):
            if instance.object_type not in self._registry:
                continue
            updated = self._executor.reconcile_timer(instance.object_type, instance.entity_id)
            if updated is not None and updated.version != instance.version:
                changed += 1
        logger.info("Timers recovered", extra={"object_type": object_type, "changed": changed})
        return changed

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="lifecycle-timeout-sweep", daemon=True
        )
        self._thread.start()
        logger.info("Timeout scheduler started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Timeout sweep failed")
            self._stop.wait(self._interval)
