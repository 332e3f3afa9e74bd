"""Instance runtime: stores, scheduling, transitions, actions and ingress."""

from crm_lifecycle.statemachine.runtime.actions import ActionExecutor, RetryPolicy
from crm_lifecycle.statemachine.runtime.clock import Clock, ManualClock, SystemClock
from crm_lifecycle.statemachine.runtime.ingress import EventIngress
from crm_lifecycle.statemachine.runtime.instance import (
    ActionExecutionRecord,
    Event,
    Instance,
    Outcome,
    TransitionResult,
)
from crm_lifecycle.statemachine.runtime.lanes import LaneDispatcher
from crm_lifecycle.statemachine.runtime.scheduler import TimeoutScheduler
from crm_lifecycle.statemachine.runtime.store import (
    InMemoryActionRecordStore,
    InMemoryInstanceStore,
    JsonActionRecordStore,
    JsonInstanceStore,
    PersistenceStore,
)
from crm_lifecycle.statemachine.runtime.transitions import TransitionExecutor

__all__ = [
    "ActionExecutionRecord",
    "ActionExecutor",
    "Clock",
    "Event",
    "EventIngress",
    "InMemoryActionRecordStore",
    "InMemoryInstanceStore",
    "Instance",
    "JsonActionRecordStore",
    "JsonInstanceStore",
    "LaneDispatcher",
    "ManualClock",
    "Outcome",
    "PersistenceStore",
    "RetryPolicy",
    "SystemClock",
    "TimeoutScheduler",
    "TransitionExecutor",
    "TransitionResult",
]
