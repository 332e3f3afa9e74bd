"""Compiled, immutable state machine definitions.

These are produced by `compile_definition` from the declarative format and are
never mutated afterwards; hot reload swaps whole definitions.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from crm_lifecycle.statemachine.collaborators import CustomActionHandler
from crm_lifecycle.statemachine.expressions.ast import Expression

# Declared for every object type; CRUD hooks report field changes with it.
RECORD_UPDATED = "record_updated"


@dataclass(frozen=True, slots=True)
class FieldUpdate:
    field: str
    value: Expression

    is_external = False


@dataclass(frozen=True, slots=True)
class EmailAlert:
    template: str
    recipients: tuple[str, ...]

    is_external = True


@dataclass(frozen=True, slots=True)
class TaskCreation:
    subject: str
    assignee: str | None
    due: Expression | None
    priority: str | None

    is_external = True


@dataclass(frozen=True, slots=True)
class CustomAction:
    handler_name: str
    params: Mapping[str, object]
    handler: CustomActionHandler = field(compare=False, repr=False)

    is_external = True


ActionSpec = FieldUpdate | EmailAlert | TaskCreation | CustomAction


@dataclass(frozen=True, slots=True)
class Transition:
    event: str
    target: str
    guard: Expression | None = None
    actions: tuple[ActionSpec, ...] = ()


@dataclass(frozen=True, slots=True)
class Timeout:
    duration: timedelta
    event: str
    target: str | None = None
    condition: Expression | None = None
    actions: tuple[ActionSpec, ...] = ()


@dataclass(frozen=True, slots=True)
class State:
    name: str
    label: str
    is_final: bool = False
    on_entry: tuple[ActionSpec, ...] = ()
    transitions: tuple[Transition, ...] = ()
    timeout: Timeout | None = None

    def transitions_for(self, event: str) -> tuple[Transition, ...]:
        """Transitions triggered by `event`, in declaration order."""

        return tuple(t for t in self.transitions if t.event == event)


@dataclass(frozen=True, slots=True)
class StateMachineDefinition:
    name: str
    object_type: str
    initial: str
    states: Mapping[str, State]
    events: frozenset[str]
    label: str = ""
    event_descriptions: Mapping[str, str] = field(default_factory=dict)

    def state(self, name: str) -> State | None:
        return self.states.get(name)

    @property
    def initial_state(self) -> State:
        return self.states[self.initial]

    def declares_event(self, event: str) -> bool:
        return event in self.events

    def timeout_states(self) -> list[State]:
        return [s for s in self.states.values() if s.timeout is not None]
