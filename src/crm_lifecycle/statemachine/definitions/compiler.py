"""Semantic validation and compilation of declarative definitions.

All problems found in a definition are collected and reported together in one
`DefinitionError`; a definition is either fully compiled or refused.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from crm_lifecycle.statemachine.collaborators import CustomActionRegistry
from crm_lifecycle.statemachine.definitions.model import (
    RECORD_UPDATED,
    ActionSpec,
    CustomAction,
    EmailAlert,
    FieldUpdate,
    State,
    StateMachineDefinition,
    TaskCreation,
    Timeout,
    Transition,
)
from crm_lifecycle.statemachine.definitions.schema import (
    ActionSpecModel,
    CustomActionSpec,
    DefinitionSpec,
    EmailAlertSpec,
    FieldUpdateSpec,
    StateSpec,
    TaskCreationSpec,
)
from crm_lifecycle.statemachine.errors import DefinitionError, ExpressionSyntaxError
from crm_lifecycle.statemachine.expressions.ast import (
    Arithmetic,
    Expression,
    FieldRef,
    FunctionCall,
    Literal,
)
from crm_lifecycle.statemachine.expressions.parser import parse_duration, parse_expression

_PLACEHOLDER_ONLY_RE = re.compile(r"^\$\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}$")
_CALL_RE = re.compile(r"^[A-Za-z_]+\s*\(.*\)")


def _format_validation_error(err: ValidationError) -> list[str]:
    problems: list[str] = []
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", ()))
        problems.append(f"{loc}: {item.get('msg')}" if loc else str(item.get("msg")))
    return problems


def _literal(value: object) -> Expression:
    return Expression(source=repr(value), root=Literal(value))


class _Compiler:
    def __init__(self, spec: DefinitionSpec, handlers: CustomActionRegistry) -> None:
        self._spec = spec
        self._handlers = handlers
        self._problems: list[str] = []
        self._state_names = {s.name for s in spec.states}
        self._global_guards: dict[str, Expression] = {}

    def _parse(self, source: str, where: str) -> Expression | None:
        try:
            return parse_expression(source)
        except ExpressionSyntaxError as e:
            self._problems.append(f"{where}: {e.problems[0]}")
            return None

    def _guard(self, source: str | None, where: str) -> Expression | None:
        if source is None or not source.strip():
            return None
        named = self._global_guards.get(source.strip())
        if named is not None:
            return named
        return self._parse(source, where)

    def _value_expression(self, spec: FieldUpdateSpec, where: str) -> Expression | None:
        if spec.formula is not None:
            return self._parse(spec.formula, where)
        value = spec.value
        if isinstance(value, str):
            placeholder = _PLACEHOLDER_ONLY_RE.match(value.strip())
            if placeholder is not None:
                path = tuple(placeholder.group(1).split("."))
                return Expression(source=value, root=FieldRef(path))
            if _CALL_RE.match(value.strip()):
                return self._parse(value, where)
        return _literal(value)

    def _action(self, spec: Any, where: str) -> ActionSpec | None:
        if isinstance(spec, FieldUpdateSpec):
            expr = self._value_expression(spec, where)
            return None if expr is None else FieldUpdate(field=spec.field, value=expr)
        if isinstance(spec, EmailAlertSpec):
            return EmailAlert(template=spec.template, recipients=tuple(spec.recipients))
        if isinstance(spec, TaskCreationSpec):
            due: Expression | None = None
            if spec.due_date is not None:
                due = self._parse(spec.due_date, where)
                if due is None:
                    return None
            elif spec.due_offset is not None:
                try:
                    delta = parse_duration(spec.due_offset.duration, spec.due_offset.unit)
                except ValueError as e:
                    self._problems.append(f"{where}: {e}")
                    return None
                due = Expression(
                    source=f"NOW() + {spec.due_offset.duration:g} {spec.due_offset.unit}",
                    root=Arithmetic("+", FunctionCall("NOW", ()), Literal(delta)),
                )
            return TaskCreation(
                subject=spec.subject, assignee=spec.assignee, due=due, priority=spec.priority
            )
        if isinstance(spec, CustomActionSpec):
            handler = self._handlers.resolve(spec.handler)
            if handler is None:
                self._problems.append(f"{where}: unknown custom action handler {spec.handler!r}")
                return None
            return CustomAction(
                handler_name=spec.handler,
                params=MappingProxyType(dict(spec.parameters)),
                handler=handler,
            )
        self._problems.append(f"{where}: unsupported action {spec!r}")
        return None

    def _actions(self, specs: list[ActionSpecModel], where: str) -> tuple[ActionSpec, ...]:
        compiled: list[ActionSpec] = []
        for idx, spec in enumerate(specs):
            action = self._action(spec, f"{where}.actions[{idx}]")
            if action is not None:
                compiled.append(action)
        return tuple(compiled)

    def _check_event(self, event: str, where: str) -> None:
        if self._spec.events and event not in self._spec.events and event != RECORD_UPDATED:
            self._problems.append(f"{where}: event {event!r} is not declared in 'events'")

    def _state(self, spec: StateSpec) -> State:
        where = f"states.{spec.name}"
        transitions: list[Transition] = []
        for idx, t in enumerate(spec.transitions):
            t_where = f"{where}.transitions[{idx}]"
            if t.to not in self._state_names:
                self._problems.append(f"{t_where}: target state {t.to!r} does not exist")
            self._check_event(t.event, t_where)
            transitions.append(
                Transition(
                    event=t.event,
                    target=t.to,
                    guard=self._guard(t.guard, f"{t_where}.guard"),
                    actions=self._actions(t.actions, t_where),
                )
            )

        timeout: Timeout | None = None
        if spec.timeout is not None:
            to_where = f"{where}.timeout"
            if spec.is_final:
                self._problems.append(f"{to_where}: final states cannot declare a timeout")
            if spec.timeout.to is not None and spec.timeout.to not in self._state_names:
                self._problems.append(
                    f"{to_where}: target state {spec.timeout.to!r} does not exist"
                )
            self._check_event(spec.timeout.event, to_where)
            try:
                duration = parse_duration(spec.timeout.duration, spec.timeout.unit)
            except ValueError as e:
                self._problems.append(f"{to_where}: {e}")
                duration = None
            condition = self._guard(spec.timeout.condition, f"{to_where}.condition")
            actions = self._actions(spec.timeout.actions, to_where)
            if duration is not None:
                timeout = Timeout(
                    duration=duration,
                    event=spec.timeout.event,
                    target=spec.timeout.to,
                    condition=condition,
                    actions=actions,
                )

        return State(
            name=spec.name,
            label=spec.label or spec.name,
            is_final=spec.is_final,
            on_entry=self._actions(spec.on_entry, f"{where}.onEntry"),
            transitions=tuple(transitions),
            timeout=timeout,
        )

    def compile(self) -> StateMachineDefinition:
        spec = self._spec

        seen: set[str] = set()
        for s in spec.states:
            if s.name in seen:
                self._problems.append(f"duplicate state name {s.name!r}")
            seen.add(s.name)

        marked = [s.name for s in spec.states if s.initial]
        initial_candidates = set(marked)
        if spec.initial is not None:
            initial_candidates.add(spec.initial)
        if not initial_candidates:
            self._problems.append("no initial state declared")
        elif len(initial_candidates) > 1 or len(marked) > 1:
            self._problems.append(
                f"more than one initial state declared: {sorted(initial_candidates)}"
            )
        initial = next(iter(initial_candidates)) if len(initial_candidates) == 1 else ""
        if initial and initial not in self._state_names:
            self._problems.append(f"initial state {initial!r} does not exist")

        for name, source in spec.global_guards.items():
            parsed = self._parse(source, f"globalGuards.{name}")
            if parsed is not None:
                self._global_guards[name] = parsed

        states = {s.name: self._state(s) for s in spec.states}

        if self._problems:
            raise DefinitionError(spec.object_type, self._problems)

        events = {RECORD_UPDATED, *spec.events}
        for state in states.values():
            events.update(t.event for t in state.transitions)
            if state.timeout is not None:
                events.add(state.timeout.event)

        return StateMachineDefinition(
            name=spec.name,
            object_type=spec.object_type,
            initial=initial,
            states=MappingProxyType(states),
            events=frozenset(events),
            label=spec.label or spec.name,
            event_descriptions=MappingProxyType(dict(spec.events)),
        )


def compile_definition(
    raw: Mapping[str, Any] | DefinitionSpec, handlers: CustomActionRegistry
) -> StateMachineDefinition:
    """Validate and compile a declarative definition.

    Raises:
        DefinitionError: If the definition is structurally or semantically invalid.
    """

    if isinstance(raw, DefinitionSpec):
        spec = raw
    else:
        try:
            spec = DefinitionSpec.model_validate(raw)
        except ValidationError as e:
            object_type = raw.get("object") if isinstance(raw, Mapping) else None
            raise DefinitionError(str(object_type or "<unknown>"), _format_validation_error(e)) from e
    return _Compiler(spec, handlers).compile()
