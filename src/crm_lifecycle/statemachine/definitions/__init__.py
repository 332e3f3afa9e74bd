"""Declarative state machine definitions: format, compilation and registry."""

from crm_lifecycle.statemachine.definitions.compiler import compile_definition
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
from crm_lifecycle.statemachine.definitions.registry import DefinitionRegistry

__all__ = [
    "RECORD_UPDATED",
    "ActionSpec",
    "CustomAction",
    "DefinitionRegistry",
    "EmailAlert",
    "FieldUpdate",
    "State",
    "StateMachineDefinition",
    "TaskCreation",
    "Timeout",
    "Transition",
    "compile_definition",
]
