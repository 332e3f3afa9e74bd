"""Pydantic models for the declarative state machine format.

This is the wire/file shape of a definition (JSON, or a dict built in code).
It is validated structurally here and semantically in `compiler`.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _SpecModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class DurationSpec(_SpecModel):
    duration: float = Field(gt=0)
    unit: str = Field(min_length=1)


class FieldUpdateSpec(_SpecModel):
    type: Literal["fieldUpdate"]
    field: str = Field(min_length=1)
    value: Any = None
    formula: str | None = None

    @model_validator(mode="after")
    def _value_or_formula(self) -> FieldUpdateSpec:
        has_value = "value" in self.model_fields_set
        if has_value == (self.formula is not None):
            raise ValueError("fieldUpdate requires exactly one of 'value' or 'formula'")
        return self


class EmailAlertSpec(_SpecModel):
    type: Literal["emailAlert"]
    template: str = Field(min_length=1)
    recipients: list[str] = Field(min_length=1)


class TaskCreationSpec(_SpecModel):
    type: Literal["taskCreation"]
    subject: str = Field(min_length=1)
    assignee: str | None = None
    due_date: str | None = Field(default=None, alias="dueDate")
    due_offset: DurationSpec | None = Field(default=None, alias="dueOffset")
    priority: str | None = None

    @model_validator(mode="after")
    def _single_due(self) -> TaskCreationSpec:
        if self.due_date is not None and self.due_offset is not None:
            raise ValueError("taskCreation accepts 'dueDate' or 'dueOffset', not both")
        return self


class CustomActionSpec(_SpecModel):
    type: Literal["customAction"]
    handler: str = Field(min_length=1, alias="handlerName")
    # Both spellings are accepted: `handler`/`parameters` or `handlerName`/`params`.
    parameters: dict[str, Any] = Field(default_factory=dict, alias="params")


ActionSpecModel = Annotated[
    FieldUpdateSpec | EmailAlertSpec | TaskCreationSpec | CustomActionSpec,
    Field(discriminator="type"),
]


class TransitionSpec(_SpecModel):
    to: str = Field(min_length=1)
    event: str = Field(min_length=1)
    guard: str | None = None
    description: str | None = None
    actions: list[ActionSpecModel] = Field(default_factory=list)


class TimeoutSpec(_SpecModel):
    duration: float = Field(gt=0)
    unit: str = Field(min_length=1)
    event: str = Field(min_length=1)
    to: str | None = None
    condition: str | None = None
    actions: list[ActionSpecModel] = Field(default_factory=list)


class StateSpec(_SpecModel):
    name: str = Field(min_length=1)
    label: str | None = None
    description: str | None = None
    type: Literal["normal", "final"] | None = None
    final: bool = False
    initial: bool = False
    on_entry: list[ActionSpecModel] = Field(default_factory=list, alias="onEntry")
    transitions: list[TransitionSpec] = Field(default_factory=list)
    timeout: TimeoutSpec | None = None

    @property
    def is_final(self) -> bool:
        return self.final or self.type == "final"


class DefinitionSpec(_SpecModel):
    name: str = Field(min_length=1)
    label: str | None = None
    object_type: str = Field(min_length=1, alias="object")
    description: str | None = None
    initial: str | None = None
    states: list[StateSpec] = Field(min_length=1)
    global_guards: dict[str, str] = Field(default_factory=dict, alias="globalGuards")
    events: dict[str, str] = Field(default_factory=dict)
