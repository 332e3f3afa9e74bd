"""Registry of loaded state machine definitions, one per object type.

Reads are lock-free: the registry's map is never mutated in place. Loading or
hot-reloading a definition builds a new map and swaps the reference, so a
transition that fetched a definition keeps working against that exact
snapshot until it finishes.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Mapping
from importlib import resources
from pathlib import Path
from typing import Any

from crm_lifecycle.statemachine.collaborators import CustomActionRegistry
from crm_lifecycle.statemachine.definitions.compiler import compile_definition
from crm_lifecycle.statemachine.definitions.model import StateMachineDefinition
from crm_lifecycle.statemachine.errors import DefinitionError, UnknownObjectTypeError

logger = logging.getLogger(__name__)

BUILTIN_DEFINITIONS: tuple[str, ...] = ("case_lifecycle.json",)


def read_definition_file(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise DefinitionError(path.name, f"not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise DefinitionError(path.name, "definition file must contain a JSON object")
    return raw


class DefinitionRegistry:
    """Loads, validates and serves immutable definitions."""

    def __init__(self, handlers: CustomActionRegistry | None = None) -> None:
        self._handlers = handlers or CustomActionRegistry()
        self._definitions: Mapping[str, StateMachineDefinition] = {}
        self._write_lock = threading.Lock()

    @property
    def handlers(self) -> CustomActionRegistry:
        return self._handlers

    def _swap_in(self, definition: StateMachineDefinition) -> None:
        with self._write_lock:
            updated = dict(self._definitions)
            updated[definition.object_type] = definition
            self._definitions = updated

    def register(self, raw: Mapping[str, Any]) -> StateMachineDefinition:
        """Compile and register a definition for a new object type.

        Raises:
            DefinitionError: If the definition is invalid or the object type is already served.
        """

        definition = compile_definition(raw, self._handlers)
        if definition.object_type in self._definitions:
            raise DefinitionError(
                definition.object_type,
                "a definition is already loaded for this object type; use reload()",
            )
        self._swap_in(definition)
        logger.info(
            "State machine definition loaded",
            extra={
                "object_type": definition.object_type,
                "definition": definition.name,
                "states": len(definition.states),
            },
        )
        return definition

    def reload(self, raw: Mapping[str, Any]) -> StateMachineDefinition:
        """Atomically replace (or add) the definition for an object type.

        The previous definition keeps serving if the new one fails validation.
        """

        definition = compile_definition(raw, self._handlers)
        previous = self._definitions.get(definition.object_type)
        self._swap_in(definition)
        logger.info(
            "State machine definition reloaded",
            extra={
                "object_type": definition.object_type,
                "definition": definition.name,
                "replaced": previous is not None,
            },
        )
        return definition

    def unregister(self, object_type: str) -> None:
        with self._write_lock:
            updated = dict(self._definitions)
            updated.pop(object_type, None)
            self._definitions = updated

    def load_file(self, path: Path, *, replace: bool = False) -> StateMachineDefinition:
        raw = read_definition_file(path)
        return self.reload(raw) if replace else self.register(raw)

    def load_directory(self, directory: Path, *, replace: bool = False) -> list[StateMachineDefinition]:
        """Load every `*.json` definition in a directory (sorted by filename)."""

        return [
            self.load_file(path, replace=replace) for path in sorted(directory.glob("*.json"))
        ]

    def load_path(self, path: Path, *, replace: bool = False) -> list[StateMachineDefinition]:
        if path.is_dir():
            return self.load_directory(path, replace=replace)
        return [self.load_file(path, replace=replace)]

    def load_builtin(self) -> list[StateMachineDefinition]:
        """Load the definitions shipped with the package (the support case lifecycle)."""

        loaded: list[StateMachineDefinition] = []
        package = resources.files("crm_lifecycle.statemachine.definitions")
        for name in BUILTIN_DEFINITIONS:
            raw = json.loads(package.joinpath(name).read_text(encoding="utf-8"))
            loaded.append(self.reload(raw))
        return loaded

    def get(self, object_type: str) -> StateMachineDefinition:
        definition = self._definitions.get(object_type)
        if definition is None:
            raise UnknownObjectTypeError(object_type)
        return definition

    def find(self, object_type: str) -> StateMachineDefinition | None:
        return self._definitions.get(object_type)

    def object_types(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, object_type: object) -> bool:
        return object_type in self._definitions
