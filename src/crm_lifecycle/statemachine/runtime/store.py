"""Persistence for lifecycle instances and action execution records.

Instances are written with per-row optimistic concurrency: `commit` succeeds
only if the stored version still equals the version the writer read. The JSON
file stores follow the same load/modify/save-under-lock approach for a
single-process deployment; a database-backed store only has to honour the same
contract.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from crm_lifecycle.statemachine.errors import (
    InstanceExistsError,
    InstanceNotFoundError,
    TransitionConflict,
)
from crm_lifecycle.statemachine.runtime.instance import ActionExecutionRecord, Instance

logger = logging.getLogger(__name__)

InstanceKey = tuple[str, str]


class PersistenceStore(Protocol):
    """Versioned get/set of instance state."""

    def get(self, object_type: str, entity_id: str) -> Instance | None: ...

    def create(self, instance: Instance) -> Instance: ...

    def commit(self, instance: Instance, *, expected_version: int) -> Instance: ...

    def delete(self, object_type: str, entity_id: str) -> bool: ...

    def list(self, object_type: str | None = None) -> list[Instance]: ...

    def list_due(self, now: datetime) -> list[Instance]: ...


class ActionRecordStore(Protocol):
    def add(self, record: ActionExecutionRecord) -> ActionExecutionRecord: ...

    def get(self, idempotency_key: str) -> ActionExecutionRecord | None: ...

    def update(self, idempotency_key: str, **updates: object) -> ActionExecutionRecord: ...

    def list(
        self, object_type: str | None = None, entity_id: str | None = None
    ) -> list[ActionExecutionRecord]: ...

    def list_pending(self) -> list[ActionExecutionRecord]: ...


def _due(instances: Iterable[Instance], now: datetime) -> list[Instance]:
    due = [i for i in instances if i.next_wake_at is not None and i.next_wake_at <= now]
    return sorted(due, key=lambda i: (i.next_wake_at, i.object_type, i.entity_id))


def _apply_commit(
    rows: dict[InstanceKey, Instance], instance: Instance, expected_version: int
) -> Instance:
    current = rows.get(instance.key)
    if current is None:
        raise InstanceNotFoundError(instance.object_type, instance.entity_id)
    if current.version != expected_version:
        raise TransitionConflict(
            instance.object_type, instance.entity_id, expected_version, current.version
        )
    if instance.version != expected_version + 1:
        raise ValueError(
            f"Committed version must be {expected_version + 1}, got {instance.version}"
        )
    rows[instance.key] = instance
    return instance


class InMemoryInstanceStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[InstanceKey, Instance] = {}

    def get(self, object_type: str, entity_id: str) -> Instance | None:
        with self._lock:
            row = self._rows.get((object_type, entity_id))
            return None if row is None else row.model_copy(deep=True)

    def create(self, instance: Instance) -> Instance:
        with self._lock:
            if instance.key in self._rows:
                raise InstanceExistsError(instance.object_type, instance.entity_id)
            self._rows[instance.key] = instance.model_copy(deep=True)
            return instance

    def commit(self, instance: Instance, *, expected_version: int) -> Instance:
        with self._lock:
            _apply_commit(self._rows, instance.model_copy(deep=True), expected_version)
            return instance

    def delete(self, object_type: str, entity_id: str) -> bool:
        with self._lock:
            return self._rows.pop((object_type, entity_id), None) is not None

    def list(self, object_type: str | None = None) -> list[Instance]:
        with self._lock:
            rows = [r.model_copy(deep=True) for r in self._rows.values()]
        if object_type is not None:
            rows = [r for r in rows if r.object_type == object_type]
        return sorted(rows, key=lambda r: r.key)

    def list_due(self, now: datetime) -> list[Instance]:
        with self._lock:
            return [r.model_copy(deep=True) for r in _due(self._rows.values(), now)]


@dataclass
class JsonInstanceStore:
    """Instances persisted to a single JSON file."""

    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[InstanceKey, Instance]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Instance state file is not valid JSON", extra={"path": str(self.path)})
            raise
        if not isinstance(raw, list):
            return {}
        rows = [Instance.model_validate(item) for item in raw]
        return {r.key: r for r in rows}

    def _save_unlocked(self, rows: dict[InstanceKey, Instance]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [rows[k].model_dump(mode="json") for k in sorted(rows)]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def get(self, object_type: str, entity_id: str) -> Instance | None:
        with self._lock:
            return self._load_unlocked().get((object_type, entity_id))

    def create(self, instance: Instance) -> Instance:
        with self._lock:
            rows = self._load_unlocked()
            if instance.key in rows:
                raise InstanceExistsError(instance.object_type, instance.entity_id)
            rows[instance.key] = instance
            self._save_unlocked(rows)
            return instance

    def commit(self, instance: Instance, *, expected_version: int) -> Instance:
        with self._lock:
            rows = self._load_unlocked()
            _apply_commit(rows, instance, expected_version)
            self._save_unlocked(rows)
            return instance

    def delete(self, object_type: str, entity_id: str) -> bool:
        with self._lock:
            rows = self._load_unlocked()
            if rows.pop((object_type, entity_id), None) is None:
                return False
            self._save_unlocked(rows)
            return True

    def list(self, object_type: str | None = None) -> list[Instance]:
        with self._lock:
            rows = list(self._load_unlocked().values())
        if object_type is not None:
            rows = [r for r in rows if r.object_type == object_type]
        return sorted(rows, key=lambda r: r.key)

    def list_due(self, now: datetime) -> list[Instance]:
        with self._lock:
            return _due(self._load_unlocked().values(), now)


def _select(
    records: Iterable[ActionExecutionRecord], object_type: str | None, entity_id: str | None
) -> list[ActionExecutionRecord]:
    selected = [
        r
        for r in records
        if (object_type is None or r.object_type == object_type)
        and (entity_id is None or r.entity_id == entity_id)
    ]
    return sorted(selected, key=lambda r: (r.object_type, r.entity_id, r.transition_seq, r.action_index))


class InMemoryActionRecordStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, ActionExecutionRecord] = {}

    def add(self, record: ActionExecutionRecord) -> ActionExecutionRecord:
        """Insert a record; an existing record with the same key wins."""

        with self._lock:
            existing = self._records.get(record.idempotency_key)
            if existing is not None:
                return existing
            self._records[record.idempotency_key] = record
            return record

    def get(self, idempotency_key: str) -> ActionExecutionRecord | None:
        with self._lock:
            return self._records.get(idempotency_key)

    def update(self, idempotency_key: str, **updates: object) -> ActionExecutionRecord:
        with self._lock:
            current = self._records.get(idempotency_key)
            if current is None:
                raise KeyError(idempotency_key)
            merged = current.model_copy(update=updates)
            self._records[idempotency_key] = merged
            return merged

    def list(
        self, object_type: str | None = None, entity_id: str | None = None
    ) -> list[ActionExecutionRecord]:
        with self._lock:
            return _select(list(self._records.values()), object_type, entity_id)

    def list_pending(self) -> list[ActionExecutionRecord]:
        with self._lock:
            return _select(
                [r for r in self._records.values() if r.status == "pending"], None, None
            )


@dataclass
class JsonActionRecordStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, ActionExecutionRecord]:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.error("Action record file is not valid JSON", extra={"path": str(self.path)})
            raise
        if not isinstance(raw, list):
            return {}
        records = [ActionExecutionRecord.model_validate(item) for item in raw]
        return {r.idempotency_key: r for r in records}

    def _save_unlocked(self, records: dict[str, ActionExecutionRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in _select(records.values(), None, None)]
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
        tmp.replace(self.path)

    def add(self, record: ActionExecutionRecord) -> ActionExecutionRecord:
        with self._lock:
            records = self._load_unlocked()
            existing = records.get(record.idempotency_key)
            if existing is not None:
                return existing
            records[record.idempotency_key] = record
            self._save_unlocked(records)
            return record

    def get(self, idempotency_key: str) -> ActionExecutionRecord | None:
        with self._lock:
            return self._load_unlocked().get(idempotency_key)

    def update(self, idempotency_key: str, **updates: object) -> ActionExecutionRecord:
        with self._lock:
            records = self._load_unlocked()
            current = records.get(idempotency_key)
            if current is None:
                raise KeyError(idempotency_key)
            merged = current.model_copy(update=updates)
            records[idempotency_key] = merged
            self._save_unlocked(records)
            return merged

    def list(
        self, object_type: str | None = None, entity_id: str | None = None
    ) -> list[ActionExecutionRecord]:
        with self._lock:
            return _select(self._load_unlocked().values(), object_type, entity_id)

    def list_pending(self) -> list[ActionExecutionRecord]:
        with self._lock:
            return [r for r in _select(self._load_unlocked().values(), None, None) if r.status == "pending"]
