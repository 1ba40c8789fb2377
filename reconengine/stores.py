"""Repository interfaces injected into the run controller and exception manager.

The in-memory implementations are thread-safe and back the CLI and tests;
other storage technologies plug in by implementing the same protocols.
"""
from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Protocol, Tuple

from .checks import ValidationRule
from .errors import ReconError
from .models import ExceptionRecord, ReconciliationRecord, Workspace, utcnow


class WorkspaceStore(Protocol):
    def add(self, workspace: Workspace) -> None: ...

    def get(self, workspace_id: str) -> Workspace: ...

    def list(self) -> List[Workspace]: ...

    def touch(self, workspace_id: str) -> None: ...

    def put_rule(self, workspace_id: str, rule: ValidationRule) -> None: ...

    def delete_rule(self, workspace_id: str, rule_id: str) -> None: ...

    def rules(self, workspace_id: str) -> Tuple[ValidationRule, ...]: ...


class ReconciliationStore(Protocol):
    def add(self, record: ReconciliationRecord) -> None: ...

    def finalize(self, record: ReconciliationRecord) -> None: ...

    def get(self, run_id: str) -> ReconciliationRecord: ...

    def history(self, workspace_id: str) -> List[ReconciliationRecord]: ...


class ExceptionStore(Protocol):
    def add_many(self, records: Iterable[ExceptionRecord]) -> None: ...

    def get(self, exception_id: str) -> ExceptionRecord: ...

    def for_run(self, run_id: str) -> List[ExceptionRecord]: ...

    def compare_and_set(self, expected_status: str, record: ExceptionRecord) -> bool: ...


class InMemoryWorkspaceStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workspaces: Dict[str, Workspace] = {}
        self._rules: Dict[str, Dict[str, ValidationRule]] = {}

    def add(self, workspace: Workspace) -> None:
        with self._lock:
            if workspace.identifier in self._workspaces:
                raise ReconError(f"Workspace {workspace.identifier} already exists")
            self._workspaces[workspace.identifier] = workspace
            self._rules[workspace.identifier] = {}

    def get(self, workspace_id: str) -> Workspace:
        with self._lock:
            return self._workspaces[workspace_id]

    def list(self) -> List[Workspace]:
        with self._lock:
            return list(self._workspaces.values())

    def touch(self, workspace_id: str) -> None:
        with self._lock:
            self._workspaces[workspace_id].last_updated = utcnow()

    def put_rule(self, workspace_id: str, rule: ValidationRule) -> None:
        with self._lock:
            self._rules[workspace_id][rule.identifier] = rule

    def delete_rule(self, workspace_id: str, rule_id: str) -> None:
        with self._lock:
            self._rules[workspace_id].pop(rule_id, None)

    def rules(self, workspace_id: str) -> Tuple[ValidationRule, ...]:
        with self._lock:
            return tuple(self._rules[workspace_id].values())


class InMemoryReconciliationStore:
    """Append-only run history; a finalized record is never replaced."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ReconciliationRecord] = {}

    def add(self, record: ReconciliationRecord) -> None:
        with self._lock:
            if record.identifier in self._records:
                raise ReconError(f"Reconciliation {record.identifier} already recorded")
            self._records[record.identifier] = record

    def finalize(self, record: ReconciliationRecord) -> None:
        with self._lock:
            current = self._records[record.identifier]
            if current.is_final:
                raise ReconError(f"Reconciliation {record.identifier} is already {current.status}")
            self._records[record.identifier] = replace(record, finished_at=record.finished_at or utcnow())

    def get(self, run_id: str) -> ReconciliationRecord:
        with self._lock:
            return self._records[run_id]

    def history(self, workspace_id: str) -> List[ReconciliationRecord]:
        with self._lock:
            records = [record for record in self._records.values() if record.workspace_id == workspace_id]
        return sorted(records, key=lambda record: record.executed_at)


class InMemoryExceptionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ExceptionRecord] = {}

    def add_many(self, records: Iterable[ExceptionRecord]) -> None:
        with self._lock:
            for record in records:
                self._records[record.identifier] = record

    def get(self, exception_id: str) -> ExceptionRecord:
        with self._lock:
            return self._records[exception_id]

    def for_run(self, run_id: str) -> List[ExceptionRecord]:
        with self._lock:
            return [record for record in self._records.values() if record.run_id == run_id]

    def compare_and_set(self, expected_status: str, record: ExceptionRecord) -> bool:
        with self._lock:
            current = self._records.get(record.identifier)
            if current is None or current.status != expected_status:
                return False
            self._records[record.identifier] = record
            return True
