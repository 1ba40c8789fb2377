from dataclasses import replace

import pytest

from reconengine.errors import ReconError, ResolutionError
from reconengine.lifecycle import ExceptionManager
from reconengine.models import (
    EXCEPTION_OPEN,
    EXCEPTION_RESOLVED,
    EXCEPTION_SUSPENDED,
    RUN_EXCEPTION,
    ExceptionRecord,
    ReconciliationRecord,
    utcnow,
)
from reconengine.stores import InMemoryExceptionStore, InMemoryReconciliationStore


def _exception(identifier: str, category: str = "mismatch") -> ExceptionRecord:
    return ExceptionRecord(
        identifier=identifier,
        run_id="run-1",
        record_id="source1:1",
        rule="Field mismatch: amount",
        source1_value="100",
        source2_value="105",
        category=category,
    )


@pytest.fixture
def stores():
    reconciliations = InMemoryReconciliationStore()
    exceptions = InMemoryExceptionStore()
    record = ReconciliationRecord(identifier="run-1", workspace_id="ws", executed_at=utcnow())
    reconciliations.add(record)
    exceptions.add_many([_exception("run-1-00001"), _exception("run-1-00002", "unmatched")])
    reconciliations.finalize(replace(record, status=RUN_EXCEPTION))
    return reconciliations, exceptions


@pytest.fixture
def manager(stores):
    reconciliations, exceptions = stores
    return ExceptionManager(exceptions, reconciliations)


def test_resolve_records_notes_and_actor(manager):
    resolved = manager.resolve("run-1-00001", "  Booked late by custodian ", actor="ops@example.com")

    assert resolved.status == EXCEPTION_RESOLVED
    assert resolved.notes == "Booked late by custodian"
    assert resolved.actor == "ops@example.com"
    assert resolved.updated_at is not None
    assert manager.list_exceptions("run-1", EXCEPTION_RESOLVED) == [resolved]


def test_resolve_requires_notes(manager):
    with pytest.raises(ResolutionError):
        manager.resolve("run-1-00001", "   ", actor="ops")
    assert manager.list_exceptions("run-1", EXCEPTION_OPEN)[0].identifier == "run-1-00001"


def test_resolved_exception_is_terminal(manager):
    manager.resolve("run-1-00001", "fixed", actor="ops")

    with pytest.raises(ResolutionError):
        manager.resolve("run-1-00001", "again", actor="ops")
    with pytest.raises(ResolutionError):
        manager.suspend("run-1-00001", actor="ops")


def test_suspended_exception_can_be_resolved(manager):
    suspended = manager.suspend("run-1-00002", actor="ops", notes="waiting on dealer")
    assert suspended.status == EXCEPTION_SUSPENDED

    with pytest.raises(ResolutionError):
        manager.suspend("run-1-00002", actor="ops")

    resolved = manager.resolve("run-1-00002", "dealer confirmed", actor="lead")
    assert resolved.status == EXCEPTION_RESOLVED
    assert resolved.actor == "lead"


def test_unknown_exception_is_rejected(manager):
    with pytest.raises(ResolutionError):
        manager.resolve("run-1-99999", "notes", actor="ops")


def test_concurrent_update_is_rejected(stores):
    reconciliations, exceptions = stores

    class _StaleStore(InMemoryExceptionStore):
        def compare_and_set(self, expected_status, record):
            return False

    stale = _StaleStore()
    stale.add_many(exceptions.for_run("run-1"))
    manager = ExceptionManager(stale, reconciliations)

    with pytest.raises(ResolutionError):
        manager.resolve("run-1-00001", "fixed", actor="ops")
    assert stale.get("run-1-00001").status == EXCEPTION_OPEN


def test_pending_run_exceptions_are_hidden():
    reconciliations = InMemoryReconciliationStore()
    exceptions = InMemoryExceptionStore()
    reconciliations.add(ReconciliationRecord(identifier="run-2", workspace_id="ws", executed_at=utcnow()))
    exceptions.add_many([replace(_exception("run-2-00001"), run_id="run-2")])
    manager = ExceptionManager(exceptions, reconciliations)

    assert manager.list_exceptions("run-2") == []
    with pytest.raises(ReconError):
        manager.list_exceptions("missing")


def test_breakdown_counts_by_category(manager):
    assert manager.breakdown("run-1") == {"mismatch": 1, "unmatched": 1}
