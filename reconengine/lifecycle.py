"""Lifecycle of exception records: open -> resolved, open -> in-suspense -> resolved."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Dict, List, Optional

from .errors import ReconError, ResolutionError
from .models import (
    EXCEPTION_OPEN,
    EXCEPTION_RESOLVED,
    EXCEPTION_SUSPENDED,
    ExceptionRecord,
)
from .stores import ExceptionStore, ReconciliationStore

LOGGER = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    EXCEPTION_OPEN: {EXCEPTION_RESOLVED, EXCEPTION_SUSPENDED},
    EXCEPTION_SUSPENDED: {EXCEPTION_RESOLVED},
    EXCEPTION_RESOLVED: set(),
}


class ExceptionManager:
    """Applies user transitions to exception records with compare-and-set."""

    def __init__(self, exceptions: ExceptionStore, reconciliations: ReconciliationStore) -> None:
        self._exceptions = exceptions
        self._reconciliations = reconciliations

    def _load(self, exception_id: str) -> ExceptionRecord:
        try:
            return self._exceptions.get(exception_id)
        except KeyError:
            raise ResolutionError(f"Unknown exception {exception_id}", record_id=exception_id) from None

    def _transition(self, exception_id: str, target: str, *, notes: Optional[str], actor: str) -> ExceptionRecord:
        current = self._load(exception_id)
        if target not in ALLOWED_TRANSITIONS[current.status]:
            raise ResolutionError(
                f"Exception {exception_id} cannot move from {current.status} to {target}",
                record_id=exception_id,
            )
        updated = current.transition(target, notes=notes, actor=actor)
        if not self._exceptions.compare_and_set(current.status, updated):
            raise ResolutionError(
                f"Exception {exception_id} was modified concurrently; reload and retry",
                record_id=exception_id,
            )
        LOGGER.info("Exception %s moved %s -> %s by %s", exception_id, current.status, target, actor)
        return updated

    def resolve(self, exception_id: str, notes: str, *, actor: str) -> ExceptionRecord:
        if notes is None or not notes.strip():
            raise ResolutionError(f"Resolving exception {exception_id} requires notes", record_id=exception_id)
        return self._transition(exception_id, EXCEPTION_RESOLVED, notes=notes.strip(), actor=actor)

    def suspend(self, exception_id: str, *, actor: str, notes: Optional[str] = None) -> ExceptionRecord:
        cleaned = notes.strip() if notes and notes.strip() else None
        return self._transition(exception_id, EXCEPTION_SUSPENDED, notes=cleaned, actor=actor)

    def list_exceptions(self, run_id: str, status: Optional[str] = None) -> List[ExceptionRecord]:
        """Exceptions of a finalized run, optionally filtered by status."""

        try:
            record = self._reconciliations.get(run_id)
        except KeyError:
            raise ReconError(f"Unknown reconciliation {run_id}") from None
        if not record.is_final:
            return []
        return [item for item in self._exceptions.for_run(run_id) if status is None or item.status == status]

    def breakdown(self, run_id: str) -> Dict[str, int]:
        return dict(Counter(item.category for item in self.list_exceptions(run_id)))
