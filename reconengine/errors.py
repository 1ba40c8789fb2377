"""Error kinds raised by the reconciliation engine."""
from __future__ import annotations

from typing import Sequence


class ReconError(RuntimeError):
    """Base class for engine errors carrying structured detail."""

    kind = "recon_error"

    def __init__(self, message: str, *, field: str | None = None, record_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.record_id = record_id

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind,
            "message": self.message,
            "field": self.field,
            "record_id": self.record_id,
        }


class SchemaError(ReconError):
    """Raised when an uploaded file is malformed or empty."""

    kind = "schema_error"


class MappingConflict(ReconError):
    """Raised when a source-2 column is already claimed by another source-1 column."""

    kind = "mapping_conflict"

    def __init__(self, message: str, *, field: str, existing: str) -> None:
        super().__init__(message, field=field)
        self.existing = existing


class ConfigurationError(ReconError):
    kind = "configuration_error"

    def __init__(self, message: str, *, issues: Sequence[object] = (), field: str | None = None) -> None:
        super().__init__(message, field=field)
        self.issues = list(issues)

    def as_dict(self) -> dict[str, object]:
        payload = super().as_dict()
        payload["issues"] = [str(issue) for issue in self.issues]
        return payload


class ResolutionError(ReconError):
    """Raised on an illegal exception lifecycle transition."""

    kind = "resolution_error"


class ValidationRuleError(ReconError):
    """Raised when a validation rule is configured with unusable parameters."""

    kind = "validation_rule_error"


class RunCancelled(ReconError):
    kind = "run_cancelled"
