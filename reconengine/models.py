"""Data models used by the reconciliation workflow."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ConfigurationError, MappingConflict

SOURCE1 = "source1"
SOURCE2 = "source2"
SIDES = (SOURCE1, SOURCE2)

FORMAT_CSV = "csv"
FORMAT_EXCEL = "excel"

RUN_PENDING = "pending"
RUN_COMPLETE = "complete"
RUN_EXCEPTION = "exception"
RUN_CANCELLED = "cancelled"
RUN_FAILED = "failed"
FINAL_RUN_STATUSES = frozenset({RUN_COMPLETE, RUN_EXCEPTION, RUN_CANCELLED, RUN_FAILED})

EXCEPTION_OPEN = "open"
EXCEPTION_RESOLVED = "resolved"
EXCEPTION_SUSPENDED = "in-suspense"

CATEGORY_MISMATCH = "mismatch"
CATEGORY_UNMATCHED = "unmatched"
CATEGORY_DUPLICATE = "duplicate"
CATEGORY_VALIDATION = "validation"

KIND_TEXT = "text"
KIND_NUMBER = "number"
KIND_DATE = "date"
FIELD_KINDS = (KIND_TEXT, KIND_NUMBER, KIND_DATE)

ISO_DATE = "%Y-%m-%d"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SourceFile:
    """Descriptor of one ingested dataset; rows stay in the file at ``path``."""

    identifier: str
    side: str
    columns: Tuple[str, ...]
    row_count: int
    format: str
    name: str = ""
    path: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SourceRow:
    side: str
    row_number: int
    values: Mapping[str, str]

    @property
    def record_id(self) -> str:
        return f"{self.side}:{self.row_number}"


@dataclass(frozen=True, slots=True)
class FieldType:
    """Declared type of a mapped field, used to canonicalise both sides."""

    kind: str = KIND_TEXT
    format1: str = ISO_DATE
    format2: str = ISO_DATE
    tolerance: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        if self.kind not in FIELD_KINDS:
            raise ConfigurationError(f"Unknown field kind: {self.kind!r}")


@dataclass(frozen=True, slots=True)
class FieldPair:
    field1: str
    field2: str


@dataclass(slots=True)
class FieldMapping:
    """Correspondences between source-1 and source-2 columns.

    Each source-1 field maps to at most one source-2 field and each source-2
    field is claimed by at most one source-1 field. ``key_fields`` marks the
    pairs that form the match key; every other pair is a comparison field.
    """

    pairs: List[FieldPair] = field(default_factory=list)
    key_fields: List[str] = field(default_factory=list)
    field_types: Dict[str, FieldType] = field(default_factory=dict)
    locked: bool = False

    def _ensure_editable(self) -> None:
        if self.locked:
            raise ConfigurationError("Field mapping is locked by a running reconciliation")

    def get(self, field1: str) -> Optional[str]:
        for pair in self.pairs:
            if pair.field1 == field1:
                return pair.field2
        return None

    def source1_for(self, field2: str) -> Optional[str]:
        for pair in self.pairs:
            if pair.field2 == field2:
                return pair.field1
        return None

    def set_mapping(self, field1: str, field2: str, *, override: bool = False) -> None:
        """Insert or overwrite the pair for ``field1``.

        Raises ``MappingConflict`` when ``field2`` already belongs to another
        source-1 field, unless ``override`` is set, in which case that other
        pair is dropped.
        """

        self._ensure_editable()
        owner = self.source1_for(field2)
        if owner is not None and owner != field1:
            if not override:
                raise MappingConflict(
                    f"{field2!r} is already mapped from {owner!r}",
                    field=field1,
                    existing=owner,
                )
            self.remove(owner)

        for index, pair in enumerate(self.pairs):
            if pair.field1 == field1:
                self.pairs[index] = FieldPair(field1, field2)
                return
        self.pairs.append(FieldPair(field1, field2))

    def remove(self, field1: str) -> None:
        self._ensure_editable()
        self.pairs = [pair for pair in self.pairs if pair.field1 != field1]
        self.key_fields = [name for name in self.key_fields if name != field1]
        self.field_types.pop(field1, None)

    def designate_key(self, *fields: str) -> None:
        self._ensure_editable()
        for name in fields:
            if self.get(name) is None:
                raise ConfigurationError(f"Cannot use unmapped field {name!r} as match key", field=name)
            if name not in self.key_fields:
                self.key_fields.append(name)

    def set_field_type(self, field1: str, field_type: FieldType) -> None:
        self._ensure_editable()
        self.field_types[field1] = field_type

    def field_type(self, field1: str) -> FieldType:
        return self.field_types.get(field1, FieldType())

    def key_pairs(self) -> List[FieldPair]:
        by_field = {pair.field1: pair for pair in self.pairs}
        return [by_field[name] for name in self.key_fields if name in by_field]

    def comparison_pairs(self) -> List[FieldPair]:
        keys = set(self.key_fields)
        return [pair for pair in self.pairs if pair.field1 not in keys]

    def snapshot(self) -> "FieldMapping":
        return FieldMapping(
            pairs=list(self.pairs),
            key_fields=list(self.key_fields),
            field_types=dict(self.field_types),
            locked=True,
        )

    def as_json(self) -> dict[str, object]:
        return {
            "pairs": [{"field1": pair.field1, "field2": pair.field2} for pair in self.pairs],
            "key_fields": list(self.key_fields),
            "field_types": {
                name: {
                    "kind": ftype.kind,
                    "format1": ftype.format1,
                    "format2": ftype.format2,
                    "tolerance": str(ftype.tolerance),
                }
                for name, ftype in self.field_types.items()
            },
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, object]) -> "FieldMapping":
        mapping = cls()
        for item in payload.get("pairs", []) or []:
            mapping.set_mapping(str(item["field1"]), str(item["field2"]))
        for name, raw in (payload.get("field_types") or {}).items():
            mapping.set_field_type(
                name,
                FieldType(
                    kind=raw.get("kind", KIND_TEXT),
                    format1=raw.get("format1", ISO_DATE),
                    format2=raw.get("format2", ISO_DATE),
                    tolerance=Decimal(str(raw.get("tolerance", "0"))),
                ),
            )
        keys = payload.get("key_fields") or []
        if keys:
            mapping.designate_key(*keys)
        return mapping


@dataclass(frozen=True, slots=True)
class ExceptionRecord:
    identifier: str
    run_id: str
    record_id: str
    rule: str
    source1_value: str
    source2_value: str
    category: str
    status: str = EXCEPTION_OPEN
    notes: Optional[str] = None
    field: Optional[str] = None
    explanation: str = ""
    severity: str = "medium"
    actor: Optional[str] = None
    updated_at: Optional[datetime] = None

    def transition(self, status: str, *, notes: Optional[str], actor: str) -> "ExceptionRecord":
        return replace(
            self,
            status=status,
            notes=notes if notes is not None else self.notes,
            actor=actor,
            updated_at=utcnow(),
        )

    def as_dict(self) -> dict[str, str]:
        return {
            "id": self.identifier,
            "record_id": self.record_id,
            "rule": self.rule,
            "category": self.category,
            "field": self.field or "",
            "source1_value": self.source1_value,
            "source2_value": self.source2_value,
            "status": self.status,
            "severity": self.severity,
            "explanation": self.explanation,
            "notes": self.notes or "",
        }

    def as_json(self) -> dict[str, object]:
        payload: dict[str, object] = dict(self.as_dict())
        payload["run_id"] = self.run_id
        payload["notes"] = self.notes
        payload["field"] = self.field
        payload["actor"] = self.actor
        payload["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return payload


@dataclass(frozen=True, slots=True)
class ReconciliationRecord:
    identifier: str
    workspace_id: str
    executed_at: datetime
    status: str = RUN_PENDING
    total_records: int = 0
    matched_records: int = 0
    exception_records: int = 0
    unmatched_records: int = 0
    source1_id: str = ""
    source2_id: str = ""
    finished_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_RUN_STATUSES

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.identifier,
            "workspace_id": self.workspace_id,
            "date": self.executed_at.isoformat(),
            "status": self.status,
            "total_records": self.total_records,
            "matched_records": self.matched_records,
            "exception_records": self.exception_records,
            "unmatched_records": self.unmatched_records,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(frozen=True, slots=True)
class ValidationResult:
    rule_id: str
    rule_name: str
    record_id: str
    passed: bool
    field1: Optional[str] = None
    field2: Optional[str] = None
    value1: object = None
    value2: object = None
    expected_value: object = None
    message: Optional[str] = None


@dataclass(slots=True)
class Workspace:
    identifier: str
    name: str
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_updated: datetime = field(default_factory=utcnow)


@dataclass(frozen=True, slots=True)
class WorkspaceSummary:
    workspace_id: str
    name: str
    runs: int
    total_records: int
    matched_records: int
    pending_exceptions: int
    match_rate: float
    last_run_status: Optional[str]
    last_updated: datetime
