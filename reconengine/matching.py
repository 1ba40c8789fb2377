"""Record matching between the two sources of a reconciliation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import ConfigurationError
from .models import (
    CATEGORY_DUPLICATE,
    CATEGORY_MISMATCH,
    CATEGORY_UNMATCHED,
    SOURCE1,
    SOURCE2,
    FieldMapping,
    FieldPair,
    SourceRow,
)
from .normalization import Canonical, NormalizationError, canonicalize, normalise_text, values_agree

LOGGER = logging.getLogger(__name__)

MatchKey = Tuple[Canonical, ...]

MISSING_IN_SOURCE2 = "Missing in source 2"
MISSING_IN_SOURCE1 = "Missing in source 1"
DUPLICATE_KEY = "Duplicate match key"
INVALID_KEY = "Invalid match key"
CHECKPOINT_EVERY = 1000


def mismatch_rule(field1: str) -> str:
    return f"Field mismatch: {field1}"


@dataclass(frozen=True, slots=True)
class Discrepancy:
    """A matching-time finding that becomes an exception record in a run."""

    record_id: str
    rule: str
    source1_value: str
    source2_value: str
    category: str
    field: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MatchedPair:
    row1: SourceRow
    row2: SourceRow

    @property
    def record_id(self) -> str:
        return self.row1.record_id


@dataclass(slots=True)
class MatchResult:
    """Every input row lands in exactly one of matched, exception or unmatched."""

    matched: List[MatchedPair] = field(default_factory=list)
    mismatched: List[MatchedPair] = field(default_factory=list)
    duplicate_rows: List[SourceRow] = field(default_factory=list)
    unmatched: List[SourceRow] = field(default_factory=list)
    discrepancies: List[Discrepancy] = field(default_factory=list)
    total1: int = 0
    total2: int = 0

    @property
    def matched_rows(self) -> int:
        return 2 * len(self.matched)

    @property
    def exception_rows(self) -> int:
        return 2 * len(self.mismatched) + len(self.duplicate_rows)

    @property
    def unmatched_rows(self) -> int:
        return len(self.unmatched)

    @property
    def total_rows(self) -> int:
        return self.total1 + self.total2


def _key_display(row: SourceRow, key_pairs: List[FieldPair]) -> str:
    side_field = (lambda pair: pair.field1) if row.side == SOURCE1 else (lambda pair: pair.field2)
    return " | ".join(row.values.get(side_field(pair), "").strip() for pair in key_pairs)


def _position(row: SourceRow) -> Tuple[int, int]:
    return (0 if row.side == SOURCE1 else 1, row.row_number)


def _row_key(row: SourceRow, key_pairs: List[FieldPair], mapping: FieldMapping) -> Optional[MatchKey]:
    parts = []
    for pair in key_pairs:
        column = pair.field1 if row.side == SOURCE1 else pair.field2
        try:
            value = canonicalize(row.values.get(column), mapping.field_type(pair.field1), side=row.side)
        except NormalizationError:
            return None
        if value == "":
            return None
        parts.append(value)
    return tuple(parts)


def compare_pair(
    row1: SourceRow,
    row2: SourceRow,
    mapping: FieldMapping,
    *,
    default_tolerance: Decimal = Decimal("0"),
) -> List[Discrepancy]:
    """Return one discrepancy per comparison field that disagrees."""

    findings: List[Discrepancy] = []
    for pair in mapping.comparison_pairs():
        raw1 = row1.values.get(pair.field1, "")
        raw2 = row2.values.get(pair.field2, "")
        field_type = mapping.field_type(pair.field1)
        if default_tolerance > field_type.tolerance:
            field_type = replace(field_type, tolerance=default_tolerance)
        try:
            agree = values_agree(
                canonicalize(raw1, field_type, side=SOURCE1),
                canonicalize(raw2, field_type, side=SOURCE2),
                field_type,
            )
        except NormalizationError:
            agree = normalise_text(raw1) == normalise_text(raw2)
        if not agree:
            findings.append(
                Discrepancy(
                    record_id=row1.record_id,
                    rule=mismatch_rule(pair.field1),
                    source1_value=raw1,
                    source2_value=raw2,
                    category=CATEGORY_MISMATCH,
                    field=pair.field1,
                )
            )
    return findings


def match_records(
    rows1: Iterable[SourceRow],
    rows2: Iterable[SourceRow],
    mapping: FieldMapping,
    *,
    default_tolerance: Decimal = Decimal("0"),
    checkpoint: Callable[[], None] | None = None,
) -> MatchResult:
    """Pair rows through a hash index on the match key, in O(n + m)."""

    key_pairs = mapping.key_pairs()
    if not key_pairs:
        raise ConfigurationError("No match key fields designated")

    result = MatchResult()
    emitted: List[Tuple[Tuple[int, int], Discrepancy]] = []
    seen = 0

    def tick() -> None:
        nonlocal seen
        seen += 1
        if checkpoint is not None and seen % CHECKPOINT_EVERY == 0:
            checkpoint()

    def unmatched(row: SourceRow, rule: str) -> None:
        result.unmatched.append(row)
        display = _key_display(row, key_pairs)
        emitted.append(
            (
                _position(row),
                Discrepancy(
                    record_id=row.record_id,
                    rule=rule,
                    source1_value=display if row.side == SOURCE1 else "",
                    source2_value=display if row.side == SOURCE2 else "",
                    category=CATEGORY_UNMATCHED,
                ),
            )
        )

    index2: Dict[MatchKey, List[SourceRow]] = {}
    invalid2: List[SourceRow] = []
    for row in rows2:
        tick()
        result.total2 += 1
        key = _row_key(row, key_pairs, mapping)
        if key is None:
            invalid2.append(row)
        else:
            index2.setdefault(key, []).append(row)

    groups1: Dict[MatchKey, List[SourceRow]] = {}
    invalid1: List[SourceRow] = []
    for row in rows1:
        tick()
        result.total1 += 1
        key = _row_key(row, key_pairs, mapping)
        if key is None:
            invalid1.append(row)
        else:
            groups1.setdefault(key, []).append(row)

    for row in invalid1:
        unmatched(row, INVALID_KEY)

    claimed: set[MatchKey] = set()
    for key, group in groups1.items():
        tick()
        candidates = index2.get(key, [])
        if not candidates:
            for row in group:
                unmatched(row, MISSING_IN_SOURCE2)
            continue

        claimed.add(key)
        if len(group) == 1 and len(candidates) == 1:
            row1, row2 = group[0], candidates[0]
            findings = compare_pair(row1, row2, mapping, default_tolerance=default_tolerance)
            if findings:
                result.mismatched.append(MatchedPair(row1, row2))
                emitted.extend((_position(row1), finding) for finding in findings)
            else:
                result.matched.append(MatchedPair(row1, row2))
            continue

        result.duplicate_rows.extend(group)
        result.duplicate_rows.extend(candidates)
        others = ", ".join(candidate.record_id for candidate in candidates)
        for row in group:
            emitted.append(
                (
                    _position(row),
                    Discrepancy(
                        record_id=row.record_id,
                        rule=DUPLICATE_KEY,
                        source1_value=_key_display(row, key_pairs),
                        source2_value=f"{len(candidates)} candidate(s): {others}",
                        category=CATEGORY_DUPLICATE,
                    ),
                )
            )

    for key, candidates in index2.items():
        if key in claimed:
            continue
        for row in candidates:
            unmatched(row, MISSING_IN_SOURCE1)
    for row in invalid2:
        unmatched(row, INVALID_KEY)

    # Findings are reported in source-1 row order, then source-2 row order.
    emitted.sort(key=lambda item: item[0])
    result.discrepancies = [finding for _, finding in emitted]
    result.unmatched.sort(key=_position)

    LOGGER.debug(
        "Matched %d pairs, %d exception rows, %d unmatched rows out of %d",
        len(result.matched),
        result.exception_rows,
        result.unmatched_rows,
        result.total_rows,
    )
    return result
