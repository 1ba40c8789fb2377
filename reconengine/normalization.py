"""Canonicalisation of raw field values prior to matching or comparison."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Union

from .errors import ReconError
from .models import KIND_DATE, KIND_NUMBER, SOURCE1, FieldType

Canonical = Union[str, Decimal, date]

CURRENCY_SYMBOLS = "$€£¥₹"


class NormalizationError(ReconError):
    """Raised when a value cannot be parsed as its declared type."""

    kind = "normalization_error"


def parse_date(raw: str, pattern: str) -> date:
    try:
        return datetime.strptime(raw.strip(), pattern).date()
    except ValueError as exc:
        raise NormalizationError(f"Date {raw!r} does not match format {pattern!r}") from exc


def parse_amount(raw: str) -> Decimal:
    normalized = raw.strip().replace(",", "").replace(" ", "")
    for symbol in CURRENCY_SYMBOLS:
        normalized = normalized.replace(symbol, "")
    negative = normalized.startswith("(") and normalized.endswith(")")
    if negative:
        normalized = normalized[1:-1]
    try:
        amount = Decimal(normalized)
    except InvalidOperation as exc:
        raise NormalizationError(f"Invalid amount: {raw}") from exc
    if not amount.is_finite():
        raise NormalizationError(f"Invalid amount: {raw}")
    return -amount if negative else amount


def normalise_text(raw: str) -> str:
    return " ".join(raw.split()).casefold()


def canonicalize(raw: str | None, field_type: FieldType, *, side: str = SOURCE1) -> Canonical:
    """Return the comparable form of ``raw`` for the given side.

    Blank values canonicalise to ``""`` whatever the declared kind.
    """

    text = (raw or "").strip()
    if not text:
        return ""
    if field_type.kind == KIND_NUMBER:
        return parse_amount(text)
    if field_type.kind == KIND_DATE:
        pattern = field_type.format1 if side == SOURCE1 else field_type.format2
        return parse_date(text, pattern)
    return normalise_text(text)


def values_agree(value1: Canonical, value2: Canonical, field_type: FieldType) -> bool:
    if isinstance(value1, Decimal) and isinstance(value2, Decimal):
        return (value1 - value2).copy_abs() <= field_type.tolerance
    return value1 == value2
