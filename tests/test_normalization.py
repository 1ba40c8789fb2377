from datetime import date
from decimal import Decimal

import pytest

from reconengine import normalization
from reconengine.models import KIND_DATE, KIND_NUMBER, SOURCE1, SOURCE2, FieldType


def test_parse_amount_strips_separators_and_symbols():
    assert normalization.parse_amount("1,234.567") == Decimal("1234.567")
    assert normalization.parse_amount(" $100 ") == Decimal("100")
    assert normalization.parse_amount("(42.50)") == Decimal("-42.50")


def test_parse_amount_rejects_text():
    with pytest.raises(normalization.NormalizationError):
        normalization.parse_amount("abc")


def test_parse_date_uses_declared_format_only():
    assert normalization.parse_date("15/04/2023", "%d/%m/%Y") == date(2023, 4, 15)
    with pytest.raises(normalization.NormalizationError):
        normalization.parse_date("15/04/2023", "%Y-%m-%d")


def test_canonicalize_dates_per_side():
    field_type = FieldType(kind=KIND_DATE, format1="%Y-%m-%d", format2="%d/%m/%Y")
    left = normalization.canonicalize("2023-04-15", field_type, side=SOURCE1)
    right = normalization.canonicalize("15/04/2023", field_type, side=SOURCE2)
    assert left == right == date(2023, 4, 15)


def test_canonicalize_text_trims_and_casefolds():
    assert normalization.canonicalize("  Order  REF ", FieldType()) == "order ref"
    assert normalization.canonicalize("   ", FieldType(kind=KIND_NUMBER)) == ""


def test_values_agree_respects_tolerance():
    field_type = FieldType(kind=KIND_NUMBER, tolerance=Decimal("0.5"))
    assert normalization.values_agree(Decimal("100.00"), Decimal("100.40"), field_type)
    assert not normalization.values_agree(Decimal("100.00"), Decimal("100.60"), field_type)
    assert normalization.values_agree(Decimal("100"), Decimal("100.00"), FieldType(kind=KIND_NUMBER))
