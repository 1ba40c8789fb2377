"""Configurable validation rules evaluated against paired records."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .errors import ValidationRuleError
from .models import SOURCE1, SOURCE2, FieldMapping, FieldType, ValidationResult
from .normalization import NormalizationError, canonicalize, normalise_text, parse_amount

RATIO_TOLERANCE = Decimal("0.0001")

_RANGE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$")

CustomOutcome = Union[bool, Tuple[bool, Optional[str]]]
CustomEvaluator = Callable[["PairedRecord"], CustomOutcome]


@dataclass(frozen=True, slots=True)
class PairedRecord:
    """The rows a rule is evaluated against; either side may be absent."""

    record_id: str
    values1: Optional[Mapping[str, str]] = None
    values2: Optional[Mapping[str, str]] = None

    def value(self, name: str, side: Optional[str] = None) -> Optional[str]:
        """Look ``name`` up on ``side``, or source 1 then source 2."""

        sides = (side,) if side else (SOURCE1, SOURCE2)
        for current in sides:
            values = self.values1 if current == SOURCE1 else self.values2
            if values is not None and name in values:
                return values[name]
        return None


class CustomRuleRegistry:
    """Named evaluators backing ``custom`` rules."""

    def __init__(self) -> None:
        self._evaluators: Dict[str, CustomEvaluator] = {}

    def register(self, name: str, evaluator: CustomEvaluator) -> None:
        self._evaluators[name] = evaluator

    def __contains__(self, name: object) -> bool:
        return name in self._evaluators

    def get(self, name: str) -> CustomEvaluator:
        try:
            return self._evaluators[name]
        except KeyError:
            raise ValidationRuleError(f"No custom evaluator registered as {name!r}", field=name) from None


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    mapping: FieldMapping = field(default_factory=FieldMapping)
    registry: CustomRuleRegistry = field(default_factory=CustomRuleRegistry)


def _is_blank(raw: Optional[str]) -> bool:
    return raw is None or not raw.strip()


@dataclass(frozen=True, slots=True, kw_only=True)
class ValidationRule:
    identifier: str
    name: str
    field1: str
    description: str = ""
    enabled: bool = True

    type: ClassVar[str] = ""

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        raise NotImplementedError

    def _result(self, record: PairedRecord, passed: bool, **details: object) -> ValidationResult:
        return ValidationResult(
            rule_id=self.identifier,
            rule_name=self.name,
            record_id=record.record_id,
            passed=passed,
            field1=self.field1,
            **details,
        )

    def to_config(self) -> dict[str, object]:
        return {
            "id": self.identifier,
            "name": self.name,
            "description": self.description,
            "type": self.type,
            "field1": self.field1,
            "enabled": self.enabled,
        }


@dataclass(frozen=True, slots=True, kw_only=True)
class MinMaxRule(ValidationRule):
    low: Decimal
    high: Decimal

    type: ClassVar[str] = "min-max"

    @property
    def expected(self) -> str:
        return f"{self.low}-{self.high}"

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        raw = record.value(self.field1)
        if _is_blank(raw):
            return self._result(record, False, value1=raw, expected_value=self.expected, message=f"{self.field1} is empty")
        try:
            actual = parse_amount(raw)
        except NormalizationError:
            return self._result(record, False, value1=raw, expected_value=self.expected, message=f"{self.field1} is not numeric")
        passed = self.low <= actual <= self.high
        message = None if passed else f"{self.field1}={actual} outside {self.expected}"
        return self._result(record, passed, value1=actual, expected_value=self.expected, message=message)

    def to_config(self) -> dict[str, object]:
        config = ValidationRule.to_config(self)
        config["value"] = self.expected
        return config


@dataclass(frozen=True, slots=True, kw_only=True)
class RatioRule(ValidationRule):
    """``field1 / field2`` must equal ``ratio`` within ``RATIO_TOLERANCE`` (relative)."""

    field2: str
    ratio: Decimal

    type: ClassVar[str] = "ratio"

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        raw1, raw2 = record.value(self.field1), record.value(self.field2)
        details = dict(field2=self.field2, value1=raw1, value2=raw2, expected_value=self.ratio)
        try:
            numerator, denominator = parse_amount(raw1 or ""), parse_amount(raw2 or "")
        except NormalizationError:
            return self._result(record, False, message="Ratio operands are not numeric", **details)
        details.update(value1=numerator, value2=denominator)
        if denominator == 0:
            return self._result(record, False, message=f"Division by zero: {self.field2} is 0", **details)

        actual = numerator / denominator
        allowed = abs(self.ratio) * RATIO_TOLERANCE if self.ratio else RATIO_TOLERANCE
        passed = abs(actual - self.ratio) <= allowed
        message = None if passed else f"{self.field1}/{self.field2}={actual:.6g}, expected {self.ratio}"
        return self._result(record, passed, message=message, **details)

    def to_config(self) -> dict[str, object]:
        config = ValidationRule.to_config(self)
        config.update(field2=self.field2, value=str(self.ratio))
        return config


@dataclass(frozen=True, slots=True, kw_only=True)
class EqualityRule(ValidationRule):
    field2: str

    type: ClassVar[str] = "equality"

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        context = context or EvaluationContext()
        side1 = SOURCE1 if record.value(self.field1, SOURCE1) is not None else SOURCE2
        side2 = SOURCE2 if record.value(self.field2, SOURCE2) is not None else SOURCE1
        raw1, raw2 = record.value(self.field1, side1), record.value(self.field2, side2)
        field_type: FieldType = context.mapping.field_type(self.field1)
        try:
            passed = canonicalize(raw1, field_type, side=side1) == canonicalize(raw2, field_type, side=side2)
        except NormalizationError:
            passed = normalise_text(raw1 or "") == normalise_text(raw2 or "")
        message = None if passed else f"{self.field1} and {self.field2} differ"
        return self._result(record, passed, field2=self.field2, value1=raw1, value2=raw2, message=message)

    def to_config(self) -> dict[str, object]:
        config = ValidationRule.to_config(self)
        config["field2"] = self.field2
        return config


@dataclass(frozen=True, slots=True, kw_only=True)
class PresenceRule(ValidationRule):
    type: ClassVar[str] = "presence"

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        context = context or EvaluationContext()
        column2 = context.mapping.get(self.field1) or self.field1
        value1 = record.values1.get(self.field1) if record.values1 is not None else None
        value2 = record.values2.get(column2) if record.values2 is not None else None

        missing = []
        if record.values1 is not None and _is_blank(value1):
            missing.append("source 1")
        if record.values2 is not None and _is_blank(value2):
            missing.append("source 2")
        message = f"{self.field1} is empty in {' and '.join(missing)}" if missing else None
        return self._result(record, not missing, field2=column2, value1=value1, value2=value2, message=message)


@dataclass(frozen=True, slots=True, kw_only=True)
class CustomRule(ValidationRule):
    condition: str

    type: ClassVar[str] = "custom"

    def evaluate(self, record: PairedRecord, context: Optional[EvaluationContext] = None) -> ValidationResult:
        context = context or EvaluationContext()
        outcome = context.registry.get(self.condition)(record)
        if isinstance(outcome, tuple):
            passed, message = outcome
        else:
            passed, message = bool(outcome), None
        return self._result(
            record,
            bool(passed),
            value1=record.value(self.field1),
            expected_value=self.condition,
            message=message,
        )

    def to_config(self) -> dict[str, object]:
        config = ValidationRule.to_config(self)
        config["condition"] = self.condition
        return config


RULE_TYPES = {
    rule_type.type: rule_type
    for rule_type in (MinMaxRule, RatioRule, EqualityRule, PresenceRule, CustomRule)
}


def parse_range(raw: object, *, rule_id: str) -> Tuple[Decimal, Decimal]:
    match = _RANGE.match(str(raw if raw is not None else ""))
    if not match:
        raise ValidationRuleError(f"Rule {rule_id}: min-max value must look like 'lo-hi', got {raw!r}", field=rule_id)
    low, high = Decimal(match.group(1)), Decimal(match.group(2))
    if low > high:
        raise ValidationRuleError(f"Rule {rule_id}: lower bound {low} exceeds upper bound {high}", field=rule_id)
    return low, high


def _require(config: Mapping[str, object], key: str, rule_id: str) -> str:
    value = config.get(key)
    if value is None or not str(value).strip():
        raise ValidationRuleError(f"Rule {rule_id}: {key!r} is required for {config.get('type')} rules", field=rule_id)
    return str(value).strip()


_TRUE_FLAGS = {"true", "yes", "on", "1"}
_FALSE_FLAGS = {"false", "no", "off", "0"}


def _parse_flag(raw: object, *, rule_id: str) -> bool:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return True
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        return raw != 0
    text = str(raw).strip().lower()
    if text in _TRUE_FLAGS:
        return True
    if text in _FALSE_FLAGS:
        return False
    raise ValidationRuleError(f"Rule {rule_id}: enabled must be a boolean, got {raw!r}", field=rule_id)


def rule_from_config(config: Mapping[str, object]) -> ValidationRule:
    """Build a typed rule from the loose ``{type, field1, field2, condition, value}`` shape."""

    rule_id = str(config.get("id") or config.get("identifier") or "").strip()
    if not rule_id:
        raise ValidationRuleError("Rule is missing an identifier")
    rule_type = config.get("type")
    if rule_type not in RULE_TYPES:
        raise ValidationRuleError(f"Rule {rule_id}: unknown type {rule_type!r}", field=rule_id)

    common = dict(
        identifier=rule_id,
        name=str(config.get("name") or rule_id),
        description=str(config.get("description") or ""),
        field1=_require(config, "field1", rule_id),
        enabled=_parse_flag(config.get("enabled", True), rule_id=rule_id),
    )
    if rule_type == MinMaxRule.type:
        low, high = parse_range(config.get("value"), rule_id=rule_id)
        return MinMaxRule(low=low, high=high, **common)
    if rule_type == RatioRule.type:
        raw_ratio = _require(config, "value", rule_id)
        try:
            ratio = Decimal(raw_ratio)
        except InvalidOperation:
            raise ValidationRuleError(f"Rule {rule_id}: ratio {raw_ratio!r} is not numeric", field=rule_id) from None
        if not ratio.is_finite():
            raise ValidationRuleError(f"Rule {rule_id}: ratio {raw_ratio!r} is not a finite number", field=rule_id)
        return RatioRule(field2=_require(config, "field2", rule_id), ratio=ratio, **common)
    if rule_type == EqualityRule.type:
        return EqualityRule(field2=_require(config, "field2", rule_id), **common)
    if rule_type == PresenceRule.type:
        return PresenceRule(**common)
    return CustomRule(condition=_require(config, "condition", rule_id), **common)


def check_rules(rules: Iterable[ValidationRule], registry: CustomRuleRegistry) -> None:
    """Fail early when a custom rule names an unregistered evaluator."""

    for rule in rules:
        if isinstance(rule, CustomRule) and rule.enabled and rule.condition not in registry:
            raise ValidationRuleError(
                f"Rule {rule.identifier}: no custom evaluator registered as {rule.condition!r}",
                field=rule.identifier,
            )


def evaluate_rules(
    rules: Sequence[ValidationRule],
    records: Iterable[PairedRecord],
    context: Optional[EvaluationContext] = None,
) -> List[ValidationResult]:
    context = context or EvaluationContext()
    active = [rule for rule in rules if rule.enabled]
    results: List[ValidationResult] = []
    for record in records:
        for rule in active:
            results.append(rule.evaluate(record, context))
    return results
