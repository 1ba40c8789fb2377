"""Column correspondence between the two sources of a reconciliation."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .models import SOURCE1, SOURCE2, FieldMapping

DEFAULT_THRESHOLD = 0.6

# Whole-name groups are keyed by the normalised (underscore-joined) name,
# single tokens by the token itself.
DEFAULT_SYNONYMS: Dict[str, str] = {
    "item_date": "transaction_date",
    "purchase_date": "transaction_date",
    "txn_date": "transaction_date",
    "trade_date": "transaction_date",
    "order_ref": "order_reference",
    "order_id": "order_reference",
    "order_no": "order_reference",
    "amt": "amount",
    "ref": "reference",
    "no": "number",
    "num": "number",
    "nbr": "number",
    "txn": "transaction",
    "trx": "transaction",
    "inv": "invoice",
    "qty": "quantity",
    "ccy": "currency",
    "acct": "account",
}

_CAMEL = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^0-9A-Za-z]+")
MIN_SUBSTRING = 4


def tokenize(name: str) -> Tuple[str, ...]:
    spaced = _CAMEL.sub(r"\1 \2", name.strip())
    return tuple(token.lower() for token in _SEPARATORS.split(spaced) if token)


def _apply_synonyms(tokens: Tuple[str, ...], synonyms: Mapping[str, str]) -> Tuple[str, ...]:
    whole = synonyms.get("_".join(tokens))
    if whole is not None:
        return tuple(whole.split("_"))
    return tuple(synonyms.get(token, token) for token in tokens)


def _contains_run(longer: Tuple[str, ...], shorter: Tuple[str, ...]) -> bool:
    size = len(shorter)
    return any(longer[start:start + size] == shorter for start in range(len(longer) - size + 1))


def similarity(name1: str, name2: str, synonyms: Mapping[str, str] = DEFAULT_SYNONYMS) -> float:
    """Score how likely two column names describe the same field, in [0, 1]."""

    if name1.strip().casefold() == name2.strip().casefold():
        return 1.0
    tokens1, tokens2 = tokenize(name1), tokenize(name2)
    if not tokens1 or not tokens2:
        return 0.0
    if tokens1 == tokens2:
        return 0.95

    canon1 = _apply_synonyms(tokens1, synonyms)
    canon2 = _apply_synonyms(tokens2, synonyms)
    if canon1 == canon2:
        return 0.9

    shorter, longer = sorted((canon1, canon2), key=lambda tokens: len("".join(tokens)))
    joined_short, joined_long = "".join(shorter), "".join(longer)
    if _contains_run(longer, shorter) or (len(joined_short) >= MIN_SUBSTRING and joined_short in joined_long):
        return 0.6 + 0.3 * len(joined_short) / len(joined_long)

    set1, set2 = set(canon1), set(canon2)
    return 0.8 * len(set1 & set2) / len(set1 | set2)


def auto_match(
    columns1: Sequence[str],
    columns2: Sequence[str],
    *,
    threshold: float = DEFAULT_THRESHOLD,
    synonyms: Mapping[str, str] = DEFAULT_SYNONYMS,
    key_fields: Iterable[str] = (),
) -> FieldMapping:
    """Propose a mapping from name similarity.

    Candidates are assigned greedily by descending score, ties broken by
    column position, and every column is used at most once. Columns without a
    candidate at or above ``threshold`` stay unmapped.
    """

    candidates: List[Tuple[float, int, int]] = []
    for index1, name1 in enumerate(columns1):
        for index2, name2 in enumerate(columns2):
            score = similarity(name1, name2, synonyms)
            if score >= threshold:
                candidates.append((-score, index1, index2))
    candidates.sort()

    chosen: Dict[int, int] = {}
    claimed: set[int] = set()
    for _, index1, index2 in candidates:
        if index1 in chosen or index2 in claimed:
            continue
        chosen[index1] = index2
        claimed.add(index2)

    mapping = FieldMapping()
    for index1 in sorted(chosen):
        mapping.set_mapping(columns1[index1], columns2[chosen[index1]])
    keys = [name for name in key_fields if mapping.get(name) is not None]
    if keys:
        mapping.designate_key(*keys)
    return mapping


@dataclass(frozen=True, slots=True)
class MappingIssue:
    message: str
    field: Optional[str] = None
    side: Optional[str] = None

    def __str__(self) -> str:
        return self.message


def validate_mapping(mapping: FieldMapping, columns1: Sequence[str], columns2: Sequence[str]) -> List[MappingIssue]:
    """Collect every problem with ``mapping`` against the two column sets."""

    issues: List[MappingIssue] = []
    if not mapping.pairs:
        issues.append(MappingIssue("Field mapping is empty"))
    known1, known2 = set(columns1), set(columns2)
    for pair in mapping.pairs:
        if pair.field1 not in known1:
            issues.append(MappingIssue(f"Source 1 has no column {pair.field1!r}", field=pair.field1, side=SOURCE1))
        if pair.field2 not in known2:
            issues.append(MappingIssue(f"Source 2 has no column {pair.field2!r}", field=pair.field2, side=SOURCE2))
    for name in mapping.key_fields:
        if mapping.get(name) is None:
            issues.append(MappingIssue(f"Match key field {name!r} is not mapped", field=name))
    if mapping.pairs and not mapping.key_fields:
        issues.append(MappingIssue("No match key fields designated"))
    return issues
