"""Rendering utilities for machine-readable and human-readable outputs."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Sequence

from .models import (
    EXCEPTION_OPEN,
    EXCEPTION_SUSPENDED,
    RUN_COMPLETE,
    RUN_EXCEPTION,
    ExceptionRecord,
    ReconciliationRecord,
    ValidationResult,
    Workspace,
    WorkspaceSummary,
)

CSV_FIELDS = [
    "id",
    "record_id",
    "rule",
    "category",
    "field",
    "source1_value",
    "source2_value",
    "status",
    "severity",
    "explanation",
    "notes",
]

CATEGORY_TITLES = {
    "mismatch": "Value mismatch",
    "unmatched": "Missing records",
    "duplicate": "Duplicate entries",
    "validation": "Validation failures",
}


def write_csv(path: Path, exceptions: Iterable[ExceptionRecord]) -> None:
    import csv

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=CSV_FIELDS)
        writer.writeheader()
        for exception in exceptions:
            writer.writerow(exception.as_dict())


def write_json(path: Path, record: ReconciliationRecord, exceptions: Iterable[ExceptionRecord]) -> None:
    import json

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "reconciliation": record.as_json(),
        "exceptions": [exception.as_json() for exception in exceptions],
    }
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def _escape(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def generate_markdown_summary(
    record: ReconciliationRecord,
    exceptions: Sequence[ExceptionRecord],
    results: Sequence[ValidationResult],
    *,
    source1_total: int,
    source2_total: int,
) -> str:
    categories = Counter(exception.category for exception in exceptions)
    severities = Counter(exception.severity for exception in exceptions)
    failed_rules = Counter(result.rule_name for result in results if not result.passed)

    lines = ["# Reconciliation Report", ""]
    lines.append(f"Generated: {datetime.now(timezone.utc).isoformat()}")
    lines.append("")
    lines.append("## Overview")
    lines.append("")
    lines.append(f"- Run: `{record.identifier}` ({record.status})")
    lines.append(f"- Source 1 records processed: **{source1_total}**")
    lines.append(f"- Source 2 records processed: **{source2_total}**")
    lines.append(f"- Matched records: **{record.matched_records}**")
    lines.append(f"- Exception records: **{record.exception_records}**")
    lines.append(f"- Unmatched records: **{record.unmatched_records}**")
    lines.append(f"- Exceptions raised: **{len(exceptions)}**")
    if results:
        passed = sum(1 for result in results if result.passed)
        lines.append(f"- Validation checks passed: **{passed}/{len(results)}**")
    lines.append("")

    if categories:
        lines.append("## Exceptions by category")
        lines.append("")
        for category, count in sorted(categories.items()):
            lines.append(f"- {CATEGORY_TITLES.get(category, category)}: {count}")
        lines.append("")

    if severities:
        lines.append("## Severity distribution")
        lines.append("")
        for severity, count in sorted(severities.items()):
            lines.append(f"- {severity.title()}: {count}")
        lines.append("")

    if failed_rules:
        lines.append("## Failed validation rules")
        lines.append("")
        for rule, count in sorted(failed_rules.items()):
            lines.append(f"- {rule}: {count}")
        lines.append("")

    if exceptions:
        lines.append("## Exceptions")
        lines.append("")
        lines.append("| Record | Rule | Source 1 | Source 2 | Severity | Explanation |")
        lines.append("| --- | --- | --- | --- | --- | --- |")
        for exception in exceptions:
            lines.append(
                "| {record} | {rule} | {value1} | {value2} | {severity} | {explanation} |".format(
                    record=exception.record_id,
                    rule=_escape(exception.rule),
                    value1=_escape(exception.source1_value),
                    value2=_escape(exception.source2_value),
                    severity=exception.severity.title(),
                    explanation=_escape(exception.explanation),
                )
            )
        lines.append("")
    else:
        lines.append("No exceptions detected. All records matched and passed validation.")

    return "\n".join(lines)


def write_markdown(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as handle:
        handle.write(content)


def summarize_workspace(
    workspace: Workspace,
    history: Sequence[ReconciliationRecord],
    exceptions: Iterable[ExceptionRecord],
) -> WorkspaceSummary:
    """Card-level statistics: latest finished run plus outstanding exceptions."""

    finished = [record for record in history if record.status in (RUN_COMPLETE, RUN_EXCEPTION)]
    latest = finished[-1] if finished else None
    pending = sum(1 for exception in exceptions if exception.status in (EXCEPTION_OPEN, EXCEPTION_SUSPENDED))
    total = latest.total_records if latest else 0
    matched = latest.matched_records if latest else 0
    return WorkspaceSummary(
        workspace_id=workspace.identifier,
        name=workspace.name,
        runs=len(history),
        total_records=total,
        matched_records=matched,
        pending_exceptions=pending,
        match_rate=matched / total if total else 0.0,
        last_run_status=history[-1].status if history else None,
        last_updated=workspace.last_updated,
    )
