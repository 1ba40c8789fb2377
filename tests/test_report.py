from dataclasses import replace
from datetime import timedelta

from reconengine.models import (
    EXCEPTION_RESOLVED,
    EXCEPTION_SUSPENDED,
    RUN_CANCELLED,
    RUN_EXCEPTION,
    ExceptionRecord,
    ReconciliationRecord,
    ValidationResult,
    Workspace,
    utcnow,
)
from reconengine.report import generate_markdown_summary, summarize_workspace


def _record(identifier="run-1", **overrides):
    base = ReconciliationRecord(
        identifier=identifier,
        workspace_id="ws",
        executed_at=utcnow(),
        status=RUN_EXCEPTION,
        total_records=10,
        matched_records=8,
        exception_records=2,
        unmatched_records=0,
    )
    return replace(base, **overrides)


def _exception(identifier, **overrides):
    base = ExceptionRecord(
        identifier=identifier,
        run_id="run-1",
        record_id="source1:3",
        rule="Field mismatch: amount",
        source1_value="75",
        source2_value="80",
        category="mismatch",
        explanation="amount differs | check",
    )
    return replace(base, **overrides)


def test_markdown_summary_lists_exceptions():
    results = [
        ValidationResult(rule_id="r1", rule_name="Rate band", record_id="source1:1", passed=True),
        ValidationResult(rule_id="r1", rule_name="Rate band", record_id="source1:2", passed=False),
    ]

    summary = generate_markdown_summary(
        _record(), [_exception("run-1-00001")], results, source1_total=5, source2_total=5
    )

    assert summary.startswith("# Reconciliation Report")
    assert "- Matched records: **8**" in summary
    assert "- Validation checks passed: **1/2**" in summary
    assert "- Value mismatch: 1" in summary
    assert "- Rate band: 1" in summary
    assert "amount differs \\| check" in summary


def test_markdown_summary_without_exceptions():
    record = _record(status="complete", matched_records=10, exception_records=0)

    summary = generate_markdown_summary(record, [], [], source1_total=5, source2_total=5)
    assert "No exceptions detected. All records matched and passed validation." in summary
    assert "## Exceptions" not in summary


def test_workspace_summary_uses_latest_finished_run():
    workspace = Workspace(identifier="ws", name="Bank vs ledger")
    earlier = _record("run-0", executed_at=utcnow() - timedelta(days=1), total_records=4, matched_records=4)
    latest = _record("run-1")
    cancelled = _record("run-2", executed_at=utcnow() + timedelta(minutes=1), status=RUN_CANCELLED)
    exceptions = [
        _exception("run-1-00001"),
        _exception("run-1-00002", status=EXCEPTION_SUSPENDED),
        _exception("run-1-00003", status=EXCEPTION_RESOLVED),
    ]

    summary = summarize_workspace(workspace, [earlier, latest, cancelled], exceptions)
    assert summary.runs == 3
    assert summary.total_records == 10
    assert summary.matched_records == 8
    assert summary.match_rate == 0.8
    assert summary.pending_exceptions == 2
    assert summary.last_run_status == RUN_CANCELLED


def test_workspace_summary_without_runs():
    summary = summarize_workspace(Workspace(identifier="ws", name="Empty"), [], [])

    assert summary.match_rate == 0.0
    assert summary.last_run_status is None
