"""High-level orchestration of reconciliation runs."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .checks import (
    CustomRuleRegistry,
    EvaluationContext,
    PairedRecord,
    PresenceRule,
    ValidationRule,
    check_rules,
    evaluate_rules,
)
from .config import EngineConfig
from .errors import ConfigurationError, RunCancelled
from .llm import ExceptionAnnotator
from .mapping import validate_mapping
from .matching import Discrepancy, MatchResult, match_records
from .models import (
    CATEGORY_VALIDATION,
    RUN_CANCELLED,
    RUN_COMPLETE,
    RUN_EXCEPTION,
    RUN_FAILED,
    RUN_PENDING,
    SOURCE1,
    SOURCE2,
    ExceptionRecord,
    FieldMapping,
    ReconciliationRecord,
    SourceFile,
    SourceRow,
    ValidationResult,
    Workspace,
    utcnow,
)
from .report import generate_markdown_summary, write_csv, write_json, write_markdown
from .schema import inspect_file, iter_rows
from .stores import (
    ExceptionStore,
    InMemoryExceptionStore,
    InMemoryReconciliationStore,
    InMemoryWorkspaceStore,
    ReconciliationStore,
    WorkspaceStore,
)

LOGGER = logging.getLogger(__name__)

RowReader = Callable[[SourceFile], Iterable[SourceRow]]


@dataclass(frozen=True, slots=True)
class RunOutcome:
    record: ReconciliationRecord
    exceptions: List[ExceptionRecord]
    results: List[ValidationResult]
    match: MatchResult


def _validation_finding(result: ValidationResult) -> Discrepancy:
    counterpart = result.value2 if result.value2 is not None else result.expected_value
    return Discrepancy(
        record_id=result.record_id,
        rule=result.rule_name,
        source1_value="" if result.value1 is None else str(result.value1),
        source2_value="" if counterpart is None else str(counterpart),
        category=CATEGORY_VALIDATION,
        field=result.field1,
        message=result.message,
    )


class ReconciliationRunner:
    """Runs the mapping -> matching -> validation pipeline for a workspace.

    Runs in one workspace are serialised; runs in different workspaces share
    nothing but the injected stores.
    """

    def __init__(
        self,
        workspaces: WorkspaceStore,
        reconciliations: ReconciliationStore,
        exceptions: ExceptionStore,
        *,
        config: Optional[EngineConfig] = None,
        annotator: Optional[ExceptionAnnotator] = None,
        registry: Optional[CustomRuleRegistry] = None,
        row_reader: RowReader = iter_rows,
    ) -> None:
        self._workspaces = workspaces
        self._reconciliations = reconciliations
        self._exceptions = exceptions
        self._config = config or EngineConfig()
        self._annotator = annotator or ExceptionAnnotator.from_env()
        self._registry = registry or CustomRuleRegistry()
        self._row_reader = row_reader
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _workspace_lock(self, workspace_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(workspace_id, threading.Lock())

    def _preflight(self, workspace_id: str, source1: SourceFile, source2: SourceFile, mapping: Optional[FieldMapping]) -> None:
        try:
            self._workspaces.get(workspace_id)
        except KeyError:
            raise ConfigurationError(f"Unknown workspace {workspace_id}") from None
        if source1.side != SOURCE1 or source2.side != SOURCE2:
            raise ConfigurationError("Source files must be given as (source1, source2)")
        if mapping is None:
            raise ConfigurationError("Field mapping is absent")
        issues = validate_mapping(mapping, source1.columns, source2.columns)
        if issues:
            LOGGER.error("Rejecting run for workspace %s: %s", workspace_id, "; ".join(map(str, issues)))
            raise ConfigurationError(
                f"Field mapping has {len(issues)} problem(s): " + "; ".join(map(str, issues)),
                issues=issues,
            )

    def run(
        self,
        workspace_id: str,
        source1: SourceFile,
        source2: SourceFile,
        mapping: Optional[FieldMapping],
        *,
        rules: Optional[Sequence[ValidationRule]] = None,
        cancel_event: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> RunOutcome:
        self._preflight(workspace_id, source1, source2, mapping)
        snapshot = mapping.snapshot()
        rule_set = tuple(rules) if rules is not None else self._workspaces.rules(workspace_id)
        check_rules(rule_set, self._registry)

        with self._workspace_lock(workspace_id):
            record = ReconciliationRecord(
                identifier=uuid.uuid4().hex,
                workspace_id=workspace_id,
                executed_at=utcnow(),
                status=RUN_PENDING,
                total_records=source1.row_count + source2.row_count,
                source1_id=source1.identifier,
                source2_id=source2.identifier,
            )
            self._reconciliations.add(record)
            LOGGER.info("Reconciliation %s started for workspace %s", record.identifier, workspace_id)

            limit = timeout if timeout is not None else self._config.run_timeout
            deadline = time.monotonic() + limit if limit is not None else None

            def checkpoint() -> None:
                if cancel_event is not None and cancel_event.is_set():
                    raise RunCancelled(f"Reconciliation {record.identifier} was cancelled")
                if deadline is not None and time.monotonic() > deadline:
                    raise RunCancelled(f"Reconciliation {record.identifier} exceeded {limit}s")

            try:
                outcome = self._execute(record, source1, source2, snapshot, rule_set, checkpoint)
            except RunCancelled as exc:
                LOGGER.warning("%s", exc)
                self._reconciliations.finalize(replace(record, status=RUN_CANCELLED))
                raise
            except Exception:
                LOGGER.exception("Reconciliation %s failed", record.identifier)
                self._reconciliations.finalize(replace(record, status=RUN_FAILED))
                raise

        self._workspaces.touch(workspace_id)
        return outcome

    def _execute(
        self,
        record: ReconciliationRecord,
        source1: SourceFile,
        source2: SourceFile,
        mapping: FieldMapping,
        rules: Sequence[ValidationRule],
        checkpoint: Callable[[], None],
    ) -> RunOutcome:
        checkpoint()
        match = match_records(
            self._row_reader(source1),
            self._row_reader(source2),
            mapping,
            default_tolerance=self._config.amount_tolerance,
            checkpoint=checkpoint,
        )
        checkpoint()

        context = EvaluationContext(mapping=mapping, registry=self._registry)
        paired = [PairedRecord(pair.record_id, pair.row1.values, pair.row2.values) for pair in match.matched]
        results = evaluate_rules(rules, paired, context)
        # Presence also applies to rows that only one source has.
        presence = [rule for rule in rules if isinstance(rule, PresenceRule)]
        if presence:
            one_sided = [
                PairedRecord(
                    row.record_id,
                    row.values if row.side == SOURCE1 else None,
                    row.values if row.side == SOURCE2 else None,
                )
                for row in match.unmatched
            ]
            results += evaluate_rules(presence, one_sided, context)
        failures = [result for result in results if not result.passed]
        matched_ids = {pair.record_id for pair in match.matched}
        failed_pairs = len({result.record_id for result in failures} & matched_ids)
        checkpoint()

        findings = list(match.discrepancies) + [_validation_finding(result) for result in failures]
        exceptions = []
        annotator = self._annotator.for_run()
        for position, finding in enumerate(findings, start=1):
            annotation = annotator.annotate(finding)
            exceptions.append(
                ExceptionRecord(
                    identifier=f"{record.identifier}-{position:05d}",
                    run_id=record.identifier,
                    record_id=finding.record_id,
                    rule=finding.rule,
                    source1_value=finding.source1_value,
                    source2_value=finding.source2_value,
                    category=finding.category,
                    field=finding.field,
                    explanation=annotation.explanation,
                    severity=annotation.severity,
                )
            )
        checkpoint()

        final = replace(
            record,
            status=RUN_EXCEPTION if exceptions else RUN_COMPLETE,
            total_records=match.total_rows,
            matched_records=match.matched_rows - 2 * failed_pairs,
            exception_records=match.exception_rows + 2 * failed_pairs,
            unmatched_records=match.unmatched_rows,
            finished_at=utcnow(),
        )
        self._exceptions.add_many(exceptions)
        self._reconciliations.finalize(final)
        LOGGER.info(
            "Reconciliation %s finished %s: %d matched, %d exception, %d unmatched of %d rows",
            final.identifier,
            final.status,
            final.matched_records,
            final.exception_records,
            final.unmatched_records,
            final.total_records,
        )
        return RunOutcome(record=final, exceptions=exceptions, results=results, match=match)


def run_reconciliation(
    *,
    source1_path: Path,
    source2_path: Path,
    mapping: FieldMapping,
    out_dir: Path,
    rules: Sequence[ValidationRule] = (),
    config: Optional[EngineConfig] = None,
    registry: Optional[CustomRuleRegistry] = None,
) -> RunOutcome:
    """Reconcile two files in a throwaway workspace and write the artefacts to ``out_dir``."""

    config = config or EngineConfig()
    workspaces = InMemoryWorkspaceStore()
    workspace = Workspace(identifier="local", name=f"{source1_path.name} vs {source2_path.name}")
    workspaces.add(workspace)
    runner = ReconciliationRunner(
        workspaces,
        InMemoryReconciliationStore(),
        InMemoryExceptionStore(),
        config=config,
        registry=registry,
    )

    source1 = inspect_file(source1_path, side=SOURCE1)
    source2 = inspect_file(source2_path, side=SOURCE2)
    outcome = runner.run(workspace.identifier, source1, source2, mapping, rules=rules)

    out_dir.mkdir(parents=True, exist_ok=True)
    write_csv(out_dir / "recon_exceptions.csv", outcome.exceptions)
    write_json(out_dir / "recon_exceptions.json", outcome.record, outcome.exceptions)
    markdown = generate_markdown_summary(
        outcome.record,
        outcome.exceptions,
        outcome.results,
        source1_total=outcome.match.total1,
        source2_total=outcome.match.total2,
    )
    write_markdown(out_dir / "recon_report.md", markdown)
    return outcome
