from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path

from .checks import rule_from_config
from .config import EngineConfig
from .errors import ReconError
from .mapping import auto_match
from .models import KIND_NUMBER, RUN_COMPLETE, SOURCE1, SOURCE2, FieldMapping
from .pipeline import run_reconciliation
from .schema import inspect_file


def _decimal(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Two-source reconciliation and validation")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inspect_parser = subparsers.add_parser("inspect", help="Print the columns and row count of a file")
    inspect_parser.add_argument("file", type=Path)
    inspect_parser.add_argument("--side", choices=[SOURCE1, SOURCE2], default=SOURCE1)

    automap_parser = subparsers.add_parser("automap", help="Propose a field mapping between two files")
    automap_parser.add_argument("source1", type=Path)
    automap_parser.add_argument("source2", type=Path)
    automap_parser.add_argument("--threshold", type=float, default=None, help="Minimum name similarity.")

    run_parser = subparsers.add_parser("run", help="Execute the reconciliation workflow")
    run_parser.add_argument("--source1", type=Path, required=True, help="Path to the source 1 file.")
    run_parser.add_argument("--source2", type=Path, required=True, help="Path to the source 2 file.")
    run_parser.add_argument(
        "--mapping",
        type=Path,
        help="JSON field mapping; proposed automatically from column names when omitted.",
    )
    run_parser.add_argument(
        "--key",
        action="append",
        default=[],
        help="Source 1 field that is part of the match key (repeatable).",
    )
    run_parser.add_argument(
        "--number",
        action="append",
        default=[],
        help="Source 1 field compared numerically (repeatable).",
    )
    run_parser.add_argument("--rules", type=Path, help="JSON list of validation rules.")
    run_parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out"),
        help="Directory that will receive the reconciliation artefacts.",
    )
    run_parser.add_argument(
        "--tolerance",
        type=_decimal,
        default=None,
        help="Absolute tolerance before a numeric difference is considered an exception.",
    )
    return parser


def _load_mapping(args: argparse.Namespace, config: EngineConfig) -> FieldMapping:
    if args.mapping:
        mapping = FieldMapping.from_json(json.loads(args.mapping.read_text(encoding="utf-8")))
    else:
        columns1 = inspect_file(args.source1, side=SOURCE1).columns
        columns2 = inspect_file(args.source2, side=SOURCE2).columns
        mapping = auto_match(columns1, columns2, threshold=config.similarity_threshold)
    for name in args.number:
        mapping.set_field_type(name, replace(mapping.field_type(name), kind=KIND_NUMBER))
    if args.key:
        mapping.designate_key(*args.key)
    return mapping


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig.from_env()
        logging.basicConfig(level=config.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

        if args.command == "inspect":
            source = inspect_file(args.file, side=args.side)
            print(json.dumps({"columns": list(source.columns), "row_count": source.row_count, "format": source.format}, indent=2))
            return 0

        if args.command == "automap":
            threshold = args.threshold if args.threshold is not None else config.similarity_threshold
            columns1 = inspect_file(args.source1, side=SOURCE1).columns
            columns2 = inspect_file(args.source2, side=SOURCE2).columns
            print(json.dumps(auto_match(columns1, columns2, threshold=threshold).as_json(), indent=2))
            return 0

        if args.command == "run":
            if args.tolerance is not None:
                config = replace(config, amount_tolerance=args.tolerance)
            rules = []
            if args.rules:
                rules = [rule_from_config(item) for item in json.loads(args.rules.read_text(encoding="utf-8"))]
            outcome = run_reconciliation(
                source1_path=args.source1,
                source2_path=args.source2,
                mapping=_load_mapping(args, config),
                out_dir=args.out_dir,
                rules=rules,
                config=config,
            )
            return 0 if outcome.record.status == RUN_COMPLETE else 1
    except ReconError as exc:
        print(json.dumps(exc.as_dict(), indent=2), file=sys.stderr)
        return 2

    parser.error("Unknown command")
    return 2


if __name__ == "__main__":  # pragma: no cover - exercised via CLI entry point
    raise SystemExit(main())
