"""Header and row-count inference for uploaded source files.

Files are streamed: CSV through ``csv.reader`` and spreadsheets through a
read-only ``openpyxl`` workbook, so a schema can be inferred for exports with
hundreds of thousands of rows without holding them in memory.
"""
from __future__ import annotations

import csv
import io
import logging
import uuid
import zipfile
from datetime import date, datetime
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterator, List, Optional, Sequence, Union

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .errors import SchemaError
from .models import FORMAT_CSV, FORMAT_EXCEL, SIDES, SourceFile, SourceRow

LOGGER = logging.getLogger(__name__)

CSV_EXTENSIONS = {".csv", ".txt", ".tsv"}
EXCEL_EXTENSIONS = {".xlsx", ".xlsm"}
LEGACY_EXCEL_EXTENSIONS = {".xls"}
ZIP_MAGIC = b"PK\x03\x04"
SNIFF_BYTES = 4096

Source = Union[str, Path, BinaryIO]


def _sniff_delimiter(sample: str) -> str:
    """Detect a CSV delimiter, defaulting to comma when uncertain."""

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=",;\t|")
        return dialect.delimiter
    except csv.Error:
        return ";" if sample.count(";") > sample.count(",") else ","


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == datetime.min.time():
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_blank(row: Sequence[Any]) -> bool:
    return all(_cell_text(cell).strip() == "" for cell in row)


def resolve_headers(raw: Sequence[Any]) -> List[str]:
    """Return trimmed, unique header names for a raw header row.

    Trailing empty cells are dropped, other blank cells become ``column_<n>``
    and repeated names get a numeric suffix (``amount``, ``amount_2``).
    """

    cells = [_cell_text(cell).strip() for cell in raw]
    while cells and not cells[-1]:
        cells.pop()

    headers: List[str] = []
    used: set[str] = set()
    for position, cell in enumerate(cells, start=1):
        base = cell or f"column_{position}"
        name = base
        suffix = 1
        while name in used:
            suffix += 1
            name = f"{base}_{suffix}"
        used.add(name)
        headers.append(name)
    return headers


def detect_format(source: Source, filename: Optional[str] = None) -> str:
    name = filename or (str(source) if isinstance(source, (str, Path)) else getattr(source, "name", ""))
    suffix = Path(str(name)).suffix.lower() if name else ""
    if suffix in CSV_EXTENSIONS:
        return FORMAT_CSV
    if suffix in EXCEL_EXTENSIONS:
        return FORMAT_EXCEL
    if suffix in LEGACY_EXCEL_EXTENSIONS:
        raise SchemaError(f"Legacy spreadsheet format is not supported: {name}")

    if isinstance(source, (str, Path)):
        with Path(source).open("rb") as handle:
            magic = handle.read(len(ZIP_MAGIC))
    else:
        start = source.tell()
        magic = source.read(len(ZIP_MAGIC))
        source.seek(start)
    return FORMAT_EXCEL if magic == ZIP_MAGIC else FORMAT_CSV


def _iter_csv(handle: io.TextIOBase) -> Iterator[List[str]]:
    try:
        sample = handle.read(SNIFF_BYTES)
        handle.seek(0)
        for row in csv.reader(handle, delimiter=_sniff_delimiter(sample)):
            yield row
    except (csv.Error, UnicodeDecodeError) as exc:
        raise SchemaError(f"Unreadable CSV content: {exc}") from exc


def _iter_excel(source: Union[Path, BinaryIO]) -> Iterator[Sequence[Any]]:
    try:
        workbook = load_workbook(source, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise SchemaError(f"Unreadable spreadsheet: {exc}") from exc
    try:
        if not workbook.worksheets:
            return
        for row in workbook.worksheets[0].iter_rows(values_only=True):
            yield row
    finally:
        workbook.close()


def _iter_raw_rows(source: Source, fmt: str) -> Iterator[Sequence[Any]]:
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(path)
        if fmt == FORMAT_EXCEL:
            yield from _iter_excel(path)
            return
        with path.open(newline="", encoding="utf-8-sig") as handle:
            yield from _iter_csv(handle)
        return

    start = source.tell()
    try:
        if fmt == FORMAT_EXCEL:
            yield from _iter_excel(source)
            return
        wrapper = io.TextIOWrapper(source, encoding="utf-8-sig", newline="")
        try:
            yield from _iter_csv(wrapper)
        finally:
            wrapper.detach()
    finally:
        source.seek(start)


def _iter_table(source: Source, fmt: str) -> Iterator[tuple[List[str], int, Sequence[Any]]]:
    """Yield ``(headers, row_number, raw_row)`` for each non-blank data row."""

    headers: Optional[List[str]] = None
    row_number = 0
    for raw in _iter_raw_rows(source, fmt):
        if _is_blank(raw):
            continue
        if headers is None:
            headers = resolve_headers(raw)
            if not headers:
                raise SchemaError("File has no columns")
            continue
        row_number += 1
        yield headers, row_number, raw
    if headers is None:
        raise SchemaError("File has no header row")
    if row_number == 0:
        raise SchemaError(f"File has no data rows (columns: {', '.join(headers)})")


def inspect_file(
    source: Source,
    *,
    side: str,
    filename: Optional[str] = None,
    identifier: Optional[str] = None,
    checkpoint: Optional[Callable[[], None]] = None,
) -> SourceFile:
    """Describe ``source`` as a :class:`SourceFile` without loading it."""

    if side not in SIDES:
        raise SchemaError(f"Unknown source side: {side!r}")
    fmt = detect_format(source, filename)

    headers: List[str] = []
    count = 0
    for headers, count, _ in _iter_table(source, fmt):
        if checkpoint is not None and count % 1000 == 0:
            checkpoint()

    is_path = isinstance(source, (str, Path))
    name = filename or (Path(source).name if is_path else Path(str(getattr(source, "name", ""))).name)
    descriptor = SourceFile(
        identifier=identifier or uuid.uuid4().hex,
        side=side,
        columns=tuple(headers),
        row_count=count,
        format=fmt,
        name=name,
        path=str(source) if is_path else None,
    )
    LOGGER.debug("Inferred %s schema for %s: %d columns, %d rows", fmt, name, len(headers), count)
    return descriptor


def iter_rows(source_file: SourceFile, source: Optional[Source] = None) -> Iterator[SourceRow]:
    """Stream the data rows of ``source_file`` as :class:`SourceRow` objects.

    ``source`` overrides the stored path, for descriptors built from streams.
    """

    origin = source if source is not None else source_file.path
    if origin is None:
        raise SchemaError(f"No readable location for source file {source_file.identifier}")
    for headers, row_number, raw in _iter_table(origin, source_file.format):
        cells = [_cell_text(cell) for cell in raw]
        if len(cells) < len(headers):
            cells.extend([""] * (len(headers) - len(cells)))
        yield SourceRow(
            side=source_file.side,
            row_number=row_number,
            values=dict(zip(headers, cells)),
        )
