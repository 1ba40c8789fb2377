import io
from datetime import datetime
from pathlib import Path

import pytest
from openpyxl import Workbook

from reconengine import schema
from reconengine.errors import SchemaError
from reconengine.models import FORMAT_CSV, FORMAT_EXCEL, SOURCE1, SOURCE2


def test_inspect_csv_reports_ordered_columns_and_row_count(tmp_path: Path):
    path = tmp_path / "bank.csv"
    path.write_text("ref,amount,purchase_date\nA1,100,2023-04-15\n\nA2,200,2023-04-16\n", encoding="utf-8")

    source = schema.inspect_file(path, side=SOURCE1)
    assert source.columns == ("ref", "amount", "purchase_date")
    assert source.row_count == 2
    assert source.format == FORMAT_CSV
    assert source.side == SOURCE1
    assert source.name == "bank.csv"


def test_inspect_csv_handles_bom_and_semicolons(tmp_path: Path):
    path = tmp_path / "ledger.csv"
    path.write_text("\ufeffref;amount\nA1;100\nA2;200\n", encoding="utf-8")

    source = schema.inspect_file(path, side=SOURCE2)
    assert source.columns == ("ref", "amount")
    assert source.row_count == 2


def test_headers_are_deduplicated():
    assert schema.resolve_headers(["amount", "Amount ", "amount", "", None]) == [
        "amount",
        "Amount",
        "amount_2",
    ]
    assert schema.resolve_headers(["ref", "", "ref"]) == ["ref", "column_2", "ref_2"]


def test_header_only_file_is_rejected(tmp_path: Path):
    path = tmp_path / "empty.csv"
    path.write_text("ref,amount\n", encoding="utf-8")

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side=SOURCE1)


def test_blank_file_is_rejected(tmp_path: Path):
    path = tmp_path / "blank.csv"
    path.write_text("\n\n", encoding="utf-8")

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side=SOURCE1)


def test_legacy_xls_is_rejected(tmp_path: Path):
    path = tmp_path / "old.xls"
    path.write_bytes(b"\xd0\xcf\x11\xe0")

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side=SOURCE1)


def test_unknown_side_is_rejected(tmp_path: Path):
    path = tmp_path / "bank.csv"
    path.write_text("ref\nA1\n", encoding="utf-8")

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side="source3")


def _workbook(path: Path) -> Path:
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["ref", "amount", "booked"])
    sheet.append(["A1", 100, datetime(2023, 4, 15)])
    sheet.append(["A2", 250.5, datetime(2023, 4, 16)])
    workbook.save(path)
    return path


def test_inspect_excel_streams_first_sheet(tmp_path: Path):
    path = _workbook(tmp_path / "dealer.xlsx")

    source = schema.inspect_file(path, side=SOURCE2)
    assert source.format == FORMAT_EXCEL
    assert source.columns == ("ref", "amount", "booked")
    assert source.row_count == 2

    rows = list(schema.iter_rows(source))
    assert rows[0].values == {"ref": "A1", "amount": "100", "booked": "2023-04-15"}
    assert rows[1].values["amount"] == "250.5"
    assert rows[1].record_id == "source2:2"


def test_format_is_sniffed_when_extension_is_unknown(tmp_path: Path):
    excel = _workbook(tmp_path / "upload.bin")
    text = tmp_path / "upload.dat"
    text.write_text("ref,amount\nA1,1\n", encoding="utf-8")

    assert schema.detect_format(excel) == FORMAT_EXCEL
    assert schema.detect_format(text) == FORMAT_CSV


def test_inspect_stream_restores_position():
    stream = io.BytesIO(b"ref,amount\nA1,100\nA2,200\nA3,300\n")

    source = schema.inspect_file(stream, side=SOURCE1, filename="upload.csv")
    assert source.row_count == 3
    assert source.path is None
    assert stream.tell() == 0
    assert not stream.closed

    rows = list(schema.iter_rows(source, stream))
    assert [row.values["ref"] for row in rows] == ["A1", "A2", "A3"]


def test_iter_rows_pads_short_rows(tmp_path: Path):
    path = tmp_path / "short.csv"
    path.write_text("ref,amount,notes\nA1,100\n", encoding="utf-8")

    source = schema.inspect_file(path, side=SOURCE1)
    (row,) = list(schema.iter_rows(source))
    assert row.values == {"ref": "A1", "amount": "100", "notes": ""}
    assert row.record_id == "source1:1"


def test_checkpoint_is_polled_for_large_files(tmp_path: Path):
    path = tmp_path / "large.csv"
    path.write_text("ref\n" + "\n".join(f"R{index}" for index in range(2500)) + "\n", encoding="utf-8")
    calls = []

    source = schema.inspect_file(path, side=SOURCE1, checkpoint=lambda: calls.append(1))
    assert source.row_count == 2500
    assert len(calls) == 2


def test_non_utf8_csv_is_rejected(tmp_path: Path):
    path = tmp_path / "export.csv"
    path.write_bytes("ref,desc\nA1,caf\xe9\n".encode("latin-1"))

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side=SOURCE1)


def test_non_utf8_bytes_past_the_sniff_sample_are_rejected(tmp_path: Path):
    path = tmp_path / "export.csv"
    body = "".join(f"R{index},plain\n" for index in range(1000))
    path.write_bytes(("ref,desc\n" + body + "R1000,caf\xe9\n").encode("latin-1"))

    with pytest.raises(SchemaError):
        schema.inspect_file(path, side=SOURCE1)
