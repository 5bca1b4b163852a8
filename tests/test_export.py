from __future__ import annotations

import csv
from datetime import date
from pathlib import Path

import pytest

from bank_portal_export.errors import ExportError
from bank_portal_export.export import HEADER, CsvExportSink, default_export_path
from bank_portal_export.models import ExtractionRequest, TransactionRecord


def _records(n: int) -> list[TransactionRecord]:
    return [
        TransactionRecord(
            date=f"{i + 1:02d}/09/2024",
            merchant=f"Merchant, {i}",
            category="Food",
            transaction_type="Regular",
            local_amount=f"{10 + i}.00",
        )
        for i in range(n)
    ]


def test_export_writes_header_and_rows(tmp_path: Path) -> None:
    dest = tmp_path / "out" / "transactions.csv"
    result = CsvExportSink().export(_records(3), dest)

    assert result.path == dest
    assert result.record_count == 3
    with dest.open(newline="", encoding="utf-8") as fh:
        rows = list(csv.reader(fh))
    assert rows[0] == list(HEADER)
    assert rows[0] == ["Date", "Merchant", "Category", "Type", "FX Amount", "Local Amount", "Balance"]
    assert len(rows) == 4
    # embedded commas survive quoting
    assert rows[1][1] == "Merchant, 0"
    assert rows[3][5] == "12.00"


def test_export_overwrites_existing_file(tmp_path: Path) -> None:
    dest = tmp_path / "transactions.csv"
    dest.write_text("stale\nstale\nstale\nstale\nstale\nstale\n", encoding="utf-8")

    CsvExportSink().export(_records(2), dest)

    lines = dest.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 3
    assert "stale" not in lines
    assert not list(tmp_path.glob(".*.tmp"))


def test_export_with_no_records_writes_header_only(tmp_path: Path) -> None:
    dest = tmp_path / "empty.csv"
    result = CsvExportSink().export([], dest)
    assert result.record_count == 0
    assert dest.read_text(encoding="utf-8").splitlines() == [",".join(HEADER)]


def test_failed_export_leaves_no_partial_file(tmp_path: Path) -> None:
    dest = tmp_path / "is_a_dir.csv"
    dest.mkdir()

    with pytest.raises(ExportError):
        CsvExportSink().export(_records(1), dest)

    assert dest.is_dir()
    assert not list(tmp_path.glob(".*.tmp"))


def test_default_export_path() -> None:
    request = ExtractionRequest(
        account_selector="card 1234",
        period_start=date(2024, 9, 1),
        period_end=date(2024, 9, 30),
    )
    path = default_export_path("data/exports", request, institution="max")
    assert path == Path("data/exports/transactions_max_card_1234_2024-09-01_2024-09-30.csv")
