from __future__ import annotations

import csv
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable, Union

from .errors import ExportError
from .models import ExportResult, ExtractionRequest, TransactionRecord


logger = logging.getLogger(__name__)


# (record attribute, header label) in output column order.
COLUMNS: tuple[tuple[str, str], ...] = (
    ("date", "Date"),
    ("merchant", "Merchant"),
    ("category", "Category"),
    ("transaction_type", "Type"),
    ("foreign_amount", "FX Amount"),
    ("local_amount", "Local Amount"),
    ("running_balance", "Balance"),
)

HEADER: tuple[str, ...] = tuple(label for _, label in COLUMNS)


def _slug(value: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]+", "_", (value or "").strip()).strip("_") or "account"


def default_export_path(out_dir: Union[str, Path], request: ExtractionRequest, *, institution: str = "") -> Path:
    parts = ["transactions"]
    if institution:
        parts.append(_slug(institution))
    parts += [_slug(request.account_selector), request.period_start.isoformat(), request.period_end.isoformat()]
    return Path(out_dir) / ("_".join(parts) + ".csv")


class CsvExportSink:
    """
    Write TransactionRecords as UTF-8 CSV with a fixed header.

    The file is written next to the destination and atomically moved into place, so the destination is either
    the complete new export or untouched.
    """

    def export(self, records: Iterable[TransactionRecord], destination: Union[str, Path]) -> ExportResult:
        dest = Path(destination)
        rows = [[getattr(r, attr) or "" for attr, _ in COLUMNS] for r in records]

        tmp_name = ""
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".tmp", dir=str(dest.parent))
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as fh:
                writer = csv.writer(fh)
                writer.writerow(HEADER)
                writer.writerows(rows)
            os.replace(tmp_name, dest)
        except (OSError, csv.Error) as e:
            if tmp_name:
                Path(tmp_name).unlink(missing_ok=True)
            raise ExportError(f"Failed to write export to {dest}: {e}") from e

        logger.info("Exported %d transactions to %s", len(rows), dest)
        return ExportResult(path=dest, record_count=len(rows))
