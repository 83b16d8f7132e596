"""Read historical serial numbers from an inventory reference file (.xlsx / .csv)."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

from openpyxl import load_workbook

from staged_records import normalize_serial

HEADER_CANDIDATES = ('serial', 'Serial', 'SERIAL', 'Serial Number', 'SERIAL_NUMBER', 'SN', 'sn')


class ReferenceImportError(ValueError):
    """The reference file could not be read as a serial list."""


def _serial_column(header: Sequence[object]) -> Optional[int]:
    labels = [str(v).strip() if v is not None else "" for v in header]
    for idx, label in enumerate(labels):
        if label in HEADER_CANDIDATES:
            return idx
    return None


def extract_serials(rows: Iterable[Sequence[object]]) -> List[str]:
    """Serials from the "serial"-like column when the first row names one, else column A."""
    rows = list(rows)
    if not rows:
        return []

    column = _serial_column(rows[0])
    body = rows[1:] if column is not None else rows
    if column is None:
        column = 0

    serials: List[str] = []
    seen = set()
    for row in body:
        if row is None or len(row) <= column:
            continue
        value = normalize_serial(row[column])
        if value and value not in seen:
            seen.add(value)
            serials.append(value)
    return serials


def _read_xlsx(path: Path) -> List[Sequence[object]]:
    wb = load_workbook(filename=str(path), read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        return [tuple(row) for row in ws.iter_rows(values_only=True)]
    finally:
        wb.close()


def _read_csv(path: Path) -> List[Sequence[object]]:
    with path.open('r', encoding='utf-8-sig', newline='') as f:
        return [row for row in csv.reader(f)]


def read_reference_file(path_like: Union[str, Path]) -> List[str]:
    path = Path(path_like)
    suffix = path.suffix.lower()
    try:
        if suffix in ('.xlsx', '.xlsm'):
            rows = _read_xlsx(path)
        elif suffix in ('.csv', '.txt'):
            rows = _read_csv(path)
        else:
            raise ReferenceImportError(f"Unsupported reference file type: {suffix or path.name}")
    except ReferenceImportError:
        raise
    except Exception as e:
        raise ReferenceImportError(
            'Import failed. Ensure there is a "serial" column or serials in column A.'
        ) from e

    serials = extract_serials(rows)
    logging.info("Read %s known serials from %s", len(serials), path.name)
    return serials
