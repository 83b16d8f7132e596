#!/usr/bin/env python3
"""
Staging server database (SQLite).

Tables:
- staged_scans: every staged rail record, partitioned by sheet (main / alt)

Rows are returned in the camelCase wire form the tracker client reads.
A payload carrying a ``localId`` (a replayed offline scan) is stored once;
re-sending it returns the id it was given the first time.
"""

import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from path_utils import ensure_parent
from staged_records import normalize_serial, normalize_workspace, utc_now_iso

DEFAULT_DB_PATH = (os.environ.get('RAIL_STAGING_DB') or '').strip() or 'data/rail_staging.db'

# wire key -> column
_FIELDS = (
    ('serial', 'serial'),
    ('stage', 'stage'),
    ('operator', 'operator'),
    ('wagon1Id', 'wagon1_id'),
    ('wagon2Id', 'wagon2_id'),
    ('wagon3Id', 'wagon3_id'),
    ('receivedAt', 'received_at'),
    ('loadedAt', 'loaded_at'),
    ('destination', 'destination'),
    ('grade', 'grade'),
    ('railType', 'rail_type'),
    ('spec', 'spec'),
    ('lengthM', 'length_m'),
    ('qrRaw', 'qr_raw'),
    ('capturedAt', 'captured_at'),
    ('timestamp', 'timestamp'),
    ('localId', 'local_id'),
)

EXPORT_COLUMNS = (
    ('ID', 'id'),
    ('Serial', 'serial'),
    ('Stage', 'stage'),
    ('Operator', 'operator'),
    ('Wagon 1', 'wagon1Id'),
    ('Wagon 2', 'wagon2Id'),
    ('Wagon 3', 'wagon3Id'),
    ('Received At', 'receivedAt'),
    ('Loaded At', 'loadedAt'),
    ('Destination', 'destination'),
    ('Grade', 'grade'),
    ('Rail Type', 'railType'),
    ('Spec', 'spec'),
    ('Length (m)', 'lengthM'),
    ('QR Raw', 'qrRaw'),
    ('Captured At', 'capturedAt'),
    ('Timestamp', 'timestamp'),
)


def get_db_connection(db_path: Union[str, Path, None] = None) -> sqlite3.Connection:
    """Get database connection with row factory"""
    path = ensure_parent(db_path or DEFAULT_DB_PATH)
    conn = sqlite3.connect(str(path), timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_database(db_path: Union[str, Path, None] = None) -> None:
    """Create tables and indexes if missing."""
    conn = get_db_connection(db_path)
    try:
        cursor = conn.cursor()
        cursor.execute('PRAGMA journal_mode=WAL')
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS staged_scans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sheet TEXT NOT NULL DEFAULT 'main',
                serial TEXT NOT NULL,
                stage TEXT DEFAULT 'received',
                operator TEXT,
                wagon1_id TEXT,
                wagon2_id TEXT,
                wagon3_id TEXT,
                received_at TEXT,
                loaded_at TEXT,
                destination TEXT,
                grade TEXT,
                rail_type TEXT,
                spec TEXT,
                length_m TEXT,
                qr_raw TEXT,
                captured_at TEXT,
                timestamp TEXT,
                local_id TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP
            )
        ''')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_staged_sheet_serial ON staged_scans(sheet, serial)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_staged_sheet_local ON staged_scans(sheet, local_id)')
        conn.commit()
    finally:
        conn.close()
    logging.info("Staging database ready")


def row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    out: Dict[str, Any] = {'id': row['id'], 'sheet': row['sheet']}
    for key, column in _FIELDS:
        if key == 'localId':
            continue
        out[key] = row[column] if row[column] is not None else ''
    out['createdAt'] = str(row['created_at'] or '')
    return out


def _values(sheet: str, payload: Mapping[str, Any]) -> Tuple[Any, ...]:
    values: List[Any] = [sheet]
    for key, _column in _FIELDS:
        value = payload.get(key)
        if key == 'serial':
            value = normalize_serial(value)
        elif key == 'timestamp':
            value = value or utc_now_iso()
        elif key == 'localId':
            value = value or None
        elif value is None:
            value = ''
        values.append(str(value) if value is not None else None)
    return tuple(values)


_INSERT_SQL = 'INSERT INTO staged_scans (sheet, {}) VALUES ({})'.format(
    ', '.join(column for _key, column in _FIELDS),
    ', '.join('?' for _ in range(len(_FIELDS) + 1)),
)


def _insert(cursor: sqlite3.Cursor, sheet: str, payload: Mapping[str, Any]) -> int:
    if not normalize_serial(payload.get('serial')):
        raise ValueError('serial is required')
    local_id = payload.get('localId')
    if local_id:
        cursor.execute(
            'SELECT id FROM staged_scans WHERE sheet = ? AND local_id = ?',
            (sheet, str(local_id)),
        )
        existing = cursor.fetchone()
        if existing:
            return int(existing['id'])
    cursor.execute(_INSERT_SQL, _values(sheet, payload))
    return int(cursor.lastrowid)


def insert_scan(sheet: str, payload: Mapping[str, Any], db_path=None) -> int:
    sheet = normalize_workspace(sheet)
    conn = get_db_connection(db_path)
    try:
        with conn:
            return _insert(conn.cursor(), sheet, payload)
    finally:
        conn.close()


def insert_many(sheet: str, payloads: Sequence[Mapping[str, Any]], db_path=None) -> List[int]:
    """Insert a batch in one transaction: either every row is stored or none."""
    sheet = normalize_workspace(sheet)
    conn = get_db_connection(db_path)
    try:
        with conn:
            cursor = conn.cursor()
            return [_insert(cursor, sheet, p) for p in payloads]
    finally:
        conn.close()


def list_page(sheet: str, limit: int = 200, cursor: Optional[int] = None,
              db_path=None) -> Tuple[List[Dict[str, Any]], Optional[int]]:
    """Newest first; ``cursor`` is the smallest id already seen."""
    sheet = normalize_workspace(sheet)
    limit = max(1, min(int(limit), 1000))
    conn = get_db_connection(db_path)
    try:
        if cursor is None:
            rows = conn.execute(
                'SELECT * FROM staged_scans WHERE sheet = ? ORDER BY id DESC LIMIT ?',
                (sheet, limit + 1),
            ).fetchall()
        else:
            rows = conn.execute(
                'SELECT * FROM staged_scans WHERE sheet = ? AND id < ? ORDER BY id DESC LIMIT ?',
                (sheet, int(cursor), limit + 1),
            ).fetchall()
    finally:
        conn.close()
    has_more = len(rows) > limit
    rows = rows[:limit]
    next_cursor = rows[-1]['id'] if has_more and rows else None
    return [row_to_dict(r) for r in rows], next_cursor


def count(sheet: str, db_path=None) -> int:
    conn = get_db_connection(db_path)
    try:
        return int(conn.execute(
            'SELECT COUNT(*) FROM staged_scans WHERE sheet = ?',
            (normalize_workspace(sheet),),
        ).fetchone()[0])
    finally:
        conn.close()


def find_by_serial(sheet: str, serial: str, db_path=None) -> Optional[Dict[str, Any]]:
    key = normalize_serial(serial)
    if not key:
        return None
    conn = get_db_connection(db_path)
    try:
        row = conn.execute(
            'SELECT * FROM staged_scans WHERE sheet = ? AND serial = ? ORDER BY id DESC LIMIT 1',
            (normalize_workspace(sheet), key),
        ).fetchone()
    finally:
        conn.close()
    return row_to_dict(row) if row else None


def get_scans(sheet: str, scan_ids: Sequence[int], db_path=None) -> List[Dict[str, Any]]:
    """Rows for the given ids, in the order asked for; missing ids are skipped."""
    ids = [int(i) for i in scan_ids]
    if not ids:
        return []
    conn = get_db_connection(db_path)
    try:
        rows = conn.execute(
            f'SELECT * FROM staged_scans WHERE sheet = ? AND id IN ({",".join("?" * len(ids))})',
            (normalize_workspace(sheet), *ids),
        ).fetchall()
    finally:
        conn.close()
    by_id = {row["id"]: row_to_dict(row) for row in rows}
    return [by_id[i] for i in ids if i in by_id]


def delete_scan(sheet: str, scan_id: int, db_path=None) -> bool:
    conn = get_db_connection(db_path)
    try:
        with conn:
            cur = conn.execute(
                'DELETE FROM staged_scans WHERE sheet = ? AND id = ?',
                (normalize_workspace(sheet), int(scan_id)),
            )
            return cur.rowcount > 0
    finally:
        conn.close()


def clear(sheet: str, db_path=None) -> int:
    conn = get_db_connection(db_path)
    try:
        with conn:
            cur = conn.execute('DELETE FROM staged_scans WHERE sheet = ?', (normalize_workspace(sheet),))
            return cur.rowcount
    finally:
        conn.close()


def rows_for_export(sheet: str, db_path=None) -> List[Dict[str, Any]]:
    """Oldest first, for the spreadsheet export."""
    conn = get_db_connection(db_path)
    try:
        rows = conn.execute(
            'SELECT * FROM staged_scans WHERE sheet = ? ORDER BY id ASC',
            (normalize_workspace(sheet),),
        ).fetchall()
    finally:
        conn.close()
    return [row_to_dict(r) for r in rows]
