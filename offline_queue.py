"""
Durable local queue for scans the staging server has not acknowledged yet.

One SQLite file holds every workspace; rows carry their workspace so a flush
for "main" can never pick up (or delete) an "alt" payload. Every public call
opens its own connection and runs in a single transaction, so a flush never
observes a half-written enqueue.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from path_utils import ensure_parent
from staged_records import normalize_workspace


@dataclass(frozen=True)
class QueuedItem:
    id: int
    workspace: str
    payload: Dict[str, Any]
    created_at: str = ""


class OfflineQueue:
    """Append-only, per-workspace store of not-yet-acknowledged scan payloads."""

    def __init__(self, db_path: Union[str, Path] = "data/offline_queue.db"):
        self.db_path = ensure_parent(db_path)
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            with conn:
                conn.execute('''
                    CREATE TABLE IF NOT EXISTS queued_scans (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        workspace TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                ''')
                conn.execute(
                    'CREATE INDEX IF NOT EXISTS idx_queued_scans_ws ON queued_scans (workspace, id)'
                )
        finally:
            conn.close()

    def enqueue(self, workspace: str, payload: Dict[str, Any]) -> int:
        ws = normalize_workspace(workspace)
        line = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    'INSERT INTO queued_scans (workspace, payload) VALUES (?, ?)',
                    (ws, line),
                )
                item_id = int(cur.lastrowid)
        finally:
            conn.close()
        logging.info("Queued scan %s for %s (offline item #%s)", payload.get("serial"), ws, item_id)
        return item_id

    def list_all(self, workspace: str) -> List[QueuedItem]:
        ws = normalize_workspace(workspace)
        conn = self._connect()
        try:
            rows = conn.execute(
                'SELECT id, workspace, payload, created_at FROM queued_scans WHERE workspace = ? ORDER BY id',
                (ws,),
            ).fetchall()
        finally:
            conn.close()

        items = []
        for row in rows:
            try:
                payload = json.loads(row['payload'])
            except json.JSONDecodeError:
                # Keep malformed rows in the table to avoid accidental loss.
                logging.warning("Skipping unreadable offline item #%s", row['id'])
                continue
            items.append(QueuedItem(
                id=int(row['id']),
                workspace=row['workspace'],
                payload=payload,
                created_at=row['created_at'] or "",
            ))
        return items

    def remove_many(self, workspace: str, ids: Iterable[int]) -> int:
        """Delete the given ids, scoped to ``workspace``. Returns the number removed."""
        ws = normalize_workspace(workspace)
        id_list = [int(i) for i in ids]
        if not id_list:
            return 0
        conn = self._connect()
        try:
            with conn:
                cur = conn.executemany(
                    'DELETE FROM queued_scans WHERE workspace = ? AND id = ?',
                    [(ws, i) for i in id_list],
                )
                removed = cur.rowcount
        finally:
            conn.close()
        return max(0, removed)

    def count(self, workspace: Optional[str] = None) -> int:
        conn = self._connect()
        try:
            if workspace is None:
                row = conn.execute('SELECT COUNT(*) AS c FROM queued_scans').fetchone()
            else:
                row = conn.execute(
                    'SELECT COUNT(*) AS c FROM queued_scans WHERE workspace = ?',
                    (normalize_workspace(workspace),),
                ).fetchone()
        finally:
            conn.close()
        return int(row['c'] or 0)

    def workspaces(self) -> List[str]:
        """Workspaces that currently hold queued items."""
        conn = self._connect()
        try:
            rows = conn.execute('SELECT DISTINCT workspace FROM queued_scans ORDER BY workspace').fetchall()
        finally:
            conn.close()
        return [r['workspace'] for r in rows]
