"""
Local audit history of staging actions (create / delete / clear / restore).

Kept on the client so deleted scans can be restored by an admin later.
Newest entries first; the table is trimmed to ``max_entries`` on every insert.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from path_utils import ensure_parent

ACTIONS = ("create", "delete", "edit", "restore", "clear")


class AuditLog:
    def __init__(self, db_path: Union[str, Path] = "data/audit_log.db", max_entries: int = 500):
        self.db_path = ensure_parent(db_path)
        self.max_entries = max(1, int(max_entries))
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self) -> None:
        with sqlite3.connect(str(self.db_path)) as conn:
            conn.executescript('''
                CREATE TABLE IF NOT EXISTS audit_log (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    entry_id TEXT NOT NULL UNIQUE,
                    timestamp TEXT NOT NULL,
                    action TEXT NOT NULL,
                    serial TEXT,
                    workspace TEXT,
                    operator TEXT,
                    details TEXT,
                    scan_data TEXT
                );
            ''')

    def add(self, action: str, serial: str = "", workspace: str = "main", operator: str = "",
            details: str = "", scan_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        if action not in ACTIONS:
            raise ValueError(f"Unknown audit action: {action}")
        entry = {
            "id": f"{int(datetime.now().timestamp() * 1000)}-{uuid.uuid4().hex[:9]}",
            "timestamp": datetime.now().isoformat(timespec="seconds"),
            "action": action,
            "serial": serial or "",
            "mode": workspace,
            "operator": operator or "",
            "details": details or "",
            "scanData": scan_data,
        }
        conn = self._connect()
        try:
            with conn:
                conn.execute('''
                    INSERT INTO audit_log (entry_id, timestamp, action, serial, workspace, operator, details, scan_data)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    entry["id"], entry["timestamp"], action, entry["serial"], workspace,
                    entry["operator"], entry["details"],
                    json.dumps(scan_data, ensure_ascii=False) if scan_data is not None else None,
                ))
                conn.execute('''
                    DELETE FROM audit_log WHERE seq NOT IN (
                        SELECT seq FROM audit_log ORDER BY seq DESC LIMIT ?
                    )
                ''', (self.max_entries,))
        finally:
            conn.close()
        return entry

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Dict[str, Any]:
        scan_data = None
        if row['scan_data']:
            try:
                scan_data = json.loads(row['scan_data'])
            except json.JSONDecodeError:
                logging.warning("Audit entry %s has unreadable scan data", row['entry_id'])
        return {
            "id": row['entry_id'],
            "timestamp": row['timestamp'],
            "action": row['action'],
            "serial": row['serial'] or "",
            "mode": row['workspace'] or "main",
            "operator": row['operator'] or "",
            "details": row['details'] or "",
            "scanData": scan_data,
        }

    def entries(self, action: Optional[str] = None, workspace: Optional[str] = None) -> List[Dict[str, Any]]:
        where = ['1=1']
        params: List[Any] = []
        if action:
            where.append('action = ?')
            params.append(action)
        if workspace:
            where.append('workspace = ?')
            params.append(workspace)
        conn = self._connect()
        try:
            rows = conn.execute(
                f"SELECT * FROM audit_log WHERE {' AND '.join(where)} ORDER BY seq DESC",
                params,
            ).fetchall()
        finally:
            conn.close()
        return [self._row_to_entry(r) for r in rows]

    def get(self, entry_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute('SELECT * FROM audit_log WHERE entry_id = ?', (entry_id,)).fetchone()
        finally:
            conn.close()
        return self._row_to_entry(row) if row else None

    def stats(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or datetime.now()
        day_ago = (now - timedelta(days=1)).isoformat(timespec="seconds")
        conn = self._connect()
        try:
            counts = dict(conn.execute(
                'SELECT action, COUNT(*) FROM audit_log GROUP BY action'
            ).fetchall())
            recent = conn.execute(
                'SELECT COUNT(*) FROM audit_log WHERE timestamp > ?', (day_ago,)
            ).fetchone()[0]
        finally:
            conn.close()
        return {
            "totalCreated": int(counts.get("create", 0)),
            "totalDeleted": int(counts.get("delete", 0)),
            "totalRestored": int(counts.get("restore", 0)),
            "recentActivity": int(recent or 0),
        }

    def clear(self) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute('DELETE FROM audit_log')
        finally:
            conn.close()
        logging.info("Audit history cleared")
