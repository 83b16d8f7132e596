from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from offline_queue import OfflineQueue
from staged_records import normalize_serial, normalize_workspace
from staging_client import RemoteRejected, RemoteUnavailable, StagedPage


class FakeRemote:
    """In-memory stand-in for StagingApiClient with a switchable network."""

    def __init__(self):
        self.online = True
        self.rows: Dict[str, List[Dict[str, Any]]] = {"main": [], "alt": []}
        self.next_id = 1
        self.calls: List[str] = []
        self.fail_existence = False
        self.on_existence = None

    def _check(self, name: str) -> None:
        self.calls.append(name)
        if not self.online:
            raise RemoteUnavailable(f"{name}: connection refused")

    def seed(self, workspace: str, serial: str, **fields: Any) -> int:
        row = dict(fields, serial=serial, sheet=workspace, id=self.next_id)
        self.next_id += 1
        self.rows[workspace].append(row)
        return row["id"]

    def existence(self, workspace: str, serial: str) -> Dict[str, Any]:
        self._check("existence")
        if self.on_existence:
            self.on_existence(serial)
        if self.fail_existence:
            raise RemoteUnavailable("existence: timeout")
        key = normalize_serial(serial)
        for row in reversed(self.rows[normalize_workspace(workspace)]):
            if normalize_serial(row["serial"]) == key:
                return {"exists": True, "row": dict(row)}
        return {"exists": False, "row": None}

    def submit(self, workspace: str, record: Dict[str, Any]) -> int:
        self._check("submit")
        payload = {k: v for k, v in record.items() if k != "localId"}
        return self.seed(normalize_workspace(workspace), payload.pop("serial"), **payload)

    def bulk_submit(self, workspace: str, records) -> List[int]:
        self._check("bulk_submit")
        return [self.submit(workspace, r) for r in records]

    def page(self, workspace: str, cursor: Optional[int] = None, limit: int = 200) -> StagedPage:
        self._check("page")
        rows = sorted(self.rows[normalize_workspace(workspace)], key=lambda r: r["id"], reverse=True)
        if cursor is not None:
            rows = [r for r in rows if r["id"] < cursor]
        chunk = rows[:limit]
        next_cursor = chunk[-1]["id"] if len(rows) > limit else None
        return StagedPage(rows=[dict(r) for r in chunk], next_cursor=next_cursor,
                          total=len(self.rows[normalize_workspace(workspace)]))

    def count(self, workspace: str) -> int:
        self._check("count")
        return len(self.rows[normalize_workspace(workspace)])

    def delete(self, workspace: str, record_id: int) -> None:
        self._check("delete")
        rows = self.rows[normalize_workspace(workspace)]
        kept = [r for r in rows if r["id"] != int(record_id)]
        if len(kept) == len(rows):
            raise RemoteRejected("DELETE: HTTP 404 Not found", 404)
        self.rows[normalize_workspace(workspace)] = kept

    def clear(self, workspace: str) -> int:
        self._check("clear")
        deleted = len(self.rows[normalize_workspace(workspace)])
        self.rows[normalize_workspace(workspace)] = []
        return deleted

    def export_workbook(self, workspace: str) -> bytes:
        self._check("export")
        return b"PK\x03\x04fake-xlsx"

    def is_reachable(self, timeout: float = 2.0) -> bool:
        return self.online


class FakeClock:
    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def queue(tmp_path):
    return OfflineQueue(tmp_path / "offline_queue.db")


@pytest.fixture
def clock():
    return FakeClock()
