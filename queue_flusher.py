from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from offline_queue import OfflineQueue
from staged_records import normalize_workspace
from staging_client import StagingApiError


@dataclass
class FlushResult:
    workspace: str
    ok: bool = True
    submitted: List[Dict[str, Any]] = field(default_factory=list)
    queue_ids: List[int] = field(default_factory=list)
    server_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None
    failure_streak: int = 0

    @property
    def sent(self) -> int:
        return len(self.submitted) if self.ok else 0


class QueueFlusher:
    """Drain one workspace of the offline queue with a single bulk submit."""

    def __init__(self, remote, queue: OfflineQueue):
        self.remote = remote
        self.queue = queue
        self._failure_streak: Dict[str, int] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, workspace: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(workspace, threading.Lock())

    def failure_streak(self, workspace: str) -> int:
        return self._failure_streak.get(normalize_workspace(workspace), 0)

    def flush(self, workspace: str) -> FlushResult:
        ws = normalize_workspace(workspace)
        lock = self._lock_for(ws)
        if not lock.acquire(blocking=False):
            # A flush for this workspace is already in flight; it will pick these up.
            return FlushResult(workspace=ws, failure_streak=self.failure_streak(ws))
        try:
            return self._flush_locked(ws)
        finally:
            lock.release()

    def _flush_locked(self, ws: str) -> FlushResult:
        items = self.queue.list_all(ws)
        if not items:
            return FlushResult(workspace=ws, failure_streak=self.failure_streak(ws))

        payloads = [item.payload for item in items]
        ids = [item.id for item in items]
        try:
            server_ids = self.remote.bulk_submit(ws, payloads) or []
        except StagingApiError as e:
            streak = self._failure_streak.get(ws, 0) + 1
            self._failure_streak[ws] = streak
            log = logging.warning if streak > 1 else logging.info
            log("Offline queue flush for %s failed (attempt %s, %s kept): %s", ws, streak, len(items), e)
            return FlushResult(
                workspace=ws,
                ok=False,
                error=str(e),
                failure_streak=streak,
            )

        # Only the ids read above: items enqueued during the round-trip stay queued.
        self.queue.remove_many(ws, ids)
        self._failure_streak[ws] = 0
        logging.info("Offline queue flush for %s: sent=%s", ws, len(items))
        return FlushResult(
            workspace=ws,
            submitted=payloads,
            queue_ids=ids,
            server_ids=list(server_ids) if len(server_ids) == len(payloads) else [],
        )
