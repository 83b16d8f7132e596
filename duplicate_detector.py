from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from staged_records import StagedRecord, normalize_serial
from staging_client import StagingApiError
from workspace_context import WorkspaceContext

SOURCE_STAGED = "staged"
SOURCE_KNOWN = "known"
SOURCE_REMOTE = "remote"


@dataclass(frozen=True)
class MatchResult:
    is_dup: bool
    matches: List[StagedRecord] = field(default_factory=list)
    source: Optional[str] = None


NOT_DUPLICATE = MatchResult(False)


class ScanDebouncer:
    """Suppress repeats of the same serial within a trailing window (camera frame bursts)."""

    def __init__(self, window_seconds=1.2, clock: Callable[[], float] = time.monotonic):
        self.window = float(window_seconds)
        self.clock = clock
        self._last_serial = ""
        self._last_at = 0.0
        self.lock = threading.Lock()

    def should_suppress(self, serial: str) -> bool:
        key = normalize_serial(serial)
        with self.lock:
            now = self.clock()
            if key and key == self._last_serial and now - self._last_at < self.window:
                return True
            self._last_serial = key
            self._last_at = now
            return False

    def reset(self) -> None:
        with self.lock:
            self._last_serial = ""
            self._last_at = 0.0


class DuplicateDetector:
    """Decide whether a serial is already staged, known, or present on the server."""

    def __init__(self, remote=None):
        self.remote = remote

    def check_local(self, serial: str, context: WorkspaceContext) -> MatchResult:
        key = normalize_serial(serial)
        if not key:
            return NOT_DUPLICATE
        if context.has_serial(key):
            return MatchResult(True, context.find_by_serial(key), SOURCE_STAGED)
        if context.is_known(key):
            return MatchResult(True, context.find_by_serial(key), SOURCE_KNOWN)
        return NOT_DUPLICATE

    def check_remote(self, serial: str, workspace: str) -> MatchResult:
        key = normalize_serial(serial)
        if not key or self.remote is None:
            return NOT_DUPLICATE
        try:
            info = self.remote.existence(workspace, key)
        except StagingApiError as e:
            # Fail open: a missed duplicate surfaces later via realtime sync or review
            logging.info("Existence check for %s unavailable (treated as new): %s", key, e)
            return NOT_DUPLICATE
        if not info or not info.get("exists"):
            return NOT_DUPLICATE
        row = info.get("row") or {"serial": key}
        try:
            match = StagedRecord.from_row(row, workspace=workspace)
        except ValueError:
            match = StagedRecord(serial=key, workspace=workspace)
        return MatchResult(True, [match], SOURCE_REMOTE)

    def is_duplicate(self, serial: str, context: WorkspaceContext) -> MatchResult:
        result = self.check_local(serial, context)
        if result.is_dup:
            return result
        return self.check_remote(serial, context.workspace)
