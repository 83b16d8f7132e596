from __future__ import annotations

from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

from staged_records import StagedRecord, normalize_serial, normalize_workspace


class WorkspaceContext:
    """In-memory view of one workspace: staged records, serial index and known serials.

    ``records`` is an immutable tuple replaced on every change so readers never
    see a half-applied update; the serial index is rebuilt alongside it.
    """

    def __init__(self, workspace: str, queue=None):
        self.workspace = normalize_workspace(workspace)
        self.queue = queue
        self.records: Tuple[StagedRecord, ...] = ()
        self.serial_index: FrozenSet[str] = frozenset()
        self.known_serials: Set[str] = set()
        self.total_count = 0
        self.next_cursor: Optional[int] = None

    def _set_records(self, records: Iterable[StagedRecord]) -> None:
        self.records = tuple(records)
        self.serial_index = frozenset(r.serial_key for r in self.records if r.serial_key)

    def replace_records(self, records: Iterable[StagedRecord], total: Optional[int] = None,
                        next_cursor: Optional[int] = None) -> None:
        self._set_records(records)
        self.total_count = len(self.records) if total is None else max(0, int(total))
        self.next_cursor = next_cursor

    def append_page(self, records: Iterable[StagedRecord], next_cursor: Optional[int]) -> int:
        """Append an older page, skipping ids already loaded."""
        seen = {r.key for r in self.records}
        fresh = [r for r in records if r.key not in seen]
        self._set_records(self.records + tuple(fresh))
        self.next_cursor = next_cursor
        return len(fresh)

    def prepend(self, record: StagedRecord) -> None:
        self._set_records((record,) + self.records)

    def has_id(self, record_id) -> bool:
        key = str(record_id)
        return any(r.key == key for r in self.records)

    def has_serial(self, serial: str) -> bool:
        key = normalize_serial(serial)
        return bool(key) and key in self.serial_index

    def find_by_serial(self, serial: str) -> List[StagedRecord]:
        key = normalize_serial(serial)
        if not key:
            return []
        return [r for r in self.records if r.serial_key == key]

    def find(self, record_key) -> Optional[StagedRecord]:
        key = str(record_key)
        for r in self.records:
            if r.key == key:
                return r
        return None

    def remove(self, record_key) -> Optional[StagedRecord]:
        key = str(record_key)
        removed = None
        kept = []
        for r in self.records:
            if removed is None and r.key == key:
                removed = r
                continue
            kept.append(r)
        if removed is not None:
            self._set_records(kept)
        return removed

    def promote(self, local_id: str, durable_id: int) -> bool:
        """Swap an optimistic record's temporary id for the server-assigned one."""
        changed = False
        updated = []
        for r in self.records:
            if not changed and r.local_id == local_id and r.id is None:
                updated.append(r.promoted(durable_id))
                changed = True
            else:
                updated.append(r)
        if changed:
            self._set_records(updated)
        return changed

    def is_known(self, serial: str) -> bool:
        key = normalize_serial(serial)
        return bool(key) and key in self.known_serials

    def remember(self, serial: str) -> None:
        key = normalize_serial(serial)
        if key:
            self.known_serials.add(key)

    def import_known(self, serials: Iterable[str]) -> int:
        before = len(self.known_serials)
        for s in serials:
            self.remember(s)
        return len(self.known_serials) - before

    def pending_sync_count(self) -> int:
        if self.queue is None:
            return 0
        return self.queue.count(self.workspace)

    @property
    def local_only(self) -> List[StagedRecord]:
        return [r for r in self.records if not r.is_durable]

    def reset(self) -> None:
        self._set_records(())
        self.total_count = 0
        self.next_cursor = None
