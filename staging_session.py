#!/usr/bin/env python3
"""
Staging session for rail-stock check-in.

Takes decoded QR text (or a manually typed serial), checks it for duplicates,
holds it for operator review and stages it on the server. When the server
cannot be reached the record is kept in the durable offline queue and shown
immediately with a temporary id; the queue is flushed on reconnect.

States:
- idle: nothing under review
- captured: one candidate waiting for Confirm / Discard
- duplicate_held: candidate matched an existing serial; operator decides
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from audit_log import AuditLog
from duplicate_detector import DuplicateDetector, MatchResult, ScanDebouncer
from known_serials import ReferenceImportError, read_reference_file
from offline_queue import OfflineQueue
from qr_payload import parse_qr_payload
from queue_flusher import FlushResult, QueueFlusher
from rail_config import DAMAGED_QR_DEFAULTS
from realtime_listener import ROW_CREATED, ROW_DELETED, WORKSPACE_CLEARED, RemoteEvent, apply_event
from staged_records import (
    DEFAULT_WORKSPACE,
    WORKSPACES,
    StagedRecord,
    new_local_id,
    normalize_serial,
    normalize_workspace,
    utc_now_iso,
)
from staging_client import RemoteRejected, RemoteUnavailable, StagingApiError
from workspace_context import WorkspaceContext

STATE_IDLE = "idle"
STATE_CAPTURED = "captured"
STATE_DUPLICATE_HELD = "duplicate_held"

class StagingActionFailed(RuntimeError):
    """An operator-initiated server action failed; local state was left unchanged."""


class RemovalFailed(StagingActionFailed):
    """The server refused (or could not be reached for) a delete or clear."""


@dataclass(frozen=True)
class PendingCandidate:
    serial: str
    workspace: str
    raw: str = ""
    captured_at: str = field(default_factory=utc_now_iso)
    grade: str = ""
    rail_type: str = ""
    spec: str = ""
    length_m: str = ""
    # Operator chose "continue" on a duplicate prompt; skip re-checking on confirm
    override: bool = False


@dataclass(frozen=True)
class DuplicatePrompt:
    serial: str
    candidate: PendingCandidate
    matches: List[StagedRecord] = field(default_factory=list)
    source: Optional[str] = None


@dataclass(frozen=True)
class EntryDetails:
    operator: str = "Clerk A"
    wagon_refs: Tuple[str, str, str] = ("", "", "")
    received_at: str = ""
    loaded_at: str = "WalvisBay"
    destination: str = ""


class StagingSession:
    """Orchestrates parse -> duplicate check -> review -> submit or queue."""

    def __init__(self, remote, queue: OfflineQueue, workspace: str = DEFAULT_WORKSPACE,
                 details: Optional[EntryDetails] = None, audit: Optional[AuditLog] = None,
                 debounce_seconds: float = 1.2, page_size: int = 200,
                 damaged_defaults: Optional[Dict[str, str]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 on_change: Optional[Callable[["StagingSession"], Any]] = None):
        self.remote = remote
        self.queue = queue
        self.audit = audit
        self.details = details or EntryDetails()
        self.page_size = max(1, int(page_size))
        self.damaged_defaults = dict(DAMAGED_QR_DEFAULTS, **(damaged_defaults or {}))
        self.on_change = on_change

        self.detector = DuplicateDetector(remote)
        self.debouncer = ScanDebouncer(debounce_seconds, clock=clock)
        self.flusher = QueueFlusher(remote, queue)

        self.active_workspace = normalize_workspace(workspace)
        self.contexts: Dict[str, WorkspaceContext] = {
            ws: WorkspaceContext(ws, queue) for ws in WORKSPACES
        }

        self.state = STATE_IDLE
        self.pending: Optional[PendingCandidate] = None
        self.duplicate_prompt: Optional[DuplicatePrompt] = None
        self.status = "Ready"
        self.live_status = ""
        self.online = True

        self._generation = 0
        self._in_flight: Optional[PendingCandidate] = None
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # read access
    # ------------------------------------------------------------------
    @property
    def context(self) -> WorkspaceContext:
        return self.contexts[self.active_workspace]

    @property
    def records(self) -> Tuple[StagedRecord, ...]:
        return self.context.records

    @property
    def total_count(self) -> int:
        return self.context.total_count

    @property
    def known_count(self) -> int:
        return len(self.context.known_serials)

    def is_offline(self, workspace: Optional[str] = None) -> bool:
        """True while the workspace still has scans waiting in the offline queue."""
        ws = normalize_workspace(workspace or self.active_workspace)
        return self.queue.count(ws) > 0

    # ------------------------------------------------------------------
    # internal helpers
    # ------------------------------------------------------------------
    def _bump(self) -> int:
        self._generation += 1
        return self._generation

    def _set_status(self, text: str) -> None:
        self.status = text
        logging.debug("Status: %s", text)

    def _notify(self) -> None:
        if self.on_change is None:
            return
        try:
            self.on_change(self)
        except Exception as e:
            logging.warning("Change listener failed: %s", e)

    def _reset_candidate(self) -> None:
        self.pending = None
        self.duplicate_prompt = None
        self.state = STATE_IDLE

    def _hold(self, candidate: PendingCandidate, result: MatchResult) -> None:
        self._bump()
        self.pending = None
        self.duplicate_prompt = DuplicatePrompt(
            serial=candidate.serial,
            candidate=candidate,
            matches=list(result.matches),
            source=result.source,
        )
        self.state = STATE_DUPLICATE_HELD
        self._set_status("Duplicate detected, awaiting decision")
        logging.info("Duplicate %s in %s (%s)", candidate.serial, candidate.workspace, result.source)

    def _audit(self, action: str, record: Optional[StagedRecord] = None, **kwargs: Any) -> None:
        if self.audit is None:
            return
        try:
            if record is not None:
                payload = record.to_payload()
                payload.pop("localId", None)
                kwargs.setdefault("serial", record.serial)
                kwargs.setdefault("workspace", record.workspace)
                kwargs.setdefault("operator", record.operator)
                kwargs.setdefault("scan_data", payload)
            self.audit.add(action, **kwargs)
        except Exception as e:
            logging.warning("Audit entry '%s' not written: %s", action, e)

    # ------------------------------------------------------------------
    # capture
    # ------------------------------------------------------------------
    def on_detected(self, raw_text: str) -> str:
        """Decoder callback, once per decoded frame. Returns the resulting state."""
        parsed = parse_qr_payload(raw_text)
        if not parsed.serial:
            with self._lock:
                self._set_status("Scan had no detectable serial")
            logging.info("Rejected scan without serial: %r", parsed.raw[:80])
            self._notify()
            return self.state

        if self.debouncer.should_suppress(parsed.serial):
            return self.state

        candidate = PendingCandidate(
            serial=normalize_serial(parsed.serial),
            workspace=self.active_workspace,
            raw=parsed.raw,
            grade=parsed.grade,
            rail_type=parsed.rail_type,
            spec=parsed.spec,
            length_m=parsed.length_m,
        )
        return self._evaluate(candidate)

    def enter_manual(self, serial: str, grade: Optional[str] = None, rail_type: Optional[str] = None,
                     spec: Optional[str] = None, length_m: Optional[str] = None) -> str:
        """Damaged-QR path: the operator types the serial, label fields use fixed defaults."""
        key = normalize_serial(serial)
        if not key:
            with self._lock:
                self._set_status("Unable to save: enter Serial (or scan a QR).")
            self._notify()
            return self.state

        defaults = self.damaged_defaults
        candidate = PendingCandidate(
            serial=key,
            workspace=self.active_workspace,
            raw=key,
            grade=defaults["grade"] if grade is None else grade,
            rail_type=defaults["rail_type"] if rail_type is None else rail_type,
            spec=defaults["spec"] if spec is None else spec,
            length_m=defaults["length_m"] if length_m is None else length_m,
        )
        return self._evaluate(candidate)

    def _evaluate(self, candidate: PendingCandidate) -> str:
        with self._lock:
            generation = self._bump()
            context = self.contexts[candidate.workspace]
            local = self.detector.check_local(candidate.serial, context)
            if local.is_dup:
                self._hold(candidate, local)
                state = self.state
        if local.is_dup:
            self._notify()
            return state

        remote = self.detector.check_remote(candidate.serial, candidate.workspace)

        with self._lock:
            if generation != self._generation:
                logging.debug("Dropping stale duplicate check for %s", candidate.serial)
                return self.state
            if remote.is_dup:
                self._hold(candidate, remote)
            else:
                self.pending = candidate
                self.duplicate_prompt = None
                self.state = STATE_CAPTURED
                self._set_status("Captured, review & Confirm")
            state = self.state
        self._notify()
        return state

    # ------------------------------------------------------------------
    # operator decisions
    # ------------------------------------------------------------------
    def discard_duplicate(self) -> None:
        with self._lock:
            if self.state != STATE_DUPLICATE_HELD:
                return
            self._bump()
            self._reset_candidate()
            self._set_status("Ready")
        self._notify()

    def continue_duplicate(self) -> Optional[PendingCandidate]:
        with self._lock:
            if self.state != STATE_DUPLICATE_HELD or self.duplicate_prompt is None:
                return None
            self._bump()
            self.pending = replace(self.duplicate_prompt.candidate, override=True)
            self.duplicate_prompt = None
            self.state = STATE_CAPTURED
            self._set_status("Captured, review & Confirm")
            pending = self.pending
        self._notify()
        return pending

    def discard(self) -> None:
        with self._lock:
            if self.state == STATE_IDLE:
                return
            self._bump()
            self._reset_candidate()
            self._set_status("Ready")
        self._notify()

    def set_details(self, **changes: Any) -> EntryDetails:
        """Update operator / wagon / yard fields applied to the next confirmed records."""
        if "wagon_refs" in changes:
            refs = tuple(str(v or "") for v in changes["wagon_refs"])[:3]
            changes["wagon_refs"] = refs + ("",) * (3 - len(refs))
        with self._lock:
            self.details = replace(self.details, **changes)
            return self.details

    def _build_record(self, candidate: PendingCandidate) -> StagedRecord:
        d = self.details
        return StagedRecord(
            serial=candidate.serial,
            workspace=candidate.workspace,
            operator=d.operator,
            wagon_refs=d.wagon_refs,
            received_at=d.received_at,
            loaded_at=d.loaded_at,
            destination=d.destination,
            grade=candidate.grade,
            rail_type=candidate.rail_type,
            spec=candidate.spec,
            length_m=candidate.length_m,
            raw_qr_text=candidate.raw or candidate.serial,
            captured_at=candidate.captured_at,
            timestamp=utc_now_iso(),
        )

    def confirm(self) -> Optional[StagedRecord]:
        """Stage the pending candidate. Returns the staged record, or None if nothing was staged."""
        with self._lock:
            candidate = self.pending
            if self.state != STATE_CAPTURED or candidate is None:
                self._set_status("Nothing to save yet. Scan a code first.")
                return None
            if self._in_flight is candidate:
                return None
            self._in_flight = candidate
            context = self.contexts[candidate.workspace]
            if not candidate.override:
                local = self.detector.check_local(candidate.serial, context)
                if local.is_dup:
                    self._in_flight = None
                    self._hold(candidate, local)
                    held = True
                else:
                    held = False
        if not candidate.override and held:
            self._notify()
            return None

        try:
            if not candidate.override:
                # Another device may have staged the serial since capture
                remote = self.detector.check_remote(candidate.serial, candidate.workspace)
                with self._lock:
                    if self.pending is not candidate:
                        return None
                    if remote.is_dup:
                        self._hold(candidate, remote)
                        held = True
                if held:
                    self._notify()
                    return None

            record = self._submit_or_queue(self._build_record(candidate))
        except RemoteRejected as e:
            # Not queued: a rejected payload would block every later bulk flush
            logging.warning("Server rejected %s: %s", candidate.serial, e)
            with self._lock:
                self._set_status(f"Server rejected scan: {e}")
            self._notify()
            return None
        finally:
            with self._lock:
                if self._in_flight is candidate:
                    self._in_flight = None

        with self._lock:
            # The realtime echo of this submit may already have listed the row
            if not (record.is_durable and context.has_id(record.id)):
                context.prepend(record)
                context.total_count += 1
            context.remember(record.serial)
            if self.pending is candidate:
                self._bump()
                self._reset_candidate()
            if record.is_durable:
                self._set_status("Saved to staged")
            else:
                self._set_status("Saved locally (offline), will sync")
        self._audit("create", record)
        self._notify()
        return record

    def _submit_or_queue(self, record: StagedRecord) -> StagedRecord:
        try:
            new_id = self.remote.submit(record.workspace, record.to_payload())
        except RemoteUnavailable as e:
            logging.info("Submit of %s failed, queuing offline: %s", record.serial, e)
            record = replace(record, local_id=new_local_id())
            self.queue.enqueue(record.workspace, record.to_payload())
            return record
        logging.info("Staged %s in %s as #%s", record.serial, record.workspace, new_id)
        return replace(record, id=int(new_id))

    # ------------------------------------------------------------------
    # explicit destructive actions (fail loudly)
    # ------------------------------------------------------------------
    def remove_record(self, record_key: Union[int, str]) -> StagedRecord:
        with self._lock:
            ws = self.active_workspace
            context = self.context
            record = context.find(record_key)
        if record is None:
            raise RemovalFailed(f"Scan {record_key} is not in the staged list")

        if record.is_durable:
            try:
                self.remote.delete(ws, record.id)
            except StagingApiError as e:
                logging.error("Delete of #%s (%s) failed: %s", record.id, record.serial, e)
                raise RemovalFailed(str(e) or "Failed to remove scan") from e
        else:
            queued = [item.id for item in self.queue.list_all(ws)
                      if item.payload.get("localId") == record.local_id]
            if not queued:
                raise RemovalFailed(f"Scan {record.serial} is syncing; try again once sync completes")
            self.queue.remove_many(ws, queued)

        with self._lock:
            if context.remove(record.key) is not None:
                context.total_count = max(0, context.total_count - 1)
            self._set_status("Scan removed successfully")
        self._audit("delete", record, details="Removed from staged list")
        self._notify()
        return record

    def clear_workspace(self) -> int:
        """Delete every staged scan of the active workspace on the server."""
        ws = self.active_workspace
        try:
            deleted = self.remote.clear(ws)
        except StagingApiError as e:
            logging.error("Clear of %s failed: %s", ws, e)
            raise RemovalFailed(str(e) or "Failed to clear scans") from e
        with self._lock:
            self.contexts[ws].reset()
            self._set_status("All scans cleared")
        self._audit("clear", workspace=ws, operator=self.details.operator,
                    details=f"Cleared {deleted} scans")
        self._notify()
        return deleted

    def restore_from_audit(self, entry_id: str) -> StagedRecord:
        """Re-submit a scan captured in a 'delete' audit entry."""
        if self.audit is None:
            raise StagingActionFailed("Audit log is not enabled")
        entry = self.audit.get(entry_id)
        if not entry or not entry.get("scanData"):
            raise StagingActionFailed(f"Audit entry {entry_id} has no scan to restore")

        ws = normalize_workspace(entry.get("mode") or DEFAULT_WORKSPACE)
        payload = {k: v for k, v in entry["scanData"].items() if k not in ("id", "localId")}
        payload["sheet"] = ws
        try:
            new_id = self.remote.submit(ws, payload)
        except StagingApiError as e:
            raise StagingActionFailed(f"Failed to restore: {e}") from e

        record = StagedRecord.from_row(dict(payload, id=new_id), workspace=ws)
        with self._lock:
            context = self.contexts[ws]
            if not context.has_id(record.id):
                context.prepend(record)
                context.total_count += 1
            self._set_status(f"Restored {record.serial}")
        self._audit("restore", record, operator="Admin", details="Restored from deletion")
        self._notify()
        return record

    # ------------------------------------------------------------------
    # loading & workspaces
    # ------------------------------------------------------------------
    def _remote_count(self, ws: str, fallback: int) -> int:
        try:
            return self.remote.count(ws)
        except StagingApiError as e:
            logging.debug("Count for %s unavailable: %s", ws, e)
            return fallback

    def load_first_page(self, workspace: Optional[str] = None) -> bool:
        ws = normalize_workspace(workspace or self.active_workspace)
        with self._lock:
            context = self.contexts[ws]
        try:
            page = self.remote.page(ws, None, self.page_size)
        except StagingApiError as e:
            logging.info("Could not load %s from server: %s", ws, e)
            with self._lock:
                self._set_status("Offline: showing local scans only")
            self._notify()
            return False
        total = self._remote_count(ws, page.total)
        rows = [StagedRecord.from_row(r, workspace=ws) for r in page.rows]

        queued_local_ids = {item.payload.get("localId") for item in self.queue.list_all(ws)}
        with self._lock:
            if self.contexts[ws] is not context:
                return False
            server_serials = {r.serial_key for r in rows}
            # Optimistic rows still waiting in the queue stay visible at the head
            kept = [r for r in context.local_only
                    if r.local_id in queued_local_ids and r.serial_key not in server_serials]
            context.replace_records(kept + rows, total=total + len(kept), next_cursor=page.next_cursor)
        self._notify()
        return True

    def load_more(self) -> int:
        with self._lock:
            ws = self.active_workspace
            context = self.context
            cursor = context.next_cursor
        if cursor is None:
            return 0
        try:
            page = self.remote.page(ws, cursor, self.page_size)
        except StagingApiError as e:
            logging.info("Load more for %s failed: %s", ws, e)
            with self._lock:
                self._set_status("Could not load more scans (offline?)")
            self._notify()
            return 0
        with self._lock:
            if self.contexts[ws] is not context:
                return 0
            added = context.append_page(
                [StagedRecord.from_row(r, workspace=ws) for r in page.rows],
                page.next_cursor,
            )
        self._notify()
        return added

    def switch_workspace(self, workspace: str) -> None:
        ws = normalize_workspace(workspace)
        with self._lock:
            self._bump()
            self.active_workspace = ws
            # Fresh context: list and imported known serials do not survive a switch
            self.contexts[ws] = WorkspaceContext(ws, self.queue)
            self._reset_candidate()
            self._set_status("Ready")
        self.debouncer.reset()
        logging.info("Switched to workspace %s", ws)
        self.load_first_page(ws)
        self.flush(ws)

    def start(self) -> None:
        """Session start: load the active workspace, then replay anything left queued."""
        self.load_first_page()
        for ws in set(self.queue.workspaces()) | {self.active_workspace}:
            self.flush(ws)

    def import_known_serials(self, workspace: str, serials: Iterable[str]) -> int:
        ws = normalize_workspace(workspace)
        with self._lock:
            context = self.contexts[ws]
            added = context.import_known(serials)
            self._set_status(f"Imported known serials: {len(context.known_serials)}")
        self._notify()
        return added

    def import_known_file(self, path: Union[str, Path], workspace: Optional[str] = None) -> int:
        try:
            serials = read_reference_file(path)
        except ReferenceImportError as e:
            logging.warning("Known serial import from %s failed: %s", path, e)
            with self._lock:
                self._set_status(str(e))
            self._notify()
            return 0
        return self.import_known_serials(workspace or self.active_workspace, serials)

    def export_workbook(self, target: Union[str, Path], workspace: Optional[str] = None) -> Path:
        ws = normalize_workspace(workspace or self.active_workspace)
        try:
            data = self.remote.export_workbook(ws)
        except StagingApiError as e:
            with self._lock:
                self._set_status("Export failed")
            raise StagingActionFailed(f"Export failed: {e}") from e
        path = Path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        with self._lock:
            self._set_status(f"Exported {path.name}")
        return path

    # ------------------------------------------------------------------
    # sync entry points
    # ------------------------------------------------------------------
    def flush(self, workspace: Optional[str] = None) -> FlushResult:
        ws = normalize_workspace(workspace or self.active_workspace)
        result = self.flusher.flush(ws)

        if not result.ok:
            waiting = self.queue.count(ws)
            with self._lock:
                if result.failure_streak > 1:
                    self._set_status(
                        f"Sync failing ({result.failure_streak} attempts), {waiting} scan(s) still queued"
                    )
                else:
                    self._set_status(f"Offline: {waiting} scan(s) waiting to sync")
            self._notify()
            return result
        if not result.submitted:
            return result

        with self._lock:
            context = self.contexts[ws]
            server_ids: List[Optional[int]] = list(result.server_ids) or [None] * len(result.submitted)
            for payload, server_id in zip(result.submitted, server_ids):
                local_id = payload.get("localId")
                if local_id and any(r.local_id == local_id for r in context.records):
                    if server_id is not None:
                        context.promote(local_id, server_id)
                else:
                    # Not shown yet (e.g. queued before a restart): count it now
                    context.total_count += 1
            self._set_status(f"Synced {len(result.submitted)} offline scan(s)")
        if ws == self.active_workspace:
            self.load_first_page(ws)
        self._notify()
        return result

    def handle_connectivity_change(self, online: bool) -> None:
        with self._lock:
            self.online = bool(online)
            self._set_status("Back online, syncing" if online else "Offline: scans will be saved locally")
        logging.info("Connectivity %s", "restored" if online else "lost")
        self._notify()
        if online:
            for ws in self.queue.workspaces():
                self.flush(ws)

    def handle_remote_event(self, event: RemoteEvent) -> bool:
        with self._lock:
            changed = apply_event(self.context, event)
            if changed and event.kind == ROW_DELETED:
                self._set_status("Scan removed (synced)")
            elif changed and event.kind == WORKSPACE_CLEARED:
                self._set_status("All scans cleared (synced)")
            elif changed and event.kind == ROW_CREATED:
                self._set_status(f"New scan {event.record.serial} (synced)")
        if changed:
            self._notify()
        return changed

    def set_live_status(self, text: str) -> None:
        with self._lock:
            self.live_status = text
        self._notify()
