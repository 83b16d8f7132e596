"""
Merge realtime change notifications from the staging server into the local view.

Delivery is best-effort and may repeat, so every merge is idempotent: a created
row is ignored when its id or serial is already listed, a delete for an unknown
id is a no-op. Lost notifications are repaired by the next full page reload.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from staged_records import StagedRecord, normalize_workspace
from workspace_context import WorkspaceContext

ROW_CREATED = "row-created"
ROW_DELETED = "row-deleted"
WORKSPACE_CLEARED = "workspace-cleared"

# Socket event names used by the staging server
SOCKET_EVENTS = {
    "new-scan": ROW_CREATED,
    "deleted-scan": ROW_DELETED,
    "cleared-scans": WORKSPACE_CLEARED,
}


@dataclass(frozen=True)
class RemoteEvent:
    kind: str
    workspace: Optional[str] = None
    record: Optional[StagedRecord] = None
    record_id: Optional[str] = None

    @classmethod
    def from_socket(cls, name: str, data: Optional[Dict[str, Any]]) -> Optional["RemoteEvent"]:
        kind = SOCKET_EVENTS.get(name, name)
        data = data or {}
        sheet = data.get("sheet")
        try:
            ws = normalize_workspace(sheet) if sheet else None
        except ValueError:
            logging.debug("Ignoring %s for unknown workspace %r", name, sheet)
            return None
        if kind == ROW_CREATED:
            if not data.get("serial") and data.get("id") is None:
                return None
            return cls(kind, workspace=ws, record=StagedRecord.from_row(data, workspace=ws))
        if kind == ROW_DELETED:
            if data.get("id") is None:
                return None
            return cls(kind, workspace=ws, record_id=str(data["id"]))
        if kind == WORKSPACE_CLEARED:
            return cls(kind, workspace=ws)
        return None


def apply_event(context: WorkspaceContext, event: RemoteEvent) -> bool:
    """Apply one event to the active workspace context. Returns True if the view changed."""
    if event.workspace and event.workspace != context.workspace:
        return False

    if event.kind == ROW_CREATED:
        record = event.record
        if record is None or record.workspace != context.workspace:
            return False
        if record.id is not None and context.has_id(record.id):
            return False
        if context.has_serial(record.serial):
            return False
        context.prepend(record)
        context.total_count += 1
        return True

    if event.kind == ROW_DELETED:
        if event.record_id is None:
            return False
        if context.remove(event.record_id) is None:
            return False
        context.total_count = max(0, context.total_count - 1)
        return True

    if event.kind == WORKSPACE_CLEARED:
        context.reset()
        return True

    return False


class RealtimeListener:
    """Bind a Socket.IO-style client (anything with ``on(event, handler)``) to a dispatcher."""

    def __init__(self, dispatch: Callable[[RemoteEvent], Any],
                 on_connection_status: Optional[Callable[[str], Any]] = None):
        self.dispatch = dispatch
        self.on_connection_status = on_connection_status
        self.connected = False
        self.connection_status = "Live sync not connected"

    def _set_status(self, text: str) -> None:
        self.connection_status = text
        if self.on_connection_status:
            self.on_connection_status(text)

    def on_connect(self, *_args) -> None:
        self.connected = True
        self._set_status("Live sync connected")

    def on_disconnect(self, reason=None, *_args) -> None:
        self.connected = False
        self._set_status(f"Live sync disconnected ({reason or 'unknown'})")

    def on_error(self, err=None, *_args) -> None:
        self._set_status(f"Socket error: {err}")

    def handle(self, name: str, data: Optional[Dict[str, Any]] = None) -> None:
        event = RemoteEvent.from_socket(name, data)
        if event is None:
            return
        self.dispatch(event)

    def attach(self, socket) -> None:
        socket.on("connect", self.on_connect)
        socket.on("disconnect", self.on_disconnect)
        socket.on("connect_error", self.on_error)
        for name in SOCKET_EVENTS:
            socket.on(name, self._handler_for(name))

    def _handler_for(self, name: str):
        def _handler(data=None, *_args):
            self.handle(name, data)
        return _handler
