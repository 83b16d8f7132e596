"""Staged rail records and the wire format shared with the staging server."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

WORKSPACES: Tuple[str, ...] = ("main", "alt")
DEFAULT_WORKSPACE = "main"


def normalize_serial(serial: Any) -> str:
    return str(serial or "").strip().upper()


def normalize_workspace(workspace: Any) -> str:
    ws = str(workspace or DEFAULT_WORKSPACE).strip().lower()
    if ws not in WORKSPACES:
        raise ValueError(f"Unknown workspace: {workspace!r} (expected one of {', '.join(WORKSPACES)})")
    return ws


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_local_id() -> str:
    return f"local-{uuid.uuid4().hex[:12]}"


def _first(row: Mapping[str, Any], *keys: str) -> str:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return str(value)
    return ""


@dataclass(frozen=True)
class StagedRecord:
    """One physical rail item check-in event."""

    serial: str
    workspace: str = DEFAULT_WORKSPACE
    id: Optional[int] = None
    local_id: Optional[str] = None
    stage: str = "received"
    operator: str = ""
    wagon_refs: Tuple[str, str, str] = ("", "", "")
    received_at: str = ""
    loaded_at: str = ""
    destination: str = ""
    grade: str = ""
    rail_type: str = ""
    spec: str = ""
    length_m: str = ""
    raw_qr_text: str = ""
    captured_at: str = ""
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def serial_key(self) -> str:
        return normalize_serial(self.serial)

    @property
    def is_durable(self) -> bool:
        return self.id is not None

    @property
    def key(self) -> str:
        """Identifier usable for either lifecycle phase."""
        if self.id is not None:
            return str(self.id)
        return self.local_id or ""

    def promoted(self, durable_id: int) -> "StagedRecord":
        return replace(self, id=durable_id, local_id=None)

    def to_payload(self) -> Dict[str, Any]:
        """Wire form accepted by POST /api/scan and /api/scans/bulk."""
        wagons = tuple(self.wagon_refs) + ("", "", "")
        payload: Dict[str, Any] = {
            "sheet": self.workspace,
            "serial": self.serial,
            "stage": self.stage,
            "operator": self.operator,
            "wagon1Id": wagons[0],
            "wagon2Id": wagons[1],
            "wagon3Id": wagons[2],
            "receivedAt": self.received_at,
            "loadedAt": self.loaded_at,
            "destination": self.destination,
            "timestamp": self.timestamp,
            "capturedAt": self.captured_at,
            "grade": self.grade,
            "railType": self.rail_type,
            "spec": self.spec,
            "lengthM": self.length_m,
            "qrRaw": self.raw_qr_text or self.serial,
        }
        if self.local_id:
            payload["localId"] = self.local_id
        return payload

    @classmethod
    def from_row(cls, row: Mapping[str, Any], workspace: Optional[str] = None) -> "StagedRecord":
        """Build a record from a server row, queued payload or realtime event."""
        raw_id = row.get("id")
        record_id = None
        if raw_id not in (None, ""):
            try:
                record_id = int(raw_id)
            except (TypeError, ValueError):
                record_id = None
        ws = workspace or row.get("sheet") or row.get("workspace") or DEFAULT_WORKSPACE
        return cls(
            id=record_id,
            local_id=row.get("localId") or None,
            serial=_first(row, "serial"),
            workspace=normalize_workspace(ws),
            stage=_first(row, "stage") or "received",
            operator=_first(row, "operator"),
            wagon_refs=(
                _first(row, "wagon1Id", "wagonId1"),
                _first(row, "wagon2Id", "wagonId2"),
                _first(row, "wagon3Id", "wagonId3"),
            ),
            received_at=_first(row, "receivedAt", "recievedAt"),
            loaded_at=_first(row, "loadedAt"),
            destination=_first(row, "destination", "dest"),
            grade=_first(row, "grade"),
            rail_type=_first(row, "railType"),
            spec=_first(row, "spec"),
            length_m=_first(row, "lengthM", "lengthMeters"),
            raw_qr_text=_first(row, "qrRaw"),
            captured_at=_first(row, "capturedAt"),
            timestamp=_first(row, "timestamp", "createdAt") or utc_now_iso(),
        )
