from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import requests

from staged_records import normalize_serial, normalize_workspace


class StagingApiError(Exception):
    """Base error for calls to the staging server."""


class RemoteUnavailable(StagingApiError):
    """Connection error, timeout or 5xx: worth retrying later."""


class RemoteRejected(StagingApiError):
    """The server answered with a 4xx for this request."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class StagingApiConfig:
    base_url: str
    timeout_seconds: float = 8
    api_prefix: str = "/api"


@dataclass
class StagedPage:
    rows: List[Dict[str, Any]]
    next_cursor: Optional[int]
    total: int


class StagingApiClient:
    """
    Workspace-scoped client for the staging server.
    - Every call passes ``?sheet=<workspace>``.
    - Transport problems and 5xx map to RemoteUnavailable, 4xx to RemoteRejected.
    """

    def __init__(self, cfg: StagingApiConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.base_url = (cfg.base_url or "").rstrip("/")
        self.prefix = "/" + (cfg.api_prefix or "").strip("/") if cfg.api_prefix else ""
        self.session = session or requests.Session()
        self.timeout = max(0.5, float(cfg.timeout_seconds or 8))

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.prefix}{path}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, path: str, workspace: str, **kwargs: Any) -> requests.Response:
        params = dict(kwargs.pop("params", None) or {})
        params["sheet"] = normalize_workspace(workspace)
        try:
            resp = self.session.request(
                method,
                self._url(path),
                headers=self._headers(),
                params=params,
                timeout=kwargs.pop("timeout", self.timeout),
                **kwargs,
            )
        except requests.RequestException as e:
            raise RemoteUnavailable(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 500:
            raise RemoteUnavailable(f"{method} {path}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise RemoteRejected(f"{method} {path}: HTTP {resp.status_code} {self._error_text(resp)}", resp.status_code)
        return resp

    @staticmethod
    def _error_text(resp: requests.Response) -> str:
        try:
            body = resp.json()
            if isinstance(body, dict) and body.get("error"):
                return str(body["error"])
        except ValueError:
            pass
        return (resp.text or "")[:200]

    @staticmethod
    def _json(resp: requests.Response) -> Dict[str, Any]:
        try:
            body = resp.json()
        except ValueError as e:
            raise RemoteUnavailable(f"Invalid JSON from server: {e}") from e
        return body if isinstance(body, dict) else {}

    def existence(self, workspace: str, serial: str) -> Dict[str, Any]:
        key = normalize_serial(serial)
        resp = self._request("GET", f"/exists/{quote(key, safe='')}", workspace)
        body = self._json(resp)
        return {"exists": bool(body.get("exists")), "row": body.get("row")}

    def submit(self, workspace: str, record: Dict[str, Any]) -> int:
        """Persist one record and return its server id."""
        resp = self._request("POST", "/scan", workspace, json=record)
        body = self._json(resp)
        if body.get("id") is None:
            raise RemoteUnavailable("Server accepted scan but returned no id")
        return int(body["id"])

    def bulk_submit(self, workspace: str, records: Sequence[Dict[str, Any]]) -> List[int]:
        """Persist a batch. Returns the new ids when the server reports them."""
        resp = self._request("POST", "/scans/bulk", workspace, json={"items": list(records)})
        body = self._json(resp)
        if body.get("ok") is False:
            raise RemoteUnavailable(str(body.get("error") or "bulk submit refused"))
        return [int(i) for i in (body.get("ids") or [])]

    def page(self, workspace: str, cursor: Optional[int] = None, limit: int = 200) -> StagedPage:
        params: Dict[str, Any] = {"limit": int(limit)}
        if cursor is not None:
            params["cursor"] = cursor
        body = self._json(self._request("GET", "/staged", workspace, params=params))
        rows = body.get("rows") or []
        return StagedPage(
            rows=list(rows),
            next_cursor=body.get("nextCursor"),
            total=int(body.get("total") or len(rows)),
        )

    def count(self, workspace: str) -> int:
        body = self._json(self._request("GET", "/staged/count", workspace))
        return int(body.get("count") or 0)

    def delete(self, workspace: str, record_id: int) -> None:
        self._request("DELETE", f"/staged/{int(record_id)}", workspace)

    def clear(self, workspace: str) -> int:
        body = self._json(self._request("DELETE", "/staged", workspace))
        return int(body.get("deleted") or 0)

    def export_workbook(self, workspace: str) -> bytes:
        resp = self._request("POST", "/export-to-excel", workspace, timeout=max(self.timeout, 30))
        return resp.content

    def is_reachable(self, timeout: float = 2.0) -> bool:
        try:
            resp = self.session.get(self._url("/health"), timeout=timeout)
            return 200 <= resp.status_code < 300
        except requests.RequestException as e:
            logging.debug("Staging server unreachable: %s", e)
            return False

    def close(self) -> None:
        self.session.close()
