#!/usr/bin/env python3
"""
Rail tracker runtime (check-in station)

- Wires the staging client, offline queue, audit log and session from config.json
- Replays the offline queue at start and whenever connectivity comes back
- Follows other stations' changes through the server's Socket.IO broadcast
- Reads decoded QR text line by line from stdin (USB scanners in keyboard mode)

Operator commands on stdin:
  :confirm  :discard  :continue  :manual <serial>  :more  :ws <main|alt>
  :import <file>  :export <file>  :remove <id>  :status  :quit
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

import socketio

from audit_log import AuditLog
from connectivity import ConnectivityMonitor
from logging_setup import configure_logging
from offline_queue import OfflineQueue
from rail_config import RailTrackerConfig
from realtime_listener import RealtimeListener
from staging_client import StagingApiClient, StagingApiConfig
from staging_session import EntryDetails, StagingActionFailed, StagingSession


def build_session(config: RailTrackerConfig, client: Optional[StagingApiClient] = None) -> StagingSession:
    if client is None:
        client = StagingApiClient(StagingApiConfig(
            base_url=config.get("api.base_url", "http://127.0.0.1:5010"),
            timeout_seconds=config.get_float("api.timeout_seconds", 8),
        ))
    queue = OfflineQueue(config.get_path("offline_queue.path", "data/offline_queue.db"))
    audit = AuditLog(
        config.get_path("audit.path", "data/audit_log.db"),
        max_entries=config.get_int("audit.max_entries", 500),
    )
    details = EntryDetails(
        operator=config.get("operator.name", "Clerk A"),
        loaded_at=config.get("operator.loaded_at", "WalvisBay"),
    )
    return StagingSession(
        client,
        queue,
        workspace=config.get("workspace.default", "main"),
        details=details,
        audit=audit,
        debounce_seconds=config.get_float("scanning.debounce_seconds", 1.2),
        page_size=config.get_int("scanning.page_size", 200),
        damaged_defaults=config.get("damaged_qr", None),
    )


class TrackerRuntime:
    """Session plus its background connectivity monitor."""

    def __init__(self, config: RailTrackerConfig, session: Optional[StagingSession] = None):
        self.config = config
        self.session = session or build_session(config)
        self.monitor = ConnectivityMonitor(
            probe=self.session.remote.is_reachable,
            on_change=self.session.handle_connectivity_change,
            interval=config.get_float("connectivity.poll_seconds", 5.0),
        )
        self.listener = RealtimeListener(self.session.handle_remote_event, self.session.set_live_status)
        self.socket = None

    def attach_socket(self, socket):
        """Bind a realtime client (e.g. a Socket.IO client) to the session."""
        self.listener.attach(socket)

    def connect_realtime(self, socket=None) -> bool:
        """Open the live-sync connection to the staging server. Returns False if it is unreachable."""
        if socket is None:
            socket = socketio.Client(reconnection=True)
        self.attach_socket(socket)
        self.socket = socket
        url = self.config.get("api.base_url", "http://127.0.0.1:5010")
        try:
            socket.connect(url, wait_timeout=self.config.get_float("api.timeout_seconds", 8))
        except socketio.exceptions.ConnectionError as e:
            logging.warning("Live sync to %s unavailable: %s", url, e)
            self.listener.on_error(e)
            return False
        logging.info("Live sync connected to %s", url)
        return True

    def start(self):
        logging.info("Starting tracker runtime (workspace %s)", self.session.active_workspace)
        self.session.start()
        self.monitor.start()

    def stop(self):
        self.monitor.stop()
        if self.socket is not None and self.socket.connected:
            self.socket.disconnect()
        close = getattr(self.session.remote, "close", None)
        if close:
            close()
        logging.info("Tracker runtime stopped")

    def handle_line(self, line: str) -> bool:
        """Process one stdin line. Returns False when the operator asked to quit."""
        text = line.strip()
        if not text:
            return True
        session = self.session
        if not text.startswith(":"):
            session.on_detected(text)
        else:
            cmd, _, arg = text[1:].partition(" ")
            arg = arg.strip()
            try:
                if cmd == "quit":
                    return False
                elif cmd == "confirm":
                    session.confirm()
                elif cmd == "discard":
                    session.discard()
                elif cmd == "continue":
                    session.continue_duplicate()
                elif cmd == "manual":
                    session.enter_manual(arg)
                elif cmd == "more":
                    session.load_more()
                elif cmd == "ws":
                    session.switch_workspace(arg)
                elif cmd == "import":
                    session.import_known_file(arg)
                elif cmd == "export":
                    session.export_workbook(arg)
                elif cmd == "remove":
                    session.remove_record(arg)
                elif cmd != "status":
                    print(f"Unknown command: {cmd}")
            except (StagingActionFailed, ValueError) as e:
                print(f"Error: {e}")
        self.print_status()
        return True

    def print_status(self):
        s = self.session
        line = f"[{s.active_workspace}] {s.state} | {s.status} | total {s.total_count}"
        if s.is_offline():
            line += " | offline queue pending"
        if s.duplicate_prompt is not None:
            ids = ", ".join(r.key for r in s.duplicate_prompt.matches) or "known list"
            line += f" | duplicate of {ids}: :continue or :discard"
        print(line, flush=True)


def main() -> int:
    parser = argparse.ArgumentParser(description="Rail staging check-in station")
    parser.add_argument("--config", default=None, help="Path to config.json")
    args = parser.parse_args()

    configure_logging("rail_tracker.log")
    runtime = TrackerRuntime(RailTrackerConfig(args.config))

    stop_event = threading.Event()

    def _handle_signal(_sig, _frame):
        stop_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)

    runtime.start()
    runtime.connect_realtime()
    runtime.print_status()
    try:
        for line in sys.stdin:
            if stop_event.is_set() or not runtime.handle_line(line):
                break
    except KeyboardInterrupt:
        pass
    finally:
        runtime.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
