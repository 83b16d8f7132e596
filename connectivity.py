"""Background reachability probe that reports online/offline transitions."""

import logging
import threading
from typing import Callable, Optional


class ConnectivityMonitor:
    """Polls ``probe()`` every ``interval`` seconds; calls ``on_change(online)`` only on transitions."""

    def __init__(self, probe: Callable[[], bool], on_change: Callable[[bool], object],
                 interval: float = 5.0, initial: Optional[bool] = None):
        self.probe = probe
        self.on_change = on_change
        self.interval = max(0.1, float(interval))
        self.online = initial
        self._stop = threading.Event()
        self._thread = None

    def check_once(self) -> bool:
        try:
            online = bool(self.probe())
        except Exception as e:
            logging.debug(f"Connectivity probe failed: {e}")
            online = False
        if online != self.online:
            previous, self.online = self.online, online
            # First observation only reports when we come up offline
            if previous is not None or not online:
                logging.info(f"Connectivity changed: {'online' if online else 'offline'}")
                try:
                    self.on_change(online)
                except Exception as e:
                    logging.error(f"Connectivity handler failed: {e}")
        return online

    def _loop(self):
        while not self._stop.is_set():
            self.check_once()
            self._stop.wait(self.interval)

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(target=self._loop, name='connectivity-monitor', daemon=True)
        t.start()
        self._thread = t

    def stop(self):
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=2.0)
        self._thread = None
