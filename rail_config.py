"""Configuration management for the rail staging tracker."""

import copy
import json
import logging
import os

from path_utils import resolve_path

# Values applied when a QR label is unreadable and the serial is typed in
DAMAGED_QR_DEFAULTS = {
    "grade": "SAR48",
    "rail_type": "R260",
    "spec": "ATA 2DX066-25",
    "length_m": "36 m",
}

DEFAULT_CONFIG = {
    "api": {
        "base_url": "http://127.0.0.1:5010",
        "timeout_seconds": 8,
    },
    "scanning": {
        # Repeated camera frames of one physical scan arrive well inside this window
        "debounce_seconds": 1.2,
        "page_size": 200,
    },
    "workspace": {
        "default": "main",
    },
    "operator": {
        "name": "Clerk A",
        "loaded_at": "WalvisBay",
    },
    "damaged_qr": dict(DAMAGED_QR_DEFAULTS),
    "offline_queue": {
        "path": "data/offline_queue.db",
    },
    "audit": {
        "path": "data/audit_log.db",
        "max_entries": 500,
    },
    "connectivity": {
        "poll_seconds": 5.0,
    },
    "server": {
        "db_path": "data/rail_staging.db",
        "host": "0.0.0.0",
        "port": 5010,
    },
}


def _merge_defaults(defaults, loaded):
    merged = copy.deepcopy(defaults)
    for key, value in (loaded or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config_path():
    return (os.environ.get("RAIL_TRACKER_CONFIG_PATH") or "").strip() or "config.json"


class RailTrackerConfig:
    """JSON-backed configuration with dotted-path lookup."""

    def __init__(self, config_file=None):
        self.config_file = resolve_path(config_file or default_config_path())
        self.default_config = DEFAULT_CONFIG
        self.load_config()

    def load_config(self):
        """Load configuration from file or create default"""
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r', encoding='utf-8') as f:
                    loaded = json.load(f) or {}
            except (OSError, json.JSONDecodeError) as e:
                logging.warning("Config %s unreadable (%s); using defaults", self.config_file, e)
                loaded = {}
            if not isinstance(loaded, dict):
                logging.warning("Config %s is not a JSON object; using defaults", self.config_file)
                loaded = {}
            self.config = _merge_defaults(self.default_config, loaded)
        else:
            self.config = copy.deepcopy(self.default_config)
            try:
                self.save_config()
            except OSError as e:
                logging.warning("Could not write default config to %s: %s", self.config_file, e)

    def save_config(self):
        """Save current configuration to file"""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, 'w', encoding='utf-8') as f:
            json.dump(self.config, f, indent=2)

    def get(self, key_path, default=None):
        """Get nested configuration value"""
        keys = key_path.split('.')
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def get_float(self, key_path, default: float) -> float:
        try:
            value = float(self.get(key_path, default))
        except (TypeError, ValueError):
            logging.warning("Invalid value for %s; using %s", key_path, default)
            return default
        return value if value > 0 else default

    def get_int(self, key_path, default: int) -> int:
        try:
            value = int(str(self.get(key_path, default)).strip())
        except (TypeError, ValueError):
            logging.warning("Invalid value for %s; using %s", key_path, default)
            return default
        return value if value > 0 else default

    def get_path(self, key_path, default: str):
        raw = (str(self.get(key_path, default) or "")).strip() or default
        return resolve_path(raw)
