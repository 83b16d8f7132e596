"""Logging bootstrap for the tracker runtime and the staging server."""

import logging
import logging.handlers
import os
from datetime import datetime

from path_utils import get_base_dir

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


def _env_int(name: str, default: int) -> int:
    try:
        return int((os.environ.get(name) or '').strip() or default)
    except Exception:
        return default


def _log_dir():
    log_dir = get_base_dir() / 'logs'
    if log_dir.exists() and log_dir.is_file():
        # A stray file named "logs" blocks directory creation
        backup_name = log_dir.with_name(f"logs.bak_{datetime.now().strftime('%Y%m%d_%H%M%S')}")
        try:
            log_dir.rename(backup_name)
        except OSError:
            log_dir.unlink()
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def build_log_handlers(log_name: str = 'rail_tracker.log'):
    """Rotating file handler plus stderr stream (rotate to prevent multi-GB logs)."""
    max_mb = _env_int('RAIL_LOG_MAX_MB', 20)
    if max_mb <= 0:
        max_mb = 20
    backups = _env_int('RAIL_LOG_BACKUPS', 3)
    if backups < 0:
        backups = 0

    rotating = logging.handlers.RotatingFileHandler(
        _log_dir() / log_name,
        maxBytes=max_mb * 1024 * 1024,
        backupCount=backups,
    )
    stream = logging.StreamHandler()
    return [rotating, stream]


def configure_logging(log_name: str = 'rail_tracker.log', level=logging.INFO) -> None:
    level_name = (os.environ.get('RAIL_LOG_LEVEL') or '').strip().upper()
    if level_name:
        level = getattr(logging, level_name, level)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=build_log_handlers(log_name),
    )
