"""Resolve project-relative paths for config, logs and the SQLite files."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Union

PathLike = Union[str, Path]

# Relative paths under this prefix follow RAIL_TRACKER_DATA_DIR when it is set
DATA_PREFIX = "data"


def _env_path(name: str):
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return None
    return Path(os.path.expandvars(raw)).expanduser().resolve()


def get_base_dir() -> Path:
    """Project root: RAIL_TRACKER_HOME, else the directory holding this module."""
    return _env_path("RAIL_TRACKER_HOME") or Path(__file__).resolve().parent


def get_data_dir() -> Path:
    """Where queue, audit and server databases live (RAIL_TRACKER_DATA_DIR or <home>/data)."""
    return _env_path("RAIL_TRACKER_DATA_DIR") or get_base_dir() / DATA_PREFIX


def resolve_path(path_like: PathLike) -> Path:
    if path_like is None:
        raise ValueError("path_like must not be None")

    path = Path(os.path.expandvars(str(path_like))).expanduser()
    if path.is_absolute():
        return path
    parts = path.parts
    if parts and parts[0] == DATA_PREFIX:
        return get_data_dir().joinpath(*parts[1:])
    return get_base_dir() / path


def ensure_parent(path_like: PathLike) -> Path:
    """Resolve a file path and create its directory."""
    path = resolve_path(path_like)
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
