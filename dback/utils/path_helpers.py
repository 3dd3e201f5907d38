"""Local path, naming and size formatting utilities."""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path

from dback.models import ConnectionProfile

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def safe_filename_part(value: str, fallback: str = "unnamed") -> str:
    """Reduce *value* to characters that are safe in a file name.

    Runs of anything other than letters, digits, ``.``, ``_`` and ``-``
    collapse to a single underscore.
    """
    cleaned = _UNSAFE_CHARS.sub("_", value.strip()).strip("._")
    return cleaned or fallback


def build_export_filename(profile: ConnectionProfile, now: datetime | None = None) -> str:
    """Return ``<profile>_<database>_<dd_mm_yyyy_HH_MM_SS><suffix>``.

    Example::

        >>> build_export_filename(profile, datetime(2024, 3, 1, 9, 5, 7))
        'prod_db_orders_01_03_2024_09_05_07.sql.gz'
    """
    stamp = (now or datetime.now()).strftime("%d_%m_%Y_%H_%M_%S")
    name = safe_filename_part(profile.name, "dback")
    database = safe_filename_part(profile.db_name, profile.engine.value.lower())
    return f"{name}_{database}_{stamp}{profile.engine.archive_suffix}"


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
