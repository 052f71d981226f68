"""
Shared utility helpers.

This module contains small, reusable helpers that do not belong
to business logic, secret storage, or pipeline orchestration.
"""

from __future__ import annotations

import hashlib
import logging
import os
import stat
import subprocess
import sys
import tempfile
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Hashing / identifiers
# ---------------------------------------------------------------------------


def short_hash(data: bytes, length: int = 8) -> str:
    """Return a short lowercase hex SHA-1 digest used for IDs and filenames."""
    return hashlib.sha1(data).hexdigest()[:length]


def timestamp() -> str:
    """Return a filesystem-safe local timestamp."""
    return datetime.now().strftime("%Y%m%d-%H%M%S")


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_parent_dir(path: Path) -> None:
    """Ensure the parent directory of a file exists."""
    path.parent.mkdir(parents=True, exist_ok=True)


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Write ``data`` to ``path`` through a sibling temporary file.

    Readers either see the old content or the new content, never a
    truncated file.
    """

    ensure_parent_dir(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def file_size_mb(path: Path) -> float:
    """Return the size of a file in megabytes (0 if unreadable)."""
    try:
        return path.stat().st_size / (1024 * 1024)
    except OSError as e:
        logger.warning("Could not stat %s: %s", path, e)
        return 0.0


def make_private(path: Path) -> None:
    """
    Restrict a file to owner read/write.

    On Windows there are no POSIX permission bits, so the file is
    marked read-only and hidden instead (best effort).
    """

    if sys.platform != "win32":
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        return

    try:
        subprocess.run(
            ["attrib", "+r", "+h", str(path)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        logger.warning("Could not set secure attributes for %s", path)


def make_executable(path: Path) -> None:
    """Add execute bits for everyone who can read the file."""
    if sys.platform == "win32":
        return
    mode = path.stat().st_mode
    path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
