"""
Large-object tiering.

Archives at or above the configured size threshold are routed to Git
LFS by registering the storage glob with the LFS filter. LFS being
unavailable is never fatal: the archive simply stays a regular blob.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .git import GitRepo, append_lines, read_lines
from .utils import file_size_mb

logger = logging.getLogger(__name__)

LFS_HEADER = "# git-vault LFS tracking for large encrypted archives"


def lfs_rule(pattern: str) -> str:
    return f"{pattern} filter=lfs diff=lfs merge=lfs -text"


def size_mb(archive_path: Path) -> float:
    return file_size_mb(archive_path)


def should_tier(size: float, threshold_mb: float) -> bool:
    return size >= threshold_mb


@dataclass(frozen=True)
class TieringResult:
    size_mb: float
    oversized: bool
    registered: bool = False
    attributes_changed: bool = False
    warning: str = ""


class LargeObjectTiering:
    def __init__(self, git: GitRepo, threshold_mb: float):
        self.git = git
        self.threshold_mb = threshold_mb

    def is_registered(self, pattern: str) -> bool:
        return lfs_rule(pattern) in read_lines(self.git.gitattributes_path)

    def register_pattern(self, pattern: str) -> bool:
        """
        Route ``pattern`` through LFS.

        Appends the filter rule to .gitattributes unless the exact line
        is already there, then registers tracking with git-lfs.

        Returns:
            True if .gitattributes was modified
        """

        changed = append_lines(self.git.gitattributes_path, [lfs_rule(pattern)], header=LFS_HEADER)
        self.git.lfs_install()
        self.git.lfs_track(pattern)
        return changed

    def apply(self, archive_path: Path, pattern: str) -> TieringResult:
        """Inspect ``archive_path`` and tier it if it is oversized."""
        size = size_mb(archive_path)
        if not should_tier(size, self.threshold_mb):
            return TieringResult(size_mb=size, oversized=False)

        logger.info(
            "Archive size %.2fMB exceeds LFS threshold %sMB: %s",
            size,
            self.threshold_mb,
            archive_path.name,
        )
        if not self.git.lfs_available():
            warning = (
                f"Git LFS not available; {archive_path.name} ({size:.2f}MB) "
                "will be stored directly in Git"
            )
            logger.warning(warning)
            return TieringResult(size_mb=size, oversized=True, warning=warning)

        if self.is_registered(pattern):
            return TieringResult(size_mb=size, oversized=True, registered=True)

        changed = self.register_pattern(pattern)
        return TieringResult(
            size_mb=size, oversized=True, registered=True, attributes_changed=changed
        )
