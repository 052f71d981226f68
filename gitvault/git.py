"""
Version-control plumbing.

Thin wrapper around the ``git`` CLI. Every call is synchronous and
reports success or failure plus optional text; nothing here knows about
managed paths or secrets.

Repository discovery is the one call that raises, because no command
can do anything useful outside a repository.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

from .config import GITATTRIBUTES_FILE, GITIGNORE_FILE
from .errors import NotARepository

logger = logging.getLogger(__name__)


def run_git(
    args: List[str],
    cwd: str | Path,
    check: bool = False,
) -> subprocess.CompletedProcess:
    """Run ``git`` with ``args`` and capture text output."""
    cmd = ["git", *args]
    logger.debug("Running: %s (cwd=%s)", " ".join(cmd), cwd)
    try:
        return subprocess.run(
            cmd,
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=check,
        )
    except FileNotFoundError:
        return subprocess.CompletedProcess(cmd, 127, "", "git executable not found")


class GitRepo:
    """A git working tree rooted at ``root``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    @classmethod
    def discover(cls, workspace: str | Path | None = None) -> "GitRepo":
        """
        Locate the repository containing ``workspace``.

        Raises:
            NotARepository: if ``workspace`` is not inside a git work tree
        """

        workspace = Path(workspace or os.getcwd())
        if not workspace.is_dir():
            raise NotARepository(f"Not a directory: {workspace}", path=str(workspace))

        result = run_git(["rev-parse", "--show-toplevel"], cwd=workspace)
        if result.returncode != 0 or not result.stdout.strip():
            raise NotARepository(f"Not a Git repository: {workspace}", path=str(workspace))
        return cls(Path(result.stdout.strip()))

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def project_name(self) -> str:
        """
        Return the project name: the origin remote's repository name,
        falling back to the root directory name.
        """

        result = run_git(["remote", "get-url", "origin"], cwd=self.root)
        if result.returncode == 0:
            match = re.search(r"[/:]([^/:]+?)(?:\.git)?/?$", result.stdout.strip())
            if match:
                return match.group(1)
        return self.root.name

    # ------------------------------------------------------------------
    # Index
    # ------------------------------------------------------------------

    def stage(self, *paths: str) -> bool:
        if not paths:
            return True
        result = run_git(["add", "--", *paths], cwd=self.root)
        if result.returncode != 0:
            logger.debug("git add %s failed: %s", " ".join(paths), result.stderr.strip())
            return False
        return True

    def unstage_removed(self, path: str) -> bool:
        result = run_git(["rm", "--cached", "--ignore-unmatch", "--quiet", "--", path], cwd=self.root)
        if result.returncode != 0:
            logger.debug("git rm --cached %s failed: %s", path, result.stderr.strip())
            return False
        return True

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def hooks_dir(self) -> Path:
        """
        Return the directory git runs hooks from.

        Honors ``core.hooksPath`` (relative values are resolved against
        the root, as git does for non-bare repositories).
        """

        result = run_git(["config", "core.hooksPath"], cwd=self.root)
        custom = result.stdout.strip() if result.returncode == 0 else ""
        if custom:
            custom_path = Path(os.path.expanduser(custom))
            return custom_path if custom_path.is_absolute() else self.root / custom_path

        dot_git = self.root / ".git"
        if dot_git.is_dir():
            return dot_git / "hooks"

        result = run_git(["rev-parse", "--git-path", "hooks"], cwd=self.root)
        if result.returncode == 0 and result.stdout.strip():
            path = Path(result.stdout.strip())
            return path if path.is_absolute() else self.root / path
        return dot_git / "hooks"

    # ------------------------------------------------------------------
    # Large File Storage
    # ------------------------------------------------------------------

    def lfs_available(self) -> bool:
        result = run_git(["lfs", "version"], cwd=self.root)
        return result.returncode == 0

    def lfs_install(self) -> bool:
        result = run_git(["lfs", "install", "--local"], cwd=self.root)
        if result.returncode != 0:
            logger.warning("git lfs install failed: %s", result.stderr.strip())
            return False
        return True

    def lfs_track(self, pattern: str) -> bool:
        result = run_git(["lfs", "track", pattern], cwd=self.root)
        if result.returncode != 0:
            logger.warning("git lfs track %s failed: %s", pattern, result.stderr.strip())
            return False
        return True

    # ------------------------------------------------------------------
    # Ignore / attribute files
    # ------------------------------------------------------------------

    @property
    def gitignore_path(self) -> Path:
        return self.root / GITIGNORE_FILE

    @property
    def gitattributes_path(self) -> Path:
        return self.root / GITATTRIBUTES_FILE

    def add_ignore_rules(self, patterns: Iterable[str]) -> bool:
        """Append the patterns missing from .gitignore. Returns True if changed."""
        return append_lines(self.gitignore_path, patterns)

    def remove_ignore_rules(self, patterns: Iterable[str]) -> bool:
        """Drop exact pattern lines from .gitignore. Returns True if changed."""
        return remove_lines(self.gitignore_path, patterns)

    def ignore_rules(self) -> List[str]:
        return read_lines(self.gitignore_path)


# ---------------------------------------------------------------------------
# Line-file helpers
# ---------------------------------------------------------------------------


def read_lines(path: Path) -> List[str]:
    if not path.exists():
        return []
    return path.read_text(encoding="utf-8").splitlines()


def append_lines(path: Path, lines: Iterable[str], header: Optional[str] = None) -> bool:
    """
    Append each line not already present in ``path``.

    ``header`` is written once before the first appended line if it is
    not already in the file.
    """

    existing = read_lines(path)
    missing = [line for line in lines if line not in existing]
    missing = list(dict.fromkeys(missing))
    if not missing:
        return False

    if header and header not in existing:
        missing.insert(0, header)
    content = "\n".join(existing + missing) + "\n"
    path.write_text(content, encoding="utf-8")
    return True


def remove_lines(path: Path, lines: Iterable[str]) -> bool:
    existing = read_lines(path)
    drop = set(lines)
    kept = [line for line in existing if line not in drop]
    if len(kept) == len(existing):
        return False
    path.write_text("\n".join(kept) + "\n" if kept else "", encoding="utf-8")
    return True
