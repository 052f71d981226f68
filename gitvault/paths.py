"""
Path identity and vault layout.

This module answers two questions:
    "What is the canonical name of this path inside the repository?"
    "Where does the vault keep the artifacts for it?"

Responsibilities:
- Canonicalize user paths to repo-relative POSIX form
- Derive the stable short hash used as the primary key everywhere
- Compute the deterministic locations of archives, secrets and markers

This module does NOT:
- Read or write any artifact
- Decide whether a path is managed
"""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import (
    ARCHIVE_SUFFIX,
    CONFIG_FILE,
    HASH_LENGTH,
    LOCK_FILE,
    MARKER_SUFFIX,
    REMOVED_SUFFIX,
    SECRET_PREFIX,
    SECRET_SUFFIX,
    STORAGE_DIR,
    VAULT_DIR,
)
from .errors import OutsideRepository
from .utils import short_hash


# ---------------------------------------------------------------------------
# Path identity
# ---------------------------------------------------------------------------


def normalize_relative(relative: str) -> str:
    """
    Normalize a repo-relative path string to POSIX form.

    Backslashes become forward slashes and ``.`` segments are dropped so
    that ``secrets\\key.txt`` and ``./secrets/key.txt`` name the same
    path. A trailing slash (directory marker) is preserved.
    """

    text = relative.replace("\\", "/")
    is_dir = text.endswith("/")
    parts = [p for p in text.split("/") if p not in ("", ".")]
    normalized = "/".join(parts)
    if is_dir and normalized:
        normalized += "/"
    return normalized


def path_hash(relative: str) -> str:
    """Return the 8-character lowercase hex identity of a canonical path."""
    return short_hash(normalize_relative(relative).encode("utf-8"), HASH_LENGTH)


def canonicalize(
    raw_path: str | Path,
    repo_root: str | Path,
    base: Optional[str | Path] = None,
) -> str:
    """
    Return ``raw_path`` relative to ``repo_root`` in canonical form.

    Relative inputs are taken relative to ``base`` (the workspace,
    defaulting to the current directory). Symlinks are resolved on both
    the candidate and the root, so a root reached through a symlinked
    mount still validates. Existing directories get a trailing ``/``.

    Raises:
        OutsideRepository: if the path resolves outside the root, or to
            the root itself
    """

    raw = Path(raw_path)
    if not raw.is_absolute():
        raw = Path(base or os.getcwd()) / raw

    candidate = Path(os.path.realpath(raw))
    root = Path(os.path.realpath(repo_root))

    try:
        relative = candidate.relative_to(root)
    except ValueError:
        raise OutsideRepository(
            f"'{raw_path}' is outside the repository root {root}",
            path=str(raw_path),
        ) from None

    text = relative.as_posix()
    if text in ("", "."):
        raise OutsideRepository(
            f"'{raw_path}' is the repository root itself", path=str(raw_path)
        )

    if candidate.is_dir():
        text += "/"
    return normalize_relative(text)


def flatten(relative: str) -> str:
    """Flatten a managed path into a single storage file stem."""
    return normalize_relative(relative).replace("/", "-")


# ---------------------------------------------------------------------------
# Vault layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class VaultLayout:
    """Deterministic locations of every vault artifact in one repository."""

    root: Path

    @property
    def vault_dir(self) -> Path:
        return self.root / VAULT_DIR

    @property
    def storage_dir(self) -> Path:
        return self.vault_dir / STORAGE_DIR

    @property
    def config_path(self) -> Path:
        return self.vault_dir / CONFIG_FILE

    @property
    def lock_path(self) -> Path:
        return self.vault_dir / LOCK_FILE

    def secret_file(self, hash: str) -> Path:
        return self.vault_dir / f"{SECRET_PREFIX}{hash}{SECRET_SUFFIX}"

    def marker_file(self, hash: str) -> Path:
        return self.vault_dir / f"{SECRET_PREFIX}{hash}{MARKER_SUFFIX}"

    def removed_file(self, hash: str, stamp: Optional[str] = None) -> Path:
        name = f"{SECRET_PREFIX}{hash}"
        if stamp:
            name += f".{stamp}"
        return self.vault_dir / f"{name}{REMOVED_SUFFIX}"

    def archive_path(self, relative: str, cipher_suffix: str) -> Path:
        return self.storage_dir / f"{flatten(relative)}{ARCHIVE_SUFFIX}{cipher_suffix}"

    def working_path(self, relative: str) -> Path:
        return self.root / normalize_relative(relative).rstrip("/")

    def relative(self, path: Path) -> str:
        """Return an artifact path relative to the root, POSIX separated."""
        return path.relative_to(self.root).as_posix()

    # ------------------------------------------------------------------
    # Patterns
    # ------------------------------------------------------------------

    def storage_glob(self, cipher_suffix: str) -> str:
        return posixpath.join(
            VAULT_DIR, STORAGE_DIR, f"*{ARCHIVE_SUFFIX}{cipher_suffix}"
        )

    @property
    def secret_ignore_patterns(self) -> list:
        return [
            f"{VAULT_DIR}/*{SECRET_SUFFIX}",
            f"{VAULT_DIR}/*{MARKER_SUFFIX}",
        ]

    def hash_from_secret_name(self, name: str) -> Optional[str]:
        """Return the hash encoded in a secret or marker file name."""
        for suffix in (MARKER_SUFFIX, SECRET_SUFFIX):
            if name.startswith(SECRET_PREFIX) and name.endswith(suffix):
                candidate = name[len(SECRET_PREFIX) : -len(suffix)]
                if len(candidate) == HASH_LENGTH:
                    return candidate
        return None


def ignore_pattern(relative: str) -> str:
    """Return the anchored ignore rule for a managed path."""
    return "/" + normalize_relative(relative)
