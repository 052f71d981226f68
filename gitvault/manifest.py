"""
Vault configuration and manifest: loading, validation, persistence.

This module answers one question:
    "What is vaulted in this repository, and how?"

Responsibilities:
- Load the vault configuration YAML file
- Validate structure and version
- Normalize defaults
- Expose a clean Python representation of the managed-path manifest
- Persist it with write-then-atomic-replace
- Serialize read-modify-write cycles with an advisory lock

This module does NOT:
- Touch secret records or archives
- Walk the filesystem
- Stage anything in git
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import yaml

from .config import (
    CIPHERS,
    DEFAULT_CIPHER,
    DEFAULT_LFS_THRESHOLD_MB,
    DEFAULT_STORAGE_MODE,
    LOCK_STALE_SECONDS,
    LOCK_TIMEOUT_SECONDS,
    STORAGE_MODES,
    SUPPORTED_CONFIG_VERSION,
)
from .errors import (
    AlreadyManaged,
    ConfigError,
    HashCollision,
    NotManaged,
    VaultLocked,
)
from .paths import VaultLayout, normalize_relative, path_hash
from .utils import atomic_write_text

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------


@dataclass
class LinkedConfigFile:
    file: str


@dataclass
class ManagedPath:
    hash: str
    path: str
    linked_config_files: List[LinkedConfigFile] = field(default_factory=list)

    @property
    def is_directory(self) -> bool:
        return self.path.endswith("/")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "path": self.path,
            "linked_config_files": [{"file": l.file} for l in self.linked_config_files],
        }


@dataclass
class VaultConfig:
    version: int = SUPPORTED_CONFIG_VERSION
    storage_mode: str = DEFAULT_STORAGE_MODE
    lfs_threshold_mb: float = DEFAULT_LFS_THRESHOLD_MB
    cipher: str = DEFAULT_CIPHER
    onepassword_vault: Optional[str] = None
    managed_paths: List[ManagedPath] = field(default_factory=list)

    # ------------------------------------------------------------------
    # Loading API
    # ------------------------------------------------------------------

    @classmethod
    def load(cls, layout: VaultLayout) -> Optional["VaultConfig"]:
        """
        Load and validate the vault configuration of a repository.

        Args:
            layout: layout of the repository

        Raises:
            ConfigError: if the document exists but is invalid

        Returns:
            VaultConfig, or None if the vault was never initialized
        """

        path = layout.config_path
        if not path.exists():
            return None

        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config file {path}: {e}") from e

        if not isinstance(raw, dict):
            raise ConfigError(f"Config file {path} is not a mapping")

        return cls._from_dict(raw)

    def save(self, layout: VaultLayout) -> None:
        """
        Persist the configuration.

        The document is written to a temporary sibling and renamed into
        place, so concurrent readers never observe a partial file.
        """

        text = yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)
        atomic_write_text(layout.config_path, text)
        logger.debug("Saved vault config to %s", layout.config_path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "storage_mode": self.storage_mode,
            "lfs_threshold_mb": self.lfs_threshold_mb,
            "cipher": self.cipher,
            "onepassword_vault": self.onepassword_vault,
            "managed_paths": [m.to_dict() for m in self.managed_paths],
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> "VaultConfig":
        version = data.get("version")
        if version != SUPPORTED_CONFIG_VERSION:
            raise ConfigError(f"Unsupported config version: {version}")

        storage_mode = data.get("storage_mode", DEFAULT_STORAGE_MODE)
        if storage_mode not in STORAGE_MODES:
            raise ConfigError(f"Unknown storage mode: {storage_mode}")

        cipher = data.get("cipher", DEFAULT_CIPHER)
        if cipher not in CIPHERS:
            raise ConfigError(f"Unknown cipher: {cipher}")

        try:
            threshold = float(data.get("lfs_threshold_mb", DEFAULT_LFS_THRESHOLD_MB))
        except (TypeError, ValueError):
            raise ConfigError("lfs_threshold_mb must be a number") from None

        return cls(
            version=version,
            storage_mode=storage_mode,
            lfs_threshold_mb=threshold,
            cipher=cipher,
            onepassword_vault=data.get("onepassword_vault"),
            managed_paths=cls._parse_managed_paths(data.get("managed_paths") or []),
        )

    @staticmethod
    def _parse_managed_paths(data: List[Dict[str, Any]]) -> List[ManagedPath]:
        entries: List[ManagedPath] = []
        seen = set()

        for item in data:
            if not isinstance(item, dict) or "hash" not in item or "path" not in item:
                raise ConfigError(f"Managed path entry missing 'hash' or 'path': {item}")

            hash_ = str(item["hash"])
            if hash_ in seen:
                raise ConfigError(f"Duplicate managed path hash: {hash_}")
            seen.add(hash_)

            linked = [
                LinkedConfigFile(file=str(l["file"]))
                for l in item.get("linked_config_files") or []
                if isinstance(l, dict) and "file" in l
            ]
            entries.append(
                ManagedPath(
                    hash=hash_,
                    path=normalize_relative(str(item["path"])),
                    linked_config_files=linked,
                )
            )

        return entries

    # ------------------------------------------------------------------
    # Manifest operations
    # ------------------------------------------------------------------

    def find(self, hash: str) -> Optional[ManagedPath]:
        return next((m for m in self.managed_paths if m.hash == hash), None)

    def find_path(self, relative: str) -> Optional[ManagedPath]:
        """
        Look up an entry by canonical path.

        A path given without a trailing slash also matches a managed
        directory of the same name, since a directory that is currently
        absent from the working tree cannot be detected as one.
        """

        relative = normalize_relative(relative)
        candidates = [relative]
        if not relative.endswith("/"):
            candidates.append(relative + "/")

        for candidate in candidates:
            for entry in self.managed_paths:
                if entry.path == candidate:
                    return entry
        return None

    def check_insertable(self, relative: str) -> str:
        """
        Verify a canonical path can be added and return its hash.

        Raises:
            AlreadyManaged: the same path is already in the manifest
            HashCollision: a different path already owns the hash
        """

        relative = normalize_relative(relative)
        hash_ = path_hash(relative)
        existing = self.find(hash_)
        if existing is None:
            return hash_
        if existing.path == relative:
            raise AlreadyManaged(
                f"Path already managed: '{relative}' (hash: {hash_})",
                path=relative,
                hash=hash_,
            )
        raise HashCollision(
            f"Hash {hash_} of '{relative}' collides with managed path '{existing.path}'",
            path=relative,
            hash=hash_,
        )

    def insert(self, entry: ManagedPath) -> None:
        self.check_insertable(entry.path)
        self.managed_paths.append(entry)

    def remove(self, hash: str) -> ManagedPath:
        entry = self.find(hash)
        if entry is None:
            raise NotManaged(f"No managed path with hash {hash}", hash=hash)
        self.managed_paths = [m for m in self.managed_paths if m.hash != hash]
        return entry


# ---------------------------------------------------------------------------
# Advisory lock
# ---------------------------------------------------------------------------


@contextmanager
def config_lock(
    layout: VaultLayout,
    timeout: float = LOCK_TIMEOUT_SECONDS,
    stale_after: float = LOCK_STALE_SECONDS,
) -> Iterator[Path]:
    """
    Hold the advisory config lock for a read-modify-write cycle.

    The lock is a file created with O_EXCL. A lock older than
    ``stale_after`` seconds is assumed abandoned and broken.

    Raises:
        VaultLocked: if the lock could not be acquired within ``timeout``
    """

    path = layout.lock_path
    path.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    while True:
        try:
            fd = os.open(str(path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            break
        except FileExistsError:
            try:
                age = time.time() - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age > stale_after:
                logger.warning("Breaking stale vault lock %s (%.0fs old)", path, age)
                path.unlink(missing_ok=True)
                continue
            if time.monotonic() >= deadline:
                raise VaultLocked(
                    f"Vault is locked by another process ({path}). "
                    "Remove the lock file if no other gv command is running."
                ) from None
            time.sleep(0.1)

    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(str(os.getpid()))
        yield path
    finally:
        path.unlink(missing_ok=True)
