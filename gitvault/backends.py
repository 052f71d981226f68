"""
Secret backends: where the passphrase of each managed path lives.

Two variants share one capability set (store / retrieve / mark_removed /
is_available):

- FileBackend: a raw passphrase file per hash, owner read/write only
- OnePasswordBackend: a Secure Note per hash in a 1Password vault, plus
  a local zero-byte marker file recording that the hash lives there

Removal is always a soft delete: file records are renamed, remote items
are flagged ``status=removed``. Nothing here touches the manifest.
"""

from __future__ import annotations

import json
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .config import DEFAULT_1PASSWORD_VAULT, STORAGE_1PASSWORD, STORAGE_FILE, op_executable
from .errors import AuthRequired, BackendUnavailable, MissingSecretRecord
from .paths import VaultLayout
from .utils import atomic_write_text, make_private, timestamp

logger = logging.getLogger(__name__)


class SecretBackend(ABC):
    kind: str = ""

    def __init__(self, layout: VaultLayout):
        self.layout = layout

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def has_record(self, hash: str) -> bool:
        """Return True if the local artifact for ``hash`` exists."""

    @abstractmethod
    def store(self, hash: str, passphrase: str, metadata: Optional[Dict[str, str]] = None) -> None:
        ...

    @abstractmethod
    def retrieve(self, hash: str) -> str:
        ...

    @abstractmethod
    def mark_removed(self, hash: str) -> None:
        ...

    def discard(self, hash: str) -> None:
        """Roll back a record created by the current command."""
        self.mark_removed(hash)


# ---------------------------------------------------------------------------
# Local file
# ---------------------------------------------------------------------------


class FileBackend(SecretBackend):
    kind = STORAGE_FILE

    def is_available(self) -> bool:
        return True

    def has_record(self, hash: str) -> bool:
        return self.layout.secret_file(hash).exists()

    def store(self, hash: str, passphrase: str, metadata: Optional[Dict[str, str]] = None) -> None:
        path = self.layout.secret_file(hash)
        atomic_write_text(path, passphrase)
        make_private(path)
        logger.info("Password saved in: %s", path)

    def retrieve(self, hash: str) -> str:
        path = self.layout.secret_file(hash)
        if not path.exists():
            raise MissingSecretRecord(f"Password file not found: {path}", hash=hash)
        return path.read_text(encoding="utf-8").rstrip("\r\n")

    def mark_removed(self, hash: str) -> Path:
        """Rename the record with a ``.removed`` suffix and return the new path."""
        path = self.layout.secret_file(hash)
        if not path.exists():
            raise MissingSecretRecord(f"Password file not found: {path}", hash=hash)

        target = self.layout.removed_file(hash)
        if target.exists():
            target = self.layout.removed_file(hash, timestamp())
        path.rename(target)
        logger.info("Password file renamed to %s", target)
        return target

    def discard(self, hash: str) -> None:
        self.layout.secret_file(hash).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# 1Password
# ---------------------------------------------------------------------------


class OnePasswordBackend(SecretBackend):
    kind = STORAGE_1PASSWORD

    def __init__(
        self,
        layout: VaultLayout,
        project_name: str,
        vault_name: Optional[str] = None,
        executable: Optional[str] = None,
        interactive: bool = False,
    ):
        super().__init__(layout)
        self.project_name = project_name
        self.vault_name = vault_name or DEFAULT_1PASSWORD_VAULT
        self.executable = executable or op_executable()
        self.interactive = interactive

    def item_name(self, hash: str) -> str:
        return f"gv-{self.project_name}-{hash}"

    def _run(self, args: list, capture: bool = True) -> subprocess.CompletedProcess:
        try:
            if capture:
                return subprocess.run(
                    [self.executable, *args], capture_output=True, text=True, check=False
                )
            return subprocess.run([self.executable, *args], check=False)
        except FileNotFoundError:
            raise BackendUnavailable(
                f"1Password CLI not found: {self.executable}"
            ) from None

    # ------------------------------------------------------------------
    # Session checks
    # ------------------------------------------------------------------

    def is_available(self) -> bool:
        try:
            return self._run(["--version"]).returncode == 0
        except BackendUnavailable:
            return False

    def is_signed_in(self) -> bool:
        if self._run(["whoami"]).returncode == 0:
            return True
        if not self.interactive:
            return False
        logger.info("Not signed in to 1Password. Attempting to sign in...")
        return self._run(["signin"], capture=False).returncode == 0

    def ensure_session(self) -> None:
        """
        Raises:
            BackendUnavailable: if the CLI is missing
            AuthRequired: if there is no authenticated session
        """

        if not self.is_available():
            raise BackendUnavailable("1Password CLI is not available")
        if not self.is_signed_in():
            raise AuthRequired("Not signed in to 1Password CLI (run 'op signin')")

    def list_vaults(self) -> list:
        self.ensure_session()
        result = self._run(["vault", "list", "--format=json"])
        if result.returncode != 0:
            return []
        try:
            return [v["name"] for v in json.loads(result.stdout or "[]")]
        except (ValueError, KeyError, TypeError):
            return []

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def has_record(self, hash: str) -> bool:
        return self.layout.marker_file(hash).exists()

    def store(self, hash: str, passphrase: str, metadata: Optional[Dict[str, str]] = None) -> None:
        self.ensure_session()

        fields = {"status": "active", **(metadata or {})}
        args = [
            "item",
            "create",
            "--category",
            "Secure Note",
            "--title",
            self.item_name(hash),
            "--vault",
            self.vault_name,
            f"password[password]={passphrase}",
        ]
        args.extend(f"{key}[text]={value}" for key, value in fields.items())

        result = self._run(args)
        if result.returncode != 0:
            raise BackendUnavailable(
                f"Failed to create 1Password item {self.item_name(hash)}: {result.stderr.strip()}",
                hash=hash,
            )

        marker = self.layout.marker_file(hash)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_bytes(b"")
        logger.info("Password stored in 1Password. Marker file created: %s", marker)

    def retrieve(self, hash: str) -> str:
        self.ensure_session()
        name = self.item_name(hash)
        result = self._run(
            ["item", "get", name, "--vault", self.vault_name, "--fields", "password", "--reveal"]
        )
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "isn't an item" in stderr or "not found" in stderr.lower():
                raise MissingSecretRecord(f"1Password item {name} not found", hash=hash)
            raise BackendUnavailable(f"Failed to get 1Password item {name}: {stderr}", hash=hash)

        password = result.stdout.rstrip("\r\n")
        if not password:
            raise MissingSecretRecord(f"1Password item {name} has no password", hash=hash)
        return password

    def mark_removed(self, hash: str) -> None:
        self.ensure_session()
        name = self.item_name(hash)
        result = self._run(["item", "edit", name, "--vault", self.vault_name, "status[text]=removed"])
        if result.returncode != 0:
            raise BackendUnavailable(
                f"Failed to mark 1Password item {name} as removed: {result.stderr.strip()}",
                hash=hash,
            )
        self.layout.marker_file(hash).unlink(missing_ok=True)
        logger.info("1Password item %s marked as removed", name)


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


def route(layout: VaultLayout, storage_mode: str, hash: str) -> str:
    """
    Return which backend kind holds the record for ``hash``.

    The marker file is authoritative for 1Password. A 1Password vault
    whose marker is gone is reported, never silently read from disk.

    Raises:
        MissingSecretRecord: if no backend can be determined
    """

    if layout.marker_file(hash).exists():
        return STORAGE_1PASSWORD
    if storage_mode == STORAGE_1PASSWORD:
        raise MissingSecretRecord(
            f"1Password marker file missing: {layout.marker_file(hash)}", hash=hash
        )
    if layout.secret_file(hash).exists():
        return STORAGE_FILE
    raise MissingSecretRecord(
        f"Password file not found: {layout.secret_file(hash)}", hash=hash
    )
