"""
Archive-and-encrypt / decrypt-and-extract pipeline.

This module is responsible for:
- packaging a managed file or directory tree into a deterministic tar.gz
- encrypting the package into its storage location, and the inverse
- restoring the packaged tree under a target root
- proving that a passphrase round-trips before anything durable exists

This module does NOT:
- know where passphrases come from
- decide which paths are managed
- stage anything in git

Every temporary file lives in a self-cleaning scratch directory.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import tarfile
import tempfile
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, Tuple

from .ciphers import Cipher
from .config import ARCHIVE_SUFFIX
from .errors import DecryptionFailed, EncryptionFailed, ExtractionFailed, VaultError
from .paths import normalize_relative

logger = logging.getLogger(__name__)

Snapshot = Dict[str, Tuple[str, str]]


@contextmanager
def scratch_dir() -> Iterator[Path]:
    with tempfile.TemporaryDirectory(prefix="gv-") as tmp:
        yield Path(tmp)


def _normalize_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _within(name: str, relative: str) -> bool:
    """Return True if archive member ``name`` lies inside ``relative``."""
    pure = PurePosixPath(name)
    if pure.is_absolute() or ".." in pure.parts:
        return False
    name = pure.as_posix()
    if relative.endswith("/"):
        base = relative.rstrip("/")
        return name == base or name.startswith(base + "/")
    return name == relative


class ArchivePipeline:
    """Packages, encrypts, decrypts and extracts managed paths under ``root``."""

    def __init__(self, cipher: Cipher, root: Path):
        self.cipher = cipher
        self.root = Path(root)

    # ------------------------------------------------------------------
    # Packaging
    # ------------------------------------------------------------------

    def _walk(self, path: Path) -> Iterator[Path]:
        yield path
        if path.is_dir() and not path.is_symlink():
            for child in sorted(path.iterdir(), key=lambda p: p.name):
                yield from self._walk(child)

    def create_archive(self, relative: str, dest: Path, base: Path | None = None) -> Path:
        """
        Package ``relative`` (under ``base``, default the root) into ``dest``.

        Members are named by their repo-relative POSIX path, in sorted
        order, with ownership and gzip timestamps stripped, so the same
        tree always yields the same bytes.
        """

        base = Path(base or self.root)
        relative = normalize_relative(relative)
        source = base / relative.rstrip("/")
        if not os.path.lexists(source):
            raise EncryptionFailed(f"'{relative}' does not exist", path=relative)

        try:
            with dest.open("wb") as raw, gzip.GzipFile(
                filename="", mode="wb", fileobj=raw, mtime=0
            ) as gz, tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for path in self._walk(source):
                    arcname = path.relative_to(base).as_posix()
                    tar.add(str(path), arcname=arcname, recursive=False, filter=_normalize_tarinfo)
        except (OSError, tarfile.TarError) as e:
            raise EncryptionFailed(f"Failed to archive '{relative}': {e}", path=relative) from e

        return dest

    def extract_archive(self, archive: Path, target_root: Path, relative: str) -> None:
        """
        Restore the packaged tree under ``target_root``.

        Every member must lie inside ``relative``; an archive that tries
        to write anywhere else is rejected before anything is extracted.
        """

        relative = normalize_relative(relative)
        try:
            with tarfile.open(str(archive), "r:gz") as tar:
                members = tar.getmembers()
                for member in members:
                    if not _within(member.name, relative):
                        raise ExtractionFailed(
                            f"Archive member '{member.name}' is outside '{relative}'",
                            path=relative,
                        )
                target_root.mkdir(parents=True, exist_ok=True)
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(str(target_root), members=members, filter="data")
                else:
                    tar.extractall(str(target_root), members=members)
        except (OSError, tarfile.TarError) as e:
            raise ExtractionFailed(f"Failed to extract '{relative}': {e}", path=relative) from e

    # ------------------------------------------------------------------
    # Comparison
    # ------------------------------------------------------------------

    def snapshot(self, relative: str, base: Path | None = None) -> Snapshot:
        """
        Return a structural and content fingerprint of a tree.

        Raises:
            EncryptionFailed: if a member cannot be read or is not a regular
                file, directory or symlink
        """

        base = Path(base or self.root)
        source = base / normalize_relative(relative).rstrip("/")
        result: Snapshot = {}
        if not os.path.lexists(source):
            return result

        try:
            for path in self._walk(source):
                key = path.relative_to(base).as_posix()
                if path.is_symlink():
                    result[key] = ("link", os.readlink(path))
                elif path.is_dir():
                    result[key] = ("dir", "")
                elif not path.is_file():
                    raise OSError(f"{path} is not a regular file")
                else:
                    digest = hashlib.sha256()
                    with path.open("rb") as fh:
                        for block in iter(lambda: fh.read(1 << 20), b""):
                            digest.update(block)
                    result[key] = ("file", digest.hexdigest())
        except OSError as e:
            raise EncryptionFailed(f"Failed to read '{relative}': {e}", path=relative) from e
        return result

    # ------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------

    def encrypt(self, archive: Path, dest: Path, passphrase: str) -> None:
        """Encrypt ``archive`` into ``dest``, replacing it atomically."""
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            self.cipher.encrypt(archive, tmp, passphrase)
            os.replace(tmp, dest)
        finally:
            tmp.unlink(missing_ok=True)

    def decrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        self.cipher.decrypt(src, dest, passphrase)

    def seal(self, relative: str, archive_path: Path, passphrase: str) -> None:
        """Archive and encrypt ``relative`` into its storage location."""
        with scratch_dir() as tmp:
            package = self.create_archive(relative, tmp / f"archive{ARCHIVE_SUFFIX}")
            self.encrypt(package, archive_path, passphrase)
        logger.debug("Sealed %s -> %s", relative, archive_path)

    def unseal(self, relative: str, archive_path: Path, passphrase: str) -> None:
        """Decrypt ``archive_path`` and extract it into the working tree."""
        with scratch_dir() as tmp:
            package = tmp / f"archive{ARCHIVE_SUFFIX}"
            self.decrypt(archive_path, package, passphrase)
            self.extract_archive(package, self.root, relative)
        logger.debug("Unsealed %s -> %s", archive_path, relative)

    def verify(self, archive_path: Path, passphrase: str) -> bool:
        """Return True if ``passphrase`` decrypts ``archive_path``."""
        with scratch_dir() as tmp:
            try:
                self.decrypt(archive_path, tmp / "verify", passphrase)
            except VaultError as e:
                logger.debug("Passphrase verification failed for %s: %s", archive_path, e)
                return False
        return True

    def matches(self, relative: str, archive_path: Path, passphrase: str) -> bool:
        """Return True if the archive already holds the current plaintext."""
        if not archive_path.exists():
            return False
        with scratch_dir() as tmp:
            package = tmp / f"archive{ARCHIVE_SUFFIX}"
            try:
                self.decrypt(archive_path, package, passphrase)
                self.extract_archive(package, tmp / "tree", relative)
            except VaultError as e:
                logger.debug("Existing archive for %s not comparable: %s", relative, e)
                return False
            return self.snapshot(relative, tmp / "tree") == self.snapshot(relative)

    def validate_round_trip(self, relative: str, passphrase: str) -> None:
        """
        Prove that ``passphrase`` round-trips ``relative``.

        Archives into scratch, encrypts, decrypts, extracts and compares
        the result with the original tree. Nothing outside scratch is
        written.

        Raises:
            EncryptionFailed: if the restored tree differs
            DecryptionFailed / ExtractionFailed: if a step fails
        """

        relative = normalize_relative(relative)
        with scratch_dir() as tmp:
            package = self.create_archive(relative, tmp / f"archive{ARCHIVE_SUFFIX}")
            blob = tmp / f"archive{ARCHIVE_SUFFIX}{self.cipher.suffix}"
            self.cipher.encrypt(package, blob, passphrase)

            restored = tmp / f"restored{ARCHIVE_SUFFIX}"
            try:
                self.cipher.decrypt(blob, restored, passphrase)
            except DecryptionFailed as e:
                raise EncryptionFailed(
                    f"Round-trip validation of '{relative}' failed: {e}", path=relative
                ) from e
            self.extract_archive(restored, tmp / "tree", relative)

            if self.snapshot(relative, tmp / "tree") != self.snapshot(relative):
                raise EncryptionFailed(
                    f"Round-trip validation of '{relative}' failed: restored content differs",
                    path=relative,
                )
        logger.debug("Round-trip validation passed for %s", relative)
