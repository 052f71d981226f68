"""
Symmetric encryption of archive files.

This module performs the actual passphrase-based encryption of a single
file into a single opaque blob, and the inverse. It is intentionally
dumb about what the file contains and where it lives.

Two ciphers are provided:
- GpgCipher: delegates to a GPG-compatible binary (the default, so that
  archives can be opened with plain ``gpg -d`` by anyone with the
  passphrase)
- AesGcmCipher: built-in scrypt + AES-256-GCM, for machines without gpg
"""

from __future__ import annotations

import logging
import struct
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt
from Crypto.Random import get_random_bytes

from .config import CIPHER_AES_GCM, CIPHER_GPG, gpg_executable
from .errors import BackendUnavailable, DecryptionFailed, EncryptionFailed, VaultError
from .utils import ensure_parent_dir

logger = logging.getLogger(__name__)


class Cipher(ABC):
    """Passphrase-based file cipher."""

    name: str = ""
    suffix: str = ""

    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def encrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        """Encrypt ``src`` into ``dest``. Raises EncryptionFailed."""

    @abstractmethod
    def decrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        """Decrypt ``src`` into ``dest``. Raises DecryptionFailed."""


# ---------------------------------------------------------------------------
# GPG
# ---------------------------------------------------------------------------


class GpgCipher(Cipher):
    name = CIPHER_GPG
    suffix = ".gpg"

    def __init__(self, executable: str | None = None):
        self.executable = executable or gpg_executable()

    def _run(self, args: list, passphrase: str) -> subprocess.CompletedProcess:
        cmd = [
            self.executable,
            "--batch",
            "--yes",
            "--quiet",
            "--pinentry-mode",
            "loopback",
            "--passphrase-fd",
            "0",
            *args,
        ]
        try:
            return subprocess.run(
                cmd,
                input=passphrase.encode("utf-8"),
                capture_output=True,
                check=False,
            )
        except FileNotFoundError:
            raise BackendUnavailable(f"gpg executable not found: {self.executable}") from None

    def is_available(self) -> bool:
        try:
            result = subprocess.run(
                [self.executable, "--version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError:
            return False
        return result.returncode == 0

    def encrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        ensure_parent_dir(dest)
        result = self._run(
            ["--symmetric", "--cipher-algo", "AES256", "--output", str(dest), str(src)],
            passphrase,
        )
        if result.returncode != 0:
            dest.unlink(missing_ok=True)
            raise EncryptionFailed(
                f"gpg encryption of {src} failed: {result.stderr.decode(errors='replace').strip()}",
                path=str(src),
            )

    def decrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        ensure_parent_dir(dest)
        result = self._run(["--decrypt", "--output", str(dest), str(src)], passphrase)
        if result.returncode != 0:
            dest.unlink(missing_ok=True)
            raise DecryptionFailed(
                f"gpg decryption of {src} failed: {result.stderr.decode(errors='replace').strip()}",
                path=str(src),
            )


# ---------------------------------------------------------------------------
# Built-in AES-GCM
# ---------------------------------------------------------------------------

# magic, log2(scrypt N), salt, nonce, tag
AES_MAGIC = b"GVA1"
AES_HEADER_FMT = ">4sB16s12s16s"
AES_HEADER_SIZE = struct.calcsize(AES_HEADER_FMT)
AES_KEY_SIZE = 32
AES_NONCE_SIZE = 12
DEFAULT_SCRYPT_LOG_N = 15


class AesGcmCipher(Cipher):
    name = CIPHER_AES_GCM
    suffix = ".enc"

    def __init__(self, scrypt_log_n: int = DEFAULT_SCRYPT_LOG_N):
        self.scrypt_log_n = scrypt_log_n

    @staticmethod
    def _derive_key(passphrase: str, salt: bytes, log_n: int) -> bytes:
        return scrypt(passphrase.encode("utf-8"), salt, AES_KEY_SIZE, N=2 ** log_n, r=8, p=1)

    def is_available(self) -> bool:
        return True

    def encrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        try:
            payload = src.read_bytes()
        except OSError as e:
            raise EncryptionFailed(f"Cannot read {src}: {e}", path=str(src)) from e

        salt = get_random_bytes(16)
        key = self._derive_key(passphrase, salt, self.scrypt_log_n)
        cipher = AES.new(key, AES.MODE_GCM, nonce=get_random_bytes(AES_NONCE_SIZE))
        ciphertext, tag = cipher.encrypt_and_digest(payload)

        header = struct.pack(AES_HEADER_FMT, AES_MAGIC, self.scrypt_log_n, salt, cipher.nonce, tag)
        ensure_parent_dir(dest)
        dest.write_bytes(header + ciphertext)

    def decrypt(self, src: Path, dest: Path, passphrase: str) -> None:
        try:
            data = src.read_bytes()
        except OSError as e:
            raise DecryptionFailed(f"Cannot read {src}: {e}", path=str(src)) from e
        if len(data) < AES_HEADER_SIZE:
            raise DecryptionFailed(f"{src} is too small or corrupt", path=str(src))

        magic, log_n, salt, nonce, tag = struct.unpack(AES_HEADER_FMT, data[:AES_HEADER_SIZE])
        if magic != AES_MAGIC:
            raise DecryptionFailed(f"{src} is not a vault archive", path=str(src))
        if not 10 <= log_n <= 22:
            raise DecryptionFailed(f"{src} has an invalid key derivation cost", path=str(src))

        key = self._derive_key(passphrase, salt, log_n)
        cipher = AES.new(key, AES.MODE_GCM, nonce=nonce)
        try:
            payload = cipher.decrypt_and_verify(data[AES_HEADER_SIZE:], tag)
        except ValueError:
            raise DecryptionFailed(
                f"Decryption of {src} failed: wrong passphrase or corrupted archive",
                path=str(src),
            ) from None

        ensure_parent_dir(dest)
        dest.write_bytes(payload)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def get_cipher(name: str) -> Cipher:
    if name == CIPHER_GPG:
        return GpgCipher()
    if name == CIPHER_AES_GCM:
        return AesGcmCipher()
    raise VaultError(f"Unknown cipher: {name}")
