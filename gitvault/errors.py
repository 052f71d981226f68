"""
Error taxonomy.

Every failure the vault can report is a ``VaultError``. Subclasses name
the condition; ``path`` and ``hash`` identify what was being processed so
the user can re-run only what is needed.
"""

from __future__ import annotations

from typing import Optional


class VaultError(RuntimeError):
    """Base class for all vault failures."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        hash: Optional[str] = None,
    ):
        super().__init__(message)
        self.path = path
        self.hash = hash


# ---------------------------------------------------------------------------
# Repository / configuration
# ---------------------------------------------------------------------------


class NotARepository(VaultError):
    pass


class ConfigError(VaultError):
    pass


class AlreadyInitialized(VaultError):
    pass


class VaultLocked(VaultError):
    pass


# ---------------------------------------------------------------------------
# Path identity / manifest
# ---------------------------------------------------------------------------


class OutsideRepository(VaultError):
    pass


class PathNotFound(VaultError):
    pass


class HashCollision(VaultError):
    pass


class AlreadyManaged(VaultError):
    pass


class NotManaged(VaultError):
    pass


# ---------------------------------------------------------------------------
# Passphrases / secret backends
# ---------------------------------------------------------------------------


class PasswordMismatch(VaultError):
    pass


class EmptyPassphrase(VaultError):
    pass


class PasswordVerificationFailed(VaultError):
    pass


class BackendUnavailable(VaultError):
    pass


class AuthRequired(VaultError):
    pass


class MissingSecretRecord(VaultError):
    pass


class OrphanedSecretRecord(VaultError):
    pass


# ---------------------------------------------------------------------------
# Archive pipeline
# ---------------------------------------------------------------------------


class MissingArchive(VaultError):
    pass


class EncryptionFailed(VaultError):
    pass


class DecryptionFailed(VaultError):
    pass


class ExtractionFailed(VaultError):
    pass


# ---------------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------------


class HookDivergent(VaultError):
    pass
