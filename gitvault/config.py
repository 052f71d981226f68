"""
Global configuration and environment handling.

This module is responsible for:
- Defining global constants and defaults
- Naming the on-disk layout of a vault
- Reading process-level settings from the environment

Nothing in this file should depend on:
- the filesystem
- the vault configuration document
- CLI arguments

Repository-scoped settings live in the vault configuration document
(see manifest.py); this module only holds what is true for every repo.
"""

from __future__ import annotations

import os
from typing import Final, Optional

# ---------------------------------------------------------------------------
# Tool / format versioning
# ---------------------------------------------------------------------------

SUPPORTED_CONFIG_VERSION: Final[int] = 1
TOOL_VERSION: Final[str] = "0.1.0"
TOOL_NAME: Final[str] = "gv"

# ---------------------------------------------------------------------------
# Default behavior
# ---------------------------------------------------------------------------

STORAGE_FILE: Final[str] = "file"
STORAGE_1PASSWORD: Final[str] = "1password"
STORAGE_MODES: Final[tuple] = (STORAGE_FILE, STORAGE_1PASSWORD)

CIPHER_GPG: Final[str] = "gpg"
CIPHER_AES_GCM: Final[str] = "aes-gcm"
CIPHERS: Final[tuple] = (CIPHER_GPG, CIPHER_AES_GCM)

DEFAULT_STORAGE_MODE: Final[str] = STORAGE_FILE
DEFAULT_CIPHER: Final[str] = CIPHER_GPG
DEFAULT_LFS_THRESHOLD_MB: Final[float] = 5
DEFAULT_1PASSWORD_VAULT: Final[str] = "Personal"

HASH_LENGTH: Final[int] = 8

# Advisory lock around config read-modify-write
LOCK_TIMEOUT_SECONDS: Final[float] = 10.0
LOCK_STALE_SECONDS: Final[float] = 600.0

# ---------------------------------------------------------------------------
# On-disk layout
# ---------------------------------------------------------------------------

VAULT_DIR: Final[str] = ".vault"
STORAGE_DIR: Final[str] = "storage"
CONFIG_FILE: Final[str] = "config.yml"
LOCK_FILE: Final[str] = "config.lock"

SECRET_PREFIX: Final[str] = "gv-"
SECRET_SUFFIX: Final[str] = ".pw"
MARKER_SUFFIX: Final[str] = ".pw.1p"
REMOVED_SUFFIX: Final[str] = ".removed"

ARCHIVE_SUFFIX: Final[str] = ".tar.gz"

GITIGNORE_FILE: Final[str] = ".gitignore"
GITATTRIBUTES_FILE: Final[str] = ".gitattributes"

# ---------------------------------------------------------------------------
# Git hooks
# ---------------------------------------------------------------------------

HOOK_MARKER: Final[str] = "# git-vault hook marker"
HOOK_COMMANDS: Final[dict] = {
    "pre-commit": "encrypt",
    "post-checkout": "decrypt",
    "post-merge": "decrypt",
}

# ---------------------------------------------------------------------------
# Environment variable names
# ---------------------------------------------------------------------------

ENV_PASSWORD: Final[str] = "GV_PASSWORD"
ENV_GPG: Final[str] = "GV_GPG"
ENV_OP: Final[str] = "GV_OP"

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def password_from_env() -> Optional[str]:
    """
    Return the passphrase supplied through the environment, if any.

    Hooks run without a terminal, so this is the only non-interactive
    way to hand a passphrase to a command besides ``--password``.
    """

    return os.getenv(ENV_PASSWORD) or None


def gpg_executable() -> str:
    """Return the gpg binary to invoke."""
    return os.getenv(ENV_GPG, "gpg")


def op_executable() -> str:
    """Return the 1Password CLI binary to invoke."""
    return os.getenv(ENV_OP, "op")
