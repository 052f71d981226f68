"""
git-vault

Keeps selected files and directories of a Git repository encrypted at
rest in version control, while they stay plaintext (and gitignored) in
the working tree.
"""

__version__ = "0.1.0"

from .errors import VaultError
from .manifest import ManagedPath, VaultConfig
from .paths import VaultLayout, canonicalize, path_hash
from .vault import BulkResult, Vault, initialize_vault, open_vault

__all__ = [
    "VaultError",
    "ManagedPath",
    "VaultConfig",
    "VaultLayout",
    "canonicalize",
    "path_hash",
    "BulkResult",
    "Vault",
    "initialize_vault",
    "open_vault",
]
