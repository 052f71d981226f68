"""
Shared test fixtures for the git-vault test suite.

Provides a throwaway repository, a git stand-in that records what would
have been staged instead of calling the git binary, and an in-memory
1Password backend.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from gitvault.backends import OnePasswordBackend
from gitvault.ciphers import AesGcmCipher
from gitvault.config import CIPHER_AES_GCM, STORAGE_1PASSWORD
from gitvault.errors import MissingSecretRecord
from gitvault.git import GitRepo
from gitvault.vault import initialize_vault


class RecordingGitRepo(GitRepo):
    """GitRepo that records index and LFS operations instead of running git."""

    def __init__(self, root, lfs: bool = False, hooks_path: Optional[Path] = None):
        super().__init__(root)
        self.lfs = lfs
        self.hooks_path = hooks_path
        self.staged: List[str] = []
        self.unstaged: List[str] = []
        self.tracked: List[str] = []
        self.lfs_installs = 0

    def project_name(self) -> str:
        return "demo"

    def stage(self, *paths: str) -> bool:
        self.staged.extend(paths)
        return True

    def unstage_removed(self, path: str) -> bool:
        self.unstaged.append(path)
        return True

    def hooks_dir(self) -> Path:
        return self.hooks_path or self.root / ".git" / "hooks"

    def lfs_available(self) -> bool:
        return self.lfs

    def lfs_install(self) -> bool:
        self.lfs_installs += 1
        return True

    def lfs_track(self, pattern: str) -> bool:
        self.tracked.append(pattern)
        return True


class MemoryOnePassword(OnePasswordBackend):
    """OnePasswordBackend keeping items in a dict instead of calling ``op``."""

    def __init__(self, layout, project_name="demo", vault_name=None):
        super().__init__(layout, project_name, vault_name=vault_name, executable="op")
        self.items: Dict[str, Dict[str, str]] = {}

    def ensure_session(self) -> None:
        pass

    def is_available(self) -> bool:
        return True

    def list_vaults(self) -> list:
        return ["Personal", "Work"]

    def store(self, hash, passphrase, metadata=None):
        self.items[self.item_name(hash)] = {
            "password": passphrase,
            "status": "active",
            **(metadata or {}),
        }
        marker = self.layout.marker_file(hash)
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_bytes(b"")

    def retrieve(self, hash):
        item = self.items.get(self.item_name(hash))
        if item is None:
            raise MissingSecretRecord(f"1Password item {self.item_name(hash)} not found", hash=hash)
        return item["password"]

    def mark_removed(self, hash):
        self.items[self.item_name(hash)]["status"] = "removed"
        self.layout.marker_file(hash).unlink(missing_ok=True)


@pytest.fixture
def repo_root(tmp_path: Path) -> Path:
    """An empty repository root (realpath, with a .git directory)."""
    root = Path(os.path.realpath(tmp_path)) / "repo"
    (root / ".git" / "hooks").mkdir(parents=True)
    return root


@pytest.fixture
def git(repo_root: Path) -> RecordingGitRepo:
    return RecordingGitRepo(repo_root)


@pytest.fixture
def cipher() -> AesGcmCipher:
    """Built-in cipher with a low key-derivation cost for speed."""
    return AesGcmCipher(scrypt_log_n=10)


@pytest.fixture
def vault(git, cipher):
    return initialize_vault(git, cipher=CIPHER_AES_GCM, cipher_impl=cipher)


@pytest.fixture
def op_vault(git, cipher, repo_root):
    from gitvault.paths import VaultLayout

    backend = MemoryOnePassword(VaultLayout(repo_root))
    return initialize_vault(
        git,
        storage_mode=STORAGE_1PASSWORD,
        cipher=CIPHER_AES_GCM,
        cipher_impl=cipher,
        onepassword_vault="Work",
        backends={STORAGE_1PASSWORD: backend},
    )


@pytest.fixture
def secret_file(repo_root: Path) -> Path:
    path = repo_root / "secrets" / "key.txt"
    path.parent.mkdir(parents=True)
    path.write_text("api-key=12345\n")
    return path


def write_tree(root: Path, files: Dict[str, str]) -> None:
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


@pytest.fixture
def make_tree():
    return write_tree
