"""Tests for secret backends and backend routing."""

import json
import stat
import subprocess
import sys
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest

from gitvault.backends import FileBackend, OnePasswordBackend, route
from gitvault.config import CIPHER_AES_GCM, STORAGE_1PASSWORD
from gitvault.errors import AuthRequired, BackendUnavailable, ConfigError, MissingSecretRecord
from gitvault.manifest import VaultConfig
from gitvault.paths import VaultLayout
from gitvault.vault import initialize_vault


@pytest.fixture
def layout(repo_root: Path) -> VaultLayout:
    layout = VaultLayout(repo_root)
    layout.vault_dir.mkdir()
    return layout


class FakeOp:
    """Scripted stand-in for the ``op`` binary."""

    def __init__(self, signed_in: bool = True, items=None, vaults=("Personal", "Work")):
        self.signed_in = signed_in
        self.items = dict(items or {})
        self.vaults = list(vaults)
        self.calls: List[list] = []

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        args = cmd[1:]
        if args == ["--version"]:
            return self._ok("2.30.0\n")
        if args == ["whoami"]:
            return self._ok("me") if self.signed_in else self._fail("not signed in")
        if args[:2] == ["item", "create"]:
            title = args[args.index("--title") + 1]
            password = next(a for a in args if a.startswith("password[password]="))
            self.items[title] = password.split("=", 1)[1]
            return self._ok("{}")
        if args[:2] == ["item", "get"]:
            if args[2] not in self.items:
                return self._fail(f'"{args[2]}" isn\'t an item in the "Work" vault')
            return self._ok(self.items[args[2]] + "\n")
        if args[:2] == ["item", "edit"]:
            return self._ok("{}") if args[2] in self.items else self._fail("not found")
        if args[:2] == ["vault", "list"]:
            return self._ok(json.dumps([{"id": str(i), "name": n} for i, n in enumerate(self.vaults)]))
        return self._fail("unexpected")

    @staticmethod
    def _ok(out):
        return subprocess.CompletedProcess([], 0, out, "")

    @staticmethod
    def _fail(err):
        return subprocess.CompletedProcess([], 1, "", err)


class TestFileBackend:
    def test_store_and_retrieve(self, layout):
        backend = FileBackend(layout)
        backend.store("0123abcd", "correcthorse123")
        assert backend.has_record("0123abcd")
        assert layout.secret_file("0123abcd").read_text() == "correcthorse123"
        assert backend.retrieve("0123abcd") == "correcthorse123"

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_owner_only(self, layout):
        FileBackend(layout).store("0123abcd", "pw")
        mode = stat.S_IMODE(layout.secret_file("0123abcd").stat().st_mode)
        assert mode == 0o600

    def test_retrieve_strips_line_ending(self, layout):
        layout.secret_file("0123abcd").write_text("pw with spaces \r\n")
        assert FileBackend(layout).retrieve("0123abcd") == "pw with spaces "

    def test_retrieve_missing(self, layout):
        with pytest.raises(MissingSecretRecord) as info:
            FileBackend(layout).retrieve("0123abcd")
        assert info.value.hash == "0123abcd"

    def test_mark_removed_renames(self, layout):
        backend = FileBackend(layout)
        backend.store("0123abcd", "pw")
        target = backend.mark_removed("0123abcd")
        assert target == layout.removed_file("0123abcd")
        assert target.read_text() == "pw"
        assert not backend.has_record("0123abcd")

    def test_mark_removed_twice_keeps_both(self, layout):
        backend = FileBackend(layout)
        backend.store("0123abcd", "first")
        backend.mark_removed("0123abcd")
        backend.store("0123abcd", "second")
        second = backend.mark_removed("0123abcd")
        assert second != layout.removed_file("0123abcd")
        assert layout.removed_file("0123abcd").read_text() == "first"
        assert second.read_text() == "second"

    def test_discard_deletes(self, layout):
        backend = FileBackend(layout)
        backend.store("0123abcd", "pw")
        backend.discard("0123abcd")
        assert list(layout.vault_dir.iterdir()) == []


class TestOnePasswordBackend:
    def backend(self, layout, **kwargs):
        return OnePasswordBackend(layout, "demo", vault_name="Work", executable="op", **kwargs)

    def test_item_name(self, layout):
        assert self.backend(layout).item_name("0123abcd") == "gv-demo-0123abcd"

    def test_store_creates_item_and_marker(self, layout):
        op = FakeOp()
        with patch("gitvault.backends.subprocess.run", side_effect=op):
            self.backend(layout).store("0123abcd", "pw", metadata={"path": "secrets/key.txt"})

        create = next(c for c in op.calls if c[1:3] == ["item", "create"])
        assert create[create.index("--category") + 1] == "Secure Note"
        assert create[create.index("--vault") + 1] == "Work"
        assert "status[text]=active" in create
        assert "path[text]=secrets/key.txt" in create
        marker = layout.marker_file("0123abcd")
        assert marker.exists() and marker.stat().st_size == 0

    def test_retrieve(self, layout):
        op = FakeOp(items={"gv-demo-0123abcd": "pw"})
        with patch("gitvault.backends.subprocess.run", side_effect=op):
            assert self.backend(layout).retrieve("0123abcd") == "pw"
        get = next(c for c in op.calls if c[1:3] == ["item", "get"])
        assert get[get.index("--fields") + 1] == "password"

    def test_retrieve_missing_item(self, layout):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp()):
            with pytest.raises(MissingSecretRecord):
                self.backend(layout).retrieve("0123abcd")

    def test_mark_removed_edits_status(self, layout):
        op = FakeOp(items={"gv-demo-0123abcd": "pw"})
        layout.marker_file("0123abcd").write_bytes(b"")
        with patch("gitvault.backends.subprocess.run", side_effect=op):
            self.backend(layout).mark_removed("0123abcd")
        edit = next(c for c in op.calls if c[1:3] == ["item", "edit"])
        assert edit[-1] == "status[text]=removed"
        assert not layout.marker_file("0123abcd").exists()
        # soft delete only
        assert not any("delete" in c for c in op.calls)

    def test_not_signed_in(self, layout):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp(signed_in=False)):
            with pytest.raises(AuthRequired):
                self.backend(layout).store("0123abcd", "pw")
        assert not layout.marker_file("0123abcd").exists()

    def test_cli_missing(self, layout):
        with patch("gitvault.backends.subprocess.run", side_effect=FileNotFoundError):
            backend = self.backend(layout)
            assert not backend.is_available()
            with pytest.raises(BackendUnavailable):
                backend.retrieve("0123abcd")

    def test_list_vaults(self, layout):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp()):
            assert self.backend(layout).list_vaults() == ["Personal", "Work"]


class TestRouting:
    def test_marker_wins(self, layout):
        layout.marker_file("0123abcd").write_bytes(b"")
        layout.secret_file("0123abcd").write_text("pw")
        assert route(layout, "file", "0123abcd") == "1password"

    def test_file_record(self, layout):
        layout.secret_file("0123abcd").write_text("pw")
        assert route(layout, "file", "0123abcd") == "file"

    def test_missing_marker_never_falls_back(self, layout):
        layout.secret_file("0123abcd").write_text("pw")
        with pytest.raises(MissingSecretRecord, match="marker"):
            route(layout, "1password", "0123abcd")

    def test_nothing(self, layout):
        with pytest.raises(MissingSecretRecord):
            route(layout, "file", "0123abcd")


class TestOnePasswordInit:
    def init(self, git, cipher, vault_name):
        return initialize_vault(
            git,
            storage_mode=STORAGE_1PASSWORD,
            cipher=CIPHER_AES_GCM,
            cipher_impl=cipher,
            onepassword_vault=vault_name,
        )

    def test_known_vault(self, git, cipher):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp()):
            vault = self.init(git, cipher, "Work")
        assert VaultConfig.load(vault.layout).onepassword_vault == "Work"

    def test_unknown_vault_refused(self, git, cipher, repo_root: Path):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp()):
            with pytest.raises(ConfigError, match="'Typo' not found"):
                self.init(git, cipher, "Typo")
        assert not (repo_root / ".vault").exists()

    def test_account_without_vaults_refused(self, git, cipher, repo_root: Path):
        with patch("gitvault.backends.subprocess.run", side_effect=FakeOp(vaults=())):
            with pytest.raises(ConfigError, match="No 1Password vaults"):
                self.init(git, cipher, None)
        assert not (repo_root / ".vault").exists()
