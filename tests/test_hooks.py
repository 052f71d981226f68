"""Tests for git hook installation."""

import os
import stat
import sys
from pathlib import Path

import pytest

from gitvault.config import HOOK_MARKER
from gitvault.errors import HookDivergent
from gitvault.hooks import HookInstaller, HookOutcome, HookState, classify, raise_for_divergent


@pytest.fixture
def hooks_dir(repo_root: Path) -> Path:
    return repo_root / ".git" / "hooks"


@pytest.fixture
def installer(hooks_dir: Path, repo_root: Path) -> HookInstaller:
    return HookInstaller(hooks_dir, repo_root)


def is_executable(path: Path) -> bool:
    return bool(path.stat().st_mode & stat.S_IXUSR)


class TestInvocationLine:
    def test_relative_to_default_hooks_dir(self, installer):
        assert installer.invocation_line("encrypt") == (
            'gv --workspace "$(dirname "$0")/../.." encrypt --quiet'
        )

    def test_relative_to_custom_hooks_path(self, repo_root: Path):
        installer = HookInstaller(repo_root / "tools" / "git" / "hooks", repo_root)
        assert '"$(dirname "$0")/../../.."' in installer.invocation_line("decrypt")

    def test_hooks_outside_repository(self, tmp_path: Path, repo_root: Path):
        installer = HookInstaller(tmp_path / "global-hooks", repo_root)
        assert installer.invocation_line("decrypt") == (
            'gv --workspace "$(git rev-parse --show-toplevel)" decrypt --quiet'
        )


class TestInstall:
    def test_creates_absent_hook(self, installer, hooks_dir: Path):
        result = installer.install("pre-commit", "encrypt")
        assert result.outcome is HookOutcome.CREATED

        lines = (hooks_dir / "pre-commit").read_text().splitlines()
        assert lines[0].startswith("#!")
        assert lines[1] == HOOK_MARKER
        assert lines[2] == installer.invocation_line("encrypt")

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_hook_is_executable(self, installer, hooks_dir: Path):
        installer.install("pre-commit", "encrypt")
        assert is_executable(hooks_dir / "pre-commit")

    def test_idempotent(self, installer, hooks_dir: Path):
        installer.install("post-merge", "decrypt")
        first = (hooks_dir / "post-merge").read_bytes()

        result = installer.install("post-merge", "decrypt")
        assert result.outcome is HookOutcome.VERIFIED
        assert (hooks_dir / "post-merge").read_bytes() == first

    def test_divergent_hook_is_left_alone(self, installer, hooks_dir: Path):
        hook = hooks_dir / "pre-commit"
        hook.write_text(f"#!/bin/sh\n{HOOK_MARKER}\ngv encrypt --verbose\n")
        before = hook.read_bytes()

        result = installer.install("pre-commit", "encrypt")
        assert result.outcome is HookOutcome.DIVERGENT
        assert result.recorded == "gv encrypt --verbose"
        assert hook.read_bytes() == before

    def test_foreign_hook_backed_up_and_appended(self, installer, hooks_dir: Path):
        hook = hooks_dir / "post-checkout"
        hook.write_text("#!/bin/sh\necho existing")

        result = installer.install("post-checkout", "decrypt")
        assert result.outcome is HookOutcome.APPENDED
        assert result.backup.read_text() == "#!/bin/sh\necho existing"
        assert result.backup.name.startswith("post-checkout.backup-")

        text = hook.read_text()
        assert text.startswith("#!/bin/sh\necho existing\n")
        assert text.rstrip().endswith(f"{HOOK_MARKER}\n{installer.invocation_line('decrypt')}")

        # now marked, so a second install is a no-op
        again = installer.install("post-checkout", "decrypt")
        assert again.outcome is HookOutcome.VERIFIED
        assert hook.read_text() == text

    def test_install_all(self, installer, hooks_dir: Path):
        results = installer.install_all()
        assert {r.name for r in results} == {"pre-commit", "post-checkout", "post-merge"}
        assert "encrypt" in (hooks_dir / "pre-commit").read_text()
        assert "decrypt" in (hooks_dir / "post-checkout").read_text()
        assert "decrypt" in (hooks_dir / "post-merge").read_text()

    def test_install_all_reports_divergence(self, installer, hooks_dir: Path):
        (hooks_dir / "post-merge").write_text(f"{HOOK_MARKER}\nsomething else\n")
        results = installer.install_all()
        # the other hooks were still installed
        assert (hooks_dir / "pre-commit").exists()
        with pytest.raises(HookDivergent, match="post-merge"):
            raise_for_divergent(results)

    def test_creates_missing_hooks_directory(self, repo_root: Path):
        installer = HookInstaller(repo_root / ".githooks", repo_root)
        installer.install("pre-commit", "encrypt")
        assert (repo_root / ".githooks" / "pre-commit").exists()


class TestCheck:
    def test_classify(self, tmp_path: Path):
        hook = tmp_path / "hook"
        assert classify(hook) == (HookState.ABSENT, None)
        hook.write_text("#!/bin/sh\n")
        assert classify(hook) == (HookState.UNMARKED, None)
        hook.write_text(f"#!/bin/sh\n{HOOK_MARKER}\n\n  gv encrypt  \n")
        assert classify(hook) == (HookState.MARKED, "gv encrypt")

    def test_check_writes_nothing(self, installer, hooks_dir: Path):
        results = installer.check_all()
        assert all(r.outcome is HookOutcome.MISSING for r in results)
        assert os.listdir(hooks_dir) == []

    def test_check_after_install(self, installer):
        installer.install_all()
        assert all(r.outcome is HookOutcome.VERIFIED for r in installer.check_all())

    def test_raise_for_divergent(self, installer, hooks_dir: Path):
        installer.install_all()
        (hooks_dir / "pre-commit").write_text(f"{HOOK_MARKER}\ngv encrypt\n")
        with pytest.raises(HookDivergent):
            raise_for_divergent(installer.check_all())
