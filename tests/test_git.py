"""Tests for the git plumbing wrapper."""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from gitvault.errors import NotARepository
from gitvault.git import GitRepo, append_lines, read_lines, remove_lines


def completed(stdout: str = "", code: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], code, stdout, "")


class TestLineFiles:
    def test_append_missing_only(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("node_modules/\n/secrets/key.txt\n")
        assert append_lines(path, ["/secrets/key.txt", ".vault/*.pw", ".vault/*.pw"])
        assert read_lines(path) == ["node_modules/", "/secrets/key.txt", ".vault/*.pw"]

    def test_append_nothing_new(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("/a\n")
        assert not append_lines(path, ["/a"])
        assert path.read_text() == "/a\n"

    def test_append_creates_file(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        assert append_lines(path, ["/a"], header="# header")
        assert path.read_text() == "# header\n/a\n"

    def test_remove(self, tmp_path: Path):
        path = tmp_path / ".gitignore"
        path.write_text("/a\n/b\n")
        assert remove_lines(path, ["/a"])
        assert path.read_text() == "/b\n"
        assert not remove_lines(path, ["/zzz"])


class TestGitRepo:
    def test_project_name_from_origin(self, tmp_path: Path):
        repo = GitRepo(tmp_path)
        for url in (
            "git@github.com:acme/widgets.git",
            "https://github.com/acme/widgets",
            "https://github.com/acme/widgets.git/",
        ):
            with patch("gitvault.git.run_git", return_value=completed(url + "\n")):
                assert repo.project_name() == "widgets"

    def test_project_name_falls_back_to_directory(self, tmp_path: Path):
        repo = GitRepo(tmp_path / "my-project")
        with patch("gitvault.git.run_git", return_value=completed(code=2)):
            assert repo.project_name() == "my-project"

    def test_hooks_dir_default(self, repo_root: Path):
        with patch("gitvault.git.run_git", return_value=completed(code=1)):
            assert GitRepo(repo_root).hooks_dir() == repo_root / ".git" / "hooks"

    def test_hooks_dir_custom_relative(self, repo_root: Path):
        with patch("gitvault.git.run_git", return_value=completed(".githooks\n")):
            assert GitRepo(repo_root).hooks_dir() == repo_root / ".githooks"

    def test_hooks_dir_custom_absolute(self, repo_root: Path, tmp_path: Path):
        shared = tmp_path / "shared-hooks"
        with patch("gitvault.git.run_git", return_value=completed(f"{shared}\n")):
            assert GitRepo(repo_root).hooks_dir() == shared

    def test_discover_outside_repository(self, tmp_path: Path):
        with patch("gitvault.git.run_git", return_value=completed(code=128)):
            with pytest.raises(NotARepository):
                GitRepo.discover(tmp_path)

    def test_discover_missing_directory(self, tmp_path: Path):
        with pytest.raises(NotARepository):
            GitRepo.discover(tmp_path / "nope")


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
class TestRealGit:
    def test_discover_and_stage(self, tmp_path: Path):
        subprocess.run(["git", "init", "-q", str(tmp_path)], check=True)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "file.txt").write_text("x")

        repo = GitRepo.discover(tmp_path / "sub")
        assert repo.root.resolve() == tmp_path.resolve()
        assert repo.stage("sub/file.txt")

        listed = subprocess.run(
            ["git", "ls-files", "--cached"], cwd=tmp_path, capture_output=True, text=True
        ).stdout
        assert "sub/file.txt" in listed
