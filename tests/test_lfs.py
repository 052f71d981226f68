"""Tests for large-object tiering."""

from pathlib import Path

import pytest

from gitvault.lfs import LFS_HEADER, LargeObjectTiering, lfs_rule, should_tier

GLOB = ".vault/storage/*.tar.gz.enc"


def big_file(path: Path, mb: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\0" * int(mb * 1024 * 1024))
    return path


class TestThreshold:
    @pytest.mark.parametrize(
        "size,threshold,expected",
        [(4.99, 5, False), (5, 5, True), (12.0, 5, True), (0.0, 0, True)],
    )
    def test_should_tier(self, size, threshold, expected):
        assert should_tier(size, threshold) is expected

    def test_rule_line(self):
        assert lfs_rule(GLOB) == f"{GLOB} filter=lfs diff=lfs merge=lfs -text"


class TestApply:
    def test_small_archive_untouched(self, git, repo_root: Path):
        archive = big_file(repo_root / "small.enc", 0.1)
        result = LargeObjectTiering(git, 5).apply(archive, GLOB)
        assert not result.oversized
        assert not git.gitattributes_path.exists()

    def test_lfs_unavailable_is_a_warning(self, git, repo_root: Path):
        archive = big_file(repo_root / "big.enc", 1.2)
        result = LargeObjectTiering(git, 1).apply(archive, GLOB)
        assert result.oversized
        assert not result.registered
        assert "Git LFS not available" in result.warning
        assert not git.gitattributes_path.exists()

    def test_registers_once(self, git, repo_root: Path):
        git.lfs = True
        tiering = LargeObjectTiering(git, 1)
        first = tiering.apply(big_file(repo_root / "a.enc", 1.1), GLOB)
        second = tiering.apply(big_file(repo_root / "b.enc", 1.1), GLOB)

        assert first.registered and first.attributes_changed
        assert second.registered and not second.attributes_changed
        lines = git.gitattributes_path.read_text().splitlines()
        assert lines == [LFS_HEADER, lfs_rule(GLOB)]
        assert git.tracked == [GLOB]

    def test_keeps_existing_attributes(self, git, repo_root: Path):
        git.lfs = True
        git.gitattributes_path.write_text("*.png binary\n")
        LargeObjectTiering(git, 1).apply(big_file(repo_root / "a.enc", 1.1), GLOB)
        assert git.gitattributes_path.read_text().splitlines() == [
            "*.png binary",
            LFS_HEADER,
            lfs_rule(GLOB),
        ]
