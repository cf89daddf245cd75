"""Unit tests for build output collection (launchpad_builder.builder.artifacts)."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

import pytest

from launchpad_builder.builder.artifacts import (
    artifact_digests,
    collect_artifacts,
    collect_artifacts_sync,
)


@pytest.fixture
def out_dir(tmp_path: Path) -> Path:
    root = tmp_path / "out"
    (root / "_next" / "static" / "chunks").mkdir(parents=True)
    (root / "index.html").write_bytes(b"<html>home</html>")
    (root / "about").mkdir()
    (root / "about" / "index.html").write_bytes(b"<html>about</html>")
    (root / "_next" / "static" / "chunks" / "main.js").write_bytes(b"console.log(1)")
    (root / "favicon.ico").write_bytes(b"\x00\x01\x02")
    return root


class TestCollectArtifacts:
    @pytest.mark.unit
    def test_collects_nested_files(self, out_dir: Path):
        files = collect_artifacts_sync(out_dir)
        assert files == {
            "/index.html": b"<html>home</html>",
            "/about/index.html": b"<html>about</html>",
            "/_next/static/chunks/main.js": b"console.log(1)",
            "/favicon.ico": b"\x00\x01\x02",
        }

    @pytest.mark.unit
    def test_empty_directory(self, tmp_path: Path):
        (tmp_path / "out").mkdir()
        assert collect_artifacts_sync(tmp_path / "out") == {}

    @pytest.mark.unit
    def test_missing_directory(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            collect_artifacts_sync(tmp_path / "out")

    @pytest.mark.unit
    @pytest.mark.skipif(os.name != "posix", reason="symlinks need POSIX")
    def test_symlinks_skipped(self, out_dir: Path, tmp_path: Path):
        secret = tmp_path / "secret.txt"
        secret.write_text("do not ship")
        (out_dir / "leak.txt").symlink_to(secret)
        files = collect_artifacts_sync(out_dir)
        assert "/leak.txt" not in files
        assert len(files) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_async_wrapper(self, out_dir: Path):
        files = await collect_artifacts(out_dir)
        assert files["/index.html"] == b"<html>home</html>"
        assert len(files) == 4


class TestArtifactDigests:
    @pytest.mark.unit
    def test_sha1_per_path(self):
        files = {"/index.html": b"<html></html>", "/empty.txt": b""}
        digests = artifact_digests(files)
        assert digests == {
            "/index.html": hashlib.sha1(b"<html></html>").hexdigest(),
            "/empty.txt": "da39a3ee5e6b4b0d3255bfef95601890afd80709",
        }

    @pytest.mark.unit
    def test_empty(self):
        assert artifact_digests({}) == {}
