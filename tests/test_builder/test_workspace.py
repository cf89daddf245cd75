"""Unit tests for workspace lifecycle (launchpad_builder.builder.workspace).

Tests cover:
- parse_workspace_name / resolve_manifest_path
- WorkspaceManager.create_workspace naming, collisions, in-use markers
- WorkspaceManager.write_files (nested paths, unsafe paths)
- WorkspaceManager.prune_old_workspaces retention, ordering, in-use skipping
- WorkspaceManager.remove_workspace idempotence
"""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from launchpad_builder.builder.workspace import (
    WorkspaceError,
    WorkspaceManager,
    parse_workspace_name,
    resolve_manifest_path,
)


def _make_workspaces(base_dir: Path, names: list[str]) -> list[Path]:
    base_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = base_dir / name
        path.mkdir()
        (path / "package.json").write_text("{}")
        paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# Naming helpers
# ---------------------------------------------------------------------------


class TestParseWorkspaceName:
    @pytest.mark.unit
    def test_simple(self):
        assert parse_workspace_name("site-1700000000000") == ("site", 1700000000000)

    @pytest.mark.unit
    def test_slug_with_hyphens(self):
        assert parse_workspace_name("my-cool-site-42") == ("my-cool-site", 42)

    @pytest.mark.unit
    @pytest.mark.parametrize("name", ["site", "site-", "-123", "site-12a", "site-123.in-use"])
    def test_not_a_workspace(self, name: str):
        assert parse_workspace_name(name) is None


class TestResolveManifestPath:
    @pytest.mark.unit
    def test_nested(self, tmp_path: Path):
        assert resolve_manifest_path(tmp_path, "app/page.tsx") == tmp_path / "app" / "page.tsx"

    @pytest.mark.unit
    def test_dot_segments_dropped(self, tmp_path: Path):
        assert resolve_manifest_path(tmp_path, "./src/./index.ts") == tmp_path / "src" / "index.ts"

    @pytest.mark.unit
    def test_backslashes_normalized(self, tmp_path: Path):
        assert resolve_manifest_path(tmp_path, "app\\page.tsx") == tmp_path / "app" / "page.tsx"

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "rel",
        ["", "   ", ".", "/etc/passwd", "../outside.txt", "app/../../outside", "C:/Windows/x", "c:evil"],
    )
    def test_unsafe_paths_rejected(self, tmp_path: Path, rel: str):
        with pytest.raises(WorkspaceError) as exc_info:
            resolve_manifest_path(tmp_path, rel)
        assert exc_info.value.path == rel


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreateWorkspace:
    @pytest.mark.unit
    def test_keep_must_be_positive(self, base_dir: Path):
        with pytest.raises(ValueError):
            WorkspaceManager(base_dir, keep=0)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_named_directory(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        before = time.time_ns() // 1_000_000
        workspace = await manager.create_workspace("my-site")
        after = time.time_ns() // 1_000_000

        assert workspace.is_dir()
        assert workspace.parent == base_dir
        slug, millis = parse_workspace_name(workspace.name)
        assert slug == "my-site"
        assert before <= millis <= after

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsafe_slug_sanitized(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("../../My Site!")
        assert workspace.parent == base_dir
        assert workspace.name.startswith("my-site-")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_slug_falls_back(self, base_dir: Path):
        workspace = await WorkspaceManager(base_dir).create_workspace("///")
        assert workspace.name.startswith("project-")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_same_millisecond_does_not_collide(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        with patch("launchpad_builder.builder.workspace._now_millis", return_value=1_000):
            first = await manager.create_workspace("site")
            second = await manager.create_workspace("site")
        assert first != second
        assert first.name == "site-1000"
        assert second.name == "site-1001"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_marked_in_use(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("site")
        assert manager.marker_path(workspace).exists()
        assert manager.is_in_use(workspace)

        manager.release(workspace)
        assert not manager.marker_path(workspace).exists()
        assert not manager.is_in_use(workspace)

    @pytest.mark.unit
    def test_release_twice_is_harmless(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        manager.release(base_dir / "site-1")
        manager.release(base_dir / "site-1")


# ---------------------------------------------------------------------------
# write_files
# ---------------------------------------------------------------------------


class TestWriteFiles:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_writes_nested_manifest(self, base_dir: Path, sample_manifest: dict[str, str]):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("site")
        count = await manager.write_files(workspace, sample_manifest)

        assert count == len(sample_manifest)
        for rel, content in sample_manifest.items():
            assert (workspace / rel).read_text(encoding="utf-8") == content

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unicode_content(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        await manager.write_files(tmp_path, {"app/page.tsx": "<h1>Caf\u00e9 \u2615</h1>"})
        assert (tmp_path / "app" / "page.tsx").read_text(encoding="utf-8") == "<h1>Caf\u00e9 \u2615</h1>"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsafe_path_writes_nothing(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        workspace = tmp_path / "ws"
        workspace.mkdir()
        manifest = {"package.json": "{}", "../escape.txt": "nope"}

        with pytest.raises(WorkspaceError):
            await manager.write_files(workspace, manifest)

        assert not (workspace / "package.json").exists()
        assert not (tmp_path / "escape.txt").exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_absolute_path_rejected(self, tmp_path: Path):
        manager = WorkspaceManager(tmp_path)
        with pytest.raises(WorkspaceError):
            await manager.write_files(tmp_path, {"/tmp/evil": "x"})


# ---------------------------------------------------------------------------
# Listing & pruning
# ---------------------------------------------------------------------------


class TestPruneOldWorkspaces:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keeps_most_recent(self, base_dir: Path):
        names = [f"site-{1000 + i}" for i in range(12)]
        _make_workspaces(base_dir, names)
        manager = WorkspaceManager(base_dir, keep=10)

        removed = await manager.prune_old_workspaces()

        assert sorted(p.name for p in removed) == ["site-1000", "site-1001"]
        remaining = sorted(p.name for p in base_dir.iterdir())
        assert remaining == sorted(names[2:])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keep_override(self, base_dir: Path):
        _make_workspaces(base_dir, [f"site-{i}" for i in range(1, 6)])
        manager = WorkspaceManager(base_dir, keep=10)
        removed = await manager.prune_old_workspaces(keep=2)
        assert len(removed) == 3
        assert sorted(p.name for p in base_dir.iterdir()) == ["site-4", "site-5"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("keep", [0, -1])
    async def test_keep_override_below_one_rejected(self, base_dir: Path, keep: int):
        _make_workspaces(base_dir, ["site-1", "site-2", "site-3"])
        manager = WorkspaceManager(base_dir, keep=2)

        with pytest.raises(ValueError):
            await manager.prune_old_workspaces(keep=keep)

        assert len(manager.list_workspaces()) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keep_override_of_one(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2", "site-3"])
        manager = WorkspaceManager(base_dir, keep=10)
        removed = await manager.prune_old_workspaces(keep=1)
        assert len(removed) == 2
        assert [entry.name for entry in manager.list_workspaces()] == ["site-3"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_under_limit_removes_nothing(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2"])
        removed = await WorkspaceManager(base_dir, keep=10).prune_old_workspaces()
        assert removed == []
        assert len(list(base_dir.iterdir())) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_base_dir(self, base_dir: Path):
        assert await WorkspaceManager(base_dir).prune_old_workspaces() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_orders_by_timestamp_not_name(self, base_dir: Path):
        # "site-900" sorts after "site-a-1000" as a string but is older.
        _make_workspaces(base_dir, ["site-900", "site-a-1000", "zzz-10"])
        manager = WorkspaceManager(base_dir, keep=1)

        names = [entry.name for entry in manager.list_workspaces()]
        assert names == ["site-a-1000", "site-900", "zzz-10"]

        await manager.prune_old_workspaces()
        assert [p.name for p in base_dir.iterdir()] == ["site-a-1000"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_foreign_entries_untouched(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2", "site-3", "notes", "cache-dir-x"])
        (base_dir / "README.txt").write_text("hello")
        manager = WorkspaceManager(base_dir, keep=1)

        await manager.prune_old_workspaces()

        remaining = sorted(p.name for p in base_dir.iterdir())
        assert remaining == ["README.txt", "cache-dir-x", "notes", "site-3"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_use_workspace_survives(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2", "site-3"])
        manager = WorkspaceManager(base_dir, keep=1)
        manager.marker_path(base_dir / "site-1").touch()

        removed = await manager.prune_old_workspaces()

        assert [p.name for p in removed] == ["site-2"]
        assert (base_dir / "site-1").is_dir()
        assert (base_dir / "site-3").is_dir()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_marker_ignored(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2"])
        manager = WorkspaceManager(base_dir, keep=1, in_use_stale_seconds=60)
        marker = manager.marker_path(base_dir / "site-1")
        marker.touch()
        old = time.time() - 3600
        os.utime(marker, (old, old))

        removed = await manager.prune_old_workspaces()

        assert [p.name for p in removed] == ["site-1"]
        assert not marker.exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_removal_does_not_stop_sweep(self, base_dir: Path):
        _make_workspaces(base_dir, ["site-1", "site-2", "site-3"])
        manager = WorkspaceManager(base_dir, keep=1)
        real_rmtree = shutil.rmtree

        def flaky_rmtree(path, *args, **kwargs):
            if Path(path).name == "site-2":
                raise PermissionError("locked")
            return real_rmtree(path, *args, **kwargs)

        with patch("launchpad_builder.builder.workspace.shutil.rmtree", side_effect=flaky_rmtree):
            removed = await manager.prune_old_workspaces()

        assert [p.name for p in removed] == ["site-1"]
        assert (base_dir / "site-2").is_dir()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retention_invariant_after_many_builds(self, base_dir: Path):
        manager = WorkspaceManager(base_dir, keep=3)
        for i in range(8):
            workspace = await manager.create_workspace(f"site{i}")
            manager.release(workspace)
            await manager.prune_old_workspaces()
            assert len(manager.list_workspaces()) <= 3


# ---------------------------------------------------------------------------
# Removal
# ---------------------------------------------------------------------------


class TestRemoveWorkspace:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_removes_tree_and_marker(self, base_dir: Path, sample_manifest: dict[str, str]):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("site")
        await manager.write_files(workspace, sample_manifest)

        assert await manager.remove_workspace(workspace) is True
        assert not workspace.exists()
        assert not manager.marker_path(workspace).exists()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idempotent(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("site")
        assert await manager.remove_workspace(workspace) is True
        assert await manager.remove_workspace(workspace) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_never_existed(self, base_dir: Path):
        assert await WorkspaceManager(base_dir).remove_workspace(base_dir / "ghost-1") is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failure_reported_not_raised(self, base_dir: Path):
        manager = WorkspaceManager(base_dir)
        workspace = await manager.create_workspace("site")
        with patch("launchpad_builder.builder.workspace.shutil.rmtree", side_effect=PermissionError("locked")):
            assert await manager.remove_workspace(workspace) is False
        assert workspace.exists()
