"""Build workspace lifecycle management.

Each build gets its own directory ``<base_dir>/<slug>-<unix millis>``. Files
from the manifest are materialized into it, npm runs inside it, and the
directory is kept after the build so artifacts and logs can be inspected.
Old workspaces are removed by a retention sweep that keeps the most recent
``keep`` directories.

Workspaces of builds still in flight carry an in-use marker
(``<base_dir>/<name>.in-use``). The sweep never deletes a workspace with a
fresh marker, so concurrent builds cannot prune each other's directories.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Mapping

from rich.console import Console

from ..utils import best_effort, sanitize_slug

console = Console()

IN_USE_SUFFIX = ".in-use"
_WORKSPACE_NAME = re.compile(r"^(?P<slug>.+)-(?P<millis>\d+)$")


class WorkspaceError(Exception):
    """Raised when a workspace cannot be created or populated."""

    def __init__(self, message: str, path: str | Path | None = None):
        self.path = path
        super().__init__(message)


@dataclass(frozen=True)
class WorkspaceEntry:
    """A workspace directory found under the base directory."""

    name: str
    path: Path
    slug: str
    created_millis: int


def parse_workspace_name(name: str) -> tuple[str, int] | None:
    """Split ``"<slug>-<millis>"`` into ``(slug, millis)``; None if it doesn't fit."""
    match = _WORKSPACE_NAME.match(name)
    if match is None:
        return None
    return match.group("slug"), int(match.group("millis"))


def _now_millis() -> int:
    return time.time_ns() // 1_000_000


def resolve_manifest_path(root: Path, relative: str) -> Path:
    """Resolve a manifest path inside ``root``.

    Raises:
        WorkspaceError: If the path is empty, absolute, or escapes ``root``.
    """
    normalized = relative.replace("\\", "/")
    pure = PurePosixPath(normalized)
    if not normalized.strip() or pure.is_absolute() or re.match(r"^[A-Za-z]:", normalized):
        raise WorkspaceError(f"Invalid manifest path: {relative!r}", path=relative)
    if any(part == ".." for part in pure.parts):
        raise WorkspaceError(f"Manifest path escapes the workspace: {relative!r}", path=relative)
    parts = [part for part in pure.parts if part not in ("", ".")]
    if not parts:
        raise WorkspaceError(f"Invalid manifest path: {relative!r}", path=relative)
    return root.joinpath(*parts)


class WorkspaceManager:
    """Creates, populates, prunes and removes build workspaces.

    Args:
        base_dir: Shared root for every workspace, created on first use.
        keep: How many of the most recent workspaces the sweep retains.
        in_use_stale_seconds: Age after which an in-use marker is considered
            abandoned (e.g. the owning process crashed) and ignored.
    """

    def __init__(
        self,
        base_dir: str | Path,
        keep: int = 10,
        in_use_stale_seconds: float = 3600.0,
    ) -> None:
        if keep < 1:
            raise ValueError("keep must be >= 1")
        self.base_dir = Path(base_dir)
        self.keep = keep
        self.in_use_stale_seconds = in_use_stale_seconds

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_workspace(self, slug: str) -> Path:
        """Create a fresh workspace directory for ``slug`` and mark it in use.

        Returns:
            The path of the new workspace.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._create_workspace_sync, slug)

    def _create_workspace_sync(self, slug: str) -> Path:
        safe_slug = sanitize_slug(slug) or "project"
        self.base_dir.mkdir(parents=True, exist_ok=True)
        millis = _now_millis()
        while True:
            path = self.base_dir / f"{safe_slug}-{millis}"
            try:
                path.mkdir()
            except FileExistsError:
                # Same slug, same millisecond: take the next free timestamp.
                millis += 1
                continue
            break
        self.marker_path(path).touch()
        return path

    async def write_files(self, workspace: Path, manifest: Mapping[str, str]) -> int:
        """Write every manifest entry below ``workspace``.

        Every path is validated before anything is written, so a manifest
        with one unsafe path writes nothing.

        Returns:
            Number of files written.

        Raises:
            WorkspaceError: On an unsafe path.
        """
        targets = [(resolve_manifest_path(workspace, rel), content) for rel, content in manifest.items()]
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_files_sync, targets)
        return len(targets)

    @staticmethod
    def _write_files_sync(targets: list[tuple[Path, str]]) -> None:
        for target, content in targets:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")

    # ------------------------------------------------------------------
    # In-use markers
    # ------------------------------------------------------------------

    def marker_path(self, workspace: Path) -> Path:
        return workspace.parent / f"{workspace.name}{IN_USE_SUFFIX}"

    def release(self, workspace: Path) -> None:
        """Drop the in-use marker so the sweep may reclaim ``workspace``."""
        best_effort(
            lambda: self.marker_path(workspace).unlink(missing_ok=True),
            f"release workspace {workspace.name}",
        )

    def is_in_use(self, workspace: Path, now: float | None = None) -> bool:
        marker = self.marker_path(workspace)
        try:
            age = (now if now is not None else time.time()) - marker.stat().st_mtime
        except OSError:
            return False
        return age < self.in_use_stale_seconds

    # ------------------------------------------------------------------
    # Listing & pruning
    # ------------------------------------------------------------------

    def list_workspaces(self) -> list[WorkspaceEntry]:
        """Workspaces under the base directory, newest first.

        Ordering uses the parsed millisecond suffix (then the full name), not
        raw string order, so ``site-9...`` and ``site-a-1...`` sort correctly.
        Directories that don't follow the ``<slug>-<millis>`` scheme are
        not workspaces and are skipped.
        """
        if not self.base_dir.is_dir():
            return []
        entries: list[WorkspaceEntry] = []
        for child in self.base_dir.iterdir():
            if not child.is_dir() or child.is_symlink():
                continue
            parsed = parse_workspace_name(child.name)
            if parsed is None:
                continue
            slug, millis = parsed
            entries.append(WorkspaceEntry(child.name, child, slug, millis))
        entries.sort(key=lambda e: (e.created_millis, e.name), reverse=True)
        return entries

    async def prune_old_workspaces(self, keep: int | None = None) -> list[Path]:
        """Delete all but the ``keep`` most recent workspaces.

        Filesystem errors never raise. Workspaces with a fresh in-use marker
        are skipped, and a directory that fails to delete does not stop the
        rest of the sweep.

        Args:
            keep: Overrides the manager's ``keep`` for this sweep.

        Returns:
            Paths that were removed.

        Raises:
            ValueError: If ``keep`` is below 1.
        """
        keep = self.keep if keep is None else keep
        if keep < 1:
            raise ValueError("keep must be >= 1")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._prune_sync, keep)

    def _prune_sync(self, keep: int) -> list[Path]:
        entries = best_effort(self.list_workspaces, "list workspaces", default=[])
        now = time.time()
        removed: list[Path] = []
        for entry in entries[keep:]:
            if self.is_in_use(entry.path, now):
                console.print(f"[dim]Skipping in-use workspace {entry.name}[/dim]")
                continue
            if self._remove_sync(entry.path):
                removed.append(entry.path)
        if removed:
            console.print(f"[yellow]Pruned {len(removed)} old workspace(s)[/yellow]")
        return removed

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    async def remove_workspace(self, workspace: str | Path) -> bool:
        """Recursively delete ``workspace`` and its marker. Idempotent, never raises.

        Returns:
            True if nothing is left on disk afterwards.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._remove_sync, Path(workspace))

    def _remove_sync(self, workspace: Path) -> bool:
        best_effort(
            lambda: shutil.rmtree(workspace),
            f"remove workspace {workspace}",
            ignore=(FileNotFoundError,),
        )
        best_effort(
            lambda: self.marker_path(workspace).unlink(missing_ok=True),
            f"remove marker for {workspace.name}",
        )
        return not workspace.exists()
