"""Launchpad build pipeline orchestrator.

Turns a generated project's file manifest into a static export:

preparing  -- prune old workspaces, create a workspace, write the manifest.
installing -- ``npm install`` with classified, bounded retries.
building   -- ``npm run build`` with the same retry discipline.
ready      -- verify ``out/`` and collect the artifact manifest.

Any state may end in ``failed``; setting the caller's cancel event ends the
build in ``cancelled``. Only install/build subprocess failures go through the
retry policy. Setup failures end the build immediately.

Usage::

    launchpad-build project-files.json --slug my-site
    python -m launchpad_builder.pipeline project-files.json --slug my-site --clean
"""

from __future__ import annotations

import asyncio
import json
import random
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from rich.console import Console

from .builder.artifacts import artifact_digests, collect_artifacts
from .builder.errors import classify_error
from .builder.process import ProcessInvocation, ProcessRunner, workspace_env
from .builder.results import (
    BuildProgress,
    BuildResult,
    BuildStatus,
    ConsoleProgressSink,
    ProgressSink,
    null_sink,
)
from .builder.retry import RetryState, compute_delay
from .builder.workspace import WorkspaceManager
from .config import BuilderConfig
from .utils import (
    best_effort,
    format_duration,
    print_error,
    print_success,
    print_summary_table,
    print_warning,
    check_registry,
)

console = Console()


# ---------------------------------------------------------------------------
# Phase plumbing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _PhaseSpec:
    """Static description of one retried subprocess phase."""

    label: str
    status: BuildStatus
    progress: int
    start_message: str
    retry_message: str
    command: tuple[str, ...]
    timeout_seconds: float


@dataclass(frozen=True)
class _PhaseResult:
    success: bool
    state: RetryState
    cancelled: bool = False


@dataclass(frozen=True)
class _Emitter:
    """Writes progress events to the configured sink."""

    sink: ProgressSink

    def __call__(self, status: BuildStatus, message: str, progress: int) -> None:
        self.sink(BuildProgress(status=status, message=message, progress=progress))


def _is_set(cancel_event: asyncio.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BuildPipeline:
    """Drives one or more builds through the install/build state machine.

    A single instance may run many builds concurrently; each build owns its
    workspace and all per-build state lives in local variables.

    Args:
        config: Builder settings. Defaults to ``BuilderConfig()``.
        runner: Subprocess runner. Defaults to one honouring
            ``config.env_strip_tokens``.
        workspaces: Workspace manager. Defaults to one rooted at
            ``config.base_dir``.
        sink: Default progress sink, used when ``build_project`` gets none.
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        config: BuilderConfig | None = None,
        *,
        runner: ProcessRunner | None = None,
        workspaces: WorkspaceManager | None = None,
        sink: ProgressSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or BuilderConfig()
        self.runner = runner or ProcessRunner(strip_tokens=self.config.env_strip_tokens)
        self.workspaces = workspaces or WorkspaceManager(
            self.config.base_dir,
            keep=self.config.retention_keep,
            in_use_stale_seconds=self.config.in_use_stale_seconds,
        )
        self.sink = sink or null_sink
        self.rng = rng

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def build_project(
        self,
        files: Mapping[str, str],
        project_slug: str,
        on_progress: ProgressSink | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BuildResult:
        """Materialize, install and build a project.

        Args:
            files: Relative forward-slash path -> file content.
            project_slug: Human-readable project identifier, used in the
                workspace name.
            on_progress: Progress sink for this build (overrides the default).
            cancel_event: Setting it kills the running subprocess, interrupts
                any backoff wait and ends the build as ``cancelled``.

        Returns:
            The terminal ``BuildResult``. Never raises for build failures.
        """
        emit = _Emitter(on_progress or self.sink)
        started = time.monotonic()
        logs: tuple[str, ...] = ()
        workspace: Path | None = None

        try:
            if self.config.prune_on_start:
                await self.workspaces.prune_old_workspaces()

            emit(BuildStatus.PREPARING, "Preparing build environment...", 5)
            if self.config.preflight:
                await self.preflight()

            workspace = await self.workspaces.create_workspace(project_slug)
            logs += (f"Created workspace: {workspace}",)
            console.print(f"[cyan]Building[/cyan] [bold]{project_slug}[/bold] in {workspace}")

            emit(BuildStatus.PREPARING, "Writing project files...", 10)
            written = await self.workspaces.write_files(workspace, files)
            logs += (f"Wrote {written} files",)

            return await self._install_and_build(workspace, logs, emit, cancel_event, started)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logs += (f"Build error: {message}",)
            print_error(f"Build of {project_slug} failed: {message}")
            emit(BuildStatus.FAILED, f"Build failed: {message}", 0)
            return BuildResult(
                success=False,
                status=BuildStatus.FAILED,
                workspace=workspace,
                out_dir=self._out_dir(workspace) if workspace else None,
                error=message,
                logs=logs,
                duration_seconds=time.monotonic() - started,
            )
        finally:
            if workspace is not None:
                self.workspaces.release(workspace)

    async def cleanup(self, target: BuildResult | str | Path) -> bool:
        """Remove a build's workspace after deployment. Never raises."""
        workspace = target.workspace if isinstance(target, BuildResult) else Path(target)
        if workspace is None:
            return True
        return await self.workspaces.remove_workspace(workspace)

    async def prune(self) -> list[Path]:
        """Run the retention sweep outside of a build."""
        return await self.workspaces.prune_old_workspaces()

    async def preflight(self) -> bool:
        """Check the package manager binary and the registry. Warnings only."""
        binary = self.config.install_command[0]
        npm_ok = await self.runner.check_available(binary)
        registry_ok = await check_registry(self.config.registry_url)
        if not (npm_ok and registry_ok):
            print_warning("Preflight found problems; continuing with the build anyway.")
        return npm_ok and registry_ok

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _out_dir(self, workspace: Path) -> Path:
        return workspace / self.config.output_dir_name

    def _install_spec(self) -> _PhaseSpec:
        return _PhaseSpec(
            label="npm install",
            status=BuildStatus.INSTALLING,
            progress=20,
            start_message="Installing dependencies...",
            retry_message="Retrying npm install",
            command=tuple(self.config.install_command),
            timeout_seconds=self.config.install_timeout,
        )

    def _build_spec(self) -> _PhaseSpec:
        return _PhaseSpec(
            label="npm run build",
            status=BuildStatus.BUILDING,
            progress=50,
            start_message="Building Next.js project...",
            retry_message="Retrying build",
            command=tuple(self.config.build_command),
            timeout_seconds=self.config.build_timeout,
        )

    async def _install_and_build(
        self,
        workspace: Path,
        logs: tuple[str, ...],
        emit: _Emitter,
        cancel_event: asyncio.Event | None,
        started: float,
    ) -> BuildResult:
        out_dir = self._out_dir(workspace)
        retry_count = 0

        for spec in (self._install_spec(), self._build_spec()):
            phase = await self._run_phase(spec, workspace, emit, cancel_event)
            logs += phase.state.logs
            retry_count += phase.state.retries

            if phase.cancelled:
                return self._cancelled(workspace, out_dir, logs, retry_count, emit, started)

            if not phase.success:
                error = f"{spec.label} failed"
                classification = phase.state.last_classification
                print_error(f"{error} after {phase.state.retries} retries")
                emit(BuildStatus.FAILED, f"Build failed: {error}", 0)
                return BuildResult(
                    success=False,
                    status=BuildStatus.FAILED,
                    workspace=workspace,
                    out_dir=out_dir,
                    error=error,
                    error_classification=classification,
                    logs=logs,
                    retry_count=retry_count,
                    duration_seconds=time.monotonic() - started,
                )

            if spec.status is BuildStatus.INSTALLING and self.config.clean_npm_cache:
                await self._remove_npm_cache(workspace)

        emit(BuildStatus.BUILDING, "Build complete, verifying output...", 90)
        if not out_dir.is_dir():
            error = "Build output directory not found. Static export may have failed."
            print_error(error)
            emit(BuildStatus.FAILED, f"Build failed: {error}", 0)
            return BuildResult(
                success=False,
                status=BuildStatus.FAILED,
                workspace=workspace,
                out_dir=out_dir,
                error=error,
                logs=logs,
                retry_count=retry_count,
                duration_seconds=time.monotonic() - started,
            )

        artifacts = await collect_artifacts(out_dir)
        elapsed = time.monotonic() - started
        logs += (f"Collected {len(artifacts)} output files",)
        emit(BuildStatus.READY, "Build complete!", 100)
        print_success(f"Build ready in {format_duration(elapsed)} ({len(artifacts)} files)")
        return BuildResult(
            success=True,
            status=BuildStatus.READY,
            workspace=workspace,
            out_dir=out_dir,
            logs=logs,
            retry_count=retry_count,
            artifacts=artifacts,
            duration_seconds=elapsed,
        )

    async def _run_phase(
        self,
        spec: _PhaseSpec,
        workspace: Path,
        emit: _Emitter,
        cancel_event: asyncio.Event | None,
    ) -> _PhaseResult:
        """Run one subprocess phase until success, exhaustion or cancellation.

        Each attempt folds its logs and classification into a new
        ``RetryState``; the final state is the phase's full history.
        """
        invocation = ProcessInvocation(
            command=spec.command,
            cwd=workspace,
            env_overrides=workspace_env(workspace),
            timeout_seconds=spec.timeout_seconds,
            max_buffer_bytes=self.config.max_buffer_bytes,
        )
        state = RetryState(phase=spec.label)
        emit(spec.status, spec.start_message, spec.progress)
        console.print(f"[cyan]Running {spec.label}...[/cyan]")

        while True:
            if _is_set(cancel_event):
                return _PhaseResult(False, state, cancelled=True)

            outcome = await self.runner.run(invocation, cancel_event)
            lines = outcome.log_lines(spec.label)

            if outcome.success:
                state = state.record_attempt(lines)
                if state.retries:
                    state = state.note(f"{spec.label} succeeded after {state.retries} retries")
                console.print(
                    f"[green]{spec.label} finished[/green] in {format_duration(outcome.duration_seconds)}"
                )
                return _PhaseResult(True, state)

            if outcome.cancelled or _is_set(cancel_event):
                return _PhaseResult(False, state.record_attempt(lines), cancelled=True)

            classification = classify_error(outcome.error_message, lines)
            state = state.record_attempt(lines, classification)
            console.print(
                f"[red]{spec.label} failed[/red] ({classification.code.value}): "
                f"{outcome.error_message[:200]}"
            )
            if not state.can_retry():
                return _PhaseResult(False, state)

            delay_ms = compute_delay(classification.retry_delay_ms, state.retries + 1, self.rng)
            state = state.record_retry(delay_ms)
            print_warning(
                f"Retry {state.retries}/{classification.max_retries} for {spec.label} "
                f"in {delay_ms / 1000:.1f}s"
            )
            emit(spec.status, f"{spec.retry_message} (attempt {state.retries + 1})...", spec.progress)

            if await self._backoff(delay_ms, cancel_event):
                return _PhaseResult(False, state, cancelled=True)

    async def _backoff(self, delay_ms: int, cancel_event: asyncio.Event | None) -> bool:
        """Sleep ``delay_ms``; return True if cancelled while waiting."""
        seconds = delay_ms / 1000
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return False
        if cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _remove_npm_cache(self, workspace: Path) -> None:
        cache = workspace / ".npm-cache"
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: best_effort(
                lambda: shutil.rmtree(cache),
                "remove npm cache",
                ignore=(FileNotFoundError,),
            ),
        )

    def _cancelled(
        self,
        workspace: Path,
        out_dir: Path,
        logs: tuple[str, ...],
        retry_count: int,
        emit: _Emitter,
        started: float,
    ) -> BuildResult:
        print_warning("Build cancelled")
        emit(BuildStatus.CANCELLED, "Build cancelled", 0)
        return BuildResult(
            success=False,
            status=BuildStatus.CANCELLED,
            workspace=workspace,
            out_dir=out_dir,
            error="Build cancelled",
            logs=logs + ("Build cancelled",),
            retry_count=retry_count,
            duration_seconds=time.monotonic() - started,
        )


async def build_project(
    files: Mapping[str, str],
    project_slug: str,
    on_progress: ProgressSink | None = None,
    *,
    config: BuilderConfig | None = None,
    cancel_event: asyncio.Event | None = None,
) -> BuildResult:
    """Build ``files`` with a one-off ``BuildPipeline``."""
    pipeline = BuildPipeline(config)
    return await pipeline.build_project(files, project_slug, on_progress, cancel_event)


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def _load_manifest(path: Path) -> dict[str, str]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict) or not all(
        isinstance(k, str) and isinstance(v, str) for k, v in data.items()
    ):
        raise ValueError("manifest must be a JSON object mapping paths to file contents")
    return data


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``launchpad-build``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Launchpad builder -- install and build a generated project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  launchpad-build files.json --slug my-site\n"
            "  launchpad-build files.json --slug my-site --digests out.json --clean\n"
            "  launchpad-build --prune-only --keep 5\n"
        ),
    )
    parser.add_argument("manifest", nargs="?", help="JSON file mapping relative paths to file contents")
    parser.add_argument("--slug", default=None, help="Project slug (default: manifest file stem)")
    parser.add_argument("--base-dir", default=None, help="Workspace root (default: <tmp>/launchpad-builds)")
    parser.add_argument("--keep", type=int, default=None, help="Workspaces kept by the retention sweep")
    parser.add_argument("--digests", default=None, help="Write the SHA-1 artifact digest manifest here")
    parser.add_argument("--clean", action="store_true", help="Remove the workspace when done")
    parser.add_argument("--prune-only", action="store_true", help="Only run the retention sweep")
    parser.add_argument("--preflight", action="store_true", help="Check npm and the registry first")

    args = parser.parse_args(argv)

    config = BuilderConfig.from_env()
    if args.base_dir:
        config.base_dir = Path(args.base_dir)
    if args.keep is not None:
        if args.keep < 1:
            console.print(f"[bold red]Error:[/bold red] --keep must be >= 1, got {args.keep}")
            sys.exit(2)
        config.retention_keep = args.keep
    if args.preflight:
        config.preflight = True

    pipeline = BuildPipeline(config, sink=ConsoleProgressSink(console))

    if args.prune_only:
        removed = asyncio.run(pipeline.prune())
        print_summary_table(
            {
                "Base directory": str(config.base_dir),
                "Removed": str(len(removed)),
                "Remaining": str(len(pipeline.workspaces.list_workspaces())),
                "Keep": str(config.retention_keep),
            },
            title="Retention Sweep",
        )
        return

    if not args.manifest:
        parser.error("manifest is required unless --prune-only is given")

    manifest_path = Path(args.manifest)
    if not manifest_path.exists():
        console.print(f"[bold red]Error:[/bold red] Manifest file not found: {manifest_path}")
        sys.exit(1)
    try:
        files = _load_manifest(manifest_path)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] Invalid manifest {manifest_path}: {exc}")
        sys.exit(1)

    slug = args.slug or manifest_path.stem
    result = asyncio.run(pipeline.build_project(files, slug))
    result.display(console)

    if result.success and args.digests:
        digests_path = Path(args.digests)
        digests_path.write_text(json.dumps(artifact_digests(result.artifacts), indent=2), encoding="utf-8")
        console.print(f"Digest manifest written to {digests_path}")

    if args.clean:
        asyncio.run(pipeline.cleanup(result))

    if not result.success:
        sys.exit(1)


if __name__ == "__main__":
    main()
