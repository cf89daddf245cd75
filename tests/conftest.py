"""Shared pytest fixtures for the Launchpad builder test suite.

Provides reusable fixtures for:
- Temporary workspace base directories
- A sample generated-project manifest
- A scripted fake process runner for orchestrator tests
- Pre-built process outcomes for common npm failures
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from launchpad_builder.builder.process import ProcessInvocation, ProcessOutcome
from launchpad_builder.config import BuilderConfig


# ---------------------------------------------------------------------------
# Paths & Directories
# ---------------------------------------------------------------------------

@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Workspace base directory (not created yet, like a fresh tmp root)."""
    return tmp_path / "launchpad-builds"


@pytest.fixture
def builder_config(base_dir: Path) -> BuilderConfig:
    """Config rooted in a temp directory with the sweep enabled."""
    return BuilderConfig(base_dir=base_dir)


# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

@pytest.fixture
def sample_manifest() -> dict[str, str]:
    """A small generated Next.js project."""
    return {
        "package.json": '{"name": "site", "scripts": {"build": "next build"}}\n',
        "next.config.js": "module.exports = { output: 'export' };\n",
        "app/page.tsx": "export default function Page() { return <main>Hello</main>; }\n",
        "app/layout.tsx": "export default function Layout({ children }) { return children; }\n",
        "components/sections/hero/Hero.tsx": "export const Hero = () => null;\n",
        "public/robots.txt": "User-agent: *\nAllow: /\n",
    }


# ---------------------------------------------------------------------------
# Process outcomes
# ---------------------------------------------------------------------------

_NETWORK_FAILURE = "npm ERR! code ENOTFOUND\nnpm ERR! getaddrinfo ENOTFOUND registry.npmjs.org"
_AUTH_FAILURE = "npm ERR! code E401\nnpm ERR! 401 Unauthorized - GET https://npm.pkg.example/private"
_TYPE_FAILURE = "Type error: Property 'title' does not exist on type 'Props'."
_MEMORY_FAILURE = (
    "FATAL ERROR: Ineffective mark-compacts near heap limit "
    "Allocation failed - JavaScript heap out of memory"
)


def _make_ok(stdout: str = "done") -> ProcessOutcome:
    return ProcessOutcome(success=True, stdout=stdout, exit_code=0)


def _make_fail(stderr: str, exit_code: int = 1) -> ProcessOutcome:
    return ProcessOutcome(success=False, stderr=stderr, exit_code=exit_code, error_message=stderr[:500])


class _NpmOutcomes:
    """Builders for scripted npm outcomes."""

    NETWORK_FAILURE = _NETWORK_FAILURE
    AUTH_FAILURE = _AUTH_FAILURE
    TYPE_FAILURE = _TYPE_FAILURE
    MEMORY_FAILURE = _MEMORY_FAILURE

    ok = staticmethod(_make_ok)
    fail = staticmethod(_make_fail)

    def network(self) -> ProcessOutcome:
        return _make_fail(_NETWORK_FAILURE)

    def auth(self) -> ProcessOutcome:
        return _make_fail(_AUTH_FAILURE)

    def type_error(self) -> ProcessOutcome:
        return _make_fail(_TYPE_FAILURE)

    def memory(self) -> ProcessOutcome:
        return _make_fail(_MEMORY_FAILURE)

    def cancelled(self, phase: str = "npm install") -> ProcessOutcome:
        return ProcessOutcome(success=False, cancelled=True, error_message=f"Cancelled: {phase}")


@pytest.fixture
def npm_outcomes() -> _NpmOutcomes:
    """Pre-built process outcomes for common npm results.

    Usage:
        def test_retry(npm_outcomes):
            install = [npm_outcomes.network(), npm_outcomes.ok()]
            assert npm_outcomes.TYPE_FAILURE in npm_outcomes.type_error().stderr
    """
    return _NpmOutcomes()


# ---------------------------------------------------------------------------
# Fake runner
# ---------------------------------------------------------------------------

_DEFAULT_OUT_FILES = {"index.html": b"<html></html>"}


class _FakeRunner:
    """Scripted stand-in for ``ProcessRunner``.

    ``script`` maps a command's first non-binary word (``"install"`` or
    ``"run"``) to the outcomes returned on successive calls; the last one
    repeats. When the build command succeeds, ``out_files`` is written to
    ``<cwd>/out``; pass ``out_files=None`` to simulate a build that exports
    nothing.
    """

    def __init__(
        self,
        install: list[ProcessOutcome] | None = None,
        build: list[ProcessOutcome] | None = None,
        out_files: dict[str, bytes] | None = _DEFAULT_OUT_FILES,
        on_run: Callable[[ProcessInvocation], None] | None = None,
    ) -> None:
        self.script = {"install": list(install or [_make_ok()]), "run": list(build or [_make_ok()])}
        self.out_files = out_files
        self.invocations: list[ProcessInvocation] = []
        self.on_run = on_run

    async def run(
        self,
        invocation: ProcessInvocation,
        cancel_event: asyncio.Event | None = None,
    ) -> ProcessOutcome:
        self.invocations.append(invocation)
        if self.on_run is not None:
            self.on_run(invocation)
        key = invocation.command[1]
        queue = self.script[key]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if key == "run" and outcome.success and self.out_files is not None:
            out_dir = Path(invocation.cwd) / "out"
            out_dir.mkdir(exist_ok=True)
            for rel, content in self.out_files.items():
                target = out_dir / rel
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
        await asyncio.sleep(0)
        return outcome

    async def check_available(self, binary: str = "npm") -> bool:
        return True

    def calls(self, key: str) -> int:
        return sum(1 for inv in self.invocations if inv.command[1] == key)


@pytest.fixture
def fake_runner_factory():
    """Factory for scripted fake process runners.

    Usage:
        def test_build(fake_runner_factory, npm_outcomes):
            runner = fake_runner_factory(install=[npm_outcomes.network(), npm_outcomes.ok()])
            assert runner.calls("install") == 0
    """

    def factory(
        install: list[ProcessOutcome] | None = None,
        build: list[ProcessOutcome] | None = None,
        out_files: dict[str, bytes] | None = _DEFAULT_OUT_FILES,
        on_run: Callable[[ProcessInvocation], None] | None = None,
    ) -> _FakeRunner:
        return _FakeRunner(install=install, build=build, out_files=out_files, on_run=on_run)

    return factory
