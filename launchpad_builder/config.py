"""Launchpad builder configuration.

Typed settings for the build pipeline. Pydantic v2 models validate values at
construction time and round-trip through JSON or environment variables.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

MIB = 1024 * 1024


def _default_base_dir() -> Path:
    return Path(tempfile.gettempdir()) / "launchpad-builds"


def _env_flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class BuilderConfig(BaseModel):
    """Settings for workspaces, subprocesses and retention.

    Instances are usually created once (``from_env`` in services, CLI flags
    in ``launchpad-build``) and handed to ``BuildPipeline``.
    """

    base_dir: Path = Field(default_factory=_default_base_dir)
    retention_keep: int = Field(default=10, ge=1, description="Workspaces kept by the retention sweep")
    in_use_stale_seconds: float = Field(
        default=3600.0, gt=0, description="Age after which an in-use marker is ignored"
    )
    prune_on_start: bool = Field(default=True, description="Run the retention sweep before each build")

    install_command: list[str] = Field(
        default=["npm", "install", "--prefer-offline", "--no-audit", "--no-fund"]
    )
    build_command: list[str] = Field(default=["npm", "run", "build"])
    install_timeout: float = Field(default=120.0, gt=0, description="Install timeout in seconds")
    build_timeout: float = Field(default=300.0, gt=0, description="Build timeout in seconds")
    max_buffer_bytes: int = Field(default=10 * MIB, ge=1024)

    output_dir_name: str = Field(default="out")
    env_strip_tokens: list[str] = Field(default=["TURBO", "TURBOPACK"])
    clean_npm_cache: bool = Field(
        default=True, description="Delete the workspace npm cache after a successful install"
    )

    registry_url: str = Field(default="https://registry.npmjs.org/")
    preflight: bool = Field(default=False, description="Check npm and the registry before building")

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path) -> Path:
        """Persist the configuration to a JSON file and return its path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return path

    @classmethod
    def load(cls, path: Path) -> "BuilderConfig":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "BuilderConfig":
        """Build a ``BuilderConfig`` from environment variables.

        Recognised variables (all optional):
            LAUNCHPAD_BASE_DIR, LAUNCHPAD_RETENTION_KEEP, LAUNCHPAD_INSTALL_TIMEOUT,
            LAUNCHPAD_BUILD_TIMEOUT, LAUNCHPAD_MAX_BUFFER_BYTES,
            LAUNCHPAD_REGISTRY_URL, LAUNCHPAD_PREFLIGHT, LAUNCHPAD_CLEAN_NPM_CACHE.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("LAUNCHPAD_BASE_DIR"):
            kwargs["base_dir"] = Path(os.environ["LAUNCHPAD_BASE_DIR"])
        if os.environ.get("LAUNCHPAD_RETENTION_KEEP"):
            kwargs["retention_keep"] = int(os.environ["LAUNCHPAD_RETENTION_KEEP"])
        if os.environ.get("LAUNCHPAD_INSTALL_TIMEOUT"):
            kwargs["install_timeout"] = float(os.environ["LAUNCHPAD_INSTALL_TIMEOUT"])
        if os.environ.get("LAUNCHPAD_BUILD_TIMEOUT"):
            kwargs["build_timeout"] = float(os.environ["LAUNCHPAD_BUILD_TIMEOUT"])
        if os.environ.get("LAUNCHPAD_MAX_BUFFER_BYTES"):
            kwargs["max_buffer_bytes"] = int(os.environ["LAUNCHPAD_MAX_BUFFER_BYTES"])
        if os.environ.get("LAUNCHPAD_REGISTRY_URL"):
            kwargs["registry_url"] = os.environ["LAUNCHPAD_REGISTRY_URL"]
        if os.environ.get("LAUNCHPAD_PREFLIGHT"):
            kwargs["preflight"] = _env_flag(os.environ["LAUNCHPAD_PREFLIGHT"])
        if os.environ.get("LAUNCHPAD_CLEAN_NPM_CACHE"):
            kwargs["clean_npm_cache"] = _env_flag(os.environ["LAUNCHPAD_CLEAN_NPM_CACHE"])
        return cls(**kwargs)
