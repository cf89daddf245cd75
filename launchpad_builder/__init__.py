"""Launchpad builder: resilient install-and-build pipeline for generated sites."""

from .config import BuilderConfig
from .pipeline import BuildPipeline, build_project

__version__ = "0.1.0"

__all__ = ["BuilderConfig", "BuildPipeline", "build_project", "__version__"]
