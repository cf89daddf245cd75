"""Build status, progress events and the terminal build result."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import ErrorClassification, error_summary

console = Console()

LOG_TAIL_CHARS = 10_000


class BuildStatus(str, Enum):
    """States of the build pipeline."""

    PREPARING = "preparing"
    INSTALLING = "installing"
    BUILDING = "building"
    READY = "ready"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (BuildStatus.READY, BuildStatus.FAILED, BuildStatus.CANCELLED)


@dataclass(frozen=True)
class BuildProgress:
    """A point-in-time progress event. Advisory only."""

    status: BuildStatus
    message: str
    progress: int

    def __post_init__(self) -> None:
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within 0-100, got {self.progress}")


# Signature: (event) -> None
ProgressSink = Callable[[BuildProgress], None]


def null_sink(event: BuildProgress) -> None:
    """Progress sink that discards every event."""


class CollectingSink:
    """Progress sink that keeps every event, in order."""

    def __init__(self) -> None:
        self.events: list[BuildProgress] = []

    def __call__(self, event: BuildProgress) -> None:
        self.events.append(event)

    @property
    def statuses(self) -> list[BuildStatus]:
        return [event.status for event in self.events]


_STATUS_STYLES = {
    BuildStatus.PREPARING: "cyan",
    BuildStatus.INSTALLING: "yellow",
    BuildStatus.BUILDING: "magenta",
    BuildStatus.READY: "green",
    BuildStatus.FAILED: "red",
    BuildStatus.CANCELLED: "red",
}


class ConsoleProgressSink:
    """Progress sink that prints each event to a Rich console."""

    def __init__(self, target: Console | None = None) -> None:
        self.console = target or console

    def __call__(self, event: BuildProgress) -> None:
        style = _STATUS_STYLES.get(event.status, "white")
        self.console.print(
            f"[{style}]{event.progress:>3}%[/{style}] "
            f"[bold]{event.status.value}[/bold] {event.message}"
        )


@dataclass(frozen=True)
class BuildResult:
    """Terminal record of one ``build_project`` call."""

    success: bool
    status: BuildStatus
    workspace: Path | None = None
    out_dir: Path | None = None
    error: str | None = None
    error_classification: ErrorClassification | None = None
    logs: tuple[str, ...] = field(default_factory=tuple)
    retry_count: int = 0
    artifacts: dict[str, bytes] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.status is BuildStatus.CANCELLED

    @property
    def retryable(self) -> bool:
        """Whether trying the same build again later could help."""
        if self.success or self.cancelled:
            return False
        if self.error_classification is None:
            return False
        return self.error_classification.retryable

    @property
    def suggested_fix(self) -> str | None:
        if self.error_classification is None:
            return None
        return self.error_classification.suggested_fix

    def log_tail(self, limit: int = LOG_TAIL_CHARS) -> str:
        """The last ``limit`` characters of the joined logs."""
        return "\n".join(self.logs)[-limit:]

    def summary(self) -> str:
        """Return a human-readable summary of the result."""
        lines = [
            f"Status: {self.status.value.upper()}",
            f"Workspace: {self.workspace or '-'}",
            f"Retries: {self.retry_count}",
            f"Duration: {self.duration_seconds:.1f}s",
        ]
        if self.success:
            lines.append(f"Artifacts: {len(self.artifacts)}")
        if self.error:
            lines.append(f"Error: {self.error[:200]}")
        if self.error_classification is not None:
            lines.append(f"Classification: {self.error_classification.code.value}")
            lines.append(f"Diagnosis: {error_summary(self.error_classification)}")
        return "\n".join(lines)

    def display(self, target: Console | None = None) -> None:
        """Render the result as a Rich panel."""
        out = target or console
        style = "green" if self.success else "red"
        title = "Build Succeeded" if self.success else f"Build {self.status.value.title()}"

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Workspace", str(self.workspace or "-"))
        table.add_row("Output", str(self.out_dir or "-"))
        table.add_row("Retries", str(self.retry_count))
        table.add_row("Duration", f"{self.duration_seconds:.1f}s")
        if self.success:
            table.add_row("Artifacts", str(len(self.artifacts)))
        if self.error:
            table.add_row("Error", self.error[:300])
        if self.error_classification is not None:
            table.add_row("Classification", self.error_classification.code.value)
            table.add_row("Suggested Fix", self.error_classification.suggested_fix or "-")

        out.print(Panel(table, title=title, border_style=style))
