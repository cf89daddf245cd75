"""Shared helpers for the Launchpad builder.

Provides the best-effort cleanup wrapper, slug sanitizing, duration
formatting, Rich-based console output and the registry reachability check.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, TypeVar

import httpx
from rich.console import Console
from rich.table import Table

console = Console()

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Best-effort execution
# ---------------------------------------------------------------------------


def best_effort(
    action: Callable[[], T],
    description: str,
    *,
    default: Any = None,
    ignore: tuple[type[BaseException], ...] = (),
) -> T | Any:
    """Run a cleanup ``action`` whose failure must never surface.

    This is the single place where cleanup errors are suppressed. Failures are
    reported as a warning and ``default`` is returned instead.

    Args:
        action: Zero-argument callable.
        description: What the action does, for the warning message.
        default: Value returned when the action raises.
        ignore: Exception types swallowed without a warning (expected
            conditions such as an already-deleted directory).
    """
    try:
        return action()
    except ignore:
        return default
    except Exception as exc:
        print_warning(f"Could not {description}: {exc}")
        return default


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_slug(slug: str) -> str:
    """Convert a project slug to a safe directory-name prefix.

    Lowercases, replaces anything outside ``[a-z0-9_-]`` with hyphens,
    collapses runs of hyphens and strips them from both ends.

    Examples::

        sanitize_slug("My Site") -> "my-site"
        sanitize_slug("../etc") -> "etc"
    """
    result = re.sub(r"[^a-zA-Z0-9_-]", "-", slug.strip().lower())
    result = re.sub(r"-+", "-", result)
    return result.strip("-")


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"

    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes > 0:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)


# ---------------------------------------------------------------------------
# Registry check
# ---------------------------------------------------------------------------


async def check_registry(url: str, timeout: float = 5.0) -> bool:
    """Return True if the package registry answers with a non-5xx status.

    Used by the optional preflight; a False result is reported as a warning
    and does not stop the build.
    """
    started = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=3.0)) as client:
            response = await client.get(url)
    except httpx.HTTPError as exc:
        print_warning(f"Registry {url} unreachable: {exc}")
        return False

    elapsed = time.monotonic() - started
    if response.status_code >= 500:
        print_warning(f"Registry {url} returned HTTP {response.status_code}")
        return False
    console.print(f"[green]Registry reachable[/green] ({format_duration(elapsed)})")
    return True
