"""Launchpad builder components.

Everything the build pipeline needs below the orchestrator: failure
classification, retry policy, supervised subprocesses, workspace lifecycle
and artifact collection.

Key classes:
    ProcessRunner     - Supervised npm subprocess execution
    WorkspaceManager  - Per-build workspace creation, retention and removal
    RetryState        - Per-phase retry history
    BuildResult       - Terminal record of a build
"""

from .artifacts import artifact_digests, collect_artifacts, collect_artifacts_sync
from .errors import (
    CLASSIFICATION_RULES,
    ERROR_CLASSIFICATIONS,
    ClassificationRule,
    ErrorClassification,
    ErrorCode,
    classify_error,
    error_summary,
)
from .process import ProcessInvocation, ProcessOutcome, ProcessRunner, sanitize_env, workspace_env
from .results import (
    BuildProgress,
    BuildResult,
    BuildStatus,
    CollectingSink,
    ConsoleProgressSink,
    ProgressSink,
    null_sink,
)
from .retry import RetryState, compute_delay, should_retry
from .workspace import WorkspaceError, WorkspaceManager

__all__ = [
    # Classification
    "ErrorCode",
    "ErrorClassification",
    "ERROR_CLASSIFICATIONS",
    "ClassificationRule",
    "CLASSIFICATION_RULES",
    "classify_error",
    "error_summary",
    # Retry policy
    "RetryState",
    "should_retry",
    "compute_delay",
    # Subprocesses
    "ProcessInvocation",
    "ProcessOutcome",
    "ProcessRunner",
    "sanitize_env",
    "workspace_env",
    # Workspaces
    "WorkspaceManager",
    "WorkspaceError",
    # Artifacts
    "collect_artifacts",
    "collect_artifacts_sync",
    "artifact_digests",
    # Results & progress
    "BuildStatus",
    "BuildProgress",
    "BuildResult",
    "ProgressSink",
    "null_sink",
    "CollectingSink",
    "ConsoleProgressSink",
]
