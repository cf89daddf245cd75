"""Build and deploy failure taxonomy.

Maps raw process output to a typed ``ErrorClassification`` carrying the retry
policy for that failure class. Classification is a pure function over text:
the combined message and logs are lowercased and tested against an ordered
list of ``ClassificationRule`` objects, first match wins.

The rules overlap (a timeout during install also mentions a build script,
an auth failure may also mention a registry host), so the order of
``CLASSIFICATION_RULES`` is part of the contract.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field


class ErrorCode(str, Enum):
    """Named buckets of the failure taxonomy."""

    NPM_NETWORK = "NPM_NETWORK"
    NPM_TIMEOUT = "NPM_TIMEOUT"
    NPM_REGISTRY = "NPM_REGISTRY"
    NPM_DEPENDENCY = "NPM_DEPENDENCY"
    BUILD_TYPESCRIPT = "BUILD_TYPESCRIPT"
    BUILD_MEMORY = "BUILD_MEMORY"
    BUILD_TIMEOUT = "BUILD_TIMEOUT"
    BUILD_UNKNOWN = "BUILD_UNKNOWN"
    NETLIFY_RATE_LIMIT = "NETLIFY_RATE_LIMIT"
    NETLIFY_TIMEOUT = "NETLIFY_TIMEOUT"
    NETLIFY_API = "NETLIFY_API"
    NETLIFY_UPLOAD = "NETLIFY_UPLOAD"
    CONFIG_INVALID = "CONFIG_INVALID"
    AUTH_FAILED = "AUTH_FAILED"
    UNKNOWN = "UNKNOWN"


class ErrorClassification(BaseModel):
    """Retry metadata for one failure class.

    Instances are reference data shared by every build, hence frozen.
    """

    model_config = ConfigDict(frozen=True)

    code: ErrorCode
    retryable: bool
    max_retries: int = Field(default=0, ge=0)
    retry_delay_ms: int = Field(default=0, ge=0, description="Base delay before exponential backoff")
    description: str
    suggested_fix: str | None = None


def _classification(
    code: ErrorCode,
    retryable: bool,
    max_retries: int,
    retry_delay_ms: int,
    description: str,
    suggested_fix: str,
) -> ErrorClassification:
    return ErrorClassification(
        code=code,
        retryable=retryable,
        max_retries=max_retries,
        retry_delay_ms=retry_delay_ms,
        description=description,
        suggested_fix=suggested_fix,
    )


ERROR_CLASSIFICATIONS: dict[ErrorCode, ErrorClassification] = {
    # Network / transient -- retried automatically
    ErrorCode.NPM_NETWORK: _classification(
        ErrorCode.NPM_NETWORK, True, 3, 2000,
        "Network error during npm install",
        "Automatic retry with exponential backoff",
    ),
    ErrorCode.NPM_TIMEOUT: _classification(
        ErrorCode.NPM_TIMEOUT, True, 2, 5000,
        "npm install timed out",
        "Retry with longer timeout",
    ),
    ErrorCode.NPM_REGISTRY: _classification(
        ErrorCode.NPM_REGISTRY, True, 3, 3000,
        "npm registry unavailable",
        "Retry after delay",
    ),
    ErrorCode.NPM_DEPENDENCY: _classification(
        ErrorCode.NPM_DEPENDENCY, False, 0, 0,
        "Dependency resolution failed",
        "Check package.json for invalid dependencies",
    ),
    # Build
    ErrorCode.BUILD_TYPESCRIPT: _classification(
        ErrorCode.BUILD_TYPESCRIPT, False, 0, 0,
        "TypeScript compilation error",
        "Fix type errors in generated code",
    ),
    ErrorCode.BUILD_MEMORY: _classification(
        ErrorCode.BUILD_MEMORY, True, 1, 5000,
        "Build ran out of memory",
        "Retry with garbage collection",
    ),
    ErrorCode.BUILD_TIMEOUT: _classification(
        ErrorCode.BUILD_TIMEOUT, True, 1, 0,
        "Build timed out",
        "Retry with longer timeout",
    ),
    ErrorCode.BUILD_UNKNOWN: _classification(
        ErrorCode.BUILD_UNKNOWN, True, 1, 2000,
        "Unknown build error",
        "Retry once",
    ),
    # Hosting provider API
    ErrorCode.NETLIFY_RATE_LIMIT: _classification(
        ErrorCode.NETLIFY_RATE_LIMIT, True, 3, 10000,
        "Netlify rate limit hit",
        "Wait and retry",
    ),
    ErrorCode.NETLIFY_TIMEOUT: _classification(
        ErrorCode.NETLIFY_TIMEOUT, True, 2, 5000,
        "Netlify API timeout",
        "Retry after delay",
    ),
    ErrorCode.NETLIFY_API: _classification(
        ErrorCode.NETLIFY_API, True, 2, 3000,
        "Netlify API error",
        "Retry after delay",
    ),
    ErrorCode.NETLIFY_UPLOAD: _classification(
        ErrorCode.NETLIFY_UPLOAD, True, 3, 2000,
        "File upload failed",
        "Retry upload",
    ),
    # Fatal -- never retried
    ErrorCode.CONFIG_INVALID: _classification(
        ErrorCode.CONFIG_INVALID, False, 0, 0,
        "Invalid project configuration",
        "Fix project configuration",
    ),
    ErrorCode.AUTH_FAILED: _classification(
        ErrorCode.AUTH_FAILED, False, 0, 0,
        "Authentication failed",
        "Check API credentials",
    ),
    ErrorCode.UNKNOWN: _classification(
        ErrorCode.UNKNOWN, True, 1, 2000,
        "Unknown error",
        "Retry once",
    ),
}


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

_NETWORK_SIGNATURES = ("enotfound", "etimedout", "econnreset", "econnrefused", "socket hang up")
_MISSING_PATH_SIGNATURES = ("npm error code enoent", "enoent")
_REGISTRY_SIGNATURES = (
    "registry.npmjs.org",
    "npm err! 503",
    "npm err! 502",
    "npm error 503",
    "npm error 502",
)
_DEPENDENCY_SIGNATURES = (
    "could not resolve dependency",
    "peer dep",
    "eresolve",
    "npm err! 404",
    "npm error 404",
)
_TYPESCRIPT_SIGNATURES = ("typescript", "type error", "ts(")
_MEMORY_SIGNATURES = ("javascript heap out of memory", "enomem", "out of memory")
_RATE_LIMIT_SIGNATURES = ("429", "rate limit")
_API_ERROR_SIGNATURES = ("netlify api error",)
_UPLOAD_SIGNATURES = ("failed to upload",)
_AUTH_SIGNATURES = ("netlify_access_token", "unauthorized", "401")
_CONFIG_SIGNATURES = ("invalid config", "configuration error")
_BUILD_FAILED_SIGNATURES = ("build failed", "next build")

INSTALL_MARKERS = ("install", "npm ci")
BUILD_MARKERS = ("build",)


def _contains_any(text: str, needles: Iterable[str]) -> bool:
    return any(needle in text for needle in needles)


def _missing_path_during_install(text: str) -> bool:
    # ENOENT during install has only ever been seen as a symptom of a flaky
    # network in the sandboxed build host. Environment-specific: elsewhere it
    # can be a genuine missing-file bug.
    return _contains_any(text, _MISSING_PATH_SIGNATURES) and _contains_any(text, INSTALL_MARKERS)


def _typescript_error(text: str) -> bool:
    if _contains_any(text, _TYPESCRIPT_SIGNATURES):
        return True
    return "property" in text and "does not exist" in text


@dataclass(frozen=True)
class ClassificationRule:
    """One ``(predicate, classification)`` pair of the classifier cascade."""

    name: str
    predicate: Callable[[str], bool]
    code: ErrorCode | Callable[[str], ErrorCode]

    def matches(self, text: str) -> bool:
        return self.predicate(text)

    def resolve(self, text: str) -> ErrorClassification:
        code = self.code(text) if callable(self.code) else self.code
        return ERROR_CLASSIFICATIONS[code]


def _api_error_code(text: str) -> ErrorCode:
    return ErrorCode.NETLIFY_TIMEOUT if "timeout" in text else ErrorCode.NETLIFY_API


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        "network",
        lambda t: _contains_any(t, _NETWORK_SIGNATURES),
        ErrorCode.NPM_NETWORK,
    ),
    ClassificationRule("missing-path-install", _missing_path_during_install, ErrorCode.NPM_NETWORK),
    ClassificationRule(
        "registry",
        lambda t: _contains_any(t, _REGISTRY_SIGNATURES),
        ErrorCode.NPM_REGISTRY,
    ),
    ClassificationRule(
        "install-timeout",
        lambda t: "timeout" in t and _contains_any(t, INSTALL_MARKERS),
        ErrorCode.NPM_TIMEOUT,
    ),
    ClassificationRule(
        "dependency",
        lambda t: _contains_any(t, _DEPENDENCY_SIGNATURES),
        ErrorCode.NPM_DEPENDENCY,
    ),
    ClassificationRule("typescript", _typescript_error, ErrorCode.BUILD_TYPESCRIPT),
    ClassificationRule(
        "memory",
        lambda t: _contains_any(t, _MEMORY_SIGNATURES),
        ErrorCode.BUILD_MEMORY,
    ),
    ClassificationRule(
        "build-timeout",
        lambda t: "timeout" in t and _contains_any(t, BUILD_MARKERS),
        ErrorCode.BUILD_TIMEOUT,
    ),
    ClassificationRule(
        "rate-limit",
        lambda t: _contains_any(t, _RATE_LIMIT_SIGNATURES),
        ErrorCode.NETLIFY_RATE_LIMIT,
    ),
    ClassificationRule(
        "api-error",
        lambda t: _contains_any(t, _API_ERROR_SIGNATURES),
        _api_error_code,
    ),
    ClassificationRule(
        "upload",
        lambda t: _contains_any(t, _UPLOAD_SIGNATURES),
        ErrorCode.NETLIFY_UPLOAD,
    ),
    ClassificationRule(
        "auth",
        lambda t: _contains_any(t, _AUTH_SIGNATURES),
        ErrorCode.AUTH_FAILED,
    ),
    ClassificationRule(
        "config",
        lambda t: _contains_any(t, _CONFIG_SIGNATURES),
        ErrorCode.CONFIG_INVALID,
    ),
    ClassificationRule(
        "build-failed",
        lambda t: _contains_any(t, _BUILD_FAILED_SIGNATURES),
        ErrorCode.BUILD_UNKNOWN,
    ),
)


def classify_error(error_message: str, logs: Iterable[str] = ()) -> ErrorClassification:
    """Classify a failure from its error message and captured logs.

    Args:
        error_message: Primary error text (may be empty).
        logs: Additional log chunks; joined with newlines after the message.

    Returns:
        The classification of the first matching rule, or ``UNKNOWN``.
    """
    text = "\n".join([error_message, *logs]).lower()
    for rule in CLASSIFICATION_RULES:
        if rule.matches(text):
            return rule.resolve(text)
    return ERROR_CLASSIFICATIONS[ErrorCode.UNKNOWN]


def error_summary(classification: ErrorClassification) -> str:
    """Return ``"<description>. <suggested fix>"`` for operator-facing output."""
    return f"{classification.description}. {classification.suggested_fix or ''}".rstrip()
