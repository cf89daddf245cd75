"""Retry policy: budget checks, exponential backoff and per-phase retry state."""

from __future__ import annotations

import random
from dataclasses import dataclass, field, replace

from .errors import ErrorClassification

MAX_RETRY_DELAY_MS = 60_000
MAX_JITTER_MS = 1_000


def should_retry(classification: ErrorClassification, attempts_so_far: int) -> bool:
    """True while the classification is retryable and its budget is not spent."""
    return classification.retryable and attempts_so_far < classification.max_retries


def compute_delay(
    base_delay_ms: int,
    attempt_number: int,
    rng: random.Random | None = None,
) -> int:
    """Backoff delay in milliseconds for the given 1-indexed retry.

    ``base * 2**attempt`` plus jitter, capped at ``MAX_RETRY_DELAY_MS``. Jitter
    is drawn from ``[0, min(1000, base * 2**attempt))`` so that, for a
    positive base, each retry waits at least as long as the one before it.
    A zero base draws from the full ``[0, 1000)`` window, so concurrent
    immediate retries still spread out.
    """
    exponential = base_delay_ms * (2 ** attempt_number)
    if exponential >= MAX_RETRY_DELAY_MS:
        return MAX_RETRY_DELAY_MS
    window = min(MAX_JITTER_MS, exponential) if exponential else MAX_JITTER_MS
    roll = (rng or random).random()
    jitter = roll * window
    return int(min(exponential + jitter, MAX_RETRY_DELAY_MS))


@dataclass(frozen=True)
class RetryState:
    """Accumulated history of one phase's attempts.

    Each attempt folds into a new ``RetryState``; nothing is mutated in place,
    so the sequence of states fully describes the phase.
    """

    phase: str
    retries: int = 0
    logs: tuple[str, ...] = field(default_factory=tuple)
    last_classification: ErrorClassification | None = None

    def record_attempt(
        self,
        logs: list[str] | tuple[str, ...],
        classification: ErrorClassification | None = None,
    ) -> "RetryState":
        """Return a state with this attempt's logs and classification appended."""
        return replace(
            self,
            logs=self.logs + tuple(logs),
            last_classification=classification or self.last_classification,
        )

    def record_retry(self, delay_ms: int) -> "RetryState":
        """Return a state with the retry counter advanced and a retry marker logged."""
        retries = self.retries + 1
        budget = self.last_classification.max_retries if self.last_classification else retries
        marker = f"[Retry {retries}/{budget}] Waiting {round(delay_ms / 1000)}s before retry..."
        return replace(self, retries=retries, logs=self.logs + (marker,))

    def note(self, message: str) -> "RetryState":
        return replace(self, logs=self.logs + (message,))

    def can_retry(self) -> bool:
        if self.last_classification is None:
            return False
        return should_retry(self.last_classification, self.retries)
