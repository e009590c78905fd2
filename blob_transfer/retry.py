"""Retry classification and backoff for sub-range fetches.

Logger: ``blob_transfer.retry``.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from .errors import FetchError

if TYPE_CHECKING:
    from .settings import DownloadSettings

LOG = logging.getLogger("blob_transfer.retry")

# Statuses a storage front end returns for failures that are safe to retry.
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with capped exponential backoff.

    Attributes:
        max_retries: Retry attempts per sub-range (total tries = max_retries + 1).
        backoff_base: Exponential backoff base in seconds
            (delay = base * 2^attempt, with full jitter).
        backoff_max: Upper bound for any single delay in seconds.

    Raises:
        ValueError: If any value is negative.
    """

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            msg = f"max_retries must be >= 0, got {self.max_retries}"
            raise ValueError(msg)
        if self.backoff_base < 0:
            msg = f"backoff_base must be >= 0, got {self.backoff_base}"
            raise ValueError(msg)
        if self.backoff_max < 0:
            msg = f"backoff_max must be >= 0, got {self.backoff_max}"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: DownloadSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
            backoff_max=settings.backoff_max,
        )

    def compute_delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (zero based)."""
        exp_delay = self.backoff_base * (2**attempt)
        return min(random.uniform(0, exp_delay), self.backoff_max)


def is_transient(error: BaseException) -> bool:
    """Whether retrying the request that raised *error* may succeed."""
    if isinstance(error, FetchError):
        return error.transient
    return isinstance(error, (TimeoutError, ConnectionError, httpx.TransportError))
