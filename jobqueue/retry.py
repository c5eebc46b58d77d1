"""
Retry backoff policy.

The delay before a failed job becomes claimable again grows exponentially
with the attempt count, bounded below by base_ms and above by max_ms.
"""

from pydantic import BaseModel, Field

from jobqueue.constants import DEFAULT_RETRY_BASE_MS, DEFAULT_RETRY_MAX_MS


class RetryPolicy(BaseModel):
    """Backoff bounds applied by fail() when attempts remain."""

    base_ms: int = Field(default=DEFAULT_RETRY_BASE_MS, ge=0)
    max_ms: int = Field(default=DEFAULT_RETRY_MAX_MS, ge=0)

    def delay_for(self, attempt: int) -> int:
        """Backoff delay for the given (1-based) attempt."""
        return compute_backoff_ms(attempt=attempt, base_ms=self.base_ms, max_ms=self.max_ms)


def compute_backoff_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """
    Compute the retry delay in milliseconds.

    delay = base_ms * 2 ** (attempt - 1), clamped to [base_ms, max_ms].
    Non-decreasing in attempt. When max_ms < base_ms the cap wins.

    Args:
        attempt: Attempt number that just failed (values below 1 count as 1).
        base_ms: Delay after the first failure.
        max_ms: Upper bound on any delay.

    Returns:
        The delay in milliseconds.
    """
    base = max(0, int(base_ms))
    cap = max(0, int(max_ms))
    exponent = max(1, int(attempt)) - 1
    # Exponent is capped; the result is clamped to max_ms below.
    delay = base * (2 ** min(exponent, 62))
    return min(cap, max(base, delay))
