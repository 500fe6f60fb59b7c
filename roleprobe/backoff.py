"""
Backoff policy
==============
Pure functions: attempt number in, milliseconds out. The crawler and the
validator own the sleeping; nothing here touches the event loop.

Attempts are 1-based.
"""

from enum import Enum


class TimeoutStrategy(Enum):
    AGGRESSIVE = "aggressive"   # half the base timeout, floor of 5s
    BALANCED = "balanced"       # base + 1s per extra attempt
    PATIENT = "patient"         # base * attempt


class ErrorRecovery(Enum):
    SKIP = "skip"
    RETRY = "retry"
    FALLBACK = "fallback"


AGGRESSIVE_FLOOR_MS = 5000
BALANCED_STEP_MS = 1000


def navigation_timeout(strategy: TimeoutStrategy, base_ms: int, attempt: int) -> int:
    """Per-attempt navigation timeout in milliseconds."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    strategy = TimeoutStrategy(strategy)

    if strategy is TimeoutStrategy.AGGRESSIVE:
        return max(base_ms // 2, AGGRESSIVE_FLOOR_MS)
    if strategy is TimeoutStrategy.PATIENT:
        return base_ms * attempt
    return base_ms + BALANCED_STEP_MS * (attempt - 1)


def retry_delay(base_delay_ms: int, attempt: int) -> int:
    """Delay to wait after a failed attempt before the next one (linear)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return base_delay_ms * attempt


def attempt_budget(recovery: ErrorRecovery, retry_attempts: int) -> int:
    """How many regular attempts a probe gets under a recovery mode."""
    recovery = ErrorRecovery(recovery)
    if recovery is ErrorRecovery.SKIP:
        return 1
    return max(1, retry_attempts)
