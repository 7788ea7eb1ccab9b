"""
Reconnect policy helpers.

Purpose:
- Centralize channel retry rules
- Keep the supervisor loop free of arithmetic
- Allow tests to shrink delays without touching the loop

This module contains NO timers, NO async, NO side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from kairo_sync.constants import (
    RECONNECT_BASE_DELAY_MS,
    RECONNECT_MAX_ATTEMPTS,
    RECONNECT_MAX_DELAY_MS,
)


# =============================================================================
# Failure Types
# =============================================================================

class FailureType(str, Enum):
    """
    Classification of a channel loss, which decides how to continue.

    HANDSHAKE_ERROR:
        Opening the channel failed (refused, timed out, rejected auth).
        Retried with backoff; consumes an attempt.

    UNEXPECTED_DROP:
        An open channel closed without a clean close from the server.
        Retried with backoff; consumes an attempt.

    SERVER_CLOSED:
        The server closed the channel deliberately.
        A fresh connect is started immediately; no attempt is consumed.
    """

    HANDSHAKE_ERROR = "handshake_error"
    UNEXPECTED_DROP = "unexpected_drop"
    SERVER_CLOSED = "server_closed"


# =============================================================================
# Retry State
# =============================================================================

@dataclass(frozen=True)
class RetryAttempt:
    """
    Immutable retry attempt counter.

    attempt == 0 means no retry has been performed since the last
    successful connect.
    """
    attempt: int


def next_attempt(current: RetryAttempt) -> RetryAttempt:
    return RetryAttempt(attempt=current.attempt + 1)


def reset_attempt() -> RetryAttempt:
    """Returns a fresh retry attempt counter."""
    return RetryAttempt(attempt=0)


# =============================================================================
# Policy
# =============================================================================

@dataclass(frozen=True)
class ReconnectPolicy:
    """
    Bounded exponential backoff.

    delay(n) = min(base * 2**n, cap) for the n-th retry (0-based).
    """
    base_delay_ms: int = RECONNECT_BASE_DELAY_MS
    max_delay_ms: int = RECONNECT_MAX_DELAY_MS
    max_attempts: int = RECONNECT_MAX_ATTEMPTS


def consumes_attempt(failure: FailureType) -> bool:
    return failure is not FailureType.SERVER_CLOSED


def should_retry(*, policy: ReconnectPolicy, attempt: RetryAttempt) -> bool:
    """
    Returns True if another connect attempt is allowed.

    attempt = number of retries already performed
    """
    return attempt.attempt < policy.max_attempts


def get_retry_delay_ms(*, policy: ReconnectPolicy, attempt: RetryAttempt) -> int:
    """Returns delay before retry attempt N."""
    # Clamp the exponent so large attempt counts cannot overflow the float math
    exponent = min(attempt.attempt, 30)
    return min(policy.base_delay_ms * (2 ** exponent), policy.max_delay_ms)
