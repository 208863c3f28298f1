"""Bounded exponential backoff for retryable token exchanges."""

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .exceptions import AcquisitionCancelledError, TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a flow."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if cancelled meanwhile."""
        return self._event.wait(max(seconds, 0))

    def raise_if_cancelled(self, correlation_id: Optional[str] = None) -> None:
        if self._event.is_set():
            raise AcquisitionCancelledError(
                "Token acquisition was cancelled", correlation_id
            )


# Signature of an interruptible sleep: (seconds, token) -> cancelled?
Sleeper = Callable[[float, CancellationToken], bool]


def interruptible_sleep(seconds: float, cancellation: CancellationToken) -> bool:
    return cancellation.wait(seconds)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for idempotent exchanges."""

    max_attempts: int = 3
    initial_delay: float = 0.5
    backoff_factor: float = 2.0
    max_delay: float = 8.0


def with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    cancellation: Optional[CancellationToken] = None,
    sleep: Sleeper = interruptible_sleep,
    retry_on: tuple = (TransportError,),
    correlation_id: Optional[str] = None,
) -> T:
    """
    Call a function, retrying with exponential backoff.

    Args:
        func: Callable performing one exchange
        policy: Attempt count and delay settings
        cancellation: Token checked before each attempt and during backoff
        sleep: Interruptible sleep used between attempts
        retry_on: Exception types that trigger a retry
        correlation_id: Correlation id attached to cancellation errors

    Returns:
        Result of the function call

    Raises:
        The last retryable exception once attempts are exhausted, any
        non-retryable exception immediately, or AcquisitionCancelledError.
    """
    cancellation = cancellation or CancellationToken()
    delay = policy.initial_delay
    attempt = 0

    while True:
        cancellation.raise_if_cancelled(correlation_id)
        attempt += 1
        try:
            return func()
        except retry_on as e:
            if attempt >= policy.max_attempts:
                raise
            logger.warning(
                f"Attempt {attempt}/{policy.max_attempts} failed ({e}), "
                f"retrying in {delay:.1f}s [correlation_id={correlation_id}]"
            )
            if sleep(delay, cancellation):
                raise AcquisitionCancelledError(
                    "Token acquisition was cancelled", correlation_id
                ) from e
            delay = min(delay * policy.backoff_factor, policy.max_delay)
