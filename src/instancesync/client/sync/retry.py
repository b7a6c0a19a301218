"""Retry policy: error classification, backoff and bounded calls.

This module provides:
- categorize_error: Tag an exception with an ErrorType for display
- classify_error: Decide whether a failure is transient or permanent
- compute_backoff: Exponential backoff with jitter
- run_with_timeout: Race a blocking call against a timeout
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from instancesync.client.api import (
    APIError,
    AuthenticationError,
    ConflictError,
    ServerError,
    ValidationError,
)
from instancesync.client.sync.types import ErrorKind, ErrorType

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 1.0  # seconds
DEFAULT_MAX_BACKOFF = 60.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0

# Network-related exceptions that indicate connectivity issues
NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.TransportError,
    ConnectionError,
    TimeoutError,
    OSError,
)


def categorize_error(error: BaseException) -> ErrorType:
    """Tag an exception with a display category."""
    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(error, AuthenticationError):
        return ErrorType.AUTH
    if isinstance(error, ValidationError):
        return ErrorType.VALIDATION
    if isinstance(error, ConflictError):
        return ErrorType.CONFLICT
    if isinstance(error, ServerError):
        return ErrorType.SERVER
    if isinstance(error, NETWORK_EXCEPTIONS):
        return ErrorType.NETWORK
    return ErrorType.UNKNOWN


def classify_error(error: BaseException) -> ErrorKind:
    """Decide whether a failed remote call may succeed if retried.

    Transient: network and timeout failures, server errors and throttling,
    and unrecognized non-API exceptions. Permanent: every other API
    rejection (authorization, validation, conflict, other 4xx).
    """
    if isinstance(error, ServerError):
        return ErrorKind.TRANSIENT
    if isinstance(error, APIError):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def compute_backoff(
    attempt: int,
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
    max_backoff: float = DEFAULT_MAX_BACKOFF,
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
    rng: random.Random | None = None,
) -> float:
    """Compute the delay before retry number `attempt` (1-based).

    The exponential delay is capped at max_backoff, then jittered within
    its upper half so concurrent clients do not retry in lockstep.
    """
    exponent = max(attempt - 1, 0)
    delay = min(initial_backoff * (backoff_multiplier**exponent), max_backoff)
    jitter = (rng or random).uniform(0, delay / 2)
    return delay / 2 + jitter


def run_with_timeout(func: Callable[[], T], timeout: float, name: str = "call") -> T:
    """Run func in a daemon thread and wait at most timeout seconds.

    The call itself is not interrupted on timeout; its result is ignored.

    Raises:
        TimeoutError: If func did not return in time.
        Exception: Whatever func raised.
    """
    result: dict[str, Any] = {}
    done = threading.Event()

    def target() -> None:
        try:
            result["value"] = func()
        except BaseException as e:
            result["error"] = e
        finally:
            done.set()

    thread = threading.Thread(target=target, name=f"timeout-{name}", daemon=True)
    thread.start()
    if not done.wait(timeout):
        logger.warning("%s timed out after %.1fs", name, timeout)
        raise TimeoutError(f"{name} timed out after {timeout}s")
    if "error" in result:
        raise result["error"]
    return result["value"]  # type: ignore[no-any-return]
