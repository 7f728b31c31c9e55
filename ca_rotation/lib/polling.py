"""Bounded polling and conflict retry built on tenacity."""

import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from kubernetes.client.rest import ApiException
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_when_event_set,
    wait_exponential,
    wait_fixed,
)

from .exceptions import CARotationError, ConflictError, RotationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _not_done(result: object) -> bool:
    return result is None or result is False


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ApiException) and (error.status or 0) >= 500


def _log_transient(retry_state: RetryCallState) -> None:
    if retry_state.outcome is not None and retry_state.outcome.failed:
        logger.warning(
            "Transient API error on attempt %d, polling again: %s",
            retry_state.attempt_number,
            retry_state.outcome.exception(),
        )


def poll_until(
    check: Callable[[], T | None],
    timeout: float,
    interval: float,
    description: str,
    timeout_error: type[CARotationError],
    cancel_event: threading.Event | None = None,
) -> T:
    """Call ``check`` every ``interval`` seconds until it returns a truthy value.

    Kubernetes API server errors (5xx) raised by ``check`` are retried inside
    the same window; any other exception propagates unchanged.

    Args:
        check: Returns None/False while the condition is unmet
        timeout: Upper bound in seconds
        interval: Delay between checks in seconds
        description: What is being waited for, used in error messages
        timeout_error: Error type raised when the timeout expires
        cancel_event: Stops polling between iterations once set

    Returns:
        The first truthy value returned by ``check``

    Raises:
        timeout_error: If the condition is unmet after ``timeout``
        RotationCancelled: If ``cancel_event`` was set
    """
    if cancel_event is not None and cancel_event.is_set():
        raise RotationCancelled(f"Cancelled before waiting for {description}")

    stop = stop_after_delay(timeout)
    sleep = time.sleep
    if cancel_event is not None:
        stop = stop | stop_when_event_set(cancel_event)
        sleep = cancel_event.wait

    retrying = Retrying(
        stop=stop,
        wait=wait_fixed(interval),
        retry=retry_if_result(_not_done) | retry_if_exception(_is_transient),
        before_sleep=_log_transient,
        sleep=sleep,
    )

    try:
        return retrying(check)
    except RetryError as e:
        if cancel_event is not None and cancel_event.is_set():
            raise RotationCancelled(f"Cancelled while waiting for {description}") from e
        raise timeout_error(f"Timed out after {timeout}s waiting for {description}") from e


def retry_on_conflict(operation: Callable[[], T], attempts: int, description: str) -> T:
    """Re-run a read-modify-write operation while it raises ConflictError.

    ``operation`` must re-read the record on every call; a conflicting write
    is never re-sent with stale data.

    Raises:
        ConflictError: If every attempt conflicted
    """
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.1, max=2),
        retry=retry_if_exception_type(ConflictError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    logger.debug("Applying %s with up to %d attempts", description, attempts)
    return retrying(operation)
