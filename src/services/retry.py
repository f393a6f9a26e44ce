"""Retry helpers for provider calls, built on tenacity."""
from __future__ import annotations

import time
from functools import wraps
from typing import Callable, Optional, ParamSpec, Type, TypeVar

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from core.exceptions import TransientProviderError
from core.logging_config import get_logger

LOGGER = get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

WaitStrategy = Callable[[RetryCallState], float]


def wait_for_retry_after(fallback: WaitStrategy, max_wait: float) -> WaitStrategy:
    """
    Honor a provider's ``Retry-After`` hint, else use ``fallback``.

    The hint is read from the ``retry_after`` attribute of the last exception
    (set by ``RateLimitError``) and capped at ``max_wait``.
    """

    def wait(retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after: Optional[float] = getattr(exc, "retry_after", None)
        if retry_after:
            return min(float(retry_after), max_wait)
        return fallback(retry_state)

    return wait


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    name = getattr(retry_state.fn, "__qualname__", "call")
    LOGGER.warning(
        f"Retrying {name} after {type(exc).__name__}: {exc}",
        extra={"extra_data": {
            "function": name,
            "attempt": retry_state.attempt_number,
            "error": str(exc),
            "next_wait_seconds": retry_state.next_action.sleep if retry_state.next_action else None,
        }},
    )


def with_retry(
    max_attempts: int = 3,
    max_delay_seconds: float = 30,
    retry_exceptions: tuple[Type[Exception], ...] = (TransientProviderError,),
    min_wait: float = 0.5,
    max_wait: float = 10,
) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Retry a provider call on transient failures.

    Only ``retry_exceptions`` are retried; auth failures and bad requests
    propagate on the first attempt. The last exception is re-raised once
    attempts or ``max_delay_seconds`` run out.

    Example:
        @with_retry(max_attempts=3, retry_exceptions=(RateLimitError,))
        def send(user_id, text):
            ...
    """

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        return retry(
            retry=retry_if_exception_type(retry_exceptions),
            stop=stop_after_attempt(max_attempts) | stop_after_delay(max_delay_seconds),
            wait=wait_for_retry_after(wait_exponential(min=min_wait, max=max_wait), max_wait),
            before_sleep=_log_retry,
            reraise=True,
        )(func)

    return decorator


def timed_call(func: Callable[P, T]) -> Callable[P, tuple[T, float]]:
    """Wrap ``func`` so it returns ``(result, elapsed_ms)``."""

    @wraps(func)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> tuple[T, float]:
        start = time.perf_counter()
        result = func(*args, **kwargs)
        return result, (time.perf_counter() - start) * 1000

    return wrapper


__all__ = ["with_retry", "timed_call", "wait_for_retry_after"]
