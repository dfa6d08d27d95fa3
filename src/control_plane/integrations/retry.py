"""Exponential backoff for outbound provider calls.

Built on tenacity. Retries 5xx and 429 responses, timeouts and connection
errors. A ``Retry-After`` header on a retryable response replaces the computed
delay.

POST creates things on the provider side (calls, assistants, agents), so a
POST is only retried when the request provably never reached the provider
(connect failures) or the provider rejected it outright (429).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from control_plane.errors import ExternalServiceError

logger = logging.getLogger("control-plane.retry")

T = TypeVar("T")

NON_IDEMPOTENT_METHODS = frozenset({"POST"})


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    initial_delay: float = 1.0  # seconds
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    is_retryable: Callable[[BaseException], bool] | None = None
    on_retry: Callable[[int, BaseException, float], None] | None = None


RETRY_PROFILES: dict[str, RetryOptions] = {
    # Low-latency operations
    "quick": RetryOptions(max_retries=2, initial_delay=0.5, max_delay=2.0),
    # Most API calls
    "standard": RetryOptions(max_retries=3, initial_delay=1.0, max_delay=10.0),
    # Critical operations
    "aggressive": RetryOptions(max_retries=5, initial_delay=1.0, max_delay=60.0),
    # Background jobs
    "patient": RetryOptions(max_retries=10, initial_delay=5.0, max_delay=300.0),
}


class RetryableHTTPError(Exception):
    """A response that should be retried (5xx or 429)."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"HTTP {response.status_code}: {response.reason_phrase}")
        self.response = response
        self.status_code = response.status_code
        self.retry_after = retry_after_seconds(response)


def should_retry_response(response: httpx.Response) -> bool:
    return response.status_code >= 500 or response.status_code == 429


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Parse ``Retry-After`` as seconds or an HTTP date."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(int(value)))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, RetryableHTTPError):
        return True
    if isinstance(error, httpx.TimeoutException | httpx.NetworkError):
        return True
    if isinstance(error, ExternalServiceError) and error.upstream_status is not None:
        return error.upstream_status >= 500 or error.upstream_status == 429
    message = str(error).lower()
    return any(
        marker in message
        for marker in ("timeout", "network", "econnreset", "econnrefused", "rate limit")
    )


def is_unsent_or_throttled(error: BaseException) -> bool:
    """Errors after which a non-idempotent request is safe to send again."""
    if isinstance(error, RetryableHTTPError):
        return error.status_code == 429
    return isinstance(error, httpx.ConnectError | httpx.ConnectTimeout | httpx.PoolTimeout)


def retry_predicate(method: str) -> Callable[[BaseException], bool]:
    if method.upper() in NON_IDEMPOTENT_METHODS:
        return is_unsent_or_throttled
    return is_retryable_error


class wait_retry_after(wait_base):
    """Use the error's ``retry_after`` when present, else fall back."""

    def __init__(self, fallback: wait_base, max_delay: float):
        self.fallback = fallback
        self.max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        return self.fallback(retry_state)


def build_wait(options: RetryOptions) -> wait_base:
    backoff = wait_exponential_jitter(
        initial=options.initial_delay,
        max=options.max_delay,
        exp_base=options.backoff_multiplier,
        jitter=options.initial_delay if options.jitter else 0,
    )
    return wait_retry_after(backoff, options.max_delay)


def _before_sleep(options: RetryOptions) -> Callable[[RetryCallState], None]:
    log_retry = before_sleep_log(logger, logging.WARNING)

    def before_sleep(retry_state: RetryCallState) -> None:
        log_retry(retry_state)
        if options.on_retry and retry_state.outcome and retry_state.next_action:
            options.on_retry(
                retry_state.attempt_number,
                retry_state.outcome.exception(),
                retry_state.next_action.sleep,
            )

    return before_sleep


def build_retrying(
    options: RetryOptions,
    is_retryable: Callable[[BaseException], bool],
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AsyncRetrying:
    return AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(options.max_retries + 1),
        wait=build_wait(options),
        before_sleep=_before_sleep(options),
        sleep=sleep,
        reraise=True,
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await ``fn()`` until it succeeds or retries run out.

    Raises:
        The last error once ``max_retries`` is exhausted or the error is not
        retryable.
    """
    options = options or RETRY_PROFILES["standard"]
    retrying = build_retrying(options, options.is_retryable or is_retryable_error, sleep)
    return await retrying(fn)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    options: RetryOptions | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """Send a request, retrying retryable statuses and transport errors.

    A final retryable response is returned as-is rather than raised, so the
    caller can read the provider's error body.
    """
    options = options or RETRY_PROFILES["standard"]
    is_retryable = options.is_retryable or retry_predicate(method)

    async def attempt() -> httpx.Response:
        response = await client.request(method, url, **kwargs)
        if should_retry_response(response):
            raise RetryableHTTPError(response)
        return response

    try:
        return await build_retrying(options, is_retryable, sleep)(attempt)
    except RetryableHTTPError as e:
        return e.response
