"""
Retry/backoff executor with cooperative cancellation.

A CancelToken is created by whoever owns an operation (CLI, conversation
turn, autonomous run) and passed down through every layer. It is checked
at the start of each attempt, raced against every backoff sleep, and raced
against in-flight provider requests.

Usage:
    token = CancelToken()
    result = await retry(lambda: provider.chat(request),
                         RetryOptions(max_retries=3, cancel_token=token))
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, TypeVar

from junkrat.lib.errors import CancellationError, is_retryable_error

logger = logging.getLogger(__name__)

__all__ = ["CancelToken", "RetryOptions", "retry", "sleep"]

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation signal.

    Once cancelled it stays cancelled; every later check fails fast.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = "The operation was cancelled."

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        if reason:
            self._reason = reason
        logger.debug(f"[RETRY] Cancel requested: {self._reason}")
        self._event.set()

    def raise_if_cancelled(self, provider: str = "unknown") -> None:
        if self._event.is_set():
            raise CancellationError(self._reason, provider)

    async def wait(self) -> None:
        await self._event.wait()

    async def race(self, awaitable: Awaitable[T], provider: str = "unknown") -> T:
        """Await `awaitable` unless the token fires first.

        Raises:
            CancellationError: If the token is (or becomes) cancelled before
                the awaitable completes. The awaitable is cancelled.
        """
        self.raise_if_cancelled(provider)

        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise

        if task in done:
            waiter.cancel()
            return task.result()

        task.cancel()
        # Drain the cancelled task so its exception is retrieved
        await asyncio.gather(task, return_exceptions=True)
        raise CancellationError(self._reason, provider)


async def sleep(seconds: float, cancel_token: CancelToken | None = None) -> None:
    """Sleep that fails with CancellationError as soon as the token fires."""
    if cancel_token is None:
        await asyncio.sleep(seconds)
        return
    await cancel_token.race(asyncio.sleep(seconds))


def _default_should_retry(error: BaseException, attempt: int) -> bool:
    return is_retryable_error(error)


@dataclass(frozen=True)
class RetryOptions:
    """Options for a single retry() call.

    Delays are in seconds. `on_retry` receives (attempt_number, delay, error)
    where attempt_number starts at 1 for the first retry.
    """
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True
    should_retry: Callable[[BaseException, int], bool] = _default_should_retry
    on_retry: Callable[[int, float, BaseException], None] | None = None
    cancel_token: CancelToken | None = None

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number attempt+1, before jitter."""
        return min(self.initial_delay * (self.factor ** attempt), self.max_delay)


async def retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    **overrides: Any,
) -> T:
    """
    Run `operation` with bounded exponential-backoff retry.

    Args:
        operation: Zero-arg callable returning a fresh awaitable per attempt
        options: RetryOptions (defaults if None)
        **overrides: Field overrides applied on top of `options`

    Returns:
        The operation's result

    Raises:
        CancellationError: If the cancel token fires before an attempt or
            during a backoff sleep
        Exception: The last error, when attempts are exhausted or the error
            is not retryable
    """
    opts = options or RetryOptions()
    if overrides:
        opts = replace(opts, **overrides)

    max_retries = max(0, opts.max_retries)
    for attempt in range(max_retries + 1):
        if opts.cancel_token is not None:
            opts.cancel_token.raise_if_cancelled()

        try:
            return await operation()
        except CancellationError:
            raise
        except Exception as e:
            if attempt == max_retries or not opts.should_retry(e, attempt):
                raise

            delay = opts.delay_for(attempt)
            actual_delay = random.random() * delay if opts.jitter else delay

            logger.warning(
                f"[RETRY] Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                f"Retrying in {actual_delay:.2f}s"
            )
            if opts.on_retry:
                opts.on_retry(attempt + 1, actual_delay, e)

            await sleep(actual_delay, opts.cancel_token)

    # range() always runs at least once and every path returns or raises
    raise AssertionError("unreachable")
