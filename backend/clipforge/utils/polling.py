"""Generic poll-until-terminal helper for asynchronous providers."""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeoutError(Exception):
    """Raised when polling exhausts its attempt or wall-clock budget."""

    def __init__(self, attempts: int, elapsed: float, last_status=None):
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_status = last_status
        super().__init__(f"Polling gave up after {attempts} attempts ({elapsed:.1f}s)")


async def poll_until_terminal(
    check: Callable[[], Awaitable[T]],
    is_terminal: Callable[[T], bool],
    interval: float,
    max_attempts: Optional[int] = None,
    timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Call ``check`` until ``is_terminal`` accepts its result.

    Sleeps ``interval`` seconds between attempts. Stops with
    ``PollTimeoutError`` once ``max_attempts`` checks have been made or
    ``timeout`` seconds of wall-clock time have passed, whichever comes first.
    Exceptions raised by ``check`` propagate unchanged.
    """
    if max_attempts is None and timeout is None:
        raise ValueError("poll_until_terminal needs max_attempts or timeout")

    loop = asyncio.get_running_loop()
    started = loop.time()
    attempts = 0
    last = None

    while True:
        last = await check()
        attempts += 1
        if is_terminal(last):
            return last

        elapsed = loop.time() - started
        if max_attempts is not None and attempts >= max_attempts:
            raise PollTimeoutError(attempts, elapsed, last)
        if timeout is not None and elapsed + interval > timeout:
            raise PollTimeoutError(attempts, elapsed, last)

        logger.debug(f"Poll attempt {attempts} not terminal ({last!r}), sleeping {interval}s")
        await sleep(interval)
