import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, NamedTuple, Optional, Union

from ._exceptions import RetryExhaustedError, ValidationError


logger = logging.getLogger(__name__)


class Continue(NamedTuple):
    """Wait `delay` milliseconds and make another attempt.
    """
    delay: int


class Stop(NamedTuple):
    """Give up retrying.
    """
    reason: str = 'manually stopped'


Decision = Union[int, Continue, Stop]
DelayFn = Callable[['RetryState'], Union[Decision, Awaitable[Decision]]]


@dataclass(frozen=True)
class RetrySettings:
    """

    Args:
        retry_times:    Cap on the number of attempts, 0 still makes one.
        retry_delay:    Fixed delay between attempts, in milliseconds.
        retry_delay_fn: Callback deciding the next delay or to stop.
        total_time:     Wall-clock budget for all attempts, in milliseconds.
    """
    retry_times: Optional[int] = None
    retry_delay: Optional[int] = None
    retry_delay_fn: Optional[DelayFn] = None
    total_time: Optional[int] = None


@dataclass(frozen=True)
class RetryState:
    """What `retry_delay_fn` gets to know about the retry in progress.
    """
    attempt_number: int
    started_at: float
    previous_delay: Optional[int]
    settings: RetrySettings

    @property
    def elapsed(self) -> int:
        """Milliseconds since the first attempt.
        """
        return _elapsed(self.started_at)


def _elapsed(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


async def _next_delay(settings: RetrySettings, state: RetryState) -> int:
    if settings.retry_delay_fn is None:
        assert settings.retry_delay is not None
        return settings.retry_delay
    decision: Any = settings.retry_delay_fn(state)
    if inspect.isawaitable(decision):
        decision = await decision
    if isinstance(decision, Stop):
        raise RetryExhaustedError(decision.reason)
    if isinstance(decision, Continue):
        decision = decision.delay
    if isinstance(decision, bool) or not isinstance(decision, int) or decision < 0:
        raise ValidationError(
            f'retry_delay_fn must return a non-negative integer, got {decision!r}',
        )
    return decision


async def retry(
    settings: RetrySettings,
    operation: Callable[[], Awaitable[Any]],
    should_proceed: Callable[[BaseException], bool],
) -> None:
    """Call `operation` until it succeeds or the settings say to give up.

    Raises:
        RetryExhaustedError: retry budget is spent or `retry_delay_fn` stopped.
        Exception: whatever `operation` raised if `should_proceed` rejected it.
    """
    started_at = time.monotonic()
    attempt = 0
    delay: Optional[int] = None
    last_error: Optional[BaseException] = None
    while True:
        if settings.total_time is not None and _elapsed(started_at) >= settings.total_time:
            raise RetryExhaustedError('total time exceeded', last_error) from last_error
        try:
            await operation()
            return
        except Exception as exc:
            if not should_proceed(exc):
                raise
            last_error = exc
        if settings.retry_times is not None and attempt + 1 >= settings.retry_times:
            raise RetryExhaustedError('reached retry-times limit', last_error) from last_error

        state = RetryState(
            attempt_number=attempt,
            started_at=started_at,
            previous_delay=delay,
            settings=settings,
        )
        try:
            delay = await _next_delay(settings, state)
        except RetryExhaustedError as exc:
            exc.last_error = last_error
            raise exc from last_error
        logger.debug('attempt %d failed, retrying in %d ms', attempt, delay)
        # sleep(0) still yields to the event loop
        await asyncio.sleep(delay / 1000)
        attempt += 1
