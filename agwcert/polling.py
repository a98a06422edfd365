import asyncio
import logging
import time
import typing

import acme.messages
import aiohttp
from pydantic import Field
from pydantic_settings import BaseSettings

from agwcert.exceptions import PollingException

logger = logging.getLogger(__name__)


class RetryPolicy(BaseSettings, extra="forbid"):
    """Parameters of a polling loop."""

    interval: float = Field(default=10.0, gt=0)
    """delay in seconds before the first retry"""
    backoff: float = Field(default=1.0, ge=1.0)
    """factor the delay is multiplied with after every attempt, 1.0 polls at a fixed interval"""
    max_interval: float = Field(default=60.0, gt=0)
    """upper bound for the delay between two attempts"""
    timeout: typing.Optional[float] = Field(default=600.0, gt=0)
    """give up after this many seconds, None polls forever"""

    def delays(self) -> typing.Iterator[float]:
        delay = min(self.interval, self.max_interval)
        while True:
            yield delay
            delay = min(delay * self.backoff, self.max_interval)


def is_transient(exc: BaseException) -> bool:
    """Tells whether a failed read is worth repeating.

    Connection problems, timeouts and server side errors are considered transient. A server side
    error is either a 5xx response or an ACME problem of type *serverInternal*.
    """
    if isinstance(exc, acme.messages.Error):
        return exc.code == "serverInternal" or (getattr(exc, "status", None) or 0) >= 500
    if isinstance(exc, aiohttp.ClientResponseError):
        return exc.status >= 500
    return isinstance(exc, (aiohttp.ClientConnectionError, asyncio.TimeoutError))


class Poller:
    """Repeatedly calls a coroutine function until its result satisfies a predicate.

    The sleep function and the clock are injectable so that the polling behaviour can be tested
    without actually waiting.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        *,
        sleep: typing.Callable[[float], typing.Awaitable] = asyncio.sleep,
        clock: typing.Callable[[], float] = time.monotonic,
    ):
        self.policy = policy
        self._sleep = sleep
        self._clock = clock

    async def poll_until(
        self,
        coro,
        *args,
        predicate,
        negative_predicate=None,
        **kwargs,
    ):
        """Polls *coro* until *predicate* holds for its result and returns that result.

        :param coro: The coroutine function to call.
        :param args: Positional arguments for *coro*.
        :param predicate: Callable that returns True once polling may stop.
        :param negative_predicate: Callable that returns True if polling can never succeed.
        :param kwargs: Keyword arguments for *coro*.
        :raises: :class:`~agwcert.exceptions.PollingException` If *negative_predicate* became True or the
            policy's timeout expired. The last result is attached to the exception.
        """
        name = getattr(coro, "__name__", repr(coro))
        deadline = (
            self._clock() + self.policy.timeout
            if self.policy.timeout is not None
            else None
        )
        delays = self.policy.delays()
        result = None
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await coro(*args, **kwargs)
            except Exception as e:
                if not is_transient(e):
                    raise
                logger.warning("Transient error while polling %s%s: %s", name, args, e)
            else:
                if predicate(result):
                    return result

                if negative_predicate is not None and negative_predicate(result):
                    raise PollingException(
                        result,
                        f"Polling unsuccessful: {name}{args}, {negative_predicate.__name__} became True",
                    )

            delay = next(delays)
            if deadline is not None and self._clock() + delay > deadline:
                raise PollingException(
                    result,
                    f"Polling unsuccessful: {name}{args} timed out after {self.policy.timeout}s",
                )

            logger.debug("Polling %s%s, attempt %d, next in %.1fs", name, args, attempt, delay)
            await self._sleep(delay)
