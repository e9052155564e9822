from __future__ import annotations

import dataclasses
import logging
import threading
import time
import typing

from eksconverge import errors

logger = logging.getLogger(__name__)

T = typing.TypeVar("T")


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for calls that may fail with `TransientError`.

    `max_attempts` counts every call including the first one, so a policy with
    `max_attempts=3` calls the function at most three times.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: typing.Callable[[float], None] = dataclasses.field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ValueError(msg)

    def delay(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def call(
        self,
        fn: typing.Callable[..., T],
        *args: typing.Any,
        resource: str | None = None,
        **kwargs: typing.Any,
    ) -> T:
        attempt = 1
        while True:
            try:
                return fn(*args, **kwargs)
            except Exception as e:
                err = errors.classify(e, resource=resource)
                if not isinstance(err, errors.TransientError) or attempt >= self.max_attempts:
                    if err is e:
                        raise
                    raise err from e

                delay = self.delay(attempt)
                logger.warning(
                    "transient failure on %s (attempt %d/%d), retrying in %.1fs: %s",
                    resource or getattr(fn, "__name__", "call"),
                    attempt,
                    self.max_attempts,
                    delay,
                    err,
                )
                self.sleep(delay)
                attempt += 1


def check_cancelled(cancel: threading.Event | None, what: str) -> None:
    if cancel is not None and cancel.is_set():
        msg = f"cancelled while {what}"
        raise errors.CancelledError(msg)


def wait_until(
    predicate: typing.Callable[[], bool],
    *,
    what: str,
    timeout: float,
    interval: float,
    consecutive: int = 1,
    cancel: threading.Event | None = None,
    clock: typing.Callable[[], float] = time.monotonic,
    sleep: typing.Callable[[float], None] = time.sleep,
) -> int:
    """Poll `predicate` until it holds for `consecutive` polls in a row.

    Returns the number of polls made. Raises `ReconcileTimeoutError` once
    `timeout` seconds elapse without reaching the streak.
    """
    deadline = clock() + timeout
    streak = 0
    polls = 0

    while True:
        check_cancelled(cancel, f"waiting for {what}")
        polls += 1

        if predicate():
            streak += 1
            if streak >= consecutive:
                return polls
        else:
            streak = 0

        if clock() + interval > deadline:
            msg = f"timed out after {timeout:.0f}s waiting for {what}"
            raise errors.ReconcileTimeoutError(msg)

        sleep(interval)
