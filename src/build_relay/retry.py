"""Bounded fixed-delay retry."""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_call(
    fn: Callable[[], T],
    attempts: int,
    delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    give_up_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """
    Call `fn` up to `attempts` times, sleeping `delay` seconds between tries.

    Exceptions in `give_up_on` propagate immediately. Other exceptions in
    `retry_on` are retried; after the last attempt the final exception is
    re-raised. There is no sleep after the last attempt.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except give_up_on:
            raise
        except retry_on as e:
            if attempt == attempts:
                logger.error("%s failed after %d attempts: %s", description, attempts, e)
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.0fs",
                description, attempt, attempts, e, delay,
            )
            sleep(delay)

    raise AssertionError("unreachable")
