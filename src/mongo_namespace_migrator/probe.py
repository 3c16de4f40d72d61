from __future__ import annotations

import logging
import time
from typing import Callable, TypeVar

from .models import ProbeResult

DEFAULT_PROBE_ATTEMPTS = 6
DEFAULT_PROBE_INTERVAL_SECONDS = 30.0
T = TypeVar("T")

logger = logging.getLogger(__name__)


class ResourceProber:
    """Bounded polling of a single resource until a predicate holds.

    The resource is observed once up front and then at most ``attempts`` more
    times, sleeping ``interval_seconds`` before each retry. Running out of
    retries is reported through :class:`ProbeResult`, never raised; the caller
    decides whether that is fatal. Exceptions raised by ``read`` propagate.
    """

    def __init__(
        self,
        *,
        attempts: int = DEFAULT_PROBE_ATTEMPTS,
        interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts <= 0:
            raise ValueError("attempts must be positive")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")
        self.attempts = attempts
        self.interval_seconds = interval_seconds
        self._sleep = sleep

    def wait_for(
        self,
        *,
        description: str,
        read: Callable[[], T | None],
        predicate: Callable[[T | None], bool],
        attempts: int | None = None,
        interval_seconds: float | None = None,
    ) -> ProbeResult[T]:
        remaining = self.attempts if attempts is None else attempts
        interval = self.interval_seconds if interval_seconds is None else interval_seconds
        retries_used = 0

        observed = read()
        while not predicate(observed):
            if remaining <= 0:
                logger.debug(f"Gave up waiting for {description} after {retries_used} retries")
                return ProbeResult(satisfied=False, retries_used=retries_used, last_observed=observed)
            remaining -= 1
            retries_used += 1
            logger.info(f"Waiting for {description}. Retries left: {remaining}. Waiting {interval:g} seconds...")
            self._sleep(interval)
            observed = read()

        return ProbeResult(satisfied=True, retries_used=retries_used, last_observed=observed)
