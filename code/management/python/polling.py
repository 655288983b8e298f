#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
Bounded polling for state convergence.

Every wait in the backup manager (stack start/stop verification, control
plane readiness, container startup) goes through `poll_until`, which retries
a check with exponential backoff until it passes or a wall-clock deadline is
reached. The result is a typed `Converged` or `TimedOut` value, never an
exception, so callers decide whether a timeout is a warning or fatal.
"""

import log_setup
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union


@dataclass
class Converged:
    """The check passed before the deadline."""

    value: Any
    elapsed: float
    attempts: int

    @property
    def converged(self) -> bool:
        return True

    def __bool__(self) -> bool:
        return True


@dataclass
class TimedOut:
    """The deadline passed without the check succeeding."""

    elapsed: float
    attempts: int
    last_value: Any = None

    @property
    def converged(self) -> bool:
        return False

    def __bool__(self) -> bool:
        return False


PollResult = Union[Converged, TimedOut]


def poll_until(
    check: Callable[[], Any],
    timeout: float,
    initial_interval: float = 1.0,
    max_interval: float = 10.0,
    factor: float = 2.0,
    description: Optional[str] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    initial_delay: float = 0.0,
) -> PollResult:
    """
    Calls `check` until it returns a truthy value or `timeout` seconds pass.
    `initial_delay` is slept once before the first attempt and does not count
    against `timeout`.

    Exceptions raised by `check` count as a failed attempt; the last one is
    logged at debug level and kept as `last_value` on timeout.
    """
    if initial_delay > 0:
        sleep(initial_delay)
    start = clock()
    deadline = start + timeout
    interval = initial_interval
    attempts = 0
    last_value = None

    while True:
        attempts += 1
        try:
            last_value = check()
        except Exception as e:  # a failing probe is just "not yet"
            logging.debug(f"Poll attempt {attempts} raised: {e}")
            last_value = e
        else:
            if last_value:
                return Converged(last_value, clock() - start, attempts)

        now = clock()
        remaining = deadline - now
        if remaining <= 0:
            if description:
                logging.warning(
                    f"Gave up waiting for {description} after {now - start:.0f}s "
                    f"({attempts} attempts)."
                )
            return TimedOut(now - start, attempts, last_value)

        if description and attempts % 5 == 0:
            logging.info(
                f"Still waiting for {description}... ({now - start:.0f}/{timeout:.0f}s)"
            )
        sleep(min(interval, remaining))
        interval = min(interval * factor, max_interval)
