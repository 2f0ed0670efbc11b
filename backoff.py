"""
Exponential backoff under a shared time budget.

An operation reports each attempt as ``Ok``, ``Retryable`` or ``Fatal``.
Exceptions raised by the operation are passed through ``classify`` first;
anything it maps to ``Retryable`` is slept on and retried. Before every
sleep the budget is checked, so a poll overshoots its ceiling by at most one
interval.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

log = logging.getLogger("webhook.backoff")

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Retryable:
    error: str


@dataclass(frozen=True)
class Fatal:
    error: str


Attempt = Union[Ok, Retryable, Fatal]


class BudgetExceeded(RuntimeError):
    def __init__(self, what: str, elapsed: float, last_error: Optional[str]):
        super().__init__(f"{what}: gave up after {elapsed:.0f}s (last error: {last_error})")
        self.what = what
        self.elapsed = elapsed
        self.last_error = last_error


class RetryBudget:
    """Cumulative time allowance shared by every stage of one poll."""

    def __init__(
        self,
        max_elapsed: float,
        initial_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_elapsed = max_elapsed
        self.initial_interval = initial_interval
        self.sleep = sleep
        self.clock = clock
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    @property
    def exhausted(self) -> bool:
        return self.elapsed > self.max_elapsed


def reraise(exc: Exception) -> Attempt:
    raise exc


def retry_call(
    operation: Callable[[], Attempt],
    budget: RetryBudget,
    what: str,
    classify: Callable[[Exception], Attempt] = reraise,
) -> Union[Ok, Fatal]:
    """Run ``operation`` until it returns ``Ok`` or ``Fatal``.

    Raises ``BudgetExceeded`` once the budget runs out while the operation
    keeps reporting ``Retryable``.
    """
    interval = budget.initial_interval
    while True:
        try:
            attempt = operation()
        except Exception as e:
            attempt = classify(e)

        if isinstance(attempt, (Ok, Fatal)):
            return attempt

        if budget.exhausted:
            log.warning("%s: max retry time reached after %.0fs", what, budget.elapsed)
            raise BudgetExceeded(what, budget.elapsed, attempt.error)
        log.info("%s: %s, retrying in %ss", what, attempt.error, interval)
        budget.sleep(interval)
        interval *= 2
