# waits.py
# Cooperative poll waits driven by the controller's tick.
#
# A wait never blocks: each poll either reports the condition, asks to be
# polled again later, or reports that another timeout interval elapsed.

from collections.abc import Callable
from enum import Enum


class WaitStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    TIMED_OUT = "timed_out"


class PollWait:
    """
    Checks `condition` at most once per `interval` seconds.

    The timeout clock runs from `started_at` (the moment the wait was created,
    when the caller knows it) or else from the first poll. After `timeout`
    seconds without success a poll returns TIMED_OUT and the timer restarts,
    so a caller sees one TIMED_OUT per timeout interval and the wait keeps
    going. `timeout=None` waits forever. The first poll always checks.
    """

    def __init__(
        self,
        condition: Callable[[], bool],
        interval: float,
        timeout: float | None = None,
        started_at: float | None = None,
    ) -> None:
        self.condition = condition
        self.interval = interval
        self.timeout = timeout
        self.started_at = started_at
        self.next_check: float | None = None
        self.timeouts = 0

    def poll(self, now: float) -> WaitStatus:
        if self.started_at is None:
            self.started_at = now
        if self.next_check is None:
            self.next_check = now
        if now < self.next_check:
            return WaitStatus.PENDING
        self.next_check = now + self.interval

        if self.condition():
            return WaitStatus.READY

        if self.timeout is not None and now - self.started_at >= self.timeout:
            self.started_at = now
            self.timeouts += 1
            return WaitStatus.TIMED_OUT

        return WaitStatus.PENDING
