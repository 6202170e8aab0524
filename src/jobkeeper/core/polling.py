"""Bounded sleep-then-retry loops with an injectable clock."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class Clock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class PollState(str, Enum):
    WAITING = "waiting"
    DONE = "done"
    EXHAUSTED = "exhausted"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class PollPolicy:
    attempts: int
    interval_s: float

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.interval_s < 0:
            raise ValueError("interval_s must be >= 0")

    @classmethod
    def for_timeout(cls, timeout_s: float, interval_s: float) -> "PollPolicy":
        if interval_s <= 0:
            return cls(attempts=1, interval_s=0.0)
        return cls(attempts=max(1, math.ceil(timeout_s / interval_s) + 1), interval_s=interval_s)


@dataclass
class PollOutcome(Generic[T]):
    state: PollState
    attempts: int
    value: T | None

    @property
    def done(self) -> bool:
        return self.state == PollState.DONE


class Poller(Generic[T]):
    """One probe per ``step``; sleeps between probes until the probe succeeds or the policy runs out."""

    def __init__(
        self,
        probe: Callable[[], tuple[bool, T]],
        *,
        policy: PollPolicy,
        clock: Clock,
        timeout_s: float | None = None,
    ) -> None:
        self.probe = probe
        self.policy = policy
        self.clock = clock
        self.deadline = clock.monotonic() + timeout_s if timeout_s is not None else None
        self.state = PollState.WAITING
        self.attempts = 0
        self.value: T | None = None

    def step(self) -> PollState:
        if self.state != PollState.WAITING:
            raise ValueError(f"poller already finished: {self.state.value}")
        self.attempts += 1
        done, value = self.probe()
        self.value = value
        if done:
            self.state = PollState.DONE
        elif self.attempts >= self.policy.attempts:
            self.state = PollState.EXHAUSTED
        elif self.deadline is not None and self.clock.monotonic() + self.policy.interval_s > self.deadline:
            self.state = PollState.TIMED_OUT
        else:
            self.clock.sleep(self.policy.interval_s)
        return self.state

    def run(self) -> PollOutcome[T]:
        while self.state == PollState.WAITING:
            self.step()
        return PollOutcome(state=self.state, attempts=self.attempts, value=self.value)


def poll_until(
    probe: Callable[[], tuple[bool, T]],
    *,
    policy: PollPolicy,
    clock: Clock,
    timeout_s: float | None = None,
) -> PollOutcome[T]:
    return Poller(probe, policy=policy, clock=clock, timeout_s=timeout_s).run()
