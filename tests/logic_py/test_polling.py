from __future__ import annotations

import paramiko
import pytest

from buildwithnexus.errors import IntegrityViolation, TransientUnavailable
from buildwithnexus.polling import wait_until


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_ready_immediately_never_sleeps() -> None:
    clock = FakeClock()
    assert wait_until(
        lambda: True, timeout_seconds=10, interval_seconds=1, clock=clock, sleep=clock.sleep
    )
    assert clock.sleeps == []


def test_ready_after_a_few_probes() -> None:
    clock = FakeClock()
    answers = iter([False, False, True])
    assert wait_until(
        lambda: next(answers),
        timeout_seconds=10,
        interval_seconds=2,
        clock=clock,
        sleep=clock.sleep,
    )
    assert clock.sleeps == [2, 2]


def test_timeout_is_not_overshot() -> None:
    clock = FakeClock()
    assert not wait_until(
        lambda: False, timeout_seconds=5, interval_seconds=2, clock=clock, sleep=clock.sleep
    )
    assert clock.sleeps == [2, 2, 1]
    assert clock.now == 5


def test_not_ready_errors_count_as_not_ready() -> None:
    clock = FakeClock()
    errors = iter([TransientUnavailable("x"), paramiko.SSHException("x"), OSError("x")])

    def probe() -> bool:
        try:
            raise next(errors)
        except StopIteration:
            return True

    assert wait_until(
        probe, timeout_seconds=60, interval_seconds=1, clock=clock, sleep=clock.sleep
    )


def test_security_violation_propagates() -> None:
    clock = FakeClock()

    def probe() -> bool:
        raise IntegrityViolation("tampered")

    with pytest.raises(IntegrityViolation):
        wait_until(probe, timeout_seconds=60, interval_seconds=1, clock=clock, sleep=clock.sleep)


def test_progress_fires_on_schedule() -> None:
    clock = FakeClock()
    seen: list[float] = []
    wait_until(
        lambda: False,
        timeout_seconds=100,
        interval_seconds=10,
        progress_every_seconds=30,
        on_progress=seen.append,
        clock=clock,
        sleep=clock.sleep,
    )
    assert seen == [30, 60, 90]
