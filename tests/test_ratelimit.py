from __future__ import annotations

import pytest

from conftest import FakeClock
from cartledger.cancellation import CancellationToken
from cartledger.errors import Cancelled
from cartledger.ratelimit import RateLimiter


def test_first_wait_never_sleeps(clock: FakeClock) -> None:
    rl = RateLimiter(25, clock=clock, sleep=clock.sleep)
    assert rl.wait() == 0.0
    assert clock.sleeps == []


def test_back_to_back_waits_are_spaced(clock: FakeClock) -> None:
    rl = RateLimiter(25, clock=clock, sleep=clock.sleep)
    rl.wait()
    rl.wait()
    rl.wait()

    assert clock.sleeps == [pytest.approx(0.04), pytest.approx(0.04)]
    assert clock.now == pytest.approx(1000.08)


def test_elapsed_time_counts_toward_the_interval(clock: FakeClock) -> None:
    rl = RateLimiter(10, clock=clock, sleep=clock.sleep)
    rl.wait()

    clock.now += 0.06
    assert rl.wait() == pytest.approx(0.04)

    clock.now += 1.0
    assert rl.wait() == 0.0


def test_reset_forgets_the_last_send(clock: FakeClock) -> None:
    rl = RateLimiter(1, clock=clock, sleep=clock.sleep)
    rl.wait()
    rl.reset()
    assert rl.wait() == 0.0


def test_cancelled_token_stops_before_sleeping(clock: FakeClock) -> None:
    rl = RateLimiter(1, clock=clock, sleep=clock.sleep)
    rl.wait()

    token = CancellationToken()
    token.cancel()
    with pytest.raises(Cancelled) as ei:
        rl.wait(token)
    assert ei.value.details == {"where": "rate_limit"}
    assert clock.sleeps == []


def test_rate_must_be_positive() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0)
