"""
tests/unit/test_rate_limit.py — Fixed-window counting with a fake clock.
"""

from __future__ import annotations

from backend.app.middleware.rate_limit import FixedWindowLimiter


class FakeClock:

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_allows_up_to_the_limit():
    limiter = FixedWindowLimiter(clock=FakeClock())
    infos = [limiter.hit("login:1.2.3.4", limit=3, window_seconds=60) for _ in range(3)]

    assert all(i.allowed for i in infos)
    assert [i.remaining for i in infos] == [2, 1, 0]
    assert infos[0].reset_at == 1_060
    assert infos[0].retry_after == 0


def test_blocks_over_the_limit_with_retry_hint():
    clock = FakeClock()
    limiter = FixedWindowLimiter(clock=clock)
    for _ in range(3):
        limiter.hit("k", limit=3, window_seconds=60)

    clock.now += 15
    blocked = limiter.hit("k", limit=3, window_seconds=60)
    assert not blocked.allowed
    assert blocked.remaining == 0
    assert blocked.retry_after == 45


def test_window_resets():
    clock = FakeClock()
    limiter = FixedWindowLimiter(clock=clock)
    for _ in range(4):
        limiter.hit("k", limit=3, window_seconds=60)

    clock.now += 60
    info = limiter.hit("k", limit=3, window_seconds=60)
    assert info.allowed
    assert info.remaining == 2


def test_keys_are_independent():
    limiter = FixedWindowLimiter(clock=FakeClock())
    for _ in range(5):
        limiter.hit("login:a", limit=3, window_seconds=60)
    assert limiter.hit("login:b", limit=3, window_seconds=60).allowed


def test_reset_forgets_everything():
    limiter = FixedWindowLimiter(clock=FakeClock())
    for _ in range(5):
        limiter.hit("k", limit=3, window_seconds=60)
    limiter.reset()
    assert limiter.hit("k", limit=3, window_seconds=60).remaining == 2
