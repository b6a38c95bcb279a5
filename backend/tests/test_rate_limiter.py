import pytest

from jira_sync.connectors.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


def make_limiter(clock: FakeClock, **kwargs) -> RateLimiter:
    return RateLimiter(clock=clock, sleep=clock.sleep, **kwargs)


@pytest.mark.asyncio
async def test_enforces_minimum_interval_between_requests():
    clock = FakeClock()
    limiter = make_limiter(clock, requests_per_second=10, pause_every=0)

    for _ in range(5):
        await limiter.acquire()

    assert clock.sleeps == pytest.approx([0.1, 0.1, 0.1, 0.1])
    assert limiter.request_count == 5


@pytest.mark.asyncio
async def test_no_wait_when_requests_are_already_spaced_out():
    clock = FakeClock()
    limiter = make_limiter(clock, requests_per_second=10, pause_every=0)

    await limiter.acquire()
    clock.now += 2.0
    await limiter.acquire()

    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_adds_conservative_pause_every_n_requests():
    clock = FakeClock()
    limiter = make_limiter(clock, requests_per_second=100, pause_every=3, pause_seconds=0.5)

    for _ in range(4):
        await limiter.acquire()

    assert clock.sleeps == pytest.approx([0.01, 0.01, 0.5])
    assert limiter.stats()["total_delay_seconds"] == pytest.approx(0.52)


@pytest.mark.asyncio
async def test_rolling_window_caps_requests_per_second():
    clock = FakeClock()
    limiter = make_limiter(clock, requests_per_second=2.5, pause_every=0)

    for _ in range(3):
        await limiter.acquire()

    # Third request waits out the interval, then for the window's oldest entry to expire
    assert clock.sleeps == pytest.approx([0.4, 0.4, 0.2])


@pytest.mark.asyncio
async def test_reset_clears_counters():
    clock = FakeClock()
    limiter = make_limiter(clock, requests_per_second=10)
    await limiter.acquire()
    await limiter.acquire()

    limiter.reset()

    assert limiter.request_count == 0
    assert limiter.stats()["total_delay_seconds"] == 0.0
    await limiter.acquire()
    assert len(clock.sleeps) == 1


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(requests_per_second=0)
