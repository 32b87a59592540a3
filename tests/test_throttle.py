import asyncio

import pytest

from clipchain.workflow.throttle import AdaptiveThrottle


@pytest.mark.asyncio
async def test_throttle_bounds_concurrency() -> None:
    throttle = AdaptiveThrottle(max_concurrent=2)
    peak = 0

    async def worker():
        nonlocal peak
        async with throttle:
            peak = max(peak, throttle.active)
            await asyncio.sleep(0)

    await asyncio.gather(*(worker() for _ in range(6)))

    assert peak == 2
    assert throttle.active == 0


@pytest.mark.asyncio
async def test_quota_halves_limit_down_to_minimum() -> None:
    throttle = AdaptiveThrottle(max_concurrent=8, min_concurrent=1)

    assert throttle.on_quota_exceeded() == 4
    assert throttle.on_quota_exceeded() == 2
    assert throttle.on_quota_exceeded() == 1
    assert throttle.on_quota_exceeded() == 1


@pytest.mark.asyncio
async def test_successes_restore_limit_gradually() -> None:
    throttle = AdaptiveThrottle(max_concurrent=3, recovery_successes=2)
    throttle.on_quota_exceeded()
    assert throttle.limit == 1

    await throttle.on_success()
    assert throttle.limit == 1
    await throttle.on_success()
    assert throttle.limit == 2
    for _ in range(10):
        await throttle.on_success()
    assert throttle.limit == 3


def test_invalid_bounds_are_rejected() -> None:
    with pytest.raises(ValueError):
        AdaptiveThrottle(max_concurrent=1, min_concurrent=2)
