import asyncio

import pytest

from kalina.ticker import Ticker


@pytest.mark.asyncio
async def test_ticker_counts_in_fixed_steps_until_cancelled():
    seen = []
    ticker = Ticker(0.01, seen.append).start()
    await asyncio.sleep(0.065)
    assert ticker.running is True
    ticker.cancel()
    count = len(seen)
    await asyncio.sleep(0.03)

    assert count >= 2
    assert len(seen) == count
    assert seen[:2] == [0.01, 0.02]
    assert ticker.running is False


@pytest.mark.asyncio
async def test_cancel_is_idempotent_and_safe_before_start():
    ticker = Ticker(0.01, lambda e: None)
    ticker.cancel()
    ticker.cancel()
    ticker.start()
    assert ticker.running is False


@pytest.mark.asyncio
async def test_failing_callback_stops_ticker():
    calls = []

    def boom(elapsed):
        calls.append(elapsed)
        raise RuntimeError("render failed")

    ticker = Ticker(0.01, boom).start()
    await asyncio.sleep(0.05)
    assert calls == [0.01]
    assert ticker.running is False
