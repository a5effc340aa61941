import pytest

from campaign_queue.persistence import Persistence
from campaign_queue.rate_limit import RateLimiter

async def make_limiter(tmp_path):
    p = Persistence(str(tmp_path / "limits.db"))
    await p.init_db()
    return p, RateLimiter(p)

@pytest.mark.asyncio
async def test_minute_limit_blocks_until_window_slides(tmp_path):
    p, limiter = await make_limiter(tmp_path)
    server = {"id": "s1", "limit_per_minute": 2}
    now = 10_000

    assert await limiter.check_and_increment(server, now) is True
    assert await limiter.check_and_increment(server, now + 1) is True
    assert await limiter.check_and_increment(server, now + 2) is False
    assert await limiter.exceeded_window(server, now + 2) == "limit_per_minute"

    # both attempts have left the 60 s window
    assert await limiter.can_send(server, now + 62) is True
    assert await p.count_sends_since("s1", 0) == 2

@pytest.mark.asyncio
async def test_rate_limiter_ignores_zero_and_missing_limits(tmp_path):
    p, limiter = await make_limiter(tmp_path)
    server = {"id": "s0", "limit_per_minute": 0, "limit_per_hour": None}
    for offset in range(5):
        assert await limiter.check_and_increment(server, 1000 + offset) is True

@pytest.mark.asyncio
async def test_rate_limiter_hour_and_day(tmp_path):
    p, limiter = await make_limiter(tmp_path)
    now = 86_400 * 3
    await p.log_send("s2", now - 10)
    await p.log_send("s2", now - 3500)
    await p.log_send("s2", now - 86000)

    server = {"id": "s2", "limit_per_hour": 2, "limit_per_day": 4}
    assert await limiter.exceeded_window(server, now) == "limit_per_hour"

    server["limit_per_hour"] = None
    assert await limiter.can_send(server, now) is True
    server["limit_per_day"] = 3
    assert await limiter.exceeded_window(server, now) == "limit_per_day"

@pytest.mark.asyncio
async def test_denied_check_records_nothing(tmp_path):
    p, limiter = await make_limiter(tmp_path)
    server = {"id": "s3", "limit_per_minute": 1}
    await limiter.check_and_increment(server, 500)
    await limiter.check_and_increment(server, 501)
    assert await p.count_sends_since("s3", 0) == 1

@pytest.mark.asyncio
async def test_check_defaults_to_wall_clock(tmp_path, monkeypatch):
    p, limiter = await make_limiter(tmp_path)
    monkeypatch.setattr("campaign_queue.rate_limit.time.time", lambda: 5000.0)
    assert await limiter.check_and_increment({"id": "s4"}) is True
    assert await p.count_sends_since("s4", 4999) == 1
    assert await p.count_sends_since("s4", 5000) == 0
