"""
Sliding-window limiter and the rate-limit stage.
"""

import asyncio

from fastapi.testclient import TestClient

from core.rate_limit import SlidingWindowRateLimiter

MESSAGE = "Too many requests from this IP, please try again after 15 minutes"


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_window_blocks_then_recovers() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)

    async def scenario() -> None:
        results = [(await limiter.hit("10.0.0.1")).allowed for _ in range(4)]
        assert results == [True, True, True, False]

        clock.now = 30.0
        blocked = await limiter.hit("10.0.0.1")
        assert not blocked.allowed
        assert blocked.retry_after_seconds == 30

        clock.now = 60.0
        assert (await limiter.hit("10.0.0.1")).allowed

    asyncio.run(scenario())


def test_window_slides_per_hit() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=2, window_seconds=10, clock=clock)

    async def scenario() -> None:
        await limiter.hit("ip")
        clock.now = 5.0
        await limiter.hit("ip")
        clock.now = 10.5
        # first hit expired, second still inside the window
        decision = await limiter.hit("ip")
        assert decision.allowed
        assert decision.remaining == 0
        assert not (await limiter.hit("ip")).allowed

    asyncio.run(scenario())


def test_keys_are_independent() -> None:
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=FakeClock())

    async def scenario() -> None:
        assert (await limiter.hit("a")).allowed
        assert not (await limiter.hit("a")).allowed
        assert (await limiter.hit("b")).allowed
        await limiter.reset("a")
        assert (await limiter.hit("a")).allowed

    asyncio.run(scenario())


def test_concurrent_hits_never_exceed_limit() -> None:
    limiter = SlidingWindowRateLimiter(limit=10, window_seconds=60, clock=FakeClock())

    async def scenario() -> list[bool]:
        decisions = await asyncio.gather(*(limiter.hit("burst") for _ in range(50)))
        return [d.allowed for d in decisions]

    allowed = asyncio.run(scenario())
    assert allowed.count(True) == 10


def test_stale_keys_are_swept() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(limit=5, window_seconds=10, clock=clock)
    limiter.SWEEP_EVERY = 3

    async def scenario() -> None:
        await limiter.hit("old-1")
        await limiter.hit("old-2")
        clock.now = 100.0
        await limiter.hit("new")

    asyncio.run(scenario())
    assert limiter.tracked_keys() == 1


def test_101st_api_request_is_throttled(client: TestClient) -> None:
    for i in range(100):
        r = client.get("/api/v1/ping")
        assert r.status_code == 200, i
    r = client.get("/api/v1/ping")
    assert r.status_code == 429
    assert r.text == MESSAGE
    assert r.headers["content-type"].startswith("text/plain")
    assert int(r.headers["retry-after"]) > 0
    assert r.headers["x-ratelimit-remaining"] == "0"


def test_rate_limit_headers_count_down(client: TestClient) -> None:
    first = client.get("/api/v1/ping")
    second = client.get("/api/v1/ping")
    assert first.headers["x-ratelimit-limit"] == "100"
    assert first.headers["x-ratelimit-remaining"] == "99"
    assert second.headers["x-ratelimit-remaining"] == "98"


def test_unlimited_paths_are_not_counted(make_client) -> None:
    c = make_client(RATE_LIMIT_REQUESTS=2)
    for _ in range(5):
        assert c.get("/health").status_code == 200
    assert "x-ratelimit-limit" not in c.get("/health").headers
    assert c.get("/api/v1/ping").status_code == 200


def test_throttled_requests_skip_authentication(make_client) -> None:
    c = make_client(RATE_LIMIT_REQUESTS=1)
    assert c.get("/users").status_code == 401
    r = c.get("/users")
    assert r.status_code == 429
    assert r.text == MESSAGE


def test_clients_behind_trusted_proxy_are_told_apart(make_client) -> None:
    c = make_client(RATE_LIMIT_REQUESTS=1, TRUST_PROXY=True)
    assert c.get("/api/v1/ping", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
    assert c.get("/api/v1/ping", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 200
    assert c.get("/api/v1/ping", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429
