import asyncio
import unittest

from fakes import FakeClock, FakeRedis
from whatnext.services.rate_limit import RateLimitConfig, RateLimitExceeded, RateLimiter


def make_limiter(limit=3, clock=None, redis=None):
    return RateLimiter(
        "tmdb",
        RateLimitConfig(requests_per_window=limit, window_ms=1000),
        redis=redis or FakeRedis(),
        clock=clock or FakeClock(),
    )


class TestRateLimiter(unittest.TestCase):
    def test_admits_exactly_limit_per_window(self):
        limiter = make_limiter(limit=3)

        async def run():
            return [await limiter.acquire() for _ in range(5)]

        results = asyncio.run(run())
        self.assertEqual(results, [True, True, True, False, False])

    def test_concurrent_acquires_never_exceed_limit(self):
        limiter = make_limiter(limit=4)

        async def run():
            return await asyncio.gather(*[limiter.acquire() for _ in range(10)])

        self.assertEqual(sum(asyncio.run(run())), 4)

    def test_new_window_resets_budget(self):
        clock = FakeClock(now=500.0)
        limiter = make_limiter(limit=2, clock=clock)

        async def run():
            first = [await limiter.acquire() for _ in range(3)]
            clock.advance(1.0)
            second = [await limiter.acquire() for _ in range(3)]
            return first, second

        first, second = asyncio.run(run())
        self.assertEqual(first, [True, True, False])
        self.assertEqual(second, [True, True, False])

    def test_remaining_capacity(self):
        limiter = make_limiter(limit=5)

        async def run():
            before = await limiter.get_remaining_capacity()
            await limiter.acquire()
            await limiter.acquire()
            return before, await limiter.get_remaining_capacity()

        self.assertEqual(asyncio.run(run()), (5, 3))

    def test_window_key_uses_window_start(self):
        redis = FakeRedis()
        limiter = make_limiter(limit=5, clock=FakeClock(now=12.345), redis=redis)
        asyncio.run(limiter.acquire())
        self.assertIn("rate_limit:tmdb:12000", redis.store)

    def test_execute_raises_when_exhausted(self):
        limiter = make_limiter(limit=1)
        calls = []

        async def call():
            calls.append(1)
            return "ok"

        async def run():
            first = await limiter.execute(call)
            with self.assertRaises(RateLimitExceeded) as ctx:
                await limiter.execute(call)
            return first, ctx.exception

        first, exc = asyncio.run(run())
        self.assertEqual(first, "ok")
        self.assertEqual(len(calls), 1)
        self.assertEqual(exc.service, "tmdb")
        self.assertEqual(exc.status["remaining"], 0)

    def test_status_shape(self):
        limiter = make_limiter(limit=2, clock=FakeClock(now=10.2))
        status = asyncio.run(limiter.get_status())
        self.assertEqual(status["limit"], 2)
        self.assertEqual(status["remaining"], 2)
        self.assertAlmostEqual(status["reset_time"], 11.0)


if __name__ == "__main__":
    unittest.main()
