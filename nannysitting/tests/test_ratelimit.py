import unittest

from nannysitting.agency.errors import RateLimitExceeded
from nannysitting.agency.ratelimit import MemoryStore, RateLimiter, RedisStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """Implements the three commands RedisStore relies on."""

    def __init__(self) -> None:
        self.values: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    def incr(self, name: str) -> int:
        self.values[name] = self.values.get(name, 0) + 1
        return self.values[name]

    def ttl(self, name: str) -> int:
        return self.ttls.get(name, -1)

    def expire(self, name: str, seconds: int) -> bool:
        self.ttls[name] = seconds
        return True


class RateLimiterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(MemoryStore(clock=self.clock), limit=2, window_seconds=60)

    def test_window_allows_limit_then_refuses(self) -> None:
        self.assertEqual(self.limiter.hit("contact:1.2.3.4"), 1)
        self.assertEqual(self.limiter.hit("contact:1.2.3.4"), 0)
        self.clock.now += 20
        with self.assertRaises(RateLimitExceeded) as ctx:
            self.limiter.hit("contact:1.2.3.4")
        self.assertEqual(ctx.exception.retry_after, 40)

    def test_keys_are_independent(self) -> None:
        self.limiter.hit("a")
        self.limiter.hit("a")
        self.assertEqual(self.limiter.hit("b"), 1)

    def test_window_resets_after_expiry(self) -> None:
        self.limiter.hit("a")
        self.limiter.hit("a")
        self.clock.now += 61
        self.assertEqual(self.limiter.hit("a"), 1)

    def test_invalid_configuration(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(MemoryStore(), limit=0)


class RedisStoreTestCase(unittest.TestCase):
    def test_expiry_is_set_once(self) -> None:
        client = FakeRedis()
        store = RedisStore(client)
        self.assertEqual(store.increment("contact:x", 3600), (1, 3600))
        client.ttls["ratelimit:contact:x"] = 1200
        self.assertEqual(store.increment("contact:x", 3600), (2, 1200))

    def test_missing_expiry_is_repaired(self) -> None:
        client = FakeRedis()
        client.values["ratelimit:k"] = 4
        store = RedisStore(client)
        self.assertEqual(store.increment("k", 60), (5, 60))
        self.assertEqual(client.ttls["ratelimit:k"], 60)

    def test_limiter_over_redis(self) -> None:
        limiter = RateLimiter(RedisStore(FakeRedis()), limit=1, window_seconds=30)
        limiter.hit("k")
        with self.assertRaises(RateLimitExceeded):
            limiter.hit("k")


if __name__ == "__main__":
    unittest.main()
