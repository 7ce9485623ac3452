from retroimprover.rate_limiter import SlidingWindowLimiter


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        return [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class FakeRedis:
    """Sorted-set subset used by the limiter."""

    def __init__(self):
        self.sets = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def zremrangebyscore(self, key, low, high):
        members = self.sets.get(key, {})
        for member, score in list(members.items()):
            if low <= score <= high:
                del members[member]

    def zcard(self, key):
        return len(self.sets.get(key, {}))

    def zrange(self, key, start, stop, withscores=False):
        ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start:stop + 1]

    def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    def expire(self, key, seconds):
        return True


class BrokenRedis:
    def pipeline(self, transaction=True):
        raise ConnectionError("redis is down")


def test_in_memory_window():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(None, max_requests=2, window_seconds=60, clock=clock)

    assert limiter.check("1.2.3.4") == (True, 1, 0)
    assert limiter.check("1.2.3.4") == (True, 0, 0)
    allowed, remaining, retry_after = limiter.check("1.2.3.4")
    assert (allowed, remaining) == (False, 0)
    assert 0 < retry_after <= 61
    assert limiter.check("5.6.7.8")[0]

    clock.now += 61
    assert limiter.check("1.2.3.4")[0]


def test_cleanup_drops_idle_windows():
    clock = FakeClock()
    limiter = SlidingWindowLimiter(None, max_requests=2, window_seconds=60, clock=clock)
    limiter.check("1.2.3.4")

    clock.now += 120
    limiter.cleanup_expired()

    assert limiter._request_log == {}


def test_redis_window():
    clock = FakeClock()
    redis = FakeRedis()
    limiter = SlidingWindowLimiter(redis, max_requests=2, window_seconds=60, clock=clock)

    assert limiter.check("1.2.3.4")[0]
    clock.now += 1
    assert limiter.check("1.2.3.4")[0]
    allowed, _, retry_after = limiter.check("1.2.3.4")
    assert not allowed
    assert retry_after == 60
    assert len(redis.sets["ratelimit:speculative:1.2.3.4"]) == 2

    clock.now += 60
    assert limiter.check("1.2.3.4")[0]


def test_redis_failure_falls_back_to_memory():
    limiter = SlidingWindowLimiter(BrokenRedis(), max_requests=1, window_seconds=60, clock=FakeClock())

    assert limiter.check("1.2.3.4")[0]
    assert not limiter.check("1.2.3.4")[0]
