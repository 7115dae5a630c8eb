import threading

import pytest

from pixelpress.errors import ConflictError
from pixelpress.security import FixedWindowRateLimiter, InMemoryLockRegistry, client_identity, limiter_key


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_allows_up_to_limit_then_rejects():
    limiter = FixedWindowRateLimiter(clock=FakeClock())
    allowed = [limiter.check("k", 3, 60) for _ in range(4)]
    assert allowed == [True, True, True, False]


def test_rate_limiter_new_window_resets_count():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(clock=clock)
    for _ in range(3):
        limiter.check("k", 2, 60)
    assert limiter.check("k", 2, 60) is False
    clock.now += 60
    assert limiter.check("k", 2, 60) is True


def test_rate_limiter_counts_keys_independently():
    limiter = FixedWindowRateLimiter(clock=FakeClock())
    assert limiter.check("a", 1, 60) is True
    assert limiter.check("a", 1, 60) is False
    assert limiter.check("b", 1, 60) is True


def test_rate_limiter_window_boundary_burst_is_accepted():
    clock = FakeClock()
    limiter = FixedWindowRateLimiter(clock=clock)
    clock.now += 59.9
    assert all(limiter.check("k", 5, 60) for _ in range(5))
    clock.now += 60
    assert all(limiter.check("k", 5, 60) for _ in range(5))


def test_lock_registry_exactly_one_concurrent_acquire_wins():
    locks = InMemoryLockRegistry()
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(locks.acquire("pp:conversion:x"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1
    locks.release("pp:conversion:x")
    assert locks.acquire("pp:conversion:x") is True


def test_lock_registry_held_raises_conflict_and_releases():
    locks = InMemoryLockRegistry()
    with locks.held("pp:zip:s"):
        assert locks.is_held("pp:zip:s")
        with pytest.raises(ConflictError):
            with locks.held("pp:zip:s"):
                pass
    assert not locks.is_held("pp:zip:s")


def test_client_identity_prefers_first_forwarded_hop():
    headers = {"X-Forwarded-For": "203.0.113.9, 10.0.0.1", "X-Real-IP": "10.0.0.2"}
    assert client_identity(headers, "127.0.0.1") == "203.0.113.9"


def test_client_identity_falls_back_to_peer_then_user_agent():
    assert client_identity({"cf-connecting-ip": "198.51.100.4"}) == "198.51.100.4"
    assert client_identity({}, "127.0.0.1") == "127.0.0.1"
    ua = client_identity({"User-Agent": "curl/8"})
    assert ua.startswith("ua:")
    assert ua == client_identity({"user-agent": "curl/8"})


def test_limiter_key_scopes_by_session_when_given():
    assert limiter_key("pp:progress", "1.2.3.4") == "pp:progress:1.2.3.4"
    assert limiter_key("pp:progress", "1.2.3.4", "sid") == "pp:progress:1.2.3.4:sid"
