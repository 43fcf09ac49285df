import threading

import pytest

from workboard.errors import AuthError
from workboard.remote.cache import SessionCache
from workboard.remote.session import SSHIdentity

from conftest import FakeOpener


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def cache(opener, timers):
    return SessionCache(opener, ttl=60, timer_factory=timers)


def test_identity_equality_ignores_passphrase():
    a = SSHIdentity(host="h", username="u", key_path="/k", passphrase="one")
    b = SSHIdentity(host="h", username="u", key_path="/k", passphrase="two")
    assert a == b
    assert hash(a) == hash(b)
    assert "one" not in repr(a)


def test_acquire_reuses_live_session(cache, opener, identity):
    s1 = cache.acquire(identity)
    s2 = cache.acquire(identity)
    assert s1 is s2
    assert len(opener.opened) == 1
    assert len(cache) == 1


def test_distinct_keys_get_distinct_sessions(cache, opener, identity):
    other = SSHIdentity(host="cluster", username="bob")
    assert cache.acquire(identity) is not cache.acquire(other)
    assert len(opener.opened) == 2


def test_acquire_restarts_idle_timer(cache, timers, identity):
    cache.acquire(identity)
    first = timers.last
    cache.acquire(identity)
    assert first.cancelled
    assert timers.last is not first
    assert timers.last.started
    assert timers.last.delay == 60


def test_open_failure_raises_auth_error_and_caches_nothing(cache, opener, identity):
    opener.fail_with = OSError("connection refused")
    with pytest.raises(AuthError):
        cache.acquire(identity)
    assert identity not in cache

    opener.fail_with = None
    cache.acquire(identity)
    assert identity in cache


def test_open_auth_error_passes_through(cache, opener, identity):
    opener.fail_with = AuthError("bad key")
    with pytest.raises(AuthError, match="bad key"):
        cache.acquire(identity)


def test_dead_session_is_replaced(cache, opener, identity):
    s1 = cache.acquire(identity)
    s1.active = False
    s2 = cache.acquire(identity)
    assert s2 is not s1
    assert s1.closed == 1


def test_idle_expiry_disposes_exactly_once(cache, timers, identity):
    session = cache.acquire(identity)
    timer = timers.last
    timer.fire()
    assert identity not in cache
    assert session.closed == 1

    timer.fire()
    assert session.closed == 1


def test_stale_timer_does_not_dispose_reacquired_session(cache, timers, identity):
    session = cache.acquire(identity)
    stale = timers.last
    cache.acquire(identity)
    # the old timer fires anyway (cancel raced the callback)
    stale.fire()
    assert identity in cache
    assert session.closed == 0

    timers.last.fire()
    assert identity not in cache
    assert session.closed == 1


def test_release_or_expire_reschedules(cache, timers, identity):
    cache.acquire(identity)
    before = timers.last
    cache.release_or_expire(identity, ttl=5)
    assert before.cancelled
    assert timers.last.delay == 5
    before.fire()
    assert identity in cache


def test_release_or_expire_unknown_key_is_noop(cache, timers, identity):
    cache.release_or_expire(identity, ttl=5)
    assert timers.timers == []


def test_evict_is_idempotent(cache, timers, identity):
    session = cache.acquire(identity)
    cache.evict(identity)
    cache.evict(identity)
    assert session.closed == 1
    assert timers.last.cancelled
    assert identity not in cache


def test_close_errors_are_swallowed(cache, identity, caplog):
    session = cache.acquire(identity)
    session.close_error = RuntimeError("socket already gone")
    cache.evict(identity)
    assert identity not in cache
    assert "socket already gone" in caplog.text


def test_context_manager_clears(opener, timers, identity):
    other = SSHIdentity(host="cluster", username="bob")
    with SessionCache(opener, timer_factory=timers) as cache:
        cache.acquire(identity)
        cache.acquire(other)
    assert len(cache) == 0
    assert all(s.closed == 1 for s in opener.opened)


def test_concurrent_acquire_opens_one_session(opener, identity):
    cache = SessionCache(opener, ttl=60)
    barrier = threading.Barrier(8)
    got = []

    def worker():
        barrier.wait()
        got.append(cache.acquire(identity))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    cache.clear()

    assert len(opener.opened) == 1
    assert all(s is got[0] for s in got)


def test_evict_spares_a_reopened_session(cache, identity):
    stale = cache.acquire(identity)
    cache.evict(identity)
    fresh = cache.acquire(identity)

    cache.evict(identity, stale)

    assert identity in cache
    assert fresh.closed == 0
    cache.evict(identity, fresh)
    assert identity not in cache


def test_key_locks_do_not_accumulate(cache, identity):
    for n in range(5):
        key = SSHIdentity(host="cluster", username=f"user{n}")
        cache.acquire(key)
        cache.evict(key)
    cache.release_or_expire(identity)
    assert cache._locks == {}
