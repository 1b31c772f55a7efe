"""
Unit tests for ticketflow.kerberos.replay_cache module.
"""

import threading

import pytest
from datetime import datetime, timedelta, timezone

from ticketflow.kerberos.replay_cache import AuthenticatorCache, AuthenticatorKey
from ticketflow.kerberos.tickets import Purpose, Ticket, build_authenticator

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def authenticator(subject="Client", address="127.0.0.1", seconds=0):
    return build_authenticator(subject, address, NOW + timedelta(seconds=seconds))


@pytest.fixture
def cache(clock):
    return AuthenticatorCache(window=timedelta(minutes=5), clock=clock)


class TestAuthenticatorKey:
    """Tests for AuthenticatorKey."""

    def test_from_ticket(self):
        key = AuthenticatorKey.from_ticket(authenticator())
        assert key.subject_id == "Client"
        assert key.address == "127.0.0.1"
        assert key.issued_at == "2024-01-01T12:00:00+00:00"

    def test_absent_fields(self):
        key = AuthenticatorKey.from_ticket(Ticket(purpose=Purpose.AUTHENTICATOR))
        assert key == AuthenticatorKey(subject_id="", address="", issued_at="")


class TestAuthenticatorCache:
    """Tests for AuthenticatorCache."""

    def test_first_seen_is_fresh(self, cache):
        assert cache.check_and_add(authenticator())
        assert cache.size == 1

    def test_repeat_is_replay(self, cache):
        cache.check_and_add(authenticator())
        assert not cache.check_and_add(authenticator())
        assert cache.size == 1

    @pytest.mark.parametrize(
        "other",
        [
            authenticator(subject="C1"),
            authenticator(address="10.0.0.1"),
            authenticator(seconds=1),
        ],
    )
    def test_any_differing_component_is_fresh(self, cache, other):
        cache.check_and_add(authenticator())
        assert cache.check_and_add(other)

    def test_is_replay_does_not_record(self, cache):
        assert not cache.is_replay(authenticator())
        assert cache.size == 0
        cache.check_and_add(authenticator())
        assert cache.is_replay(authenticator())

    def test_cleanup_keeps_recent_entries(self, cache, clock):
        cache.check_and_add(authenticator())
        clock.advance(minutes=9)
        assert cache.cleanup_expired() == 0
        assert cache.size == 1

    def test_cleanup_removes_entries_past_twice_window(self, cache, clock):
        cache.check_and_add(authenticator())
        clock.advance(minutes=11)
        assert cache.cleanup_expired() == 1
        assert cache.size == 0

    def test_overflow_triggers_cleanup(self, clock):
        cache = AuthenticatorCache(window=timedelta(minutes=5), max_entries=2, clock=clock)
        cache.check_and_add(authenticator(seconds=1))
        cache.check_and_add(authenticator(seconds=2))
        clock.advance(minutes=11)
        cache.check_and_add(authenticator(seconds=3))
        assert cache.size == 1

    def test_clear(self, cache):
        cache.check_and_add(authenticator())
        cache.check_and_add(authenticator(seconds=1))
        assert cache.clear() == 2
        assert cache.size == 0

    def test_stats(self, cache):
        cache.check_and_add(authenticator())
        assert cache.get_stats() == {"size": 1, "max_entries": 10000, "window_seconds": 300}

    def test_concurrent_duplicates_accepted_once(self, cache):
        results = []
        lock = threading.Lock()

        def present():
            fresh = cache.check_and_add(authenticator())
            with lock:
                results.append(fresh)

        threads = [threading.Thread(target=present) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1
