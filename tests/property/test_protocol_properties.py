"""
Property-based tests for protocol invariants.

Tests that the serving roles keep lifetime, identity binding and replay
guarantees across many random inputs.
"""

import pytest
from hypothesis import assume, given, settings, strategies as st
from datetime import datetime, timedelta, timezone

from returns.result import Success

from ticketflow.core.config import ProtocolConfig
from ticketflow.core.crypto import DefaultCryptoProvider
from ticketflow.core.exceptions import ExpiredTicket, IdentityMismatch
from ticketflow.core.types import SymmetricKey
from ticketflow.kerberos.as_exchange import AuthenticationService
from ticketflow.kerberos.replay_cache import AuthenticatorCache
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    build_authenticator,
    build_forwarded_ticket,
    build_request,
    unseal_ticket,
)
from ticketflow.kerberos.validation import check_binding, check_lifetime
from ticketflow.storage.keystore import InMemoryKeyStore

provider = DefaultCryptoProvider()

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# STRATEGIES
# =============================================================================

# Strategy for role identities
identity_strategy = st.from_regex(r"[A-Za-z][A-Za-z0-9_\-]{0,19}", fullmatch=True)

# Strategy for IPv4 addresses
address_strategy = st.tuples(*[st.integers(min_value=0, max_value=255)] * 4).map(
    lambda octets: ".".join(str(o) for o in octets)
)

# Strategy for grant windows between one second and a day
window_strategy = st.integers(min_value=1, max_value=86400).map(lambda s: timedelta(seconds=s))

# Strategy for offsets from now, past and future
offset_strategy = st.integers(min_value=-86400, max_value=7 * 86400).map(
    lambda s: timedelta(seconds=s)
)


def forwarded_ticket(subject="Client", address="127.0.0.1", lifetime_end=None):
    return build_forwarded_ticket(
        Purpose.SERVICE_TICKET,
        subject,
        "Server",
        address,
        NOW,
        lifetime_end or NOW + timedelta(minutes=5),
        SymmetricKey.generate(),
    )


# =============================================================================
# LIFETIME PROPERTIES
# =============================================================================


class TestLifetimeProperties:
    """Property-based tests for ticket lifetimes."""

    @given(requested=offset_strategy, window=window_strategy)
    @settings(max_examples=50, deadline=None)
    def test_as_lifetime_is_now_plus_window(self, requested, window):
        """Property: AS lifetime == now + window, whatever the request asks for."""
        client_key, tgs_key = SymmetricKey.generate(), SymmetricKey.generate()
        store = InMemoryKeyStore()
        store.put_symmetric_key("AS", "Client", client_key)
        store.put_symmetric_key("AS", "TGS", tgs_key)
        service = AuthenticationService(
            key_store=store,
            config=ProtocolConfig(grant_window=window),
            provider=provider,
            clock=lambda: NOW,
        )

        result = service.handle(Envelope.of(build_request("Client", "TGS", NOW + requested)), "127.0.0.1")
        assert isinstance(result, Success)
        response = unseal_ticket(result.unwrap().get(Purpose.RESPONSE_TO_CLIENT), client_key, provider)
        assert response.time_field("lifetime_end") == NOW + window
        granting = unseal_ticket(result.unwrap().get(Purpose.GRANTING_TICKET), tgs_key, provider)
        assert granting.time_field("lifetime_end") == NOW + window

    @given(lifetime=offset_strategy, elapsed=offset_strategy)
    @settings(max_examples=200)
    def test_accepted_iff_not_past_lifetime(self, lifetime, elapsed):
        """Property: a ticket is accepted exactly while now <= lifetime_end."""
        ticket = forwarded_ticket(lifetime_end=NOW + lifetime)
        now = NOW + elapsed
        if now <= NOW + lifetime:
            assert check_lifetime(ticket, now) == NOW + lifetime
        else:
            with pytest.raises(ExpiredTicket):
                check_lifetime(ticket, now)


# =============================================================================
# IDENTITY BINDING PROPERTIES
# =============================================================================


class TestBindingProperties:
    """Property-based tests for authenticator binding."""

    @given(subject=identity_strategy, address=address_strategy)
    @settings(max_examples=100)
    def test_matching_authenticator_accepted(self, subject, address):
        """Property: an authenticator naming the ticket's subject and address binds."""
        check_binding(build_authenticator(subject, address, NOW), forwarded_ticket(subject, address))

    @given(
        subject=identity_strategy,
        other_subject=identity_strategy,
        address=address_strategy,
        other_address=address_strategy,
    )
    @settings(max_examples=100)
    def test_mismatch_rejected(self, subject, other_subject, address, other_address):
        """Property: any differing subject or address is rejected."""
        assume(subject != other_subject or address != other_address)
        ticket = forwarded_ticket(subject, address)
        with pytest.raises(IdentityMismatch) as exc_info:
            check_binding(build_authenticator(other_subject, other_address, NOW), ticket)

        expected = (
            IdentityMismatch.BAD_MATCH if subject != other_subject else IdentityMismatch.BAD_ADDRESS
        )
        assert exc_info.value.code == expected


# =============================================================================
# REPLAY PROPERTIES
# =============================================================================


class TestReplayProperties:
    """Property-based tests for the replay cache."""

    @given(
        presented=st.lists(
            st.tuples(
                st.sampled_from(["Client", "C1"]),
                st.sampled_from(["127.0.0.1", "10.0.0.1"]),
                st.integers(min_value=0, max_value=3),
            ),
            max_size=30,
        )
    )
    @settings(max_examples=100)
    def test_each_authenticator_accepted_once(self, presented):
        """Property: check_and_add is True exactly on first occurrence."""
        cache = AuthenticatorCache(clock=lambda: NOW)
        seen = set()
        for subject, address, seconds in presented:
            authenticator = build_authenticator(subject, address, NOW + timedelta(seconds=seconds))
            fresh = (subject, address, seconds) not in seen
            assert cache.check_and_add(authenticator) is fresh
            seen.add((subject, address, seconds))
        assert cache.size == len(seen)
