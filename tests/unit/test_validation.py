"""
Unit tests for ticketflow.kerberos.validation module.
"""

import pytest
from datetime import datetime, timedelta, timezone

from ticketflow.core.exceptions import (
    DecryptionFailure,
    ExpiredTicket,
    IdentityMismatch,
    ReplayDetected,
)
from ticketflow.core.types import SymmetricKey
from ticketflow.kerberos.replay_cache import AuthenticatorCache
from ticketflow.kerberos.tickets import (
    Purpose,
    Ticket,
    build_authenticator,
    build_forwarded_ticket,
)
from ticketflow.kerberos.validation import (
    check_binding,
    check_fresh,
    check_lifetime,
    check_target,
)

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
END = NOW + timedelta(minutes=5)


@pytest.fixture
def ticket():
    return build_forwarded_ticket(
        Purpose.SERVICE_TICKET,
        "Client",
        "Server",
        "127.0.0.1",
        NOW,
        END,
        SymmetricKey.generate(),
    )


class TestCheckLifetime:
    """Tests for lifetime checks."""

    def test_valid(self, ticket):
        assert check_lifetime(ticket, NOW) == END

    def test_boundary_accepted(self, ticket):
        assert check_lifetime(ticket, END) == END

    def test_expired(self, ticket):
        with pytest.raises(ExpiredTicket):
            check_lifetime(ticket, END + timedelta(microseconds=1))

    def test_missing_lifetime(self):
        with pytest.raises(DecryptionFailure):
            check_lifetime(Ticket(purpose=Purpose.SERVICE_TICKET), NOW)


class TestCheckTarget:
    """Tests for target checks."""

    def test_match(self, ticket):
        check_target(ticket, "Server")

    def test_mismatch(self, ticket):
        with pytest.raises(IdentityMismatch) as exc_info:
            check_target(ticket, "Printer")
        assert exc_info.value.code == IdentityMismatch.NOT_US

    def test_absent_target(self):
        with pytest.raises(IdentityMismatch):
            check_target(Ticket(purpose=Purpose.SERVICE_TICKET), "Server")


class TestCheckBinding:
    """Tests for authenticator/ticket binding."""

    def test_match(self, ticket):
        check_binding(build_authenticator("Client", "127.0.0.1", NOW), ticket)

    def test_subject_mismatch(self, ticket):
        with pytest.raises(IdentityMismatch) as exc_info:
            check_binding(build_authenticator("C1", "127.0.0.1", NOW), ticket)
        assert exc_info.value.code == IdentityMismatch.BAD_MATCH

    def test_address_mismatch(self, ticket):
        with pytest.raises(IdentityMismatch) as exc_info:
            check_binding(build_authenticator("Client", "127.0.0.2", NOW), ticket)
        assert exc_info.value.code == IdentityMismatch.BAD_ADDRESS

    def test_subject_checked_first(self, ticket):
        with pytest.raises(IdentityMismatch) as exc_info:
            check_binding(build_authenticator("C1", "127.0.0.2", NOW), ticket)
        assert exc_info.value.code == IdentityMismatch.BAD_MATCH

    def test_absent_values_never_match(self):
        empty = Ticket(purpose=Purpose.SERVICE_TICKET)
        with pytest.raises(IdentityMismatch):
            check_binding(Ticket(purpose=Purpose.AUTHENTICATOR), empty)


class TestCheckFresh:
    """Tests for replay checks."""

    def test_disabled(self):
        authenticator = build_authenticator("Client", "127.0.0.1", NOW)
        check_fresh(authenticator, None)
        check_fresh(authenticator, None)

    def test_replay(self):
        cache = AuthenticatorCache()
        authenticator = build_authenticator("Client", "127.0.0.1", NOW)
        check_fresh(authenticator, cache)
        with pytest.raises(ReplayDetected) as exc_info:
            check_fresh(authenticator, cache)
        assert exc_info.value.code == 34
