"""
Unit tests for ticketflow.kerberos.tgs_exchange module.
"""

import pytest
from datetime import timedelta

from returns.result import Failure, Success

from ticketflow.core.exceptions import (
    DecryptionFailure,
    ExpiredTicket,
    IdentityMismatch,
    KeyNotFound,
    MalformedEnvelope,
    ReplayDetected,
)
from ticketflow.core.types import SymmetricKey
from ticketflow.kerberos.tickets import (
    Envelope,
    Purpose,
    build_authenticator,
    build_forwarded_ticket,
    build_next_hop_request,
    build_request,
    seal_ticket,
    unseal_ticket,
)

PEER = "127.0.0.1"


def obtain_granting_ticket(deployment):
    """Run the AS exchange; returns the forwarded ticket and the TGS session key."""
    clock = deployment.clock
    request = Envelope.of(build_request("Client", "TGS", clock() + timedelta(minutes=5)))
    reply = deployment.as_service.handle(request, PEER).unwrap()

    client_key = deployment.stores["Client"].get_symmetric_key("Client", "AS")
    granting = reply.get(Purpose.GRANTING_TICKET)
    if deployment.config.wrap_forwarded_tickets:
        granting = unseal_ticket(granting, client_key, deployment.as_service.provider)
    response = unseal_ticket(
        reply.get(Purpose.RESPONSE_TO_CLIENT), client_key, deployment.as_service.provider
    )
    return granting, response.session_key()


def tgs_request(deployment, granting, key, service="Server", subject="Client", address=PEER):
    authenticator = seal_ticket(
        build_authenticator(subject, address, deployment.clock()),
        key,
        deployment.tgs_service.provider,
    )
    return Envelope.of(granting, build_next_hop_request(service), authenticator)


class TestTGSIssue:
    """Tests for a successful TGS exchange."""

    def test_issues_service_ticket(self, deployment, provider):
        granting, key = obtain_granting_ticket(deployment)
        result = deployment.tgs_service.handle(tgs_request(deployment, granting, key), PEER)
        assert isinstance(result, Success)

        reply = result.unwrap()
        assert reply.purposes == [Purpose.RESPONSE_TO_CLIENT, Purpose.SERVICE_TICKET]

        response = unseal_ticket(reply.get(Purpose.RESPONSE_TO_CLIENT), key, provider)
        assert response.subject_id == "Server"

        server_key = deployment.stores["Server"].get_symmetric_key("Server", "TGS")
        ticket = unseal_ticket(reply.get(Purpose.SERVICE_TICKET), server_key, provider)
        assert (ticket.subject_id, ticket.target_id, ticket.address) == ("Client", "Server", PEER)
        assert ticket.session_key() == response.session_key()
        assert deployment.stores["TGS"].get_symmetric_key("Client", "Server") == ticket.session_key()

    def test_lifetime_capped_by_granting_ticket(self, deployment, provider):
        granting, key = obtain_granting_ticket(deployment)
        granting_end = deployment.clock() + timedelta(minutes=5)
        deployment.clock.advance(minutes=2)

        reply = deployment.tgs_service.handle(tgs_request(deployment, granting, key), PEER).unwrap()
        response = unseal_ticket(reply.get(Purpose.RESPONSE_TO_CLIENT), key, provider)
        assert response.time_field("lifetime_end") == granting_end

    def test_accepted_at_exact_lifetime_end(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        deployment.clock.advance(minutes=5)
        result = deployment.tgs_service.handle(tgs_request(deployment, granting, key), PEER)
        assert isinstance(result, Success)

    def test_wrapped_service_ticket(self, deployment_factory, provider):
        deployment = deployment_factory(wrap_forwarded_tickets=True)
        granting, key = obtain_granting_ticket(deployment)
        reply = deployment.tgs_service.handle(tgs_request(deployment, granting, key), PEER).unwrap()

        wrapped = reply.get(Purpose.SERVICE_TICKET)
        assert wrapped.layers == 2
        server_key = deployment.stores["Server"].get_symmetric_key("Server", "TGS")
        ticket = unseal_ticket(unseal_ticket(wrapped, key, provider), server_key, provider)
        assert ticket.target_id == "Server"

    def test_replay_cache_disabled(self, deployment_factory):
        deployment = deployment_factory(replay_cache_enabled=False)
        assert deployment.tgs_service.replay_cache is None
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key)
        assert isinstance(deployment.tgs_service.handle(request, PEER), Success)
        assert isinstance(deployment.tgs_service.handle(request, PEER), Success)


class TestTGSReject:
    """Tests for rejected TGS requests."""

    def test_expired_granting_ticket(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        deployment.clock.advance(minutes=5, seconds=1)
        error = deployment.tgs_service.handle(tgs_request(deployment, granting, key), PEER).failure()
        assert isinstance(error, ExpiredTicket)
        assert error.code == 32

    def test_subject_mismatch(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key, subject="Mallory")
        error = deployment.tgs_service.handle(request, PEER).failure()
        assert isinstance(error, IdentityMismatch)
        assert error.code == IdentityMismatch.BAD_MATCH

    def test_address_mismatch(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key, address="10.9.9.9")
        error = deployment.tgs_service.handle(request, PEER).failure()
        assert isinstance(error, IdentityMismatch)
        assert error.code == IdentityMismatch.BAD_ADDRESS

    def test_replayed_authenticator(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key)
        assert isinstance(deployment.tgs_service.handle(request, PEER), Success)
        assert isinstance(deployment.tgs_service.handle(request, PEER).failure(), ReplayDetected)

    def test_unknown_service(self, deployment):
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key, service="Printer")
        error = deployment.tgs_service.handle(request, PEER).failure()
        assert isinstance(error, KeyNotFound)
        assert deployment.tgs_service.replay_cache.size == 0

    def test_authenticator_under_wrong_key(self, deployment):
        granting, _ = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, SymmetricKey.generate())
        error = deployment.tgs_service.handle(request, PEER).failure()
        assert isinstance(error, DecryptionFailure)

    def test_granting_ticket_for_another_tgs(self, deployment, provider, clock):
        session_key = SymmetricKey.generate()
        forged = seal_ticket(
            build_forwarded_ticket(
                Purpose.GRANTING_TICKET,
                "Client",
                "OtherTGS",
                PEER,
                clock(),
                clock() + timedelta(minutes=5),
                session_key,
            ),
            deployment.stores["TGS"].get_symmetric_key("TGS", "AS"),
            provider,
        )
        error = deployment.tgs_service.handle(
            tgs_request(deployment, forged, session_key), PEER
        ).failure()
        assert isinstance(error, IdentityMismatch)
        assert error.code == IdentityMismatch.NOT_US

    def test_sealed_next_hop(self, deployment, provider):
        granting, key = obtain_granting_ticket(deployment)
        request = tgs_request(deployment, granting, key)
        request.encrypt(Purpose.REQUEST_FOR_NEXT_HOP, key, provider)
        assert isinstance(deployment.tgs_service.handle(request, PEER).failure(), MalformedEnvelope)

    def test_missing_authenticator(self, deployment):
        granting, _ = obtain_granting_ticket(deployment)
        request = Envelope.of(granting, build_next_hop_request("Server"))
        result = deployment.tgs_service.handle(request, PEER)
        assert isinstance(result, Failure)
        assert isinstance(result.failure(), MalformedEnvelope)

    def test_plaintext_granting_ticket(self, deployment, clock):
        session_key = SymmetricKey.generate()
        plain = build_forwarded_ticket(
            Purpose.GRANTING_TICKET,
            "Client",
            "TGS",
            PEER,
            clock(),
            clock() + timedelta(minutes=5),
            session_key,
        )
        error = deployment.tgs_service.handle(
            tgs_request(deployment, plain, session_key), PEER
        ).failure()
        assert isinstance(error, DecryptionFailure)
