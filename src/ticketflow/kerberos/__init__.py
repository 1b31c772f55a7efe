"""
ticketflow Kerberos Module

Ticket-based three-party authentication: the ticket model and the
request handlers of the three serving roles.

Components:
- tickets: Ticket/Envelope model and selective field encryption
- types: Protocol states, contexts and events
- validation: Lifetime, identity binding and replay checks
- replay_cache: Authenticator replay prevention
- as_exchange: Authentication role (granting tickets)
- tgs_exchange: Ticket-Granting role (service tickets)
- service: Protected service role (approvals)
- client: Client orchestrator (imported from ``ticketflow.kerberos.client``;
  it depends on the transport layer)
"""

from ticketflow.kerberos.tickets import (
    FIELD_NAMES,
    Envelope,
    Purpose,
    Ticket,
    build_authenticator,
    build_forwarded_ticket,
    build_key_delivery,
    build_next_hop_request,
    build_request,
    build_response_to_client,
    seal_ticket,
    seal_ticket_for,
    unseal_ticket,
    unseal_ticket_with,
)
from ticketflow.kerberos.types import (
    # Client state machine
    KerberosState,
    KerberosContext,
    SessionOutcome,
    # Service state machine
    ServiceState,
    ServiceContext,
)
from ticketflow.kerberos.replay_cache import AuthenticatorCache, AuthenticatorKey
from ticketflow.kerberos.as_exchange import AuthenticationService
from ticketflow.kerberos.tgs_exchange import TicketGrantingService
from ticketflow.kerberos.service import APPROVAL_SUBJECT, ServiceRole, ServiceStateMachine

__all__ = [
    # Tickets
    "FIELD_NAMES",
    "Envelope",
    "Purpose",
    "Ticket",
    "build_authenticator",
    "build_forwarded_ticket",
    "build_key_delivery",
    "build_next_hop_request",
    "build_request",
    "build_response_to_client",
    "seal_ticket",
    "seal_ticket_for",
    "unseal_ticket",
    "unseal_ticket_with",
    # States
    "KerberosState",
    "KerberosContext",
    "SessionOutcome",
    "ServiceState",
    "ServiceContext",
    # Replay cache
    "AuthenticatorCache",
    "AuthenticatorKey",
    # Roles
    "AuthenticationService",
    "TicketGrantingService",
    "ServiceRole",
    "ServiceStateMachine",
    "APPROVAL_SUBJECT",
]
