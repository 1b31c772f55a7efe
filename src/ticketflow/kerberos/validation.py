"""
ticketflow Ticket Validation

Checks shared by the TGS and Service roles. Each check raises the matching
error from ``core.exceptions``; handlers convert them to ``Failure`` at
their boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from ticketflow.core.crypto import constant_time_compare
from ticketflow.core.exceptions import ExpiredTicket, IdentityMismatch, ReplayDetected
from ticketflow.kerberos.replay_cache import AuthenticatorCache
from ticketflow.kerberos.tickets import Ticket

logger = structlog.get_logger()


def _same(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return constant_time_compare(a, b)


def check_lifetime(ticket: Ticket, now: datetime) -> datetime:
    """
    Accept a ticket iff ``now <= lifetime_end``.

    Returns:
        The parsed lifetime end

    Raises:
        ExpiredTicket: If the lifetime has elapsed
        DecryptionFailure: If the lifetime field is unreadable
    """
    lifetime_end = ticket.time_field("lifetime_end")
    if now > lifetime_end:
        logger.info(
            "ticket_expired",
            purpose=ticket.purpose.value,
            lifetime_end=ticket.lifetime_end,
        )
        raise ExpiredTicket(f"{ticket.purpose.value} expired at {ticket.lifetime_end}")
    return lifetime_end


def check_target(ticket: Ticket, expected: str) -> None:
    """
    Raises:
        IdentityMismatch: If the ticket was not issued for ``expected``
    """
    if not _same(ticket.target_id, expected):
        raise IdentityMismatch(
            f"{ticket.purpose.value} is for {ticket.target_id!r}, not {expected!r}",
            code=IdentityMismatch.NOT_US,
        )


def check_binding(authenticator: Ticket, ticket: Ticket) -> None:
    """
    Bind an authenticator to the ticket it accompanies.

    Raises:
        IdentityMismatch: If subject or address differ
    """
    if not _same(authenticator.subject_id, ticket.subject_id):
        raise IdentityMismatch(
            f"Authenticator subject {authenticator.subject_id!r} does not match "
            f"{ticket.purpose.value} subject {ticket.subject_id!r}",
            code=IdentityMismatch.BAD_MATCH,
        )
    if not _same(authenticator.address, ticket.address):
        raise IdentityMismatch(
            f"Authenticator address {authenticator.address!r} does not match "
            f"{ticket.purpose.value} address {ticket.address!r}",
            code=IdentityMismatch.BAD_ADDRESS,
        )


def check_fresh(authenticator: Ticket, cache: Optional[AuthenticatorCache]) -> None:
    """
    Record the authenticator; no-op when replay protection is disabled.

    Raises:
        ReplayDetected: If the authenticator was seen before
    """
    if cache is None:
        return
    if not cache.check_and_add(authenticator):
        raise ReplayDetected(
            f"Authenticator of {authenticator.subject_id!r} at "
            f"{authenticator.issued_at} was already presented"
        )
