"""
ticketflow Tickets and Envelopes

A Ticket is a named record of up to six optional text fields. Tickets are
sealed by encrypting every populated field under one key; sealing is
repeatable, and every seal adds one layer that must be removed again in
reverse order.

An Envelope is the unit exchanged between roles: an ordered set of tickets,
at most one per purpose.

Purposes and the fields they carry:

    request            subject_id, target_id, lifetime_end
    responseToClient   subject_id, issued_at, lifetime_end, key_material
    grantingTicket     subject_id, target_id, address, issued_at,
                       lifetime_end, key_material
    serviceTicket      same as grantingTicket
    request4NextHop    target_id
    authenticator      subject_id, address, issued_at
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, Tuple

import attrs
from attrs import field, validators

from ticketflow.core.crypto import CryptoProvider
from ticketflow.core.exceptions import CryptoError, DecryptionFailure, MalformedEnvelope
from ticketflow.core.types import SymmetricKey, format_time, parse_time


# =============================================================================
# TICKET
# =============================================================================


class Purpose(Enum):
    """Ticket names used on the wire."""

    REQUEST = "request"
    RESPONSE_TO_CLIENT = "responseToClient"
    GRANTING_TICKET = "grantingTicket"
    SERVICE_TICKET = "serviceTicket"
    REQUEST_FOR_NEXT_HOP = "request4NextHop"
    AUTHENTICATOR = "authenticator"


# Wire order of the ticket fields
FIELD_NAMES: Tuple[str, ...] = (
    "subject_id",
    "target_id",
    "address",
    "lifetime_end",
    "issued_at",
    "key_material",
)

_optional_text = validators.optional(validators.instance_of(str))


@attrs.define(frozen=True, slots=True)
class Ticket:
    """
    One named ticket.

    While ``layers > 0`` every populated field holds ciphertext.

    INVARIANT: all populated fields are encrypted under the same layers
    """

    purpose: Purpose = field(validator=validators.instance_of(Purpose))
    subject_id: Optional[str] = field(default=None, validator=_optional_text)
    target_id: Optional[str] = field(default=None, validator=_optional_text)
    address: Optional[str] = field(default=None, validator=_optional_text)
    lifetime_end: Optional[str] = field(default=None, validator=_optional_text)
    issued_at: Optional[str] = field(default=None, validator=_optional_text)
    key_material: Optional[str] = field(default=None, validator=_optional_text, repr=False)
    layers: int = field(default=0, validator=validators.ge(0))

    @property
    def is_sealed(self) -> bool:
        return self.layers > 0

    def populated(self) -> Dict[str, str]:
        """Populated fields by name, in wire order."""
        values = {}
        for name in FIELD_NAMES:
            value = getattr(self, name)
            if value is not None:
                values[name] = value
        return values

    def session_key(self) -> SymmetricKey:
        """
        Decode the embedded session key.

        Raises:
            DecryptionFailure: If the ticket is sealed, or the field is
                absent or does not decode to a key
        """
        self._require_plaintext("key_material")
        if self.key_material is None:
            raise DecryptionFailure(f"{self.purpose.value} carries no session key")
        try:
            return SymmetricKey.from_text(self.key_material)
        except CryptoError as e:
            raise DecryptionFailure(f"{self.purpose.value} key is unreadable: {e}") from e

    def time_field(self, name: str) -> datetime:
        """
        Parse a timestamp field (``lifetime_end`` or ``issued_at``).

        Raises:
            DecryptionFailure: If the ticket is sealed, or the field is
                absent or not a timestamp
        """
        self._require_plaintext(name)
        try:
            return parse_time(getattr(self, name))
        except ValueError as e:
            raise DecryptionFailure(f"{self.purpose.value}.{name} is unreadable: {e}") from e

    def _require_plaintext(self, name: str) -> None:
        if self.is_sealed:
            raise DecryptionFailure(
                f"{self.purpose.value}.{name} read while {self.layers} layer(s) applied"
            )


# =============================================================================
# BUILDERS
# =============================================================================


def build_request(subject_id: str, target_id: str, lifetime_end: datetime) -> Ticket:
    return Ticket(
        purpose=Purpose.REQUEST,
        subject_id=subject_id,
        target_id=target_id,
        lifetime_end=format_time(lifetime_end),
    )


def build_response_to_client(
    subject_id: str,
    issued_at: datetime,
    lifetime_end: datetime,
    session_key: SymmetricKey,
) -> Ticket:
    """The requester's copy of a freshly minted session key."""
    return Ticket(
        purpose=Purpose.RESPONSE_TO_CLIENT,
        subject_id=subject_id,
        issued_at=format_time(issued_at),
        lifetime_end=format_time(lifetime_end),
        key_material=session_key.to_text(),
    )


def build_key_delivery(subject_id: str, session_key: SymmetricKey) -> Ticket:
    """Bootstrap: a long-term key handed out by the responding role."""
    return Ticket(
        purpose=Purpose.RESPONSE_TO_CLIENT,
        subject_id=subject_id,
        key_material=session_key.to_text(),
    )


def build_forwarded_ticket(
    purpose: Purpose,
    subject_id: str,
    target_id: str,
    address: str,
    issued_at: datetime,
    lifetime_end: datetime,
    session_key: SymmetricKey,
) -> Ticket:
    """
    A granting or service ticket: the target's copy of the session key,
    bound to the client identity and address.
    """
    if purpose not in (Purpose.GRANTING_TICKET, Purpose.SERVICE_TICKET):
        raise ValueError(f"{purpose.value} is not a forwarded ticket")
    return Ticket(
        purpose=purpose,
        subject_id=subject_id,
        target_id=target_id,
        address=address,
        issued_at=format_time(issued_at),
        lifetime_end=format_time(lifetime_end),
        key_material=session_key.to_text(),
    )


def build_next_hop_request(target_id: str) -> Ticket:
    return Ticket(purpose=Purpose.REQUEST_FOR_NEXT_HOP, target_id=target_id)


def build_authenticator(subject_id: str, address: str, issued_at: datetime) -> Ticket:
    return Ticket(
        purpose=Purpose.AUTHENTICATOR,
        subject_id=subject_id,
        address=address,
        issued_at=format_time(issued_at),
    )


# =============================================================================
# SEALING
# =============================================================================


def _transform(ticket: Ticket, transform: Callable[[str], str], delta: int) -> Ticket:
    # Builds a new ticket; the input is never modified, so a failure part
    # way through leaves the caller's ticket as it was.
    values = {name: transform(value) for name, value in ticket.populated().items()}
    return attrs.evolve(ticket, layers=ticket.layers + delta, **values)


def seal_ticket(ticket: Ticket, key: SymmetricKey, provider: CryptoProvider) -> Ticket:
    """
    Encrypt every populated field under a symmetric key, adding one layer.

    Raises:
        CryptoError: If the provider fails to encrypt a field
    """
    return _transform(ticket, lambda value: provider.symmetric_encrypt(key, value), 1)


def unseal_ticket(ticket: Ticket, key: SymmetricKey, provider: CryptoProvider) -> Ticket:
    """
    Remove the outermost layer with a symmetric key.

    A wrong key either fails inside the cipher or yields garbage that fails
    when the fields are parsed; both surface as DecryptionFailure.

    Raises:
        DecryptionFailure: If the ticket is plaintext or a field fails to decrypt
    """
    if not ticket.is_sealed:
        raise DecryptionFailure(f"{ticket.purpose.value} is not encrypted")
    try:
        return _transform(ticket, lambda value: provider.symmetric_decrypt(key, value), -1)
    except CryptoError as e:
        raise DecryptionFailure(f"{ticket.purpose.value}: {e.message}") from e


def seal_ticket_for(ticket: Ticket, public_pem: bytes, provider: CryptoProvider) -> Ticket:
    """
    Encrypt every populated field under a public key.

    Raises:
        CryptoError: If a field is too long for the key or the key is unusable
    """
    return _transform(ticket, lambda value: provider.asymmetric_encrypt(public_pem, value), 1)


def unseal_ticket_with(ticket: Ticket, private_pem: bytes, provider: CryptoProvider) -> Ticket:
    """
    Remove the outermost layer with a private key.

    Raises:
        DecryptionFailure: If the ticket is plaintext or a field fails to decrypt
    """
    if not ticket.is_sealed:
        raise DecryptionFailure(f"{ticket.purpose.value} is not encrypted")
    try:
        return _transform(
            ticket, lambda value: provider.asymmetric_decrypt(private_pem, value), -1
        )
    except CryptoError as e:
        raise DecryptionFailure(f"{ticket.purpose.value}: {e.message}") from e


# =============================================================================
# ENVELOPE
# =============================================================================


@attrs.define
class Envelope:
    """
    Ordered collection of tickets, unique by purpose.

    Example:
        envelope = Envelope.of(build_request("Client", "TGS", lifetime_end))
        envelope.encrypt(Purpose.REQUEST, key, provider)
        request = envelope.get(Purpose.REQUEST)
    """

    _tickets: Dict[Purpose, Ticket] = attrs.Factory(dict)

    @classmethod
    def of(cls, *tickets: Ticket) -> Envelope:
        envelope = cls()
        for ticket in tickets:
            envelope.add(ticket)
        return envelope

    def add(self, ticket: Ticket) -> None:
        """
        Raises:
            MalformedEnvelope: If a ticket with the same purpose is present
        """
        if ticket.purpose in self._tickets:
            raise MalformedEnvelope(f"Duplicate ticket: {ticket.purpose.value}")
        self._tickets[ticket.purpose] = ticket

    def get(self, purpose: Purpose) -> Ticket:
        """
        Raises:
            MalformedEnvelope: If no ticket with this purpose is present
        """
        try:
            return self._tickets[purpose]
        except KeyError:
            raise MalformedEnvelope(f"Missing ticket: {purpose.value}") from None

    def find(self, purpose: Purpose) -> Optional[Ticket]:
        return self._tickets.get(purpose)

    def replace(self, ticket: Ticket) -> None:
        """Swap in a new version of a ticket that is already present."""
        self.get(ticket.purpose)
        self._tickets[ticket.purpose] = ticket

    def encrypt(self, purpose: Purpose, key: SymmetricKey, provider: CryptoProvider) -> None:
        self.replace(seal_ticket(self.get(purpose), key, provider))

    def decrypt(self, purpose: Purpose, key: SymmetricKey, provider: CryptoProvider) -> None:
        self.replace(unseal_ticket(self.get(purpose), key, provider))

    def encrypt_for(self, purpose: Purpose, public_pem: bytes, provider: CryptoProvider) -> None:
        self.replace(seal_ticket_for(self.get(purpose), public_pem, provider))

    def decrypt_with(self, purpose: Purpose, private_pem: bytes, provider: CryptoProvider) -> None:
        self.replace(unseal_ticket_with(self.get(purpose), private_pem, provider))

    @property
    def purposes(self) -> List[Purpose]:
        return list(self._tickets)

    def __contains__(self, purpose: object) -> bool:
        return purpose in self._tickets

    def __iter__(self) -> Iterator[Ticket]:
        return iter(list(self._tickets.values()))

    def __len__(self) -> int:
        return len(self._tickets)
