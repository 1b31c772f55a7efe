"""
ticketflow Core Types

Key value types and time helpers shared by every role.

Design Principles:
- Immutable: key types use frozen attrs
- Validated: key sizes enforced at construction
- Wire friendly: every value has a text form for ticket fields
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

import attrs
from attrs import field, validators

from ticketflow.core.exceptions import CryptoError


# =============================================================================
# ENUMS
# =============================================================================


class EncryptionType(Enum):
    """Symmetric cipher selection for session and long-term keys."""

    AES256_CBC = 256
    AES128_CBC = 128

    @property
    def key_size(self) -> int:
        """Return key size in bytes for this encryption type."""
        return self.value // 8

    @classmethod
    def for_key_size(cls, size: int) -> EncryptionType:
        for enctype in cls:
            if enctype.key_size == size:
                return enctype
        raise CryptoError(f"No encryption type with {size}-byte keys")


# =============================================================================
# KEYS
# =============================================================================


@attrs.define(frozen=True, slots=True)
class SymmetricKey:
    """
    Symmetric key shared by two roles.

    Long-term keys come out of the bootstrap exchange; session keys are
    minted by the AS and TGS for one leg of the protocol.

    INVARIANT: material length matches enctype requirements
    """

    material: bytes = field(validator=validators.instance_of(bytes), repr=False)
    enctype: EncryptionType = field(default=EncryptionType.AES256_CBC)

    def __attrs_post_init__(self) -> None:
        expected_size = self.enctype.key_size
        if len(self.material) != expected_size:
            raise ValueError(
                f"Key material must be {expected_size} bytes for {self.enctype.name}, "
                f"got {len(self.material)}"
            )

    @classmethod
    def generate(cls, enctype: EncryptionType = EncryptionType.AES256_CBC) -> SymmetricKey:
        """Generate a random key of the specified encryption type."""
        return cls(material=secrets.token_bytes(enctype.key_size), enctype=enctype)

    def to_text(self) -> str:
        """Base64 form carried in a ticket's key field."""
        return base64.b64encode(self.material).decode("ascii")

    @classmethod
    def from_text(cls, text: str) -> SymmetricKey:
        """
        Decode key material from a ticket field.

        Raises:
            CryptoError: If the text is not Base64 of a valid key size
        """
        try:
            material = base64.b64decode(text.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise CryptoError(f"Invalid key encoding: {e}") from e
        try:
            return cls(material=material, enctype=EncryptionType.for_key_size(len(material)))
        except ValueError as e:
            raise CryptoError(str(e)) from e

    def fingerprint(self) -> str:
        """Short non-secret identifier, safe to log."""
        return hashlib.sha256(self.material).hexdigest()[:12]


@attrs.define(frozen=True, slots=True)
class KeyPair:
    """
    Asymmetric key pair of one role, PEM encoded.

    Only the public half ever leaves the owning role.
    """

    public_pem: bytes = field(validator=validators.instance_of(bytes))
    private_pem: bytes = field(validator=validators.instance_of(bytes), repr=False)


def pair_name(owner: str, peer: str) -> str:
    """Storage name of the symmetric key ``owner`` shares with ``peer``."""
    return f"Symmetric-{owner}-{peer}"


# =============================================================================
# TIME
# =============================================================================


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(moment: datetime) -> str:
    """ISO-8601 UTC text used in ticket timestamp fields."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_time(text: Optional[str]) -> datetime:
    """
    Parse a ticket timestamp field.

    Raises:
        ValueError: If the field is absent or not ISO-8601
    """
    if text is None:
        raise ValueError("timestamp field is absent")
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment
