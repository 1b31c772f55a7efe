"""
Property-based tests for ticket sealing.

Tests that selective field encryption keeps its layering guarantees
across many random tickets and keys.
"""

import pytest
from hypothesis import assume, given, settings, strategies as st

from ticketflow.core.crypto import DefaultCryptoProvider, decrypt_aes_cbc, encrypt_aes_cbc
from ticketflow.core.exceptions import DecryptionFailure
from ticketflow.core.types import EncryptionType, SymmetricKey
from ticketflow.kerberos.tickets import (
    FIELD_NAMES,
    Envelope,
    Purpose,
    Ticket,
    seal_ticket,
    unseal_ticket,
)
from ticketflow.transport.wire import decode_message, encode_message

provider = DefaultCryptoProvider()


# =============================================================================
# STRATEGIES
# =============================================================================

# Strategy for raw AES keys
aes_key_strategy = st.sampled_from([16, 32]).flatmap(
    lambda size: st.binary(min_size=size, max_size=size)
)

# Strategy for symmetric keys of either size
symmetric_key_strategy = st.sampled_from(list(EncryptionType)).flatmap(
    lambda enctype: st.binary(min_size=enctype.key_size, max_size=enctype.key_size).map(
        lambda material: SymmetricKey(material=material, enctype=enctype)
    )
)

# Strategy for ticket field values, including the empty string
field_value_strategy = st.one_of(st.none(), st.text(max_size=64))


@st.composite
def ticket_strategy(draw, purpose=None):
    """Any purpose with any subset of populated fields."""
    values = {name: draw(field_value_strategy) for name in FIELD_NAMES}
    return Ticket(purpose=purpose or draw(st.sampled_from(list(Purpose))), **values)


@st.composite
def envelope_strategy(draw):
    purposes = draw(st.lists(st.sampled_from(list(Purpose)), unique=True, max_size=len(Purpose)))
    return Envelope.of(*(draw(ticket_strategy(purpose=purpose)) for purpose in purposes))


# =============================================================================
# AES PROPERTIES
# =============================================================================


class TestAESProperties:
    """Property-based tests for AES-CBC."""

    @given(key=aes_key_strategy, plaintext=st.binary(max_size=512))
    @settings(max_examples=100)
    def test_encrypt_decrypt_roundtrip(self, key: bytes, plaintext: bytes):
        """Property: Decrypt(Encrypt(x)) == x for all x."""
        ciphertext, iv = encrypt_aes_cbc(key, plaintext)
        assert decrypt_aes_cbc(key, ciphertext, iv) == plaintext

    @given(key=symmetric_key_strategy, plaintext=st.text(max_size=256))
    @settings(max_examples=100)
    def test_provider_text_roundtrip(self, key: SymmetricKey, plaintext: str):
        """Property: the provider round-trips any text field."""
        assert provider.symmetric_decrypt(key, provider.symmetric_encrypt(key, plaintext)) == plaintext


# =============================================================================
# SEALING PROPERTIES
# =============================================================================


class TestSealingProperties:
    """Property-based tests for ticket seal/unseal."""

    @given(ticket=ticket_strategy(), key=symmetric_key_strategy)
    @settings(max_examples=100, deadline=None)
    def test_seal_unseal_roundtrip(self, ticket: Ticket, key: SymmetricKey):
        """Property: unseal(seal(t, k), k) == t."""
        assert unseal_ticket(seal_ticket(ticket, key, provider), key, provider) == ticket

    @given(ticket=ticket_strategy(), key=symmetric_key_strategy)
    @settings(max_examples=100, deadline=None)
    def test_seal_preserves_presence(self, ticket: Ticket, key: SymmetricKey):
        """Property: sealing never populates or drops a field."""
        sealed = seal_ticket(ticket, key, provider)
        assert set(sealed.populated()) == set(ticket.populated())
        assert sealed.layers == ticket.layers + 1

    @given(
        ticket=ticket_strategy(),
        keys=st.lists(symmetric_key_strategy, min_size=1, max_size=4),
    )
    @settings(max_examples=50, deadline=None)
    def test_layers_unwind_in_reverse(self, ticket: Ticket, keys):
        """Property: n seals are undone by n unseals in reverse key order."""
        sealed = ticket
        for key in keys:
            sealed = seal_ticket(sealed, key, provider)
        assert sealed.layers == len(keys)

        for key in reversed(keys):
            sealed = unseal_ticket(sealed, key, provider)
        assert sealed == ticket

    @given(
        ticket=ticket_strategy(),
        key=symmetric_key_strategy,
        wrong=symmetric_key_strategy,
    )
    @settings(max_examples=50, deadline=None)
    def test_wrong_key_never_yields_original(self, ticket: Ticket, key, wrong):
        """Property: a wrong key fails or at least never restores the ticket."""
        assume(key != wrong)
        assume(ticket.populated())
        sealed = seal_ticket(ticket, key, provider)
        try:
            opened = unseal_ticket(sealed, wrong, provider)
        except DecryptionFailure:
            return
        assert opened != ticket

    @given(ticket=ticket_strategy(), key=symmetric_key_strategy)
    @settings(max_examples=50, deadline=None)
    def test_plaintext_cannot_be_unsealed(self, ticket: Ticket, key):
        """Property: unsealing a zero-layer ticket always fails."""
        with pytest.raises(DecryptionFailure):
            unseal_ticket(ticket, key, provider)


# =============================================================================
# WIRE PROPERTIES
# =============================================================================


class TestWireProperties:
    """Property-based tests for the frame codec."""

    @given(envelope=envelope_strategy())
    @settings(max_examples=100)
    def test_envelope_survives_the_wire(self, envelope: Envelope):
        """Property: order, presence and values survive encoding."""
        decoded = decode_message(encode_message(envelope))
        assert decoded == envelope
        assert decoded.purposes == envelope.purposes
