"""
ticketflow Cryptographic Operations

Wrapper around the cryptography library for the operations the protocol
needs. Uses established primitives only - no custom cryptography.

The protocol talks to a ``CryptoProvider``; ``DefaultCryptoProvider`` is the
stock implementation:
- Symmetric: AES-CBC with PKCS7 padding and a random IV per field
- Asymmetric: RSA-2048 with OAEP/SHA-256
- Ciphertext travels as Base64 text so it fits in ticket fields
"""

from __future__ import annotations

import base64
import binascii
import hmac
import secrets
from abc import ABC, abstractmethod
from typing import Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, padding, serialization
from cryptography.hazmat.primitives.asymmetric import padding as asym_padding
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from ticketflow.core.exceptions import CryptoError
from ticketflow.core.types import EncryptionType, KeyPair, SymmetricKey

IV_SIZE = 16
RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537


# =============================================================================
# ENCRYPTION / DECRYPTION
# =============================================================================


def encrypt_aes_cbc(key: bytes, plaintext: bytes, iv: bytes | None = None) -> Tuple[bytes, bytes]:
    """
    Encrypt using AES in CBC mode.

    Args:
        key: Encryption key (16 or 32 bytes)
        plaintext: Data to encrypt
        iv: Initialization vector (generated if not provided)

    Returns:
        Tuple of (ciphertext, iv)
    """
    if iv is None:
        iv = secrets.token_bytes(IV_SIZE)

    padder = padding.PKCS7(128).padder()
    padded_data = padder.update(plaintext) + padder.finalize()

    cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
    encryptor = cipher.encryptor()
    ciphertext = encryptor.update(padded_data) + encryptor.finalize()

    return ciphertext, iv


def decrypt_aes_cbc(key: bytes, ciphertext: bytes, iv: bytes) -> bytes:
    """
    Decrypt using AES in CBC mode.

    A wrong key usually fails the padding check; when it does not, the
    result is garbage that the caller's parsing rejects.

    Raises:
        CryptoError: If decryption or unpadding fails
    """
    try:
        cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
        decryptor = cipher.decryptor()
        padded_data = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded_data) + unpadder.finalize()
    except Exception as e:
        raise CryptoError(f"Decryption failed: {e}") from e


def generate_rsa_key_pair(key_size: int = RSA_KEY_SIZE) -> KeyPair:
    """Generate an RSA key pair, PEM encoded (SubjectPublicKeyInfo / PKCS8)."""
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=key_size,
    )
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return KeyPair(public_pem=public_pem, private_pem=private_pem)


def _oaep() -> asym_padding.OAEP:
    return asym_padding.OAEP(
        mgf=asym_padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def encrypt_rsa_oaep(public_pem: bytes, plaintext: bytes) -> bytes:
    """
    Encrypt a short message with an RSA public key.

    Raises:
        CryptoError: If the key cannot be loaded or the message is too long
    """
    try:
        public_key = serialization.load_pem_public_key(public_pem)
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise CryptoError("Public key is not an RSA key")
        return public_key.encrypt(plaintext, _oaep())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Public key encryption failed: {e}") from e


def decrypt_rsa_oaep(private_pem: bytes, ciphertext: bytes) -> bytes:
    """
    Decrypt with an RSA private key.

    Raises:
        CryptoError: If the key cannot be loaded or decryption fails
    """
    try:
        private_key = serialization.load_pem_private_key(private_pem, password=None)
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CryptoError("Private key is not an RSA key")
        return private_key.decrypt(ciphertext, _oaep())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"Private key decryption failed: {e}") from e


# =============================================================================
# TEXT ENCODING
# =============================================================================


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(text: str) -> bytes:
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise CryptoError(f"Ciphertext is not valid Base64: {e}") from e


def _utf8(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise CryptoError(f"Decrypted data is not valid UTF-8: {e}") from e


# =============================================================================
# PROVIDER
# =============================================================================


class CryptoProvider(ABC):
    """
    Pluggable crypto operations used by tickets and the bootstrap exchange.

    All encrypt/decrypt methods work on text: ticket fields are strings and
    ciphertext is carried as Base64 text.
    """

    @abstractmethod
    def generate_symmetric_key(self) -> SymmetricKey:
        ...

    @abstractmethod
    def generate_key_pair(self) -> KeyPair:
        ...

    @abstractmethod
    def symmetric_encrypt(self, key: SymmetricKey, plaintext: str) -> str:
        ...

    @abstractmethod
    def symmetric_decrypt(self, key: SymmetricKey, ciphertext: str) -> str:
        ...

    @abstractmethod
    def asymmetric_encrypt(self, public_pem: bytes, plaintext: str) -> str:
        ...

    @abstractmethod
    def asymmetric_decrypt(self, private_pem: bytes, ciphertext: str) -> str:
        ...


class DefaultCryptoProvider(CryptoProvider):
    """AES-CBC for symmetric operations, RSA-OAEP for asymmetric ones."""

    def __init__(self, enctype: EncryptionType = EncryptionType.AES256_CBC) -> None:
        self.enctype = enctype

    def generate_symmetric_key(self) -> SymmetricKey:
        return SymmetricKey.generate(self.enctype)

    def generate_key_pair(self) -> KeyPair:
        return generate_rsa_key_pair()

    def symmetric_encrypt(self, key: SymmetricKey, plaintext: str) -> str:
        ciphertext, iv = encrypt_aes_cbc(key.material, plaintext.encode("utf-8"))
        return _b64encode(iv + ciphertext)

    def symmetric_decrypt(self, key: SymmetricKey, ciphertext: str) -> str:
        data = _b64decode(ciphertext)
        if len(data) < 2 * IV_SIZE or len(data) % IV_SIZE:
            raise CryptoError("Ciphertext has an invalid length")
        return _utf8(decrypt_aes_cbc(key.material, data[IV_SIZE:], data[:IV_SIZE]))

    def asymmetric_encrypt(self, public_pem: bytes, plaintext: str) -> str:
        return _b64encode(encrypt_rsa_oaep(public_pem, plaintext.encode("utf-8")))

    def asymmetric_decrypt(self, private_pem: bytes, ciphertext: str) -> str:
        return _utf8(decrypt_rsa_oaep(private_pem, _b64decode(ciphertext)))


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two identity strings in constant time.

    Args:
        a: First string
        b: Second string

    Returns:
        True if equal, False otherwise
    """
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))
