"""
ticketflow Key Store

Repository of the keys a role holds:
- Symmetric keys by (owner, peer) pair: long-term keys from the bootstrap
  exchange and session keys minted during the protocol
- The role's own asymmetric key pair
- Public keys received from peers during bootstrap, by label

Writes are serialized per key name so concurrent bootstrap exchanges or
sessions touching the same pair cannot interleave.
"""

from __future__ import annotations

import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

import attrs
import structlog

from ticketflow.core.exceptions import CryptoError, KeyNotFound
from ticketflow.core.types import KeyPair, SymmetricKey, pair_name

logger = structlog.get_logger()


@attrs.define
class KeyLocks:
    """Lazily created lock per key name."""

    _locks: Dict[str, threading.Lock] = attrs.Factory(dict)
    _guard: threading.Lock = attrs.Factory(threading.Lock)

    def lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock


class KeyStore(ABC):
    """Lookup-by-name contract every role depends on."""

    @abstractmethod
    def get_symmetric_key(self, owner: str, peer: str) -> SymmetricKey:
        """
        Raises:
            KeyNotFound: If no key is stored for the pair
        """
        ...

    @abstractmethod
    def put_symmetric_key(self, owner: str, peer: str, key: SymmetricKey) -> None:
        ...

    @abstractmethod
    def get_key_pair(self, role: str) -> KeyPair:
        """
        Raises:
            KeyNotFound: If the role has no key pair
        """
        ...

    @abstractmethod
    def put_key_pair(self, role: str, pair: KeyPair) -> None:
        ...

    @abstractmethod
    def get_public_key(self, label: str) -> bytes:
        """
        Raises:
            KeyNotFound: If no public key is stored under the label
        """
        ...

    @abstractmethod
    def put_public_key(self, label: str, public_pem: bytes) -> None:
        ...

    def has_symmetric_key(self, owner: str, peer: str) -> bool:
        try:
            self.get_symmetric_key(owner, peer)
        except KeyNotFound:
            return False
        return True


@attrs.define
class InMemoryKeyStore(KeyStore):
    """Dictionary-backed key store. Used by tests and single-process setups."""

    _symmetric: Dict[str, SymmetricKey] = attrs.Factory(dict)
    _pairs: Dict[str, KeyPair] = attrs.Factory(dict)
    _public: Dict[str, bytes] = attrs.Factory(dict)
    _locks: KeyLocks = attrs.Factory(KeyLocks)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def get_symmetric_key(self, owner: str, peer: str) -> SymmetricKey:
        name = pair_name(owner, peer)
        with self._locks.lock_for(name):
            key = self._symmetric.get(name)
        if key is None:
            raise KeyNotFound(name)
        return key

    def put_symmetric_key(self, owner: str, peer: str, key: SymmetricKey) -> None:
        name = pair_name(owner, peer)
        with self._locks.lock_for(name):
            self._symmetric[name] = key
        self._logger.debug("symmetric_key_stored", name=name, fingerprint=key.fingerprint())

    def get_key_pair(self, role: str) -> KeyPair:
        pair = self._pairs.get(role)
        if pair is None:
            raise KeyNotFound(f"key pair of {role}")
        return pair

    def put_key_pair(self, role: str, pair: KeyPair) -> None:
        with self._locks.lock_for(f"pair-{role}"):
            self._pairs[role] = pair

    def get_public_key(self, label: str) -> bytes:
        public_pem = self._public.get(label)
        if public_pem is None:
            raise KeyNotFound(f"public key {label}")
        return public_pem

    def put_public_key(self, label: str, public_pem: bytes) -> None:
        with self._locks.lock_for(f"public-{label}"):
            self._public[label] = public_pem


@attrs.define
class FileKeyStore(KeyStore):
    """
    Directory-backed key store.

    Layout:
        Symmetric-<owner>-<peer>.key   Base64 key text
        public<role>.pem / private<role>.pem
        public<label>.pem              received public keys

    Every write goes to a temporary file in the same directory and is
    moved into place with ``os.replace``, so readers never see a partial key.
    """

    directory: Path = attrs.field(converter=Path)
    _locks: KeyLocks = attrs.Factory(KeyLocks)
    _logger: structlog.BoundLogger = attrs.Factory(lambda: structlog.get_logger())

    def __attrs_post_init__(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def get_symmetric_key(self, owner: str, peer: str) -> SymmetricKey:
        name = pair_name(owner, peer)
        data = self._read(f"{name}.key", name)
        try:
            return SymmetricKey.from_text(data.decode("ascii").strip())
        except (CryptoError, UnicodeDecodeError) as e:
            raise KeyNotFound(f"{name} (unreadable: {e})") from e

    def put_symmetric_key(self, owner: str, peer: str, key: SymmetricKey) -> None:
        name = pair_name(owner, peer)
        self._write(f"{name}.key", key.to_text().encode("ascii"))
        self._logger.debug("symmetric_key_stored", name=name, fingerprint=key.fingerprint())

    def get_key_pair(self, role: str) -> KeyPair:
        return KeyPair(
            public_pem=self._read(f"public{role}.pem", f"key pair of {role}"),
            private_pem=self._read(f"private{role}.pem", f"key pair of {role}"),
        )

    def put_key_pair(self, role: str, pair: KeyPair) -> None:
        self._write(f"private{role}.pem", pair.private_pem, private=True)
        self._write(f"public{role}.pem", pair.public_pem)

    def get_public_key(self, label: str) -> bytes:
        return self._read(f"public{label}.pem", f"public key {label}")

    def put_public_key(self, label: str, public_pem: bytes) -> None:
        self._write(f"public{label}.pem", public_pem)

    def _read(self, filename: str, name: str) -> bytes:
        path = self.directory / filename
        with self._locks.lock_for(filename):
            try:
                return path.read_bytes()
            except FileNotFoundError:
                raise KeyNotFound(name) from None

    def _write(self, filename: str, data: bytes, private: bool = False) -> None:
        path = self.directory / filename
        with self._locks.lock_for(filename):
            fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{filename}.")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                    handle.flush()
                    os.fsync(handle.fileno())
                if private:
                    os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise


def open_key_store(path: Optional[str]) -> KeyStore:
    """File-backed store when a path is configured, in-memory otherwise."""
    if path:
        logger.info("keystore_opened", path=path)
        return FileKeyStore(directory=path)
    return InMemoryKeyStore()
