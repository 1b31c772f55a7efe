"""
ticketflow Storage Module

Key Store interface and implementations.
"""

from ticketflow.storage.keystore import (
    KeyStore,
    InMemoryKeyStore,
    FileKeyStore,
    open_key_store,
)

__all__ = [
    "KeyStore",
    "InMemoryKeyStore",
    "FileKeyStore",
    "open_key_store",
]
