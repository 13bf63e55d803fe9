"""
Key management module for Cardgate.

Provides wrapping of card secrets at rest, the reader public key
registry used for attestation, and Ed25519 signature verification.
"""

import hashlib
import json
import os
import threading
from abc import ABC, abstractmethod
from typing import Dict, Any, Optional

from nacl.exceptions import BadSignatureError, CryptoError
from nacl.secret import SecretBox
from nacl.signing import VerifyKey

from .util import b64d, b64e

# Development-only key-encryption key. Production must configure CARD_KEK_B64.
_DEV_KEK = hashlib.sha256(b"cardgate-development-kek").digest()


class SecretWrapper:
    """
    Wraps card secrets with XSalsa20-Poly1305 (PyNaCl SecretBox) under a
    key-encryption key. Wrapped values are base64 of nonce || ciphertext.
    """

    def __init__(self, kek: bytes):
        if len(kek) != SecretBox.KEY_SIZE:
            raise ValueError(f"key-encryption key must be {SecretBox.KEY_SIZE} bytes")
        self._box = SecretBox(kek)

    @classmethod
    def from_config(cls, kek_b64: str, production: bool) -> "SecretWrapper":
        if kek_b64:
            return cls(b64d(kek_b64))
        if production:
            raise RuntimeError("CARD_KEK_B64 must be set in production")
        return cls(_DEV_KEK)

    def wrap(self, secret: bytes) -> str:
        return b64e(bytes(self._box.encrypt(secret)))

    def unwrap(self, wrapped: str) -> bytes:
        """Raises nacl.exceptions.CryptoError if the value was not wrapped under this key."""
        return self._box.decrypt(b64d(wrapped))


class ReaderRegistry(ABC):
    """Abstract interface for looking up reader attestation keys."""

    @abstractmethod
    def get_public_key(self, reader_id: str) -> Optional[str]:
        """
        Get the registered public key for a reader.

        Returns:
            Base64-encoded Ed25519 public key, or None if the reader is unknown
        """
        pass

    def is_registered(self, reader_id: str) -> bool:
        return self.get_public_key(reader_id) is not None


class FileReaderRegistry(ReaderRegistry):
    """
    File-based reader registry: {"reader_keys": {reader_id: pub_b64}}.

    Thread-safe with modification time caching, so readers enrolled by
    tools/gen_reader_key.py become visible without a restart.
    """

    def __init__(self, registry_path: str):
        self._registry_path = registry_path
        self._lock = threading.RLock()
        self._cache: Optional[Dict[str, Any]] = None
        self._mtime: float = 0

    def _load(self) -> Dict[str, Any]:
        with self._lock:
            try:
                mtime = os.path.getmtime(self._registry_path)
                if self._cache is None or mtime > self._mtime:
                    with open(self._registry_path, "r", encoding="utf-8") as f:
                        self._cache = json.load(f)
                    self._mtime = mtime
            except FileNotFoundError:
                if self._cache is None:
                    self._cache = {"reader_keys": {}}

            return self._cache

    def get_public_key(self, reader_id: str) -> Optional[str]:
        return self._load().get("reader_keys", {}).get(reader_id)


class StaticReaderRegistry(ReaderRegistry):
    """In-memory registry, used for embedding and tests."""

    def __init__(self, reader_keys: Optional[Dict[str, str]] = None):
        self._keys = dict(reader_keys or {})

    def register(self, reader_id: str, public_key_b64: str) -> None:
        self._keys[reader_id] = public_key_b64

    def get_public_key(self, reader_id: str) -> Optional[str]:
        return self._keys.get(reader_id)


def verify_ed25519(signature_b64: str, payload: bytes, public_key_b64: str) -> bool:
    """
    Verify an Ed25519 signature.

    Args:
        signature_b64: Base64-encoded signature
        payload: The signed data
        public_key_b64: Base64-encoded public key

    Returns:
        True if signature is valid, False otherwise
    """
    try:
        vk = VerifyKey(b64d(public_key_b64))
        vk.verify(payload, b64d(signature_b64))
        return True
    except (BadSignatureError, CryptoError, ValueError, TypeError):
        return False
