"""
Authenticated encryption and key management for update exchange.

Updates are encrypted with AES-256-GCM and signed with HMAC-SHA256. Both keys
are derived with HKDF from the shared secret established for a
(session, endpoint) pair. The round header is bound into the AEAD associated
data and into the signature so a payload cannot be replayed into another
session or round.
"""

from typing import Dict, Optional, Tuple
import hashlib
import logging
import os

from cryptography.exceptions import InvalidSignature as CryptographyInvalidSignature
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import (
    DecryptionError, EncryptionError, InvalidSignature, KeyExchangeError
)
from .interfaces import KeyExchangeInterface, KeyStorageInterface

logger = logging.getLogger(__name__)

NONCE_SIZE = 12
SECRET_SIZE = 32

# Direction labels keep a participant's own upload from verifying as a reply.
UPDATE_LABEL = b"fedhealth/update"
AGGREGATE_LABEL = b"fedhealth/aggregate"


def message_header(label: bytes, session_id: str, round_number: int) -> bytes:
    """Canonical header binding a payload to its direction, session and round."""
    return b"|".join([label, session_id.encode('utf-8'), str(round_number).encode('ascii')])


def _derive_key(secret: bytes, info: bytes) -> bytes:
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=info)
    return hkdf.derive(secret)


class SecureChannel:
    """Symmetric encrypt/sign channel shared with one endpoint."""

    def __init__(self, encryption_key: bytes, signing_key: bytes):
        """
        Initialize secure channel.

        Args:
            encryption_key: 32-byte AES-GCM key
            signing_key: HMAC-SHA256 key
        """
        if len(encryption_key) != 32:
            raise EncryptionError("Encryption key must be 32 bytes")
        self._aead = AESGCM(encryption_key)
        self._signing_key = signing_key

    @classmethod
    def from_secret(cls, secret: bytes) -> "SecureChannel":
        """Derive channel keys from a shared secret."""
        if len(secret) < 16:
            raise KeyExchangeError("Shared secret too short")
        return cls(
            _derive_key(secret, b"fedhealth-encryption"),
            _derive_key(secret, b"fedhealth-signing"),
        )

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> bytes:
        """Encrypt a payload; returns nonce || ciphertext."""
        try:
            nonce = os.urandom(NONCE_SIZE)
            return nonce + self._aead.encrypt(nonce, plaintext, associated_data)
        except Exception as e:
            logger.error(f"Payload encryption failed: {str(e)}")
            raise EncryptionError(f"Payload encryption failed: {str(e)}")

    def decrypt(self, blob: bytes, associated_data: bytes) -> bytes:
        """Decrypt a nonce || ciphertext payload."""
        if len(blob) <= NONCE_SIZE:
            raise DecryptionError("Encrypted payload is truncated")
        try:
            return self._aead.decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], associated_data)
        except InvalidTag:
            raise DecryptionError("Authentication tag mismatch while decrypting payload")
        except Exception as e:
            logger.error(f"Payload decryption failed: {str(e)}")
            raise DecryptionError(f"Payload decryption failed: {str(e)}")

    def sign(self, data: bytes) -> bytes:
        """Compute an HMAC-SHA256 signature."""
        try:
            h = hmac.HMAC(self._signing_key, hashes.SHA256())
            h.update(data)
            return h.finalize()
        except Exception as e:
            raise EncryptionError(f"Signing failed: {str(e)}")

    def verify(self, data: bytes, signature: bytes) -> None:
        """
        Verify an HMAC-SHA256 signature.

        Raises:
            InvalidSignature: If the signature does not match
        """
        h = hmac.HMAC(self._signing_key, hashes.SHA256())
        h.update(data)
        try:
            h.verify(signature)
        except CryptographyInvalidSignature:
            raise InvalidSignature("Signature verification failed")


class StoredKeyExchange(KeyExchangeInterface):
    """
    Key exchange backed by provisioned secrets in key storage.

    A secret is generated and stored on first use of a (session, endpoint)
    pair; any party sharing the storage derives the same channel.
    """

    def __init__(self, key_storage: KeyStorageInterface):
        self.key_storage = key_storage

    @staticmethod
    def key_id(session_id: str, endpoint: str) -> str:
        """Storage id for a (session, endpoint) pair; identifiers are opaque strings."""
        return ".".join(hashlib.sha256(part.encode("utf-8")).hexdigest()
                        for part in (session_id, endpoint))

    async def establish(self, session_id: str, endpoint: str) -> bytes:
        key_id = self.key_id(session_id, endpoint)
        secret = self.key_storage.load(key_id)
        if secret is None:
            secret = AESGCM.generate_key(bit_length=SECRET_SIZE * 8)
            self.key_storage.store(key_id, secret)
            logger.debug(f"Provisioned new secret for session {session_id} endpoint {endpoint}")
        return secret


class KeyManager:
    """Owns the secure channels of every live session."""

    def __init__(self, key_exchange: KeyExchangeInterface):
        """
        Initialize key manager.

        Args:
            key_exchange: Collaborator establishing shared secrets
        """
        self.key_exchange = key_exchange
        self._channels: Dict[Tuple[str, str], SecureChannel] = {}

    async def establish_channel(self, session_id: str, endpoint: str) -> SecureChannel:
        """
        Establish (or re-establish) the channel for a session endpoint.

        Raises:
            KeyExchangeError: If the key exchange fails
        """
        try:
            secret = await self.key_exchange.establish(session_id, endpoint)
            channel = SecureChannel.from_secret(secret)
        except KeyExchangeError:
            raise
        except Exception as e:
            logger.error(f"Key exchange with {endpoint} failed for session {session_id}: {e}")
            raise KeyExchangeError(f"Key exchange with {endpoint} failed: {str(e)}")

        self._channels[(session_id, endpoint)] = channel
        logger.debug(f"Secure channel established: session={session_id} endpoint={endpoint}")
        return channel

    def get_channel(self, session_id: str, endpoint: str) -> SecureChannel:
        """
        Get an established channel.

        Raises:
            EncryptionError: If no key material is held for the pair
        """
        channel = self._channels.get((session_id, endpoint))
        if channel is None:
            raise EncryptionError(f"No key material for session {session_id} endpoint {endpoint}")
        return channel

    def has_channel(self, session_id: str, endpoint: Optional[str] = None) -> bool:
        if endpoint is not None:
            return (session_id, endpoint) in self._channels
        return any(sid == session_id for sid, _ in self._channels)

    def release(self, session_id: str) -> int:
        """Drop all key material held for a session. Returns channels released."""
        keys = [k for k in self._channels if k[0] == session_id]
        for key in keys:
            del self._channels[key]
        if keys:
            logger.info(f"Released {len(keys)} secure channel(s) for session {session_id}")
        return len(keys)
