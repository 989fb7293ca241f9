"""Authenticated encryption for stored file bytes.

AES-256-GCM with a fresh 96-bit nonce per call. The record id is bound in as
associated data, so ciphertext copied onto another record fails to decrypt.
Key material comes from an injected ``KeyProvider``; a per-file key (the
out-of-band secret of a link-limited share) can be passed explicitly instead.
"""
import asyncio
import base64
import binascii
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from filevault.config import Settings
from filevault.errors import CryptoUnavailable, IntegrityError

logger = logging.getLogger(__name__)

ALGORITHM = "AES-256-GCM"
KEY_SIZE = 32
NONCE_SIZE = 12
LINK_SECRET_KEY_ID = "link-secret"


@dataclass(frozen=True)
class CipherMeta:
    algorithm: str
    nonce: bytes
    key_id: str

    def to_dict(self) -> dict:
        return {
            "alg": self.algorithm,
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "keyId": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CipherMeta":
        try:
            nonce = base64.b64decode(data["nonce"], validate=True)
            return cls(algorithm=data["alg"], nonce=nonce, key_id=data["keyId"])
        except (KeyError, TypeError, binascii.Error) as e:
            raise IntegrityError(f"Malformed cipher metadata: {e}") from e


class KeyProvider(Protocol):
    def current(self) -> Tuple[str, bytes]:
        """Return (key_id, key) used for new encryptions."""
        ...

    def get(self, key_id: str) -> bytes:
        """Return the key registered under key_id."""
        ...


class StaticKeyProvider:
    """Holds keys in memory; the first (or named) key encrypts, all keys decrypt."""

    def __init__(self, keys: Dict[str, bytes], current_id: Optional[str] = None):
        for key_id, key in keys.items():
            if len(key) != KEY_SIZE:
                raise CryptoUnavailable(f"Key '{key_id}' must be {KEY_SIZE} bytes")
        self._keys = dict(keys)
        self._current_id = current_id or next(iter(self._keys), None)

    def current(self) -> Tuple[str, bytes]:
        if self._current_id is None or self._current_id not in self._keys:
            raise CryptoUnavailable("No encryption key configured")
        return self._current_id, self._keys[self._current_id]

    def get(self, key_id: str) -> bytes:
        key = self._keys.get(key_id)
        if key is None:
            raise CryptoUnavailable(f"Unknown key id '{key_id}'")
        return key


def parse_key(raw: str) -> bytes:
    """Accept a 32-byte key as hex or urlsafe base64."""
    raw = raw.strip()
    try:
        key = bytes.fromhex(raw)
    except ValueError:
        try:
            key = base64.urlsafe_b64decode(raw + "=" * (-len(raw) % 4))
        except (binascii.Error, ValueError) as e:
            raise CryptoUnavailable("Encryption key is neither hex nor base64") from e
    if len(key) != KEY_SIZE:
        raise CryptoUnavailable(f"Encryption key must be {KEY_SIZE} bytes, got {len(key)}")
    return key


def settings_key_provider(settings: Settings) -> StaticKeyProvider:
    """Build the key provider from ENCRYPTION_KEY / RETIRED_ENCRYPTION_KEYS.

    A missing primary key yields a provider whose ``current()`` raises, so the
    service still starts (downloads of older files keep working) but uploads fail.
    """
    keys: Dict[str, bytes] = {}
    current_id = None
    if settings.ENCRYPTION_KEY:
        current_id = settings.ENCRYPTION_KEY_ID
        keys[current_id] = parse_key(settings.ENCRYPTION_KEY)
    else:
        logger.warning("ENCRYPTION_KEY is not set; uploads will be rejected")
    for item in filter(None, (s.strip() for s in settings.RETIRED_ENCRYPTION_KEYS.split(","))):
        key_id, sep, value = item.partition(":")
        if not sep:
            raise CryptoUnavailable(f"Retired key entry '{key_id}' is missing its id")
        keys.setdefault(key_id, parse_key(value))
    return StaticKeyProvider(keys, current_id)


class CipherEngine:
    """Stateless apart from the injected key provider; safe to share across tasks."""

    def __init__(self, key_provider: KeyProvider, timeout: float = 30.0):
        self.key_provider = key_provider
        self.timeout = timeout

    def encrypt(
        self, plaintext: bytes, *, associated_data: bytes, key: Optional[bytes] = None,
    ) -> Tuple[bytes, CipherMeta]:
        if key is None:
            key_id, key = self.key_provider.current()
        else:
            key_id = LINK_SECRET_KEY_ID
        if len(key) != KEY_SIZE:
            raise CryptoUnavailable(f"Encryption key must be {KEY_SIZE} bytes")
        nonce = os.urandom(NONCE_SIZE)
        try:
            ciphertext = AESGCM(key).encrypt(nonce, plaintext, associated_data)
        except (ValueError, OverflowError) as e:
            raise CryptoUnavailable(f"Encryption failed: {e}") from e
        return ciphertext, CipherMeta(algorithm=ALGORITHM, nonce=nonce, key_id=key_id)

    def decrypt(
        self, ciphertext: bytes, meta: CipherMeta, *, associated_data: bytes, key: Optional[bytes] = None,
    ) -> bytes:
        if meta.algorithm != ALGORITHM:
            raise IntegrityError(f"Unsupported algorithm '{meta.algorithm}'")
        if len(meta.nonce) != NONCE_SIZE:
            raise IntegrityError("Nonce has the wrong length")
        if key is None:
            if meta.key_id == LINK_SECRET_KEY_ID:
                raise CryptoUnavailable("This file is encrypted with a link secret")
            key = self.key_provider.get(meta.key_id)
        if len(key) != KEY_SIZE:
            raise IntegrityError("Decryption key has the wrong length")
        try:
            return AESGCM(key).decrypt(meta.nonce, ciphertext, associated_data)
        except InvalidTag as e:
            raise IntegrityError("Ciphertext failed authentication") from e

    async def encrypt_async(
        self, plaintext: bytes, *, associated_data: bytes, key: Optional[bytes] = None,
    ) -> Tuple[bytes, CipherMeta]:
        """Encrypt in a worker thread, bounded by the crypto timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.encrypt, plaintext, associated_data=associated_data, key=key),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CryptoUnavailable(f"Encryption timed out after {self.timeout}s") from e

    async def decrypt_async(
        self, ciphertext: bytes, meta: CipherMeta, *, associated_data: bytes, key: Optional[bytes] = None,
    ) -> bytes:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.decrypt, ciphertext, meta, associated_data=associated_data, key=key),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CryptoUnavailable(f"Decryption timed out after {self.timeout}s") from e
