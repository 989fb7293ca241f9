"""Unguessable share links and out-of-band decryption secrets."""
import base64
import binascii
import secrets
from dataclasses import dataclass

from filevault.errors import ValidationError
from filevault.services.access_policy import digest
from filevault.services.cipher_engine import KEY_SIZE

TOKEN_BYTES = 32


@dataclass(frozen=True)
class IssuedLink:
    token: str
    token_hash: str


@dataclass(frozen=True)
class LinkSecret:
    secret: str
    key: bytes
    digest: str


class SecureLinkIssuer:
    """Mints link tokens and per-file secrets.

    Only hashes are handed to the record store. The secret doubles as the file
    key, so it is generated independently of any stored key material.
    """

    def __init__(self, public_base_url: str):
        self.public_base_url = public_base_url.rstrip("/")

    def issue(self) -> IssuedLink:
        token = secrets.token_urlsafe(TOKEN_BYTES)
        return IssuedLink(token=token, token_hash=self.hash_token(token))

    def new_secret(self) -> LinkSecret:
        key = secrets.token_bytes(KEY_SIZE)
        secret = base64.urlsafe_b64encode(key).decode("ascii").rstrip("=")
        return LinkSecret(secret=secret, key=key, digest=self.hash_secret(secret))

    @staticmethod
    def hash_token(token: str) -> str:
        return digest(token)

    @staticmethod
    def hash_secret(secret: str) -> str:
        return digest(secret)

    @staticmethod
    def key_from_secret(secret: str) -> bytes:
        try:
            key = base64.urlsafe_b64decode(secret + "=" * (-len(secret) % 4))
        except (binascii.Error, ValueError) as e:
            raise ValidationError("Decryption secret is not valid base64") from e
        if len(key) != KEY_SIZE:
            raise ValidationError("Decryption secret has the wrong length")
        return key

    def link_url(self, token: str) -> str:
        return f"{self.public_base_url}/download/{token}"
