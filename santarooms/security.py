from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from passlib.context import CryptContext


pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto",
)

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class StartupFatal(RuntimeError):
    """The process cannot start with this configuration."""


class DecryptError(ValueError):
    pass


def hash_password(password: str) -> str:
    """Store an argon2 hash of a room or participant password."""
    return pwd_context.hash(password)


def verify_password(password: str, stored_hash: str) -> bool:
    return pwd_context.verify(password, stored_hash)


# ---------------------------------------------------------------------------
# Participant email encryption-at-rest
#
# The enrollment view encrypts the address once; the draw engine decrypts it
# in memory right before sending and never writes the plaintext anywhere.
#
# Envelope layout: nonce (12 bytes) || AES-256-GCM ciphertext || tag (16 bytes)
#
# NOTE: Anyone holding SANTA_PII_KEY can decrypt every stored address. This
# protects against database dumps and admin pages, not against the host.
# ---------------------------------------------------------------------------


def load_pii_key(encoded: str | None) -> bytes:
    """Decode the base64 SANTA_PII_KEY value. Raises StartupFatal if unusable."""
    if not encoded or not encoded.strip():
        raise StartupFatal("SANTA_PII_KEY is not set")
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise StartupFatal("SANTA_PII_KEY is not valid base64") from e
    if len(key) != KEY_SIZE:
        raise StartupFatal(f"SANTA_PII_KEY must decode to {KEY_SIZE} bytes, got {len(key)}")
    return key


def generate_pii_key() -> str:
    return base64.b64encode(AESGCM.generate_key(bit_length=KEY_SIZE * 8)).decode("ascii")


def encrypt_email(key: bytes, plaintext: str) -> bytes:
    """Encrypt an address -> envelope bytes. A fresh nonce is drawn on every call."""
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)


def decrypt_email(key: bytes, envelope: bytes) -> str:
    """Decrypt envelope bytes -> address. Raises DecryptError on any failure."""
    if envelope is None or len(envelope) < NONCE_SIZE + TAG_SIZE:
        raise DecryptError("Envelope too short")
    nonce, payload = bytes(envelope[:NONCE_SIZE]), bytes(envelope[NONCE_SIZE:])
    try:
        raw = AESGCM(key).decrypt(nonce, payload, None)
        return raw.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError, ValueError, TypeError) as e:
        raise DecryptError("Invalid email envelope") from e


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _digest_key(key: bytes) -> bytes:
    # Separate MAC key so the AES key is never used for two purposes.
    return hashlib.sha256(b"santarooms-email-index|" + key).digest()


def email_digest(key: bytes, email: str) -> str:
    """Deterministic blind index of an address, for per-room uniqueness checks."""
    return hmac.new(_digest_key(key), normalize_email(email).encode("utf-8"), hashlib.sha256).hexdigest()
