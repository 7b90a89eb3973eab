"""Encrypted, expiring storage of portal browser sessions.

Session snapshots are Playwright ``storage_state`` JSON documents. They are
sealed with AES-256-GCM before they touch the database and are only ever
decrypted in memory right before a browser context is created from them.

Envelope format: ``base64(nonce).base64(tag).base64(ciphertext)`` with a
12-byte nonce and a 16-byte authentication tag. The AES key is the SHA-256
digest of the operator-supplied key string.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import os
from datetime import datetime
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import config
from .date_utils import utc_now
from .errors import ConfigurationError, DecryptionError
from .models import ExtractionSession

NONCE_LENGTH_BYTES = 12
TAG_LENGTH_BYTES = 16

# Affinity key used when a caller has no snapshot at all.
NO_SNAPSHOT_FINGERPRINT = "__no_session__"


def _derive_key(key: str) -> bytes:
    if not key or not key.strip():
        raise ConfigurationError("SCE session encryption key is required")
    return hashlib.sha256(key.encode("utf-8")).digest()


def require_encryption_key() -> str:
    """Return the configured session encryption key or raise ``ConfigurationError``."""

    key = config.SCE_SESSION_ENCRYPTION_KEY
    if not key or not key.strip():
        raise ConfigurationError(
            "SCE_SESSION_ENCRYPTION_KEY is required for cloud extraction sessions"
        )
    return key


def encrypt_json(plaintext: str, key: str) -> str:
    """Seal ``plaintext`` and return the dotted base64 envelope."""

    derived = _derive_key(key)
    nonce = os.urandom(NONCE_LENGTH_BYTES)
    sealed = AESGCM(derived).encrypt(nonce, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext.
    ciphertext, tag = sealed[:-TAG_LENGTH_BYTES], sealed[-TAG_LENGTH_BYTES:]
    return ".".join(
        base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
    )


def decrypt_json(ciphertext: str, key: str) -> str:
    """Open an envelope produced by :func:`encrypt_json`.

    Raises ``DecryptionError`` for malformed envelopes, wrong keys and any
    tampering; garbage plaintext is never returned.
    """

    derived = _derive_key(key)
    parts = (ciphertext or "").strip().split(".")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise DecryptionError("Invalid encrypted payload format")

    try:
        nonce, tag, body = (base64.b64decode(part, validate=True) for part in parts)
    except (binascii.Error, ValueError) as exc:
        raise DecryptionError("Invalid encrypted payload format") from exc

    if len(nonce) != NONCE_LENGTH_BYTES or len(tag) != TAG_LENGTH_BYTES:
        raise DecryptionError("Invalid encrypted payload")

    try:
        plaintext = AESGCM(derived).decrypt(nonce, body + tag, None)
    except InvalidTag as exc:
        raise DecryptionError(
            "Unable to decrypt session state (wrong key or tampered payload)"
        ) from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DecryptionError("Decrypted session state is not valid UTF-8") from exc


def is_expired(expires_at: datetime, now: Optional[datetime] = None) -> bool:
    return expires_at <= (now or utc_now())


def is_session_usable(session: ExtractionSession, now: Optional[datetime] = None) -> bool:
    return session.is_active and not is_expired(session.expires_at, now)


def snapshot_fingerprint(snapshot_json: Optional[str]) -> str:
    """Stable identity of a session snapshot, used for browser-context affinity."""

    normalized = (snapshot_json or "").strip()
    if not normalized:
        return NO_SNAPSHOT_FINGERPRINT
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


__all__ = [
    "NONCE_LENGTH_BYTES",
    "TAG_LENGTH_BYTES",
    "NO_SNAPSHOT_FINGERPRINT",
    "require_encryption_key",
    "encrypt_json",
    "decrypt_json",
    "is_expired",
    "is_session_usable",
    "snapshot_fingerprint",
]
