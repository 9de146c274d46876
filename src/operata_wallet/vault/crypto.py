"""Envelope encryption for wallet signing keys.

A 32-byte key is derived from the process master secret with
PBKDF2-HMAC-SHA512 over a fresh salt, then used for AES-256-GCM. The
persisted blob is::

    base64( salt[64] || iv[16] || tag[16] || ciphertext )

Offsets are fixed, so the layout must not change without a migration of
every stored key pair.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from operata_wallet.errors import CustodyError

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
ITERATIONS = 100_000

_HEADER_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH


def derive_key(secret: str, salt: bytes) -> bytes:
    """Derive the AES-256 key for *salt* from the master secret."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(data: bytes | str, secret: str) -> str:
    """Seal *data* and return the base64 envelope."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    key = derive_key(secret, salt)

    # AESGCM appends the tag to the ciphertext.
    sealed = AESGCM(key).encrypt(iv, data, None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def decrypt(envelope: str, secret: str) -> bytes:
    """Open a base64 envelope produced by :func:`encrypt`.

    Raises
    ------
    CustodyError
        If the envelope is malformed, was tampered with, or *secret* is
        not the one it was sealed with. No partial plaintext is returned.
    """
    try:
        raw = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CustodyError("Sealed key is not valid base64") from exc

    if len(raw) < _HEADER_LENGTH:
        raise CustodyError("Sealed key is truncated")

    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = raw[SALT_LENGTH + IV_LENGTH:_HEADER_LENGTH]
    ciphertext = raw[_HEADER_LENGTH:]

    key = derive_key(secret, salt)
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise CustodyError("Sealed key failed authentication") from exc
