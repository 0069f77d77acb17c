"""Sealed challenge tokens for stateless ceremonies.

A token is ``base64url(nonce || ciphertext || tag)`` produced by AES-256-GCM.
The plaintext is the JSON form of a :class:`ChallengePayload`, expiry
included, so a server holding the secret can verify a challenge it never
stored.  The AES key is derived from the secret with HKDF under a fixed
context label and is never the secret itself.
"""

from __future__ import annotations

import binascii
import logging
import secrets
from typing import List, Optional, Sequence, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from pydantic import ValidationError

from .models import ChallengePayload, b64url_decode, b64url_encode, now_ms

LOGGER = logging.getLogger(__name__)

NONCE_LEN = 12
TAG_LEN = 16
KEY_LEN = 32
KEY_CONTEXT = b"rp-ceremony/challenge-token/v1"
MIN_SECRET_LEN = 32

Secret = Union[str, bytes]


def derive_key(secret: Secret) -> bytes:
    material = secret.encode("utf-8") if isinstance(secret, str) else bytes(secret)
    kdf = HKDF(algorithm=hashes.SHA256(), length=KEY_LEN, salt=None, info=KEY_CONTEXT)
    return kdf.derive(material)


class TokenCodec:
    """Seals with the newest key, opens with any key in the rotation list."""

    def __init__(self, secrets_: Union[Secret, Sequence[Secret]]):
        if isinstance(secrets_, (str, bytes)):
            secrets_ = [secrets_]
        if not secrets_:
            raise ValueError("TokenCodec needs at least one secret")
        if any(not secret for secret in secrets_):
            raise ValueError("TokenCodec secrets must not be empty")
        for secret in secrets_:
            if len(secret) < MIN_SECRET_LEN:
                LOGGER.warning(
                    "Challenge sealing secret is shorter than %d characters", MIN_SECRET_LEN
                )
        self._keys: List[bytes] = [derive_key(secret) for secret in secrets_]

    def seal(self, payload: ChallengePayload) -> str:
        return _seal_with_key(payload, self._keys[0])

    def open(self, token: str, at: Optional[int] = None) -> Optional[ChallengePayload]:
        return _open_with_keys(token, self._keys, at)


def seal_token(payload: ChallengePayload, secret: Secret) -> str:
    return _seal_with_key(payload, derive_key(secret))


def open_token(
    token: str,
    secrets_: Union[Secret, Sequence[Secret]],
    at: Optional[int] = None,
) -> Optional[ChallengePayload]:
    """Return the payload, or ``None`` if no key opens an unexpired token."""
    if isinstance(secrets_, (str, bytes)):
        secrets_ = [secrets_]
    return _open_with_keys(token, [derive_key(secret) for secret in secrets_], at)


def _seal_with_key(payload: ChallengePayload, key: bytes) -> str:
    nonce = secrets.token_bytes(NONCE_LEN)
    plaintext = payload.model_dump_json(exclude_none=True).encode("utf-8")
    # AESGCM appends the 16 byte tag to the ciphertext
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)
    return b64url_encode(nonce + sealed)


def _open_with_keys(
    token: str, keys: Sequence[bytes], at: Optional[int]
) -> Optional[ChallengePayload]:
    if not isinstance(token, str) or not token:
        return None
    try:
        raw = b64url_decode(token)
    except (binascii.Error, ValueError):
        return None
    if len(raw) < NONCE_LEN + TAG_LEN + 1:
        return None

    nonce, sealed = raw[:NONCE_LEN], raw[NONCE_LEN:]
    for key in keys:
        try:
            plaintext = AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag:
            continue
        try:
            payload = ChallengePayload.model_validate_json(plaintext)
        except ValidationError:
            LOGGER.warning("Challenge token decrypted to an unexpected payload")
            return None
        if payload.is_expired(at):
            return None
        return payload
    return None
