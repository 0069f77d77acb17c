"""Attestation and assertion verification.

The orchestrator only depends on the :class:`Verifier` protocol.  The
:class:`PQVerifier` shipped here checks ML-DSA credentials produced by
post-quantum authenticators.
"""

from __future__ import annotations

import binascii
import hashlib
import json
import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Dict, List, Optional, Protocol, Sequence

import cbor2

from .models import CredentialRecord, b64url_decode, b64url_encode
from .pqcrypto import COSE_ALG_TO_OQS, PQCSignatureSuite

LOGGER = logging.getLogger(__name__)

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_BE = 0x08
FLAG_BS = 0x10
FLAG_AT = 0x40


@dataclass
class RegistrationCheck:
    response: Dict[str, Any]
    expected_challenge: str
    expected_origins: Sequence[str]
    expected_rp_id: str


@dataclass
class AuthenticationCheck:
    response: Dict[str, Any]
    expected_challenge: str
    expected_origins: Sequence[str]
    expected_rp_id: str
    credential: CredentialRecord


@dataclass
class DeviceFlags:
    user_present: bool = False
    user_verified: bool = False
    backup_eligible: bool = False
    backed_up: bool = False

    @classmethod
    def from_byte(cls, flags: int) -> "DeviceFlags":
        return cls(
            user_present=bool(flags & FLAG_UP),
            user_verified=bool(flags & FLAG_UV),
            backup_eligible=bool(flags & FLAG_BE),
            backed_up=bool(flags & FLAG_BS),
        )


@dataclass
class RegistrationVerification:
    verified: bool
    credential_id: Optional[str] = None
    public_key: Optional[str] = None
    algorithm: Optional[int] = None
    counter: int = 0
    transports: List[str] = field(default_factory=list)
    flags: DeviceFlags = field(default_factory=DeviceFlags)
    reason: Optional[str] = None


@dataclass
class AuthenticationVerification:
    verified: bool
    new_counter: int = 0
    reason: Optional[str] = None


class Verifier(Protocol):
    async def verify_registration(self, check: RegistrationCheck) -> RegistrationVerification:
        ...

    async def verify_authentication(
        self, check: AuthenticationCheck
    ) -> AuthenticationVerification:
        ...


class VerificationRejected(Exception):
    pass


class PQVerifier:
    def __init__(self, hosted_algorithms: Optional[Sequence[int]] = None) -> None:
        self.hosted_algorithms = list(hosted_algorithms or COSE_ALG_TO_OQS)

    async def verify_registration(self, check: RegistrationCheck) -> RegistrationVerification:
        try:
            return self._verify_registration(check)
        except VerificationRejected as exc:
            LOGGER.warning("Registration response rejected: %s", exc)
            return RegistrationVerification(verified=False, reason=str(exc))

    async def verify_authentication(
        self, check: AuthenticationCheck
    ) -> AuthenticationVerification:
        try:
            return self._verify_authentication(check)
        except VerificationRejected as exc:
            LOGGER.warning("Authentication response rejected: %s", exc)
            return AuthenticationVerification(verified=False, reason=str(exc))

    # ------------------------------------------------------------------
    def _verify_registration(self, check: RegistrationCheck) -> RegistrationVerification:
        response = _as_dict(check.response.get("response"))
        _check_client_data(
            response.get("clientDataJSON"), "webauthn.create", check.expected_challenge,
            check.expected_origins,
        )

        try:
            attestation = cbor2.loads(_b64url_to_bytes(response.get("attestationObject")))
        except (cbor2.CBORDecodeError, ValueError) as exc:
            raise VerificationRejected("Invalid attestationObject") from exc
        auth_data_bytes = attestation.get("authData") if isinstance(attestation, dict) else None
        if not isinstance(auth_data_bytes, (bytes, bytearray)):
            raise VerificationRejected("Invalid authenticator data")
        parsed = _parse_authenticator_data(bytes(auth_data_bytes), check.expected_rp_id)

        credential_id = parsed["credential_id"]
        credential_public_key = parsed["credential_public_key"]
        if credential_id is None or not isinstance(credential_public_key, dict):
            raise VerificationRejected("Missing attested credential data")

        algorithm = credential_public_key.get(3)
        if algorithm not in self.hosted_algorithms:
            raise VerificationRejected("Unsupported algorithm")
        public_key_bytes = credential_public_key.get(-1)
        if not isinstance(public_key_bytes, (bytes, bytearray)):
            raise VerificationRejected("Invalid public key")

        credential_id_b64 = b64url_encode(credential_id)
        declared_id = check.response.get("id")
        if declared_id and declared_id != credential_id_b64:
            raise VerificationRejected("Credential id does not match attested data")

        transports = response.get("transports") or []
        return RegistrationVerification(
            verified=True,
            credential_id=credential_id_b64,
            public_key=b64url_encode(bytes(public_key_bytes)),
            algorithm=algorithm,
            counter=parsed["sign_count"],
            transports=[str(item) for item in transports],
            flags=DeviceFlags.from_byte(parsed["flags"]),
        )

    def _verify_authentication(self, check: AuthenticationCheck) -> AuthenticationVerification:
        response = _as_dict(check.response.get("response"))
        credential = check.credential
        client_data_raw = _check_client_data(
            response.get("clientDataJSON"), "webauthn.get", check.expected_challenge,
            check.expected_origins,
        )

        auth_data_bytes = _b64url_to_bytes(response.get("authenticatorData"))
        parsed = _parse_authenticator_data(auth_data_bytes, check.expected_rp_id)

        message = auth_data_bytes + hashlib.sha256(client_data_raw).digest()
        signature = _b64url_to_bytes(response.get("signature"))
        if credential.algorithm is None:
            raise VerificationRejected("Stored credential has no algorithm")
        try:
            suite = PQCSignatureSuite(credential.algorithm)
        except ValueError as exc:
            raise VerificationRejected("Unsupported algorithm") from exc
        if not suite.verify(_b64url_to_bytes(credential.public_key), message, signature):
            raise VerificationRejected("Invalid signature")

        new_counter = parsed["sign_count"]
        if (new_counter or credential.counter) and new_counter <= credential.counter:
            raise VerificationRejected("Signature counter did not increase")
        return AuthenticationVerification(verified=True, new_counter=new_counter)


def _as_dict(value: Any) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise VerificationRejected("Missing response body")
    return value


def _check_client_data(
    encoded: Optional[str],
    expected_type: str,
    expected_challenge: str,
    expected_origins: Sequence[str],
) -> bytes:
    raw = _b64url_to_bytes(encoded)
    try:
        client_data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise VerificationRejected("Invalid clientDataJSON") from exc
    if not isinstance(client_data, dict):
        raise VerificationRejected("Invalid clientDataJSON")
    if client_data.get("type") != expected_type:
        raise VerificationRejected("Unexpected client data type")
    if client_data.get("challenge") != expected_challenge:
        raise VerificationRejected("Challenge mismatch")
    if client_data.get("origin") not in expected_origins:
        raise VerificationRejected("Origin mismatch")
    return raw


def _b64url_to_bytes(value: Optional[str]) -> bytes:
    if not value or not isinstance(value, str):
        raise VerificationRejected("Missing base64 value")
    try:
        return b64url_decode(value)
    except (binascii.Error, ValueError) as exc:
        raise VerificationRejected("Invalid base64 value") from exc


def _parse_authenticator_data(data: bytes, rp_id: str) -> dict:
    if len(data) < 37:
        raise VerificationRejected("Authenticator data too short")
    idx = 0
    rp_id_hash = data[idx : idx + 32]
    idx += 32
    flags = data[idx]
    idx += 1
    sign_count = int.from_bytes(data[idx : idx + 4], "big")
    idx += 4

    if rp_id_hash != hashlib.sha256(rp_id.encode("idna")).digest():
        raise VerificationRejected("RP ID hash mismatch")
    if not flags & FLAG_UP:
        raise VerificationRejected("User presence flag not set")

    credential_id = None
    credential_public_key = None

    if flags & FLAG_AT:
        if len(data) < idx + 18:
            raise VerificationRejected("Malformed attested credential data")
        idx += 16  # skip AAGUID
        cred_len = int.from_bytes(data[idx : idx + 2], "big")
        idx += 2
        credential_id = data[idx : idx + cred_len]
        idx += cred_len
        try:
            credential_public_key = cbor2.CBORDecoder(BytesIO(data[idx:])).decode()
        except (cbor2.CBORDecodeError, EOFError) as exc:
            raise VerificationRejected("Malformed credential public key") from exc

    return {
        "rp_id_hash": rp_id_hash,
        "flags": flags,
        "sign_count": sign_count,
        "credential_id": credential_id,
        "credential_public_key": credential_public_key,
    }
