"""Registration and authentication ceremonies."""

from __future__ import annotations

import json
import logging
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

from .challenges import ChallengeRegistry, FileChallengeStore
from .config import CeremonySettings
from .credentials import CredentialStore, FileCredentialStore, credential_store_from_settings
from .errors import (
    ChallengeInvalidError,
    ConfigurationError,
    CredentialNotFoundError,
    VerificationFailedError,
)
from .models import (
    AuthenticationBegin,
    AuthenticationResult,
    AuthenticatorSelectionCriteria,
    ChallengePurpose,
    CredentialRecord,
    PubKeyCredParam,
    PublicKeyCredentialCreationOptions,
    PublicKeyCredentialDescriptor,
    PublicKeyCredentialRequestOptions,
    RegistrationBegin,
    RelyingPartyEntity,
    UserEntity,
    UserInfo,
    b64url_encode,
)
from .verifier import (
    AuthenticationCheck,
    AuthenticationVerification,
    PQVerifier,
    RegistrationCheck,
    RegistrationVerification,
    Verifier,
)

LOGGER = logging.getLogger(__name__)

STAGE_LABELS = {"register": "Register", "authn": "Authenticate"}
EVENT_LABELS = {
    ("register", "options.start"): "Creating Register Options",
    ("register", "options.success"): "Issued Register Options",
    ("register", "verify.start"): "Verifying Registration",
    ("register", "verify.challenge_invalid"): "Registration Challenge Rejected",
    ("register", "verify.rejected"): "Registration Verification Failed",
    ("register", "verify.success"): "Registration Completed",
    ("authn", "options.start"): "Creating Authentication Options",
    ("authn", "options.success"): "Issued Authentication Options",
    ("authn", "verify.start"): "Verifying Authentication",
    ("authn", "verify.challenge_invalid"): "Authentication Challenge Rejected",
    ("authn", "verify.unknown_credential"): "Authentication Unknown Credential",
    ("authn", "verify.rejected"): "Authentication Verification Failed",
    ("authn", "verify.success"): "Authentication Completed",
}


def _truncate(value: str, limit: int = 64) -> str:
    if len(value) <= limit:
        return value
    half = limit // 2
    return f"{value[:half]}…{value[-half:]}"


def _build_payload(req: str, **fields: object) -> dict[str, object]:
    payload: dict[str, object] = {"request_id": req}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str):
            payload[key] = _truncate(value)
        else:
            payload[key] = value
    return payload


def _log(stage: str, event: str, req: str, level: int = logging.INFO, **fields: object) -> None:
    stage_label = STAGE_LABELS.get(stage, stage.title())
    event_label = EVENT_LABELS.get((stage, event), event)
    payload = json.dumps(_build_payload(req, **fields), indent=2, sort_keys=True)
    message = f"[RP Ceremony: {stage_label}]: {event_label}\n{payload}"
    LOGGER.log(level, message)


class CeremonyOrchestrator:
    """Drives WebAuthn registration and authentication ceremonies.

    Each ``begin_*`` call issues a challenge and returns the options for the
    client together with an opaque handle; the matching ``complete_*`` call
    resolves that handle exactly once, runs the verifier and updates the
    credential store.
    """

    def __init__(
        self,
        settings: Optional[CeremonySettings] = None,
        verifier: Optional[Verifier] = None,
        challenges: Optional[ChallengeRegistry] = None,
        credentials: Optional[CredentialStore] = None,
    ) -> None:
        self.settings = settings or CeremonySettings()
        self.challenges = challenges or ChallengeRegistry.from_settings(self.settings)
        self.credentials = credentials or credential_store_from_settings(self.settings)
        self.verifier = verifier or PQVerifier(self.settings.hosted_algorithms)
        _ensure_separate_files(self.challenges, self.credentials)

    # ------------------------------------------------------------------
    async def begin_registration(
        self,
        user: UserInfo,
        authenticator_attachment: Optional[str] = None,
        resident_key: str = "preferred",
        user_verification: str = "preferred",
    ) -> RegistrationBegin:
        req_id = secrets.token_hex(4)
        _log("register", "options.start", req_id, user=user.id, name=user.name)
        existing = await self.credentials.find_by_owner(user.id)
        payload, handle = await self.challenges.begin(ChallengePurpose.REGISTRATION, owner=user.id)

        options = PublicKeyCredentialCreationOptions(
            challenge=payload.challenge,
            rp=RelyingPartyEntity(id=self.settings.rp_id, name=self.settings.rp_name),
            user=UserEntity(
                id=b64url_encode(user.id.encode("utf-8")),
                name=user.name,
                displayName=user.display_name or user.name,
            ),
            pubKeyCredParams=[
                PubKeyCredParam(alg=alg) for alg in self.settings.hosted_algorithms
            ],
            timeout=self.challenges.ttl_ms,
            authenticatorSelection=AuthenticatorSelectionCriteria(
                authenticatorAttachment=authenticator_attachment,
                residentKey=resident_key,
                requireResidentKey=resident_key == "required",
                userVerification=user_verification,
            ),
            excludeCredentials=_descriptors(existing),
        )
        _log(
            "register",
            "options.success",
            req_id,
            user=user.id,
            mode=self.challenges.mode.value,
            credential_count=len(existing),
        )
        return RegistrationBegin(options=options, handle=handle)

    async def complete_registration(
        self,
        user_id: str,
        response: Dict[str, Any],
        handle: str,
        credential_name: Optional[str] = None,
    ) -> CredentialRecord:
        req_id = secrets.token_hex(4)
        _log("register", "verify.start", req_id, user=user_id)
        try:
            payload = await self.challenges.complete(
                handle, ChallengePurpose.REGISTRATION, owner=user_id
            )
        except ChallengeInvalidError as exc:
            _log(
                "register", "verify.challenge_invalid", req_id,
                level=logging.WARNING, user=user_id, reason=str(exc),
            )
            raise

        check = RegistrationCheck(
            response=response,
            expected_challenge=payload.challenge,
            expected_origins=list(self.settings.allowed_origins),
            expected_rp_id=self.settings.rp_id,
        )
        try:
            verification: RegistrationVerification = await self.verifier.verify_registration(check)
        except Exception as exc:
            _log(
                "register", "verify.rejected", req_id,
                level=logging.WARNING, user=user_id, reason=repr(exc),
            )
            raise VerificationFailedError("Registration verification failed") from exc
        if not verification.verified or not verification.credential_id or not verification.public_key:
            _log(
                "register", "verify.rejected", req_id,
                level=logging.WARNING, user=user_id, reason=verification.reason,
            )
            raise VerificationFailedError(verification.reason or "Registration verification failed")

        response_body = response.get("response")
        transports = verification.transports or (
            list(response_body.get("transports") or []) if isinstance(response_body, dict) else []
        )
        record = CredentialRecord(
            credential_id=verification.credential_id,
            public_key=verification.public_key,
            algorithm=verification.algorithm,
            counter=verification.counter,
            transports=transports,
            name=credential_name or "Passkey",
            owner=user_id,
        )
        await self.credentials.save(record)
        _log(
            "register",
            "verify.success",
            req_id,
            user=user_id,
            credential_id=record.credential_id,
            algorithm=record.algorithm,
            user_verified=verification.flags.user_verified,
        )
        return record

    # ------------------------------------------------------------------
    async def begin_authentication(
        self,
        user_id: Optional[str] = None,
        user_verification: str = "preferred",
    ) -> AuthenticationBegin:
        req_id = secrets.token_hex(4)
        _log("authn", "options.start", req_id, user=user_id)
        allowed: List[CredentialRecord] = []
        if user_id:
            allowed = await self.credentials.find_by_owner(user_id)
        payload, handle = await self.challenges.begin(
            ChallengePurpose.AUTHENTICATION, owner=user_id or None
        )
        options = PublicKeyCredentialRequestOptions(
            challenge=payload.challenge,
            rpId=self.settings.rp_id,
            timeout=self.challenges.ttl_ms,
            userVerification=user_verification,
            allowCredentials=_descriptors(allowed),
        )
        _log(
            "authn",
            "options.success",
            req_id,
            user=user_id,
            mode=self.challenges.mode.value,
            credential_count=len(allowed),
        )
        return AuthenticationBegin(options=options, handle=handle)

    async def complete_authentication(
        self,
        handle: str,
        response: Dict[str, Any],
    ) -> AuthenticationResult:
        req_id = secrets.token_hex(4)
        credential_id = response.get("id")
        _log("authn", "verify.start", req_id, credential_id=credential_id)
        try:
            payload = await self.challenges.complete(handle, ChallengePurpose.AUTHENTICATION)
        except ChallengeInvalidError as exc:
            _log(
                "authn", "verify.challenge_invalid", req_id,
                level=logging.WARNING, reason=str(exc),
            )
            raise

        credential = None
        if isinstance(credential_id, str) and credential_id:
            credential = await self.credentials.find_by_id(credential_id)
        # a hinted ceremony only accepts credentials of the hinted owner
        if credential is None or (payload.owner is not None and credential.owner != payload.owner):
            _log(
                "authn", "verify.unknown_credential", req_id,
                level=logging.WARNING, credential_id=credential_id, user=payload.owner,
            )
            raise CredentialNotFoundError("Credential not found")

        check = AuthenticationCheck(
            response=response,
            expected_challenge=payload.challenge,
            expected_origins=list(self.settings.allowed_origins),
            expected_rp_id=self.settings.rp_id,
            credential=credential,
        )
        try:
            verification: AuthenticationVerification = await self.verifier.verify_authentication(
                check
            )
        except Exception as exc:
            _log(
                "authn", "verify.rejected", req_id,
                level=logging.WARNING, credential_id=credential.credential_id, reason=repr(exc),
            )
            raise VerificationFailedError("Authentication verification failed") from exc
        if not verification.verified:
            _log(
                "authn", "verify.rejected", req_id,
                level=logging.WARNING, credential_id=credential.credential_id,
                reason=verification.reason,
            )
            raise VerificationFailedError(
                verification.reason or "Authentication verification failed"
            )

        if not await self.credentials.bump_counter(credential.credential_id, verification.new_counter):
            _log(
                "authn", "verify.unknown_credential", req_id,
                level=logging.WARNING, credential_id=credential.credential_id,
                reason="removed during ceremony",
            )
            raise CredentialNotFoundError("Credential was removed during authentication")

        _log(
            "authn",
            "verify.success",
            req_id,
            user=credential.owner,
            credential_id=credential.credential_id,
            sign_count=verification.new_counter,
        )
        return AuthenticationResult(
            credential_id=credential.credential_id,
            owner=credential.owner,
            new_counter=verification.new_counter,
        )

    # Account management ------------------------------------------------
    async def list_credentials(self, user_id: str) -> List[CredentialRecord]:
        return await self.credentials.find_by_owner(user_id)

    async def revoke_credential(self, credential_id: str) -> bool:
        removed = await self.credentials.remove(credential_id)
        if removed:
            LOGGER.info("Revoked credential %s", _truncate(credential_id))
        return removed


def _descriptors(records: List[CredentialRecord]) -> List[PublicKeyCredentialDescriptor]:
    return [
        PublicKeyCredentialDescriptor(id=record.credential_id, transports=record.transports)
        for record in records
    ]


def _ensure_separate_files(challenges: ChallengeRegistry, credentials: CredentialStore) -> None:
    challenge_store = challenges.store
    if isinstance(challenge_store, FileChallengeStore) and isinstance(
        credentials, FileCredentialStore
    ):
        if Path(challenge_store.file.path) == Path(credentials.file.path):
            raise ConfigurationError("Challenges and credentials must not share a store file")
