"""Pydantic models shared across ceremony modules."""

from __future__ import annotations

import base64
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def now_ms() -> int:
    return int(time.time() * 1000)


class ChallengePurpose(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


class ChallengePayload(BaseModel):
    """A challenge bound to a purpose, an optional owner and an expiry."""

    challenge: str = Field(min_length=1)
    purpose: ChallengePurpose
    owner: Optional[str] = None
    expires_at: int = Field(description="Absolute expiry in milliseconds since the epoch")

    def is_expired(self, at: Optional[int] = None) -> bool:
        return (now_ms() if at is None else at) > self.expires_at


class CredentialRecord(BaseModel):
    credential_id: str = Field(min_length=1)
    public_key: str
    algorithm: Optional[int] = None
    counter: int = Field(default=0, ge=0)
    transports: List[str] = Field(default_factory=list)
    name: str = "Passkey"
    registered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    owner: str


class UserInfo(BaseModel):
    id: str = Field(min_length=1)
    name: str
    display_name: Optional[str] = None


class RelyingPartyEntity(BaseModel):
    id: str
    name: str


class UserEntity(BaseModel):
    id: str = Field(min_length=1)
    name: str
    displayName: str


class PubKeyCredParam(BaseModel):
    type: Literal["public-key"] = "public-key"
    alg: int


class PublicKeyCredentialDescriptor(BaseModel):
    id: str
    type: Literal["public-key"] = "public-key"
    transports: List[str] = Field(default_factory=list)


class AuthenticatorSelectionCriteria(BaseModel):
    authenticatorAttachment: Optional[Literal["platform", "cross-platform"]] = None
    residentKey: Literal["required", "preferred", "discouraged"] = "preferred"
    requireResidentKey: bool = False
    userVerification: Literal["required", "preferred", "discouraged"] = "preferred"


class PublicKeyCredentialCreationOptions(BaseModel):
    challenge: str
    rp: RelyingPartyEntity
    user: UserEntity
    pubKeyCredParams: List[PubKeyCredParam]
    timeout: int
    attestation: Literal["none", "indirect", "direct"] = "none"
    authenticatorSelection: AuthenticatorSelectionCriteria = Field(
        default_factory=AuthenticatorSelectionCriteria
    )
    excludeCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)


class PublicKeyCredentialRequestOptions(BaseModel):
    challenge: str
    rpId: str
    timeout: int
    userVerification: Literal["required", "preferred", "discouraged"] = "preferred"
    allowCredentials: List[PublicKeyCredentialDescriptor] = Field(default_factory=list)


@dataclass
class RegistrationBegin:
    options: PublicKeyCredentialCreationOptions
    handle: str


@dataclass
class AuthenticationBegin:
    options: PublicKeyCredentialRequestOptions
    handle: str


@dataclass
class AuthenticationResult:
    credential_id: str
    owner: str
    new_counter: int
