"""Challenge and credential ceremonies for a WebAuthn relying party."""

from .challenges import ChallengeMode, ChallengeRegistry, FileChallengeStore, MemoryChallengeStore
from .config import CeremonySettings
from .credentials import FileCredentialStore, MemoryCredentialStore
from .errors import (
    CeremonyError,
    ChallengeInvalidError,
    ConfigurationError,
    CredentialConflictError,
    CredentialNotFoundError,
    StoreCorruptedError,
    VerificationFailedError,
)
from .models import ChallengePayload, ChallengePurpose, CredentialRecord, UserInfo
from .service import CeremonyOrchestrator
from .tokens import TokenCodec, open_token, seal_token
from .verifier import PQVerifier

__all__ = [
    "CeremonyError",
    "CeremonyOrchestrator",
    "CeremonySettings",
    "ChallengeInvalidError",
    "ChallengeMode",
    "ChallengePayload",
    "ChallengePurpose",
    "ChallengeRegistry",
    "ConfigurationError",
    "CredentialConflictError",
    "CredentialNotFoundError",
    "CredentialRecord",
    "FileChallengeStore",
    "FileCredentialStore",
    "MemoryChallengeStore",
    "MemoryCredentialStore",
    "PQVerifier",
    "StoreCorruptedError",
    "TokenCodec",
    "UserInfo",
    "VerificationFailedError",
    "open_token",
    "seal_token",
]
