"""Error taxonomy shared by the ceremony components."""

from __future__ import annotations


class CeremonyError(RuntimeError):
    """Base class for every failure reported by the ceremony core."""

    code = "ceremony_error"


class ChallengeInvalidError(CeremonyError):
    """Challenge missing, consumed, expired, mismatched or undecryptable.

    The caller should start a fresh ceremony.
    """

    code = "challenge_invalid"


class VerificationFailedError(CeremonyError):
    code = "verification_failed"


class CredentialNotFoundError(CeremonyError):
    code = "credential_not_found"


class CredentialConflictError(CeremonyError):
    code = "credential_conflict"


class ConfigurationError(CeremonyError):
    code = "configuration_error"


class StoreCorruptedError(CeremonyError):
    """Backing file exists but cannot be read as the expected JSON document."""

    code = "store_corrupted"
