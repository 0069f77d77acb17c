"""Challenge issuance and one-time resolution."""

from __future__ import annotations

import logging
import os
import secrets
from enum import Enum
from typing import Dict, Optional, Protocol, Sequence, Tuple, Union

from pydantic import ValidationError

from .config import DEFAULT_CHALLENGE_TTL_MS, CeremonySettings
from .errors import ChallengeInvalidError, ConfigurationError, StoreCorruptedError
from .models import ChallengePayload, ChallengePurpose, b64url_encode, now_ms
from .storage import JsonFileStore
from .tokens import Secret, TokenCodec

LOGGER = logging.getLogger(__name__)

CHALLENGE_SIZE = 32


class ChallengeStore(Protocol):
    async def save(self, key: str, payload: ChallengePayload) -> None:
        ...

    async def consume(self, key: str) -> Optional[ChallengePayload]:
        """Return and delete the entry under ``key`` in one step."""
        ...

    async def purge_expired(self, at: Optional[int] = None) -> int:
        ...


class MemoryChallengeStore:
    """Process-local challenge store; expired entries are dropped lazily."""

    def __init__(self) -> None:
        self._challenges: Dict[str, ChallengePayload] = {}

    async def save(self, key: str, payload: ChallengePayload) -> None:
        await self.purge_expired()
        self._challenges[key] = payload

    async def consume(self, key: str) -> Optional[ChallengePayload]:
        return self._challenges.pop(key, None)

    async def purge_expired(self, at: Optional[int] = None) -> int:
        at = now_ms() if at is None else at
        expired = [key for key, payload in self._challenges.items() if payload.is_expired(at)]
        for key in expired:
            del self._challenges[key]
        return len(expired)


class FileChallengeStore:
    """Challenges kept in a JSON object file keyed by handle."""

    def __init__(self, path: str | os.PathLike):
        self.file = JsonFileStore(path, dict)

    async def save(self, key: str, payload: ChallengePayload) -> None:
        async with self.file.transaction() as snapshot:
            _drop_expired(snapshot.data, now_ms())
            snapshot.data[key] = payload.model_dump(mode="json", exclude_none=True)
            snapshot.mark_dirty()

    async def consume(self, key: str) -> Optional[ChallengePayload]:
        async with self.file.transaction() as snapshot:
            entry = snapshot.data.pop(key, None)
            if entry is None:
                return None
            snapshot.mark_dirty()
        try:
            return ChallengePayload.model_validate(entry)
        except ValidationError as exc:
            raise StoreCorruptedError(f"Malformed challenge entry {key!r}") from exc

    async def purge_expired(self, at: Optional[int] = None) -> int:
        async with self.file.transaction() as snapshot:
            removed = _drop_expired(snapshot.data, now_ms() if at is None else at)
            if removed:
                snapshot.mark_dirty()
        return removed


def _drop_expired(entries: dict, at: int) -> int:
    stale = [
        key
        for key, entry in entries.items()
        if isinstance(entry, dict) and isinstance(entry.get("expires_at"), int)
        and at > entry["expires_at"]
    ]
    for key in stale:
        del entries[key]
    return len(stale)


class ChallengeMode(str, Enum):
    STATEFUL = "stateful"
    STATELESS = "stateless"


class ChallengeRegistry:
    """Issues challenges and resolves them exactly once.

    Stateful registries persist the payload in a :class:`ChallengeStore` and
    hand out its key; stateless registries hand out the sealed token itself.
    """

    def __init__(
        self,
        store: Optional[ChallengeStore] = None,
        sealing_keys: Optional[Union[Secret, Sequence[Secret]]] = None,
        ttl_ms: int = DEFAULT_CHALLENGE_TTL_MS,
    ) -> None:
        if isinstance(sealing_keys, (str, bytes)):
            sealing_keys = [sealing_keys]
        keys = list(sealing_keys or [])
        if any(not key for key in keys):
            raise ConfigurationError("Sealing keys must not be empty")
        if store is None and not keys:
            raise ConfigurationError(
                "Provide either a challenge store (stateful) or sealing keys (stateless)"
            )
        if store is not None and keys:
            raise ConfigurationError(
                "Challenge store and sealing keys are mutually exclusive"
            )
        if ttl_ms <= 0:
            raise ConfigurationError("Challenge TTL must be positive")
        self.ttl_ms = ttl_ms
        self.store = store
        self._codec = TokenCodec(keys) if keys else None
        self.mode = ChallengeMode.STATEFUL if store is not None else ChallengeMode.STATELESS

    @classmethod
    def from_settings(cls, settings: CeremonySettings) -> "ChallengeRegistry":
        store = None
        if settings.challenge_store_path:
            store = FileChallengeStore(settings.challenge_store_path)
        return cls(
            store=store,
            sealing_keys=[key.get_secret_value() for key in settings.sealing_keys],
            ttl_ms=settings.challenge_ttl_ms,
        )

    async def begin(
        self,
        purpose: ChallengePurpose,
        owner: Optional[str] = None,
        key: Optional[str] = None,
    ) -> Tuple[ChallengePayload, str]:
        payload = ChallengePayload(
            challenge=b64url_encode(secrets.token_bytes(CHALLENGE_SIZE)),
            purpose=purpose,
            owner=owner,
            expires_at=now_ms() + self.ttl_ms,
        )
        if self._codec is not None:
            return payload, self._codec.seal(payload)

        handle = key or f"{purpose.value}:{owner or payload.challenge}"
        await self.store.save(handle, payload)
        return payload, handle

    async def complete(
        self,
        handle: str,
        purpose: ChallengePurpose,
        owner: Optional[str] = None,
    ) -> ChallengePayload:
        if not handle:
            raise ChallengeInvalidError("Challenge handle is required")

        if self._codec is not None:
            payload = self._codec.open(handle)
            if payload is None:
                raise ChallengeInvalidError("Invalid or expired challenge token")
        else:
            payload = await self.store.consume(handle)
            if payload is None:
                raise ChallengeInvalidError("Challenge not found or already used")
            if payload.is_expired():
                raise ChallengeInvalidError("Challenge expired")

        if payload.purpose != purpose:
            raise ChallengeInvalidError("Challenge purpose mismatch")
        if payload.owner is not None and owner is not None and payload.owner != owner:
            raise ChallengeInvalidError("Challenge owner mismatch")
        return payload

    async def purge_expired(self) -> int:
        if self.store is None:
            return 0
        removed = await self.store.purge_expired()
        if removed:
            LOGGER.info("Evicted %d expired challenges", removed)
        return removed
