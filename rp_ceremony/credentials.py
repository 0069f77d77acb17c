"""Credential record storage."""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional, Protocol

from pydantic import ValidationError

from .config import CeremonySettings
from .errors import CredentialConflictError, StoreCorruptedError
from .models import CredentialRecord
from .storage import JsonFileStore

LOGGER = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def save(self, record: CredentialRecord) -> CredentialRecord:
        ...

    async def find_by_owner(self, owner: str) -> List[CredentialRecord]:
        ...

    async def find_by_id(self, credential_id: str) -> Optional[CredentialRecord]:
        ...

    async def bump_counter(self, credential_id: str, new_counter: int) -> bool:
        """Store ``new_counter``; ``False`` when the credential does not exist."""
        ...

    async def remove(self, credential_id: str) -> bool:
        ...


def _next_counter(credential_id: str, current: int, new_counter: int) -> int:
    if new_counter < current:
        LOGGER.warning(
            "Ignoring counter regression for %s (%d -> %d)", credential_id, current, new_counter
        )
        return current
    return new_counter


class MemoryCredentialStore:
    def __init__(self) -> None:
        self._records: Dict[str, CredentialRecord] = {}

    async def save(self, record: CredentialRecord) -> CredentialRecord:
        if record.credential_id in self._records:
            raise CredentialConflictError(f"Credential {record.credential_id} already registered")
        self._records[record.credential_id] = record.model_copy(deep=True)
        return record

    async def find_by_owner(self, owner: str) -> List[CredentialRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._records.values()
            if record.owner == owner
        ]

    async def find_by_id(self, credential_id: str) -> Optional[CredentialRecord]:
        record = self._records.get(credential_id)
        return record.model_copy(deep=True) if record else None

    async def bump_counter(self, credential_id: str, new_counter: int) -> bool:
        record = self._records.get(credential_id)
        if record is None:
            return False
        record.counter = _next_counter(credential_id, record.counter, new_counter)
        return True

    async def remove(self, credential_id: str) -> bool:
        return self._records.pop(credential_id, None) is not None


class FileCredentialStore:
    """Credentials kept as a JSON array, one object per record."""

    def __init__(self, path: str | os.PathLike):
        self.file = JsonFileStore(path, list)

    async def save(self, record: CredentialRecord) -> CredentialRecord:
        async with self.file.transaction() as snapshot:
            if any(_entry_id(entry) == record.credential_id for entry in snapshot.data):
                raise CredentialConflictError(
                    f"Credential {record.credential_id} already registered"
                )
            snapshot.data.append(record.model_dump(mode="json"))
            snapshot.mark_dirty()
        return record

    async def find_by_owner(self, owner: str) -> List[CredentialRecord]:
        entries = await self.file.read()
        return [record for record in map(_parse, entries) if record.owner == owner]

    async def find_by_id(self, credential_id: str) -> Optional[CredentialRecord]:
        entries = await self.file.read()
        for entry in entries:
            if _entry_id(entry) == credential_id:
                return _parse(entry)
        return None

    async def bump_counter(self, credential_id: str, new_counter: int) -> bool:
        async with self.file.transaction() as snapshot:
            for entry in snapshot.data:
                if _entry_id(entry) == credential_id:
                    current = _parse(entry).counter
                    entry["counter"] = _next_counter(credential_id, current, new_counter)
                    snapshot.mark_dirty()
                    return True
        return False

    async def remove(self, credential_id: str) -> bool:
        async with self.file.transaction() as snapshot:
            kept = [entry for entry in snapshot.data if _entry_id(entry) != credential_id]
            removed = len(kept) != len(snapshot.data)
            if removed:
                snapshot.data[:] = kept
                snapshot.mark_dirty()
        return removed


def _entry_id(entry: object) -> Optional[str]:
    return entry.get("credential_id") if isinstance(entry, dict) else None


def _parse(entry: object) -> CredentialRecord:
    try:
        return CredentialRecord.model_validate(entry)
    except ValidationError as exc:
        raise StoreCorruptedError("Malformed credential record") from exc


def credential_store_from_settings(settings: CeremonySettings) -> CredentialStore:
    if settings.credential_store_path:
        return FileCredentialStore(settings.credential_store_path)
    LOGGER.warning("No credential_store_path configured; credentials are kept in memory only")
    return MemoryCredentialStore()
