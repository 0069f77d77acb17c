from __future__ import annotations

import asyncio
import json

import pytest

from rp_ceremony.config import CeremonySettings
from rp_ceremony.credentials import (
    FileCredentialStore,
    MemoryCredentialStore,
    credential_store_from_settings,
)
from rp_ceremony.errors import CredentialConflictError, StoreCorruptedError
from rp_ceremony.models import CredentialRecord


def make_record(credential_id: str = "cred-1", owner: str = "user-1", **overrides) -> CredentialRecord:
    fields = {
        "credential_id": credential_id,
        "public_key": "pk1",
        "algorithm": -49,
        "transports": ["internal"],
        "owner": owner,
    }
    fields.update(overrides)
    return CredentialRecord(**fields)


@pytest.fixture(params=["memory", "file"])
def credential_store(request, tmp_path):
    if request.param == "memory":
        return MemoryCredentialStore()
    return FileCredentialStore(tmp_path / "credentials.json")


def test_save_and_lookup(credential_store):
    async def scenario():
        await credential_store.save(make_record("cred-1", "user-1"))
        await credential_store.save(make_record("cred-2", "user-1"))
        await credential_store.save(make_record("cred-3", "user-2"))
        return (
            await credential_store.find_by_owner("user-1"),
            await credential_store.find_by_id("cred-3"),
            await credential_store.find_by_id("missing"),
        )

    owned, by_id, missing = asyncio.run(scenario())
    assert sorted(record.credential_id for record in owned) == ["cred-1", "cred-2"]
    assert by_id.owner == "user-2"
    assert missing is None


def test_unknown_owner_is_empty(credential_store):
    assert asyncio.run(credential_store.find_by_owner("nobody")) == []


def test_duplicate_id_is_rejected_across_owners(credential_store):
    async def scenario():
        await credential_store.save(make_record("cred-1", "user-1"))
        with pytest.raises(CredentialConflictError):
            await credential_store.save(make_record("cred-1", "user-2"))
        return await credential_store.find_by_id("cred-1")

    assert asyncio.run(scenario()).owner == "user-1"


def test_bump_counter(credential_store):
    async def scenario():
        await credential_store.save(make_record())
        bumped = await credential_store.bump_counter("cred-1", 7)
        after_bump = (await credential_store.find_by_id("cred-1")).counter
        await credential_store.bump_counter("cred-1", 3)
        after_regression = (await credential_store.find_by_id("cred-1")).counter
        missing = await credential_store.bump_counter("missing", 9)
        return bumped, after_bump, after_regression, missing

    assert asyncio.run(scenario()) == (True, 7, 7, False)


def test_remove(credential_store):
    async def scenario():
        await credential_store.save(make_record("cred-1"))
        await credential_store.save(make_record("cred-2"))
        removed = await credential_store.remove("cred-1")
        removed_again = await credential_store.remove("cred-1")
        remaining = await credential_store.find_by_owner("user-1")
        return removed, removed_again, [record.credential_id for record in remaining]

    assert asyncio.run(scenario()) == (True, False, ["cred-2"])


def test_returned_records_are_copies():
    store = MemoryCredentialStore()

    async def scenario():
        await store.save(make_record())
        record = await store.find_by_id("cred-1")
        record.counter = 99
        return (await store.find_by_id("cred-1")).counter

    assert asyncio.run(scenario()) == 0


def test_file_layout_is_an_array(tmp_path):
    path = tmp_path / "credentials.json"
    asyncio.run(FileCredentialStore(path).save(make_record(name="Laptop")))
    on_disk = json.loads(path.read_text())
    assert isinstance(on_disk, list)
    assert on_disk[0]["credential_id"] == "cred-1"
    assert on_disk[0]["name"] == "Laptop"
    assert on_disk[0]["counter"] == 0


def test_records_survive_a_new_store_instance(tmp_path):
    path = tmp_path / "credentials.json"
    asyncio.run(FileCredentialStore(path).save(make_record()))
    reloaded = asyncio.run(FileCredentialStore(path).find_by_owner("user-1"))
    assert [record.public_key for record in reloaded] == ["pk1"]


def test_concurrent_saves_keep_every_record(tmp_path):
    store = FileCredentialStore(tmp_path / "credentials.json")

    async def scenario():
        await asyncio.gather(*(store.save(make_record(f"cred-{i}")) for i in range(20)))
        return await store.find_by_owner("user-1")

    records = asyncio.run(scenario())
    assert sorted(record.credential_id for record in records) == sorted(
        f"cred-{i}" for i in range(20)
    )


def test_concurrent_bumps_from_two_store_objects(tmp_path):
    path = tmp_path / "credentials.json"
    first = FileCredentialStore(path)
    second = FileCredentialStore(path)

    async def scenario():
        await first.save(make_record("cred-a"))
        await first.save(make_record("cred-b"))
        await asyncio.gather(
            first.bump_counter("cred-a", 5),
            second.bump_counter("cred-b", 8),
            first.save(make_record("cred-c")),
        )
        return {r.credential_id: r.counter for r in await second.find_by_owner("user-1")}

    assert asyncio.run(scenario()) == {"cred-a": 5, "cred-b": 8, "cred-c": 0}


def test_corrupted_file_is_not_treated_as_empty(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text("{{not valid json!!!")
    store = FileCredentialStore(path)
    with pytest.raises(StoreCorruptedError):
        asyncio.run(store.find_by_owner("user-1"))
    with pytest.raises(StoreCorruptedError):
        asyncio.run(store.save(make_record()))
    assert path.read_text() == "{{not valid json!!!"


def test_malformed_record_is_corruption(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text(json.dumps([{"credential_id": "cred-1"}]))
    with pytest.raises(StoreCorruptedError):
        asyncio.run(FileCredentialStore(path).find_by_id("cred-1"))


def test_store_from_settings(tmp_path):
    file_store = credential_store_from_settings(
        CeremonySettings(credential_store_path=str(tmp_path / "c.json"))
    )
    assert isinstance(file_store, FileCredentialStore)
    assert isinstance(credential_store_from_settings(CeremonySettings()), MemoryCredentialStore)
