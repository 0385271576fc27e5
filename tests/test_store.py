from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from productive_fast.patterns import COMPANY, ENTITY_KINDS, PERSON, SERVICE
from productive_fast.store import EntityRecord, ReferenceStore, StoreHandle


def _person(id: str, label: str, *fields: str) -> EntityRecord:
    return EntityRecord(id=id, kind=PERSON, label=label, search_fields=list(fields))


def test_handle_requires_tenant(tmp_path: Path):
    with pytest.raises(ValueError):
        StoreHandle("", tmp_path / "x.db")


def test_upsert_then_search_every_label_is_exact(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            for kind in ENTITY_KINDS:
                records = [
                    EntityRecord(id="1", kind=kind, label="Alpha One"),
                    EntityRecord(id="2", kind=kind, label="Alpha"),
                ]
                assert await store.upsert(kind, records) == 2
                for record in records:
                    found = await store.search(kind, record.label)
                    assert record.id in [r.id for r in found]
                    match = next(r for r in found if r.id == record.id)
                    assert match.matches_exactly(record.label)
        finally:
            await handle.close()

    asyncio.run(run())


def test_exact_matches_rank_before_substring(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            await store.upsert(
                PERSON,
                [
                    _person("1", "Annabel Lee"),
                    _person("2", "Anna"),
                    _person("3", "Joanna Smith", "anna@example.com"),
                ],
            )
            found = await store.search(PERSON, "ANNA")
            assert [r.id for r in found][0] == "2"
            assert {r.id for r in found} == {"1", "2", "3"}

            by_email = await store.search(PERSON, "anna@example.com")
            assert [r.id for r in by_email] == ["3"]
        finally:
            await handle.close()

    asyncio.run(run())


def test_search_respects_owner_and_limit(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            await store.upsert(
                SERVICE,
                [
                    EntityRecord(id="10", kind=SERVICE, label="Design", owner_id="p1"),
                    EntityRecord(id="11", kind=SERVICE, label="Design", owner_id="p2"),
                    EntityRecord(id="12", kind=SERVICE, label="Design QA", owner_id="p2"),
                ],
            )
            scoped = await store.search(SERVICE, "design", owner_id="p2")
            assert [r.id for r in scoped] == ["11", "12"]

            limited = await store.search(SERVICE, "design", limit=1)
            assert len(limited) == 1
        finally:
            await handle.close()

    asyncio.run(run())


def test_upsert_is_idempotent_and_synced_at_never_moves_backward(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            batch = [_person("1", "John Doe", "john@example.com"), _person("2", "Jane Doe")]
            await store.upsert(PERSON, batch)
            first = await store.last_synced_at(PERSON)
            before = [r.id for r in await store.search(PERSON, "doe")]

            await store.upsert(PERSON, [_person("1", "John Doe", "john@example.com"), _person("2", "Jane Doe")])
            second = await store.last_synced_at(PERSON)
            after = [r.id for r in await store.search(PERSON, "doe")]

            assert first is not None and second is not None
            assert second >= first
            assert before == after
            assert await store.count(PERSON) == 2
        finally:
            await handle.close()

    asyncio.run(run())


def test_batch_shares_synced_at(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            batch = [_person(str(i), f"Person {i}") for i in range(5)]
            await store.upsert(PERSON, batch)
            stamps = {r.synced_at for r in await store.search(PERSON, "person")}
            assert len(stamps) == 1
            assert stamps == {batch[0].synced_at}
        finally:
            await handle.close()

    asyncio.run(run())


def test_is_fresh_and_clear(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            assert not await store.is_fresh(COMPANY, 60_000)
            await store.upsert(COMPANY, [EntityRecord(id="1", kind=COMPANY, label="Meta")])
            assert await store.is_fresh(COMPANY, 60_000)
            assert not await store.is_fresh(COMPANY, -1)

            await store.upsert(PERSON, [_person("1", "John")])
            await store.clear(COMPANY)
            assert await store.count(COMPANY) == 0
            assert not await store.is_fresh(COMPANY, 60_000)
            assert await store.count(PERSON) == 1

            await store.clear()
            stats = await store.stats()
            assert all(count == 0 for count in stats["counts"].values())
        finally:
            await handle.close()

    asyncio.run(run())


def test_fuzzy_suggestions(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            await store.upsert(
                COMPANY,
                [
                    EntityRecord(id="1", kind=COMPANY, label="Acme Corporation"),
                    EntityRecord(id="2", kind=COMPANY, label="Globex"),
                ],
            )
            suggestions = await store.search_fuzzy(COMPANY, "acme corp")
            assert [r.id for r in suggestions] == ["1"]
            assert await store.search_fuzzy(COMPANY, "zzzz") == []
        finally:
            await handle.close()

    asyncio.run(run())


def test_get_returns_payload(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            record = EntityRecord(
                id="7", kind=PERSON, label="John", data={"id": "7", "type": "people"}
            )
            await store.upsert(PERSON, [record])
            loaded = await store.get(PERSON, "7")
            assert loaded is not None
            assert loaded.data == {"id": "7", "type": "people"}
            assert await store.get(PERSON, "8") is None
        finally:
            await handle.close()

    asyncio.run(run())


def test_unavailable_store_degrades_to_miss(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")

    async def run():
        handle = StoreHandle("org-1", blocker / "store.db")
        store = ReferenceStore(handle)
        assert await store.upsert(PERSON, [_person("1", "John")]) == 0
        assert await store.search(PERSON, "john") == []
        assert await store.is_fresh(PERSON, 60_000) is False
        assert handle.is_degraded()
        health = handle.get_health()
        assert health["degraded"] is True
        assert health["failureCount"] >= 1
        await handle.close()

    asyncio.run(run())


def test_unknown_kind_is_rejected(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            with pytest.raises(ValueError):
                await store.search("widget", "x")
        finally:
            await handle.close()

    asyncio.run(run())


def test_failed_batch_commits_nothing(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            await store.upsert(PERSON, [_person("1", "John")])
            synced_before = await store.last_synced_at(PERSON)

            # label is NOT NULL, so the second row fails after the first was inserted.
            broken = EntityRecord(id="3", kind=PERSON, label=None)  # type: ignore[arg-type]
            assert await store.upsert(PERSON, [_person("2", "Jane"), broken]) == 0
            assert handle.is_degraded()

            assert await store.get(PERSON, "2") is None
            assert await store.get(PERSON, "3") is None
            assert await store.count(PERSON) == 1
            assert await store.last_synced_at(PERSON) == synced_before
            assert not handle.is_degraded()
        finally:
            await handle.close()

    asyncio.run(run())


def test_failed_first_batch_leaves_kind_unsynced(tmp_path: Path):
    async def run():
        handle = StoreHandle("org-1", tmp_path / "store.db")
        store = ReferenceStore(handle)
        try:
            broken = EntityRecord(id="2", kind=COMPANY, label=None)  # type: ignore[arg-type]
            batch = [EntityRecord(id="1", kind=COMPANY, label="Meta"), broken]
            assert await store.upsert(COMPANY, batch) == 0
            assert await store.count(COMPANY) == 0
            assert await store.last_synced_at(COMPANY) is None
            assert not await store.is_fresh(COMPANY, 60_000)
        finally:
            await handle.close()

    asyncio.run(run())
