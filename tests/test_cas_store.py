import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from docqueue.adapters.storage.filesystem import LocalFileSystemStorage
from docqueue.adapters.storage.memory import InMemoryStorage
from docqueue.adapters.store.cas import CASRecordStore, CASSession
from docqueue.domain.errors import (
    CASConflictError,
    DuplicateKeyError,
    TransactionError,
)
from docqueue.domain.models import (
    JobRecord,
    RecordChange,
    RecordDraft,
    RecordMatch,
)
from docqueue.ports.store import RecordStorePort

# ---------------------------------------------------------------------------
# Fixtures / helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _drafts(*payloads: str) -> list[RecordDraft]:
    return [RecordDraft(payload=p, visible=_now()) for p in payloads]


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
async def store(storage: InMemoryStorage) -> CASRecordStore:
    s = CASRecordStore(storage=storage)
    await s.ensure_indexes("jobs")
    return s


async def test_satisfies_record_store_port(store: CASRecordStore) -> None:
    assert isinstance(store, RecordStorePort)
    assert store.supports_transactions


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------


async def test_ensure_indexes_is_idempotent(
    store: CASRecordStore, storage: InMemoryStorage
) -> None:
    writes = storage.writes
    await store.ensure_indexes("jobs")
    assert storage.writes == writes
    coll = (await store.read_state()).collection("jobs")
    assert coll.unique_ack and coll.expire_deleted


# ---------------------------------------------------------------------------
# Inserts
# ---------------------------------------------------------------------------


async def test_insert_many_returns_ids_in_order(store: CASRecordStore) -> None:
    ids = await store.insert_many("jobs", _drafts("a", "b", "c"))
    state = await store.read_state()
    assert [state.find("jobs", i).payload for i in ids] == ["a", "b", "c"]  # type: ignore[union-attr]
    assert ids == sorted(ids)


async def test_insert_many_empty_does_not_write(
    store: CASRecordStore, storage: InMemoryStorage
) -> None:
    writes = storage.writes
    assert await store.insert_many("jobs", []) == []
    assert storage.writes == writes


async def test_ids_are_unique_across_collections(store: CASRecordStore) -> None:
    a = await store.insert_many("jobs", _drafts("a"))
    b = await store.insert_many("other", _drafts("b"))
    assert a[0] < b[0]


async def test_insert_one_duplicate_id_raises(store: CASRecordStore) -> None:
    record = JobRecord(id="fixed", visible=_now())
    await store.insert_one("jobs", record)
    with pytest.raises(DuplicateKeyError):
        await store.insert_one("jobs", record)


# ---------------------------------------------------------------------------
# Conditional updates
# ---------------------------------------------------------------------------


async def test_find_one_and_update_oldest_first(store: CASRecordStore) -> None:
    ids = await store.insert_many("jobs", _drafts("first", "second"))
    record = await store.find_one_and_update(
        "jobs", RecordMatch(has_ack=False), RecordChange(set_ack="tok"), oldest_first=True
    )
    assert record is not None
    assert record.id == ids[0]
    assert record.ack == "tok"


async def test_find_one_and_update_no_match_skips_write(
    store: CASRecordStore, storage: InMemoryStorage
) -> None:
    writes = storage.writes
    record = await store.find_one_and_update(
        "jobs", RecordMatch(id="missing"), RecordChange(set_ack="tok")
    )
    assert record is None
    assert storage.writes == writes


async def test_find_one_and_update_rejects_ack_reuse(store: CASRecordStore) -> None:
    await store.insert_many("jobs", _drafts("a", "b"))
    await store.find_one_and_update("jobs", RecordMatch(has_ack=False), RecordChange(set_ack="tok"))
    with pytest.raises(DuplicateKeyError):
        await store.find_one_and_update(
            "jobs", RecordMatch(has_ack=False), RecordChange(set_ack="tok")
        )


async def test_update_one_applies_change(store: CASRecordStore) -> None:
    [record_id] = await store.insert_many("jobs", _drafts("a"))
    await store.update_one("jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()))
    assert await store.count("jobs", RecordMatch(deleted=True)) == 1


async def test_version_increments_per_write(store: CASRecordStore) -> None:
    before = (await store.read_state()).version
    await store.insert_many("jobs", _drafts("a"))
    await store.insert_many("jobs", _drafts("b"))
    assert (await store.read_state()).version == before + 2


# ---------------------------------------------------------------------------
# Purge
# ---------------------------------------------------------------------------


async def test_deleted_records_purged_on_next_write(storage: InMemoryStorage) -> None:
    store = CASRecordStore(storage=storage)
    await store.ensure_indexes("jobs")
    [record_id] = await store.insert_many("jobs", _drafts("a"))
    await store.update_one("jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()))
    assert await store.count("jobs") == 1

    # purge happens on the next write cycle
    await store.insert_many("jobs", _drafts("b"))
    state = await store.read_state()
    assert state.find("jobs", record_id) is None
    assert state.collection("jobs").count() == 1


async def test_purge_alone_triggers_a_write(storage: InMemoryStorage) -> None:
    store = CASRecordStore(storage=storage)
    await store.ensure_indexes("jobs")
    [record_id] = await store.insert_many("jobs", _drafts("a"))
    await store.update_one("jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()))
    writes = storage.writes

    claimed = await store.find_one_and_update(
        "jobs", RecordMatch(deleted=False), RecordChange(inc_tries=1)
    )
    assert claimed is None
    assert storage.writes == writes + 1
    assert await store.count("jobs") == 0


async def test_deleted_records_kept_inside_window(storage: InMemoryStorage) -> None:
    store = CASRecordStore(storage=storage, purge_after=timedelta(minutes=5))
    await store.ensure_indexes("jobs")
    [record_id] = await store.insert_many("jobs", _drafts("a"))
    await store.update_one("jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()))
    await store.insert_many("jobs", _drafts("b"))
    assert (await store.read_state()).find("jobs", record_id) is not None


async def test_collections_without_indexes_are_not_purged(storage: InMemoryStorage) -> None:
    store = CASRecordStore(storage=storage)
    [record_id] = await store.insert_many("raw", _drafts("a"))
    await store.update_one("raw", RecordMatch(id=record_id), RecordChange(set_deleted=_now()))
    await store.insert_many("raw", _drafts("b"))
    assert await store.count("raw") == 2


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


async def test_transaction_commits_in_one_write(
    store: CASRecordStore, storage: InMemoryStorage
) -> None:
    [record_id] = await store.insert_many("jobs", _drafts("a"))
    writes = storage.writes
    async with store.transaction() as session:
        await store.insert_one("dead", JobRecord(id=record_id, visible=_now()), session=session)
        await store.update_one(
            "jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()), session=session
        )
        # nothing is visible until commit
        assert (await store.read_state()).find("dead", record_id) is None
    assert storage.writes == writes + 1
    state = await store.read_state()
    assert state.find("dead", record_id) is not None
    assert state.find("jobs", record_id).deleted is not None  # type: ignore[union-attr]


async def test_transaction_aborts_on_exception(
    store: CASRecordStore, storage: InMemoryStorage
) -> None:
    writes = storage.writes
    with pytest.raises(RuntimeError):
        async with store.transaction() as session:
            await store.insert_one("dead", JobRecord(id="x", visible=_now()), session=session)
            raise RuntimeError("abort")
    assert storage.writes == writes
    assert (await store.read_state()).find("dead", "x") is None


async def test_transaction_all_or_nothing_on_commit_error(store: CASRecordStore) -> None:
    await store.insert_one("dead", JobRecord(id="taken", visible=_now()))
    [record_id] = await store.insert_many("jobs", _drafts("a"))

    with pytest.raises(DuplicateKeyError):
        async with store.transaction() as session:
            await store.update_one(
                "jobs", RecordMatch(id=record_id), RecordChange(set_deleted=_now()), session=session
            )
            await store.insert_one("dead", JobRecord(id="taken", visible=_now()), session=session)

    assert (await store.read_state()).find("jobs", record_id).deleted is None  # type: ignore[union-attr]


async def test_closed_session_rejects_ops(store: CASRecordStore) -> None:
    async with store.transaction() as session:
        pass
    assert not session.active
    with pytest.raises(TransactionError):
        await store.insert_one("jobs", JobRecord(id="late", visible=_now()), session=session)


async def test_foreign_session_rejected(store: CASRecordStore) -> None:
    other = CASRecordStore(storage=InMemoryStorage())
    with pytest.raises(TransactionError):
        await store.update_one(
            "jobs", RecordMatch(), RecordChange(set_ack="t"), session=CASSession(store=other)
        )


# ---------------------------------------------------------------------------
# CAS retry
# ---------------------------------------------------------------------------


async def test_retries_on_cas_conflict(storage: InMemoryStorage) -> None:
    fail_count = 0
    original_write = storage.write

    async def flaky_write(content: bytes, if_match: str | None = None) -> str:
        nonlocal fail_count
        if fail_count < 2:
            fail_count += 1
            raise CASConflictError("simulated")
        return await original_write(content, if_match)

    storage.write = flaky_write  # type: ignore[method-assign]
    store = CASRecordStore(storage=storage)
    ids = await store.insert_many("jobs", _drafts("a"))
    assert fail_count == 2
    assert (await store.read_state()).find("jobs", ids[0]) is not None


async def test_gives_up_after_max_retries(storage: InMemoryStorage) -> None:
    async def always_conflict(content: bytes, if_match: str | None = None) -> str:
        raise CASConflictError("simulated")

    storage.write = always_conflict  # type: ignore[method-assign]
    store = CASRecordStore(storage=storage, max_retries=3)
    with pytest.raises(CASConflictError):
        await store.insert_many("jobs", _drafts("a"))


async def test_concurrent_writers_on_shared_file(tmp_path) -> None:
    path = tmp_path / "db.json"
    stores = [CASRecordStore(LocalFileSystemStorage(path), max_retries=50) for _ in range(4)]
    await asyncio.gather(
        *(s.insert_many("jobs", _drafts(f"p{i}")) for i, s in enumerate(stores))
    )
    assert await stores[0].count("jobs") == 4


# ---------------------------------------------------------------------------
# Group commit
# ---------------------------------------------------------------------------


async def test_group_commit_batches_concurrent_writes(storage: InMemoryStorage) -> None:
    async with CASRecordStore(storage=storage, group_commit=True) as store:
        await store.ensure_indexes("jobs")
        writes = storage.writes
        await asyncio.gather(*(store.insert_many("jobs", _drafts(f"p{i}")) for i in range(10)))
        assert await store.count("jobs") == 10
        assert storage.writes - writes < 10


async def test_group_commit_transaction(storage: InMemoryStorage) -> None:
    async with CASRecordStore(storage=storage, group_commit=True) as store:
        async with store.transaction() as session:
            await store.insert_one("a", JobRecord(id="1", visible=_now()), session=session)
            await store.insert_one("b", JobRecord(id="2", visible=_now()), session=session)
        state = await store.read_state()
        assert state.find("a", "1") is not None
        assert state.find("b", "2") is not None


async def test_store_falls_back_to_direct_mode_after_exit(storage: InMemoryStorage) -> None:
    store = CASRecordStore(storage=storage, group_commit=True)
    async with store:
        await store.insert_many("jobs", _drafts("a"))
    await store.insert_many("jobs", _drafts("b"))
    assert await store.count("jobs") == 2
