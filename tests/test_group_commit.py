import asyncio
from datetime import datetime, timezone

import pytest

from docqueue.adapters.storage.memory import InMemoryStorage
from docqueue.core.group_commit import GroupCommitLoop
from docqueue.domain.errors import CASConflictError, DuplicateKeyError, StoreError
from docqueue.domain.models import (
    JobRecord,
    RecordChange,
    RecordDraft,
    RecordMatch,
    StoreState,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _insert(payload: str):
    def _fn(state: StoreState) -> StoreState:
        state, _ = state.with_drafts_inserted(
            "jobs", [RecordDraft(payload=payload, visible=NOW)]
        )
        return state

    return _fn


def _payloads(state: StoreState) -> list:
    return [r.payload for r in state.collection("jobs").records]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def loop() -> GroupCommitLoop:  # type: ignore[misc]
    gcl = GroupCommitLoop(storage=InMemoryStorage())
    await gcl.start()
    yield gcl
    await gcl.stop()


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def test_start_and_stop_toggle_running() -> None:
    gcl = GroupCommitLoop(storage=InMemoryStorage())
    assert not gcl.running
    await gcl.start()
    assert gcl.running
    await gcl.stop()
    assert not gcl.running


async def test_double_start_raises() -> None:
    gcl = GroupCommitLoop(storage=InMemoryStorage())
    await gcl.start()
    try:
        with pytest.raises(RuntimeError):
            await gcl.start()
    finally:
        await gcl.stop()


async def test_submit_after_stop_raises() -> None:
    gcl = GroupCommitLoop(storage=InMemoryStorage())
    await gcl.start()
    await gcl.stop()
    with pytest.raises(StoreError):
        await gcl.submit(_insert("late"))


async def test_stop_drains_pending_ops() -> None:
    gcl = GroupCommitLoop(storage=InMemoryStorage())
    await gcl.start()
    submit_task = asyncio.create_task(gcl.submit(_insert("pending")))
    # Yield so the op reaches the pending buffer
    await asyncio.sleep(0)
    await gcl.stop()
    await submit_task
    assert _payloads(await gcl.read_state()) == ["pending"]


# ---------------------------------------------------------------------------
# Commit behaviour
# ---------------------------------------------------------------------------


async def test_submit_commits_and_bumps_version(loop: GroupCommitLoop) -> None:
    await loop.submit(_insert("a"))
    state = await loop.read_state()
    assert _payloads(state) == ["a"]
    assert state.version == 1


async def test_unchanged_state_skips_write() -> None:
    storage = InMemoryStorage()
    gcl = GroupCommitLoop(storage=storage)
    await gcl.start()
    try:
        await gcl.submit(lambda state: state)
        assert storage.writes == 0
    finally:
        await gcl.stop()


async def test_concurrent_submits_share_writes() -> None:
    storage = InMemoryStorage()
    gcl = GroupCommitLoop(storage=storage)
    await gcl.start()
    try:
        await asyncio.gather(*(gcl.submit(_insert(f"p{i}")) for i in range(10)))
        state = await gcl.read_state()
        assert sorted(_payloads(state)) == sorted(f"p{i}" for i in range(10))
        assert storage.writes < 10
    finally:
        await gcl.stop()


async def test_ops_in_one_batch_see_each_other(loop: GroupCommitLoop) -> None:
    await loop.submit(_insert("only"))
    claimed: list[JobRecord | None] = []

    def claim(state: StoreState) -> StoreState:
        state, record = state.with_record_updated(
            "jobs",
            RecordMatch(has_ack=False),
            RecordChange(inc_tries=1, set_ack=f"tok{len(claimed)}"),
        )
        claimed.append(record)
        return state

    await asyncio.gather(loop.submit(claim), loop.submit(claim))
    assert sum(1 for r in claimed if r is not None) == 1


async def test_per_op_error_isolation(loop: GroupCommitLoop) -> None:
    record = JobRecord(id="dup", visible=NOW)
    await loop.submit(lambda state: state.with_record_inserted("jobs", record))

    results = await asyncio.gather(
        loop.submit(lambda state: state.with_record_inserted("jobs", record)),
        loop.submit(_insert("new")),
        return_exceptions=True,
    )
    assert isinstance(results[0], DuplicateKeyError)
    assert results[1] is None
    assert _payloads(await loop.read_state()) == [None, "new"]


async def test_writer_loop_survives_op_error(loop: GroupCommitLoop) -> None:
    def boom(state: StoreState) -> StoreState:
        raise ValueError("bad mutation")

    with pytest.raises(ValueError):
        await loop.submit(boom)
    await loop.submit(_insert("after"))
    assert _payloads(await loop.read_state()) == ["after"]


async def test_sweep_runs_every_cycle() -> None:
    sweeps = 0

    def sweep(state: StoreState) -> StoreState:
        nonlocal sweeps
        sweeps += 1
        return state

    gcl = GroupCommitLoop(storage=InMemoryStorage(), sweep=sweep)
    await gcl.start()
    try:
        await gcl.submit(_insert("a"))
        await gcl.submit(_insert("b"))
        assert sweeps == 2
    finally:
        await gcl.stop()


# ---------------------------------------------------------------------------
# CAS retry
# ---------------------------------------------------------------------------


async def test_commit_batch_retries_on_cas_conflict() -> None:
    real_storage = InMemoryStorage()
    fail_count = 0
    original_write = real_storage.write

    async def flaky_write(content: bytes, if_match: str | None = None) -> str:
        nonlocal fail_count
        if fail_count < 3:
            fail_count += 1
            raise CASConflictError("simulated")
        return await original_write(content, if_match)

    real_storage.write = flaky_write  # type: ignore[method-assign]
    gcl = GroupCommitLoop(storage=real_storage)
    await gcl.start()
    try:
        await gcl.submit(_insert("data"))
        assert fail_count == 3
        assert _payloads(await gcl.read_state()) == ["data"]
    finally:
        await gcl.stop()


async def test_storage_failure_fails_whole_batch() -> None:
    storage = InMemoryStorage()

    async def broken_write(content: bytes, if_match: str | None = None) -> str:
        raise RuntimeError("disk gone")

    storage.write = broken_write  # type: ignore[method-assign]
    gcl = GroupCommitLoop(storage=storage)
    await gcl.start()
    try:
        with pytest.raises(RuntimeError, match="disk gone"):
            await gcl.submit(_insert("lost"))
    finally:
        await gcl.stop()
