"""
CASRecordStore — RecordStorePort on top of compare-and-set object storage.

The whole database (every collection, plus the id sequence) is one JSON
document behind an ObjectStoragePort. Every mutation does:
  1. read current document + etag from storage
  2. purge expired deleted records, then apply the mutation in memory
  3. CAS write back with if_match=etag (retries on CASConflictError)

A conditional update whose predicate matches nothing leaves the document
untouched and skips the write, so an empty poll costs a single read, unless
the purge in step 2 found deleted records to drop.

Retry policy
------------
Direct mode retries up to `max_retries` times (default 10) on
CASConflictError with linear back-off (10ms × attempt), then re-raises.

Group commit
------------
With group_commit=True, use the store as an async context manager. While it
is open, mutations are funnelled through a GroupCommitLoop and concurrent
callers share CAS writes. Outside the context the store runs in direct mode.

Transactions
------------
transaction() yields a CASSession. insert_one/update_one calls that pass the
session are buffered and applied together in one CAS write when the block
exits cleanly; if the block raises, or any buffered op fails at commit time,
nothing is written. Sessions only cover collections of the same store.
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from collections.abc import AsyncIterator, Sequence
from datetime import timedelta
from types import TracebackType

from docqueue.core import codec
from docqueue.core.group_commit import GroupCommitLoop, MutationFn
from docqueue.domain.errors import CASConflictError, TransactionError
from docqueue.domain.models import (
    JobRecord,
    RecordChange,
    RecordDraft,
    RecordMatch,
    StoreState,
    utcnow,
)
from docqueue.ports.storage import ObjectStoragePort
from docqueue.ports.store import StoreSession

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class CASSession:
    """Buffered writes of one open CASRecordStore transaction."""

    store: CASRecordStore

    _ops: list[MutationFn] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _active: bool = dataclasses.field(default=True, init=False, repr=False)

    @property
    def active(self) -> bool:
        return self._active

    def add(self, fn: MutationFn) -> None:
        if not self._active:
            raise TransactionError("transaction is already closed")
        self._ops.append(fn)

    def close(self) -> list[MutationFn]:
        """Deactivate the session and hand back its buffered ops."""
        self._active = False
        ops, self._ops = self._ops, []
        return ops


@dataclasses.dataclass
class CASRecordStore:
    """
    Record store persisted as one document on object storage.

    Parameters
    ----------
    storage      : any ObjectStoragePort implementation
    purge_after  : deleted records older than this are dropped on the next
                   write cycle (default 0: purged as soon as a write sees them)
    max_retries  : CAS attempts per operation in direct mode
    group_commit : batch concurrent mutations while used as a context manager
    """

    storage: ObjectStoragePort
    purge_after: timedelta = timedelta(0)
    max_retries: int = 10
    group_commit: bool = False

    _loop: GroupCommitLoop | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.group_commit:
            self._loop = GroupCommitLoop(storage=self.storage, sweep=self._sweep)

    async def __aenter__(self) -> "CASRecordStore":
        if self._loop is not None:
            await self._loop.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._loop is not None and self._loop.running:
            await self._loop.stop()

    @property
    def supports_transactions(self) -> bool:
        return True

    # ------------------------------------------------------------------ #
    # Write operations                                                     #
    # ------------------------------------------------------------------ #

    async def ensure_indexes(self, collection: str) -> None:
        await self._mutate(lambda state: state.with_indexes(collection))

    async def insert_many(
        self, collection: str, drafts: Sequence[RecordDraft]
    ) -> list[str]:
        if not drafts:
            return []
        ids: list[str] = []

        def _fn(state: StoreState) -> StoreState:
            nonlocal ids
            state, ids = state.with_drafts_inserted(collection, drafts)
            return state

        await self._mutate(_fn)
        return ids

    async def insert_one(
        self,
        collection: str,
        record: JobRecord,
        *,
        session: StoreSession | None = None,
    ) -> str:
        def _fn(state: StoreState) -> StoreState:
            return state.with_record_inserted(collection, record)

        if session is not None:
            self._own(session).add(_fn)
        else:
            await self._mutate(_fn)
        return record.id

    async def find_one_and_update(
        self,
        collection: str,
        match: RecordMatch,
        change: RecordChange,
        *,
        oldest_first: bool = False,
    ) -> JobRecord | None:
        result: JobRecord | None = None

        def _fn(state: StoreState) -> StoreState:
            nonlocal result
            state, result = state.with_record_updated(
                collection, match, change, oldest_first=oldest_first
            )
            return state

        await self._mutate(_fn)
        return result

    async def update_one(
        self,
        collection: str,
        match: RecordMatch,
        change: RecordChange,
        *,
        session: StoreSession | None = None,
    ) -> None:
        def _fn(state: StoreState) -> StoreState:
            new_state, _ = state.with_record_updated(collection, match, change)
            return new_state

        if session is not None:
            self._own(session).add(_fn)
        else:
            await self._mutate(_fn)

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[CASSession]:
        session = CASSession(store=self)
        try:
            yield session
        except BaseException:
            discarded = session.close()
            logger.debug("transaction aborted, %d ops discarded", len(discarded))
            raise
        ops = session.close()
        if ops:
            await self._mutate(_chain(ops))

    # ------------------------------------------------------------------ #
    # Read operations (no CAS needed)                                     #
    # ------------------------------------------------------------------ #

    async def count(self, collection: str, match: RecordMatch | None = None) -> int:
        state = await self.read_state()
        return state.collection(collection).count(match)

    async def read_state(self) -> StoreState:
        """Read-only snapshot of the database document."""
        content, _ = await self.storage.read()
        return codec.decode(content)

    # ------------------------------------------------------------------ #
    # Internal CAS loop                                                   #
    # ------------------------------------------------------------------ #

    def _own(self, session: StoreSession) -> CASSession:
        if not isinstance(session, CASSession) or session.store is not self:
            raise TransactionError("session belongs to a different store")
        return session

    def _sweep(self, state: StoreState) -> StoreState:
        state, purged = state.purge_deleted(utcnow() - self.purge_after)
        if purged:
            logger.debug("purged %d deleted records", purged)
        return state

    async def _mutate(self, fn: MutationFn) -> None:
        """
        Read-modify-write with CAS retry loop.

        fn(state) -> new_state  (synchronous)
        Retries up to self.max_retries on CASConflictError.
        """
        if self._loop is not None and self._loop.running:
            await self._loop.submit(fn)
            return

        for attempt in range(self.max_retries):
            content, etag = await self.storage.read()
            original = codec.decode(content)
            state = fn(self._sweep(original))
            if state is original:
                return
            state = state.model_copy(update={"version": original.version + 1})
            try:
                await self.storage.write(codec.encode(state), if_match=etag)
                return
            except CASConflictError:
                if attempt == self.max_retries - 1:
                    raise
                logger.debug("CAS conflict, retrying (attempt %d)", attempt + 1)
                await asyncio.sleep(0.01 * (attempt + 1))


def _chain(ops: list[MutationFn]) -> MutationFn:
    def _fn(state: StoreState) -> StoreState:
        for op in ops:
            state = op(state)
        return state

    return _fn
