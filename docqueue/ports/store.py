"""
RecordStorePort — the capability the Queue depends on.

The queue core never talks to a vendor API. It needs a store that offers,
per named collection:

  (a) find_one_and_update — atomic conditional read-modify-write, optionally
      selecting the lowest id among matches (FIFO tie-break)
  (b) a sparse uniqueness constraint on the ack field
  (c) background purge of records once deleted is set
  (d) optionally, multi-record transactions

(b) and (c) are switched on per collection by ensure_indexes(), which must be
idempotent. (d) is advertised through supports_transactions; when it is True,
transaction() yields a session that insert_one/update_one accept. Writes
issued with a session become visible together when the session commits and
not at all if it aborts.

Built-in implementation: CASRecordStore (adapters/store/cas.py), which keeps
the whole database in one object behind an ObjectStoragePort.
"""

from __future__ import annotations

from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from typing import Protocol, runtime_checkable

from docqueue.domain.models import JobRecord, RecordChange, RecordDraft, RecordMatch


class StoreSession(Protocol):
    """Opaque handle of an open store transaction."""

    @property
    def active(self) -> bool: ...


@runtime_checkable
class RecordStorePort(Protocol):
    """Structural interface implemented by record store adapters."""

    @property
    def supports_transactions(self) -> bool:
        """True if transaction() gives all-or-nothing multi-record writes."""
        ...

    async def ensure_indexes(self, collection: str) -> None:
        """Enable the unique-ack constraint and deleted-record purge."""
        ...

    async def insert_many(
        self, collection: str, drafts: Sequence[RecordDraft]
    ) -> list[str]:
        """Insert new records; return their store-assigned ids in input order."""
        ...

    async def insert_one(
        self,
        collection: str,
        record: JobRecord,
        *,
        session: StoreSession | None = None,
    ) -> str:
        """
        Insert a record that already carries an id.

        Raises DuplicateKeyError if the id or ack is already taken.
        """
        ...

    async def find_one_and_update(
        self,
        collection: str,
        match: RecordMatch,
        change: RecordChange,
        *,
        oldest_first: bool = False,
    ) -> JobRecord | None:
        """
        Atomically apply change to one matching record.

        Returns the record as it is after the update, or None if nothing
        matched.
        """
        ...

    async def update_one(
        self,
        collection: str,
        match: RecordMatch,
        change: RecordChange,
        *,
        session: StoreSession | None = None,
    ) -> None:
        """Apply change to the first matching record, if any."""
        ...

    async def count(self, collection: str, match: RecordMatch | None = None) -> int:
        """Number of records matching (all records when match is None)."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[StoreSession]:
        """Commit on clean exit, abort on exception."""
        ...
