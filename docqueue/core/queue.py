"""
Queue — visibility-timeout job queue over a RecordStorePort.

State machine of one record
---------------------------
    add ──> visible (tries=0) ──get──> claimed (tries+1, ack, visible=now+v)
                  ^                        │  │  │
                  │   visibility lapses    │  │  └─ping──> claimed (visible=now+v)
                  └────────────────────────┘  │
                                              ├─ack──────> deleted ──> purged by store
                                              └─poisoned─> deleted + copy in DLQ

Every transition is one atomic conditional update in the store; the queue
holds no locks of its own and any number of producers and consumers may share
a collection. Delivery is at-least-once: a consumer that outlives its
visibility window loses the job to the next get() and finds out through
UnknownAckError on its next ping() or ack().

Usage
-----
    from docqueue import CASRecordStore, InMemoryStorage, connect

    store = CASRecordStore(InMemoryStorage())
    dead = await connect(store, "emails-dead")
    q = await connect(store, "emails", visibility=30, dead_queue=dead)

    await q.add({"to": "user@example.com"})
    job = await q.get()
    if job is not None:
        send(job.payload)
        await q.ack(job.ack)
"""

from __future__ import annotations

import dataclasses
import logging
import math
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import overload

from pydantic import JsonValue, ValidationError

from docqueue.domain.errors import (
    ConfigurationError,
    DuplicateKeyError,
    UnknownAckError,
)
from docqueue.domain.models import (
    Batch,
    ClaimedJob,
    JobRecord,
    QueueOptions,
    RecordChange,
    RecordDraft,
    RecordMatch,
    RecurringTemplate,
    Single,
    new_ack_token,
    utcnow,
)
from docqueue.ports.store import RecordStorePort

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class Queue:
    """
    One logical queue: a collection name inside a record store.

    Build instances with Queue.connect() (or docqueue.connect()), which
    validates the options and creates the collection's indexes.

    Parameters
    ----------
    store      : record store holding the collection
    name       : collection name
    options    : validated QueueOptions
    dead_queue : queue that receives poisoned records, or None
    """

    store: RecordStorePort
    name: str
    options: QueueOptions = dataclasses.field(default_factory=QueueOptions)
    dead_queue: Queue | None = None

    _transactional: bool = dataclasses.field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        self._transactional = self._can_move_atomically()

    @classmethod
    async def connect(
        cls,
        store: RecordStorePort | None,
        name: str | None,
        *,
        visibility: float = 30,
        delay: float = 0,
        dead_queue: Queue | None = None,
        max_retries: int = 5,
        transactional_dlq: bool = False,
    ) -> Queue:
        """Validate options, build indexes (idempotent) and return the queue."""
        if store is None:
            raise ConfigurationError("docqueue: supply a record store")
        if not name:
            raise ConfigurationError("docqueue: supply a collection name")
        try:
            options = QueueOptions(
                visibility=visibility,
                delay=delay,
                max_retries=max_retries,
                transactional_dlq=transactional_dlq,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"docqueue: invalid options for {name!r}: {exc}") from exc
        if dead_queue is not None and dead_queue.store is store and dead_queue.name == name:
            raise ConfigurationError(f"docqueue: {name!r} cannot be its own dead-letter queue")

        queue = cls(store=store, name=name, options=options, dead_queue=dead_queue)
        await store.ensure_indexes(name)
        if transactional_dlq and dead_queue is not None and not queue._transactional:
            logger.warning(
                "queue %r: transactional DLQ unavailable (store without transactions "
                "or dead queue on another store); poisoned records are moved with "
                "two separate writes and may be duplicated if the process dies between them",
                name,
            )
        return queue

    # ------------------------------------------------------------------ #
    # Produce                                                              #
    # ------------------------------------------------------------------ #

    @overload
    async def add(self, payload: Batch, *, delay: float | None = None) -> list[str]: ...

    @overload
    async def add(
        self, payload: Single | JsonValue, *, delay: float | None = None
    ) -> str: ...

    async def add(
        self,
        payload: Single | Batch | JsonValue,
        *,
        delay: float | None = None,
    ) -> str | list[str]:
        """
        Insert one record per payload, visible after `delay` seconds.

        Batch(...) returns ids in input order; anything else is a single
        payload and returns one id. A plain list is a single payload too, so
        add(["a", "b"]) stores one record holding the list. To enqueue each
        element as its own job, wrap it in Batch or call add_bulk().
        """
        delay = self.options.delay if delay is None else delay
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        now = utcnow()
        visible = now + timedelta(seconds=delay) if delay else now

        match payload:
            case Batch(payloads=payloads):
                drafts = [RecordDraft(payload=p, visible=visible) for p in payloads]
                return await self.store.insert_many(self.name, drafts)
            case Single(payload=single):
                pass
            case _:
                single = payload
        [record_id] = await self.store.insert_many(
            self.name, [RecordDraft(payload=single, visible=visible)]
        )
        return record_id

    async def add_bulk(
        self, payloads: Sequence[JsonValue], *, delay: float | None = None
    ) -> list[str]:
        """Shorthand for add(Batch(payloads))."""
        return await self.add(Batch(payloads), delay=delay)

    async def schedule_at(
        self,
        when: datetime | str,
        payload: Single | Batch | JsonValue,
        *,
        delay: float | None = None,
    ) -> str | list[str]:
        """
        Make the payload visible at `when` (whole seconds; past means now).

        Naive datetimes and ISO-8601 strings without offset are taken as UTC.
        `delay` is accepted for signature parity and overridden.
        """
        if isinstance(when, str):
            when = datetime.fromisoformat(when)
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        seconds = max(0, math.floor((when - utcnow()).total_seconds()))
        return await self.add(payload, delay=seconds)

    async def schedule_recurring(
        self,
        pattern: str,
        payload: JsonValue,
        *,
        delay: float | None = None,
    ) -> str:
        """
        Store a recurring-job template.

        The queue never parses `pattern` or re-fires the template; an external
        scheduler reads templates (RecurringTemplate.from_payload) and
        enqueues concrete jobs.
        """
        template = RecurringTemplate.new(pattern, payload)
        return await self.add(Single(template.to_payload()), delay=delay)

    # ------------------------------------------------------------------ #
    # Consume                                                              #
    # ------------------------------------------------------------------ #

    async def get(self, *, visibility: float | None = None) -> ClaimedJob | None:
        """
        Claim the oldest visible job, hiding it for `visibility` seconds.

        Returns None when nothing is visible. Poisoned records met on the way
        are moved to the dead-letter queue and the claim is re-issued.
        """
        visibility = self._visibility(visibility)
        while True:
            now = utcnow()
            record = await self.store.find_one_and_update(
                self.name,
                RecordMatch(deleted=False, visible_lte=now),
                RecordChange(
                    inc_tries=1,
                    set_ack=new_ack_token(),
                    set_visible=now + timedelta(seconds=visibility),
                ),
                oldest_first=True,
            )
            if record is None:
                logger.debug("queue %r: nothing visible", self.name)
                return None
            if self._is_poisoned(record):
                await self._move_to_dlq(record)
                continue
            logger.debug(
                "queue %r: claimed %s (tries=%d)", self.name, record.id, record.tries
            )
            return ClaimedJob.from_record(record)

    async def ping(self, ack: str, *, visibility: float | None = None) -> str:
        """Extend an outstanding claim by `visibility` seconds from now."""
        visibility = self._visibility(visibility)
        now = utcnow()
        record = await self.store.find_one_and_update(
            self.name,
            _outstanding(ack, now),
            RecordChange(set_visible=now + timedelta(seconds=visibility)),
        )
        if record is None:
            raise UnknownAckError(ack, "ping")
        return record.id

    async def ack(self, ack: str) -> str:
        """Mark the claimed job done. It is purged by the store later."""
        now = utcnow()
        record = await self.store.find_one_and_update(
            self.name, _outstanding(ack, now), RecordChange(set_deleted=now)
        )
        if record is None:
            raise UnknownAckError(ack, "ack")
        return record.id

    # ------------------------------------------------------------------ #
    # Introspection (point-in-time, not mutually consistent)              #
    # ------------------------------------------------------------------ #

    async def total(self) -> int:
        """All records, including deleted ones not yet purged."""
        return await self.store.count(self.name)

    async def size(self) -> int:
        """Records claimable right now."""
        return await self.store.count(
            self.name, RecordMatch(deleted=False, visible_lte=utcnow())
        )

    async def in_flight(self) -> int:
        """Records under an unexpired claim."""
        return await self.store.count(
            self.name, RecordMatch(has_ack=True, visible_gt=utcnow(), deleted=False)
        )

    async def done(self) -> int:
        """Acknowledged or dead-lettered records awaiting purge."""
        return await self.store.count(self.name, RecordMatch(deleted=True))

    # ------------------------------------------------------------------ #
    # Internals                                                            #
    # ------------------------------------------------------------------ #

    def _visibility(self, visibility: float | None) -> float:
        if visibility is None:
            return self.options.visibility
        if visibility <= 0:
            raise ValueError(f"visibility must be > 0, got {visibility}")
        return visibility

    def _is_poisoned(self, record: JobRecord) -> bool:
        """
        True when this claim exceeds the retry budget.

        record.tries already counts the claim being made, so max_retries + 1
        deliveries are allowed. With visibility=1 and max_retries=0, a job
        claimed once and left to expire is delivered exactly once; the second
        get() moves it to the dead queue, and dead.get() reports tries=2.
        Comparing against max_retries instead would dead-letter every job on
        its first claim when max_retries=0.
        """
        return self.dead_queue is not None and record.tries > self.options.max_retries + 1

    def _can_move_atomically(self) -> bool:
        return (
            self.options.transactional_dlq
            and self.dead_queue is not None
            and self.store.supports_transactions
            and self.dead_queue.store is self.store
        )

    async def _move_to_dlq(self, record: JobRecord) -> None:
        """
        Copy a poisoned record into the dead-letter queue and delete the source.

        Without a transaction the copy is written first; if the process dies
        before the delete, the record exists in both collections and may be
        delivered again from the source.
        """
        dead = self.dead_queue
        if dead is None:
            return
        now = utcnow()
        copy = record.as_dead_letter(now)
        source_match = RecordMatch(id=record.id, deleted=False)
        tombstone = RecordChange(set_deleted=now)

        if self._transactional:
            async with self.store.transaction() as session:
                await dead.store.insert_one(dead.name, copy, session=session)
                await self.store.update_one(
                    self.name, source_match, tombstone, session=session
                )
        else:
            try:
                await dead.store.insert_one(dead.name, copy)
            except DuplicateKeyError as exc:
                if exc.field != "id":
                    raise
                # An earlier move wrote the copy but never deleted the source.
                logger.warning(
                    "queue %r: %s already in dead-letter queue %r, finishing the move",
                    self.name,
                    record.id,
                    dead.name,
                )
            await self.store.update_one(self.name, source_match, tombstone)

        logger.info(
            "queue %r: moved %s to dead-letter queue %r after %d deliveries",
            self.name,
            record.id,
            dead.name,
            copy.tries,
        )


def _outstanding(ack: str, now: datetime) -> RecordMatch:
    """Predicate of a claim that is still owned by the holder of `ack`."""
    return RecordMatch(ack=ack, visible_gt=now, deleted=False)


async def connect(
    store: RecordStorePort | None,
    name: str | None,
    *,
    visibility: float = 30,
    delay: float = 0,
    dead_queue: Queue | None = None,
    max_retries: int = 5,
    transactional_dlq: bool = False,
) -> Queue:
    """Module-level alias of Queue.connect()."""
    return await Queue.connect(
        store,
        name,
        visibility=visibility,
        delay=delay,
        dead_queue=dead_queue,
        max_retries=max_retries,
        transactional_dlq=transactional_dlq,
    )
