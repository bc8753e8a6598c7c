"""
Domain models for docqueue — backed by Pydantic v2.

Pydantic handles:
  - JSON serialization / deserialization of the database document (codec.py)
  - datetime parsing (ISO-8601 with timezone)
  - validation of queue options and of caller payloads (any JSON value)

All models are frozen (immutable). Mutations return new instances via
model_copy(update=...), following a functional-update style. StoreState is
the single document a CAS record store persists; its helpers are the only
place where records change shape.
"""

import dataclasses
import secrets
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    JsonValue,
    ValidationError,
    field_validator,
)

from docqueue.domain.errors import DuplicateKeyError


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_record_id(sequence: int) -> str:
    """
    Build a record id from a store-wide sequence number.

    16 hex digits of sequence followed by 8 random hex digits. Fixed width, so
    string order is insertion order; the suffix keeps ids unique when a
    record is copied into a collection that lives in another store.
    """
    return f"{sequence:016x}{secrets.token_hex(4)}"


def new_ack_token() -> str:
    """Fresh opaque lock token for a claim."""
    return secrets.token_hex(16)


def _as_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# ---------------------------------------------------------------------- #
# Records                                                                  #
# ---------------------------------------------------------------------- #


class JobRecord(BaseModel):
    """
    A single persisted job.

    id      — store-assigned, immutable, sorts in insertion order
    payload — caller-supplied JSON value
    visible — claimable only when visible <= now
    tries   — number of successful claims so far
    ack     — lock token of the outstanding claim (None before the first claim)
    deleted — set when acknowledged or dead-lettered; terminal
    """

    model_config = ConfigDict(frozen=True)

    id: str
    payload: JsonValue = None
    visible: datetime
    tries: int = Field(default=0, ge=0)
    ack: str | None = None
    deleted: datetime | None = None

    @field_validator("visible", "deleted")
    @classmethod
    def _ensure_aware(cls, v: datetime | None) -> datetime | None:
        """Naive datetimes are taken to be UTC."""
        return _as_utc(v)

    def is_claimable(self, now: datetime) -> bool:
        return self.deleted is None and self.visible <= now

    def is_in_flight(self, now: datetime) -> bool:
        return self.deleted is None and self.ack is not None and self.visible > now

    def as_dead_letter(self, now: datetime) -> "JobRecord":
        """
        Copy of this record for insertion into a dead-letter collection.

        The claim that found the record poisoned is never delivered, so its
        increment is not carried over: the copy holds the deliveries that
        actually happened, and the dead queue's own get() counts the next one.
        A job claimed once under max_retries=0 is therefore copied with
        tries=1 and comes out of dead.get() with tries=2. The copy has no lock
        and is claimable immediately.
        """
        return self.model_copy(
            update={
                "tries": max(self.tries - 1, 0),
                "ack": None,
                "visible": now,
                "deleted": None,
            }
        )


class RecordDraft(BaseModel):
    """A record before the store has assigned its id."""

    model_config = ConfigDict(frozen=True)

    payload: JsonValue = None
    visible: datetime
    tries: int = 0

    def to_record(self, record_id: str) -> JobRecord:
        return JobRecord(
            id=record_id,
            payload=self.payload,
            visible=self.visible,
            tries=self.tries,
        )


class ClaimedJob(BaseModel):
    """What a consumer gets back from Queue.get()."""

    model_config = ConfigDict(frozen=True)

    id: str
    ack: str
    payload: JsonValue = None
    tries: int

    @classmethod
    def from_record(cls, record: JobRecord) -> "ClaimedJob":
        if record.ack is None:
            raise ValueError(f"record {record.id!r} has no outstanding claim")
        return cls(
            id=record.id, ack=record.ack, payload=record.payload, tries=record.tries
        )


# ---------------------------------------------------------------------- #
# Store-level predicate / update descriptors                              #
# ---------------------------------------------------------------------- #


class RecordMatch(BaseModel):
    """
    Conditional predicate evaluated by a record store.

    Every field left as None is ignored. deleted=False means "deleted is
    absent"; has_ack=True means "ack is present".
    """

    model_config = ConfigDict(frozen=True)

    id: str | None = None
    ack: str | None = None
    has_ack: bool | None = None
    visible_lte: datetime | None = None
    visible_gt: datetime | None = None
    deleted: bool | None = None

    def matches(self, record: JobRecord) -> bool:
        if self.id is not None and record.id != self.id:
            return False
        if self.ack is not None and record.ack != self.ack:
            return False
        if self.has_ack is not None and (record.ack is not None) != self.has_ack:
            return False
        if self.visible_lte is not None and not record.visible <= self.visible_lte:
            return False
        if self.visible_gt is not None and not record.visible > self.visible_gt:
            return False
        if self.deleted is not None and (record.deleted is not None) != self.deleted:
            return False
        return True


class RecordChange(BaseModel):
    """Update applied to the record selected by a RecordMatch."""

    model_config = ConfigDict(frozen=True)

    inc_tries: int = 0
    set_ack: str | None = None
    set_visible: datetime | None = None
    set_deleted: datetime | None = None

    def apply(self, record: JobRecord) -> JobRecord:
        update: dict[str, Any] = {}
        if self.inc_tries:
            update["tries"] = record.tries + self.inc_tries
        if self.set_ack is not None:
            update["ack"] = self.set_ack
        if self.set_visible is not None:
            update["visible"] = self.set_visible
        if self.set_deleted is not None:
            update["deleted"] = self.set_deleted
        return record.model_copy(update=update)


# ---------------------------------------------------------------------- #
# Database document                                                       #
# ---------------------------------------------------------------------- #


class CollectionState(BaseModel):
    """
    One named collection of records.

    records        — insertion order is preserved across ser/de
    unique_ack     — sparse unique constraint on JobRecord.ack
    expire_deleted — records with deleted set are purged by the store
    """

    model_config = ConfigDict(frozen=True)

    records: tuple[JobRecord, ...] = ()
    unique_ack: bool = False
    expire_deleted: bool = False

    def find(self, match: RecordMatch, *, oldest_first: bool = False) -> JobRecord | None:
        """First record satisfying match; lowest id wins when oldest_first."""
        candidates = (r for r in self.records if match.matches(r))
        if oldest_first:
            return min(candidates, key=lambda r: r.id, default=None)
        return next(candidates, None)

    def count(self, match: RecordMatch | None = None) -> int:
        if match is None:
            return len(self.records)
        return sum(1 for r in self.records if match.matches(r))

    def ack_taken(self, ack: str, *, by_other_than: str | None = None) -> bool:
        return any(r.ack == ack and r.id != by_other_than for r in self.records)


class StoreState(BaseModel):
    """
    The complete, authoritative state of a CAS record store.

    This is exactly what lives in the JSON object on object storage.

    collections — named collections of job records
    sequence    — store-wide id counter; never reused
    version     — monotonically increasing counter, incremented on every CAS write
    """

    model_config = ConfigDict(frozen=True)

    collections: dict[str, CollectionState] = Field(default_factory=dict)
    sequence: int = 0
    version: int = 0

    # ------------------------------------------------------------------ #
    # Query helpers                                                        #
    # ------------------------------------------------------------------ #

    def collection(self, name: str) -> CollectionState:
        """The named collection, or an empty one if it was never written."""
        return self.collections.get(name, CollectionState())

    def find(self, name: str, record_id: str) -> JobRecord | None:
        return self.collection(name).find(RecordMatch(id=record_id))

    # ------------------------------------------------------------------ #
    # Mutation helpers — each returns a new StoreState                    #
    # ------------------------------------------------------------------ #

    def with_collection(self, name: str, coll: CollectionState) -> "StoreState":
        return self.model_copy(update={"collections": {**self.collections, name: coll}})

    def with_indexes(self, name: str) -> "StoreState":
        """Enable the ack constraint and purge for a collection. Idempotent."""
        coll = self.collection(name)
        if coll.unique_ack and coll.expire_deleted:
            return self
        return self.with_collection(
            name, coll.model_copy(update={"unique_ack": True, "expire_deleted": True})
        )

    def with_drafts_inserted(
        self, name: str, drafts: Sequence[RecordDraft]
    ) -> tuple["StoreState", list[str]]:
        """Assign ids to drafts and append them. Returns (state, ids in input order)."""
        coll = self.collection(name)
        sequence = self.sequence
        records: list[JobRecord] = []
        for draft in drafts:
            sequence += 1
            records.append(draft.to_record(new_record_id(sequence)))
        new_coll = coll.model_copy(update={"records": coll.records + tuple(records)})
        state = self.with_collection(name, new_coll).model_copy(
            update={"sequence": sequence}
        )
        return state, [r.id for r in records]

    def with_record_inserted(self, name: str, record: JobRecord) -> "StoreState":
        """Append a fully formed record. Raises DuplicateKeyError on id/ack clash."""
        coll = self.collection(name)
        if any(r.id == record.id for r in coll.records):
            raise DuplicateKeyError(name, "id", record.id)
        if coll.unique_ack and record.ack is not None and coll.ack_taken(record.ack):
            raise DuplicateKeyError(name, "ack", record.ack)
        return self.with_collection(
            name, coll.model_copy(update={"records": coll.records + (record,)})
        )

    def with_record_updated(
        self,
        name: str,
        match: RecordMatch,
        change: RecordChange,
        *,
        oldest_first: bool = False,
    ) -> tuple["StoreState", JobRecord | None]:
        """
        Apply change to the first record satisfying match.

        Returns (state, updated record) or (self, None) when nothing matched.
        Raises DuplicateKeyError if the change would reuse another record's ack.
        """
        coll = self.collection(name)
        target = coll.find(match, oldest_first=oldest_first)
        if target is None:
            return self, None
        updated = change.apply(target)
        if (
            coll.unique_ack
            and change.set_ack is not None
            and coll.ack_taken(change.set_ack, by_other_than=target.id)
        ):
            raise DuplicateKeyError(name, "ack", change.set_ack)
        records = tuple(updated if r.id == target.id else r for r in coll.records)
        return (
            self.with_collection(name, coll.model_copy(update={"records": records})),
            updated,
        )

    def purge_deleted(self, cutoff: datetime) -> tuple["StoreState", int]:
        """
        Drop records deleted at or before cutoff from expiring collections.

        Returns (self, 0) unchanged when there is nothing to purge.
        """
        purged = 0
        collections = dict(self.collections)
        for name, coll in self.collections.items():
            if not coll.expire_deleted:
                continue
            kept = tuple(
                r for r in coll.records if r.deleted is None or r.deleted > cutoff
            )
            if len(kept) != len(coll.records):
                purged += len(coll.records) - len(kept)
                collections[name] = coll.model_copy(update={"records": kept})
        if not purged:
            return self, 0
        return self.model_copy(update={"collections": collections}), purged


# ---------------------------------------------------------------------- #
# Recurring templates                                                      #
# ---------------------------------------------------------------------- #


class Recurrence(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    pattern: str
    created_at: datetime = Field(alias="createdAt")


class RecurringTemplate(BaseModel):
    """
    Payload shape of a recurring-job template.

    Stored as {"originalPayload": ..., "recurrence": {"pattern", "createdAt"}}.
    The queue gives templates no special lifecycle; an external scheduler
    reads them and enqueues concrete jobs.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    original_payload: JsonValue = Field(alias="originalPayload")
    recurrence: Recurrence

    @classmethod
    def new(cls, pattern: str, payload: JsonValue) -> "RecurringTemplate":
        return cls(
            original_payload=payload,
            recurrence=Recurrence(pattern=pattern, created_at=utcnow()),
        )

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_payload(cls, payload: JsonValue) -> "RecurringTemplate | None":
        """Parse a job payload; None if it is not a template."""
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return None


# ---------------------------------------------------------------------- #
# Producer-side payload arity                                             #
# ---------------------------------------------------------------------- #


@dataclasses.dataclass(frozen=True)
class Single:
    """One payload -> one record id."""

    payload: JsonValue


@dataclasses.dataclass(frozen=True)
class Batch:
    """Several payloads -> ids in the same order."""

    payloads: Sequence[JsonValue]

    def __post_init__(self) -> None:
        object.__setattr__(self, "payloads", tuple(self.payloads))


# ---------------------------------------------------------------------- #
# Queue configuration                                                      #
# ---------------------------------------------------------------------- #


class QueueOptions(BaseModel):
    """
    Validated per-queue settings.

    visibility        — seconds a claim hides a record (default 30)
    delay             — default publish delay in seconds (default 0)
    max_retries       — redeliveries allowed before dead-lettering (default 5)
    transactional_dlq — move poisoned records inside a store transaction
    """

    model_config = ConfigDict(frozen=True)

    visibility: float = Field(default=30, gt=0)
    delay: float = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=0)
    transactional_dlq: bool = False
