"""
Exception hierarchy for docqueue.

DocQueueError
├── ConfigurationError   — queue built without a store/name, or with bad options
├── UnknownAckError      — ping/ack token does not match an outstanding claim
└── StoreError           — persistence failure, surfaced unmodified to the caller
    ├── CASConflictError   — write rejected because etag did not match
    ├── DuplicateKeyError  — unique constraint violated (record id or ack token)
    ├── TransactionError   — store session used after close or on a foreign store
    └── StorageError       — underlying I/O failure (wraps original exception)

UnknownAckError deliberately sits outside StoreError: it means "ownership of
the job was lost", not "the store is unhealthy".
"""

from __future__ import annotations


class DocQueueError(Exception):
    """Base class for all docqueue exceptions."""


class ConfigurationError(DocQueueError):
    """Raised by Queue.connect when the store, name or options are unusable."""


class UnknownAckError(DocQueueError):
    """
    Raised by ping() and ack() when the token matches no outstanding claim.

    The token may be unknown, already acknowledged, or its visibility window
    may have lapsed (another consumer can now hold the job). Callers should
    stop processing the job and must not retry the same call.

    Attributes
    ----------
    ack       : the token that was presented
    operation : "ping" or "ack"
    """

    def __init__(self, ack: str, operation: str) -> None:
        self.ack = ack
        self.operation = operation
        super().__init__(f"Queue.{operation}(): unknown ack {ack!r}")


class StoreError(DocQueueError):
    """Base class for failures raised by a record store or storage adapter."""


class CASConflictError(StoreError):
    """
    Raised when a compare-and-set write is rejected by the storage backend.

    The caller should re-read the current state and retry the operation.
    This is the normal concurrency signal — not an error in the traditional sense.
    """


class DuplicateKeyError(StoreError):
    """Raised when an insert or update would break a unique constraint."""

    def __init__(self, collection: str, field: str, value: str) -> None:
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(
            f"Duplicate {field} {value!r} in collection {collection!r}"
        )


class TransactionError(StoreError):
    """Raised when a store session is used incorrectly."""


class StorageError(StoreError):
    """
    Wraps an underlying I/O failure from a storage adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the storage backend.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")
