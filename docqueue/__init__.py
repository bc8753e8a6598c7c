"""
docqueue — visibility-timeout job queue on a document store.

Producers add payloads; consumers claim one visible job at a time under a
visibility timeout (SQS style), then ack it or let the claim lapse so another
consumer can take it. Delivery is at-least-once. Jobs delivered more than
max_retries + 1 times are moved to a dead-letter queue, optionally inside a
store transaction.

Every claim, extend and acknowledge is a single atomic conditional update
in the record store; the queue itself keeps no locks, so any number of
processes can share a collection.

Quick start
-----------
    import asyncio
    from docqueue import CASRecordStore, HeartbeatManager, InMemoryStorage, connect

    async def main():
        store = CASRecordStore(InMemoryStorage())
        dead = await connect(store, "emails-dead")
        q = await connect(store, "emails", visibility=30, dead_queue=dead)

        await q.add({"to": "user@example.com"})

        job = await q.get()
        async with HeartbeatManager(q, job.ack) as hb:
            print(f"Processing job {job.id}: {job.payload}")
        if not hb.lost:
            await q.ack(job.ack)

    asyncio.run(main())

Record stores
-------------
The queue talks to a RecordStorePort. The built-in CASRecordStore keeps the
whole database in one JSON object and mutates it with compare-and-set writes
on any ObjectStoragePort:
  - InMemoryStorage           — for tests and examples
  - LocalFileSystemStorage    — POSIX single-machine (fcntl.flock)
  - S3Storage                 — pip install "docqueue[s3]"
  - GCSStorage                — pip install "docqueue[gcs]"

Architecture
------------
Follows the Ports & Adapters pattern:
  domain/   — pure value types (JobRecord, ClaimedJob, StoreState, QueueOptions)
  ports/    — Protocol interfaces (RecordStorePort, ObjectStoragePort)
  core/     — business logic (Queue, HeartbeatManager, GroupCommitLoop, codec)
  adapters/ — concrete record store and byte storage implementations
"""
from __future__ import annotations

from docqueue.adapters.storage.filesystem import LocalFileSystemStorage
from docqueue.adapters.storage.memory import InMemoryStorage
from docqueue.adapters.store.cas import CASRecordStore
from docqueue.core.heartbeat import HeartbeatManager
from docqueue.core.queue import Queue, connect
from docqueue.domain.errors import (
    CASConflictError,
    ConfigurationError,
    DocQueueError,
    DuplicateKeyError,
    StorageError,
    StoreError,
    TransactionError,
    UnknownAckError,
)
from docqueue.domain.models import (
    Batch,
    ClaimedJob,
    JobRecord,
    QueueOptions,
    RecurringTemplate,
    Single,
)
from docqueue.ports.storage import ObjectStoragePort
from docqueue.ports.store import RecordStorePort

__all__ = [
    # Domain models
    "Batch",
    "ClaimedJob",
    "JobRecord",
    "QueueOptions",
    "RecurringTemplate",
    "Single",
    # Errors
    "DocQueueError",
    "ConfigurationError",
    "UnknownAckError",
    "StoreError",
    "CASConflictError",
    "DuplicateKeyError",
    "StorageError",
    "TransactionError",
    # Ports (for typing custom adapters)
    "ObjectStoragePort",
    "RecordStorePort",
    # Queue API
    "Queue",
    "connect",
    "HeartbeatManager",
    # Built-in adapters
    "CASRecordStore",
    "InMemoryStorage",
    "LocalFileSystemStorage",
]
