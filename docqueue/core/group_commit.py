"""
GroupCommitLoop — one writer task, many concurrent store mutations.

While a CAS write is on the wire, newly submitted mutations queue up. When the
write returns, everything queued so far becomes the next batch:

  get()  ─┐
  get()  ─┼─> pending ──> [read ─ sweep ─ m1 ─ m2 ─ m3 ─ CAS write] ──> futures resolved
  add()  ─┘

N concurrent claims, inserts and acks therefore cost O(1) storage writes
instead of N racing CAS loops. Mutations run in submission order on the same
in-memory state, so two claims in one batch never select the same record.

A CAS conflict (another process wrote in between) replays the whole batch on
a fresh read. A mutation that raises fails only its own submitter; the rest
of the batch is still written.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable

from docqueue.core import codec
from docqueue.domain.errors import CASConflictError, StoreError
from docqueue.domain.models import StoreState
from docqueue.ports.storage import ObjectStoragePort

logger = logging.getLogger(__name__)

MutationFn = Callable[[StoreState], StoreState]

_MAX_ATTEMPTS: int = 20


def _unchanged(state: StoreState) -> StoreState:
    return state


@dataclasses.dataclass
class _Submission:
    fn: MutationFn
    done: asyncio.Future[None]


@dataclasses.dataclass
class GroupCommitLoop:
    """
    Background writer shared by all mutations of one CASRecordStore.

    Parameters
    ----------
    storage : object storage holding the database document
    sweep   : run once per write cycle ahead of the batch; CASRecordStore
              passes its deleted-record purge

    submit() raises StoreError once stop() has been called. stop() waits for
    everything already submitted to be written.
    """

    storage: ObjectStoragePort
    sweep: MutationFn = _unchanged

    _queue: list[_Submission] = dataclasses.field(
        default_factory=list, init=False, repr=False
    )
    _ready: asyncio.Event = dataclasses.field(
        default_factory=asyncio.Event, init=False, repr=False
    )
    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )
    _closing: bool = dataclasses.field(default=False, init=False, repr=False)

    @property
    def running(self) -> bool:
        return self._task is not None

    async def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("GroupCommitLoop is already running")
        self._closing = False
        self._task = asyncio.create_task(self._run(), name="docqueue-group-commit")

    async def stop(self) -> None:
        self._closing = True
        self._ready.set()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def submit(self, fn: MutationFn) -> None:
        """
        Queue fn for the next batch and wait until it is durable.

        fn may be called again if the batch is replayed after a CAS conflict,
        so results must be captured from the state it receives each time.
        """
        if self._closing:
            raise StoreError("GroupCommitLoop is stopped")
        done: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._queue.append(_Submission(fn, done))
        self._ready.set()
        await done

    async def read_state(self) -> StoreState:
        content, _ = await self.storage.read()
        return codec.decode(content)

    # ------------------------------------------------------------------ #
    # Writer                                                               #
    # ------------------------------------------------------------------ #

    async def _run(self) -> None:
        while self._queue or not self._closing:
            if not self._queue:
                self._ready.clear()
                await self._ready.wait()
                continue
            batch, self._queue = self._queue, []
            try:
                failures = await self._write(batch)
            except Exception as exc:
                failures = {i: exc for i in range(len(batch))}
            for i, sub in enumerate(batch):
                if sub.done.done():
                    continue
                if i in failures:
                    sub.done.set_exception(failures[i])
                else:
                    sub.done.set_result(None)

    async def _write(self, batch: list[_Submission]) -> dict[int, Exception]:
        """Commit one batch; return the mutations that raised, by position."""
        attempt = 0
        while True:
            attempt += 1
            content, etag = await self.storage.read()
            original = codec.decode(content)
            state = self.sweep(original)
            failures: dict[int, Exception] = {}
            for i, sub in enumerate(batch):
                try:
                    state = sub.fn(state)
                except Exception as exc:
                    failures[i] = exc
            if state is original:
                return failures
            state = state.model_copy(update={"version": original.version + 1})
            try:
                await self.storage.write(codec.encode(state), if_match=etag)
                return failures
            except CASConflictError:
                if attempt == _MAX_ATTEMPTS:
                    raise CASConflictError(
                        f"batch of {len(batch)} lost {attempt} CAS races in a row"
                    ) from None
                logger.debug(
                    "group commit of %d mutations conflicted (attempt %d)",
                    len(batch),
                    attempt,
                )
                await asyncio.sleep(0.005 * 2 ** min(attempt - 1, 6))
