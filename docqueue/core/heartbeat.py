"""
HeartbeatManager — keep a claim alive while a worker is busy with it.

Every `interval` the manager calls queue.ping(ack), which pushes the job's
visibility window forward by the queue's visibility. Pick an interval well
below the visibility, or the claim can lapse between two pings.

    job = await q.get(visibility=30)
    async with HeartbeatManager(q, job.ack, interval=timedelta(seconds=10)) as hb:
        result = await do_long_work(job.payload)
    if not hb.lost:
        await q.ack(job.ack)

UnknownAckError from a ping means the window already lapsed and the job may
be running elsewhere: pinging stops and `lost` is set. Any other exception
ends the heartbeat too and is re-raised when the block exits.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
from datetime import timedelta
from types import TracebackType
from typing import Protocol

from docqueue.domain.errors import UnknownAckError

logger = logging.getLogger(__name__)


class _Pingable(Protocol):
    async def ping(self, ack: str) -> str: ...


@dataclasses.dataclass
class HeartbeatManager:
    """
    Parameters
    ----------
    queue    : anything with async ping(ack) -> str, normally a Queue
    ack      : token of the claim, as returned by get()
    interval : pause between pings (default 10 seconds)

    Attributes
    ----------
    lost  : True once a ping reported the claim as no longer owned
    pings : number of successful pings so far
    """

    queue: _Pingable
    ack: str
    interval: timedelta = timedelta(seconds=10)

    lost: bool = dataclasses.field(default=False, init=False)
    pings: int = dataclasses.field(default=0, init=False)
    _task: asyncio.Task[None] | None = dataclasses.field(
        default=None, init=False, repr=False
    )

    async def __aenter__(self) -> HeartbeatManager:
        self._task = asyncio.create_task(
            self._keep_alive(), name=f"docqueue-heartbeat-{self.ack[:8]}"
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _keep_alive(self) -> None:
        delay = self.interval.total_seconds()
        while not self.lost:
            await asyncio.sleep(delay)
            try:
                await self.queue.ping(self.ack)
            except UnknownAckError:
                logger.warning(
                    "claim %s lapsed after %d pings, heartbeat stopped",
                    self.ack[:8],
                    self.pings,
                )
                self.lost = True
            else:
                self.pings += 1
