"""
InMemoryStorage — single-event-loop object storage for tests and examples.

The database document lives in a bytes attribute. Reads and writes take the
same asyncio.Lock, so a write can never interleave with the read-check-store
sequence of another coroutine; that is all CAS needs inside one process.

Etags are the write counter as a string ("1", "2", ...). A storage created
with initial_content starts at etag "0". The `reads` and `writes` counters
let tests assert how many round-trips a queue operation cost.
"""
from __future__ import annotations

import asyncio
import dataclasses

from docqueue.domain.errors import CASConflictError


@dataclasses.dataclass
class InMemoryStorage:
    """
    ObjectStoragePort kept in process memory.

    Parameters
    ----------
    initial_content : database document to start from (b"" = no object yet)
    """

    initial_content: bytes = b""

    reads: int = dataclasses.field(default=0, init=False)
    writes: int = dataclasses.field(default=0, init=False)
    _lock: asyncio.Lock = dataclasses.field(
        default_factory=asyncio.Lock, init=False, repr=False
    )

    def __post_init__(self) -> None:
        self._content = self.initial_content

    @property
    def etag(self) -> str | None:
        """Current etag; None while no object exists."""
        if self.writes:
            return str(self.writes)
        return "0" if self._content else None

    async def read(self) -> tuple[bytes, str | None]:
        async with self._lock:
            self.reads += 1
            return self._content, self.etag

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        async with self._lock:
            current = self.etag
            if if_match != current:
                raise CASConflictError(
                    f"ETag mismatch: expected {if_match!r}, got {current!r}"
                )
            self._content = content
            self.writes += 1
            return str(self.writes)
