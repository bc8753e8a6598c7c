"""
LocalFileSystemStorage — fcntl.flock-based CAS for POSIX systems.

Suitable for local development, single-machine deployments with several
worker processes, or integration tests that need a persistent database file.

NOT suitable for multi-machine deployments — use S3Storage or GCSStorage
for distributed workloads.

Etag strategy
-------------
The etag is a SHA-256 hex digest of the file contents. It always changes
when content changes, unlike mtime, which can repeat across rapid writes.
A missing or empty file has etag None.

CAS semantics
-------------
Writers take an exclusive flock on a sidecar "<name>.lock" file, re-read the
current etag under the lock and raise CASConflictError if it differs from
if_match. The new document is written to a temporary file in the same
directory and moved into place with os.replace, so readers never observe a
half-written database, even if the writer dies mid-write.

POSIX-only (Linux, macOS). Not compatible with NFS or distributed filesystems.
"""

from __future__ import annotations

import asyncio
import dataclasses
import fcntl
import hashlib
import os
import tempfile
from pathlib import Path

from docqueue.domain.errors import CASConflictError, StorageError


@dataclasses.dataclass
class LocalFileSystemStorage:
    """
    Stores the database document in a local file.

    Parameters
    ----------
    path : path to the JSON database file (parent directory created if absent)
    """

    path: Path

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    async def read(self) -> tuple[bytes, str | None]:
        """Return (content, etag). Returns (b"", None) if the file does not exist."""
        try:
            return await asyncio.to_thread(self._sync_read)
        except OSError as exc:
            raise StorageError(f"read of {self.path} failed", exc) from exc

    async def write(
        self,
        content: bytes,
        if_match: str | None = None,
    ) -> str:
        """CAS write. Raises CASConflictError on etag mismatch."""
        try:
            return await asyncio.to_thread(self._sync_write, content, if_match)
        except OSError as exc:
            raise StorageError(f"write of {self.path} failed", exc) from exc

    # ------------------------------------------------------------------ #
    # Synchronous implementations (executed in a thread-pool worker)      #
    # ------------------------------------------------------------------ #

    @staticmethod
    def _etag(data: bytes) -> str | None:
        return hashlib.sha256(data).hexdigest() if data else None

    def _current(self) -> bytes:
        try:
            return self.path.read_bytes()
        except FileNotFoundError:
            return b""

    def _sync_read(self) -> tuple[bytes, str | None]:
        # os.replace is atomic, so a plain read sees either the old or the new file.
        content = self._current()
        return content, self._etag(content)

    def _sync_write(self, content: bytes, if_match: str | None) -> str:
        if not content:
            raise ValueError("refusing to store an empty document")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+b") as lock:
            fcntl.flock(lock, fcntl.LOCK_EX)
            try:
                real_etag = self._etag(self._current())
                if real_etag != if_match:
                    raise CASConflictError(
                        f"ETag mismatch: expected {if_match!r}, got {real_etag!r}"
                    )
                fd, tmp_name = tempfile.mkstemp(
                    dir=self.path.parent, prefix=f".{self.path.name}."
                )
                try:
                    with os.fdopen(fd, "wb") as fh:
                        fh.write(content)
                        fh.flush()
                        os.fsync(fh.fileno())
                    os.replace(tmp_name, self.path)
                except BaseException:
                    _unlink_quietly(tmp_name)
                    raise
            finally:
                fcntl.flock(lock, fcntl.LOCK_UN)

        return hashlib.sha256(content).hexdigest()


def _unlink_quietly(name: str) -> None:
    try:
        os.unlink(name)
    except FileNotFoundError:
        pass
