"""
ObjectStoragePort — bytes plus an etag, with a conditional put.

CASRecordStore keeps its whole database in one object behind this port, so
an adapter only has to move an opaque blob and enforce one precondition:

    read()                     -> (content, etag); (b"", None) when absent
    write(content, if_match)   -> new etag
        if_match=None   the object must not exist yet (create-only)
        if_match=etag   the object must still carry that etag
        otherwise       CASConflictError, and the object is left untouched

Other backend failures surface as StorageError.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ObjectStoragePort(Protocol):
    """
    Structural interface for CAS-capable byte storage.

    Built-in adapters live in docqueue.adapters.storage: memory,
    filesystem, s3 and gcs.
    """

    async def read(self) -> tuple[bytes, str | None]:
        """Current document and its etag."""
        ...

    async def write(self, content: bytes, if_match: str | None = None) -> str:
        """Replace the document if the precondition holds; return the new etag."""
        ...
