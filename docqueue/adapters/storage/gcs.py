"""
GCSStorage — Google Cloud Storage adapter using google-cloud-storage.

Install extras: pip install "docqueue[gcs]"

CAS semantics
-------------
Every GCS object carries a generation number; the stringified generation is
the etag.

  read()  → (content, generation); a missing blob reads as (b"", None)
  write() → upload guarded by if_generation_match:
              with if_match: the generation last read
              without:       0, i.e. create-only, so two processes
                             bootstrapping the same database cannot
                             overwrite each other
            PreconditionFailed (412) → CASConflictError

google-cloud-storage is synchronous; each call runs in asyncio.to_thread.
Both download and upload refresh blob.generation from the response, so no
extra metadata round-trip is made.
"""
from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from types import ModuleType
from typing import TYPE_CHECKING, Any, TypeVar

from docqueue.domain.errors import CASConflictError, StorageError

if TYPE_CHECKING:
    from google.cloud.storage import Client as GCSClient

T = TypeVar("T")

_INSTALL_HINT = (
    "GCSStorage requires google-cloud-storage. "
    "Install with: pip install 'docqueue[gcs]'"
)


def _google_exceptions() -> ModuleType:
    try:
        from google.api_core import exceptions  # type: ignore[import-untyped]
    except ImportError as exc:
        raise ImportError(_INSTALL_HINT) from exc
    return exceptions


@dataclasses.dataclass
class GCSStorage:
    """
    Google Cloud Storage adapter.

    Parameters
    ----------
    bucket_name : GCS bucket name
    blob_name   : blob path of the database document (e.g. "docqueue/db.json")
    client      : google.cloud.storage.Client — created lazily if omitted
    """

    bucket_name: str
    blob_name: str
    client: GCSClient | None = None

    @property
    def uri(self) -> str:
        return f"gs://{self.bucket_name}/{self.blob_name}"

    def _blob(self) -> Any:
        if self.client is None:
            try:
                from google.cloud import storage  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError(_INSTALL_HINT) from exc
            self.client = storage.Client()
        return self.client.bucket(self.bucket_name).blob(self.blob_name)  # type: ignore[union-attr]

    async def read(self) -> tuple[bytes, str | None]:
        """Read the database blob. Returns (b"", None) if the blob does not exist."""
        gapi = _google_exceptions()

        def download(blob: Any) -> tuple[bytes, str | None]:
            try:
                content: bytes = blob.download_as_bytes()
            except gapi.NotFound:
                return b"", None
            return content, str(blob.generation)

        return await self._in_thread("read", download)

    async def write(
        self,
        content: bytes,
        if_match: str | None = None,
    ) -> str:
        """CAS write. Raises CASConflictError when the generation guard fails."""
        gapi = _google_exceptions()
        generation = 0 if if_match is None else int(if_match)

        def upload(blob: Any) -> str:
            try:
                blob.upload_from_string(
                    content,
                    content_type="application/json",
                    if_generation_match=generation,
                )
            except gapi.PreconditionFailed as exc:
                raise CASConflictError(
                    f"GCS generation {generation} no longer current for {self.uri}"
                ) from exc
            return str(blob.generation)

        return await self._in_thread("write", upload)

    async def _in_thread(self, verb: str, fn: Callable[[Any], T]) -> T:
        """Run fn(blob) off the event loop, wrapping unexpected errors."""
        try:
            return await asyncio.to_thread(lambda: fn(self._blob()))
        except (CASConflictError, StorageError, ImportError):
            raise
        except Exception as exc:
            raise StorageError(f"GCS {verb} of {self.uri} failed", exc) from exc
