"""
S3Storage — AWS S3 adapter using aioboto3 conditional writes.

Install extras: pip install "docqueue[s3]"

CAS semantics
-------------
  read()  → (content, ETag); a missing key reads as (b"", None)
  write() → with if_match: PutObject(IfMatch=etag)
            without:       PutObject(IfNoneMatch="*"), i.e. create-only, so
                           two processes bootstrapping the same database
                           cannot overwrite each other
            S3 answers PreconditionFailed (412) or ConditionalRequestConflict
            (409) when the guard fails → CASConflictError

Compatible with S3-compatible storage that supports conditional writes:
  MinIO, Cloudflare R2, Tigris, etc.
"""
from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Any

from docqueue.domain.errors import CASConflictError, StorageError

if TYPE_CHECKING:
    from aioboto3 import Session as AioBoto3Session

_MISSING_CODES = frozenset({"NoSuchKey", "404"})
_CONFLICT_CODES = frozenset({"PreconditionFailed", "412", "ConditionalRequestConflict", "409"})


@dataclasses.dataclass
class S3Storage:
    """
    AWS S3 storage adapter.

    Parameters
    ----------
    bucket       : S3 bucket name
    key          : object key of the database document (e.g. "docqueue/db.json")
    session      : aioboto3.Session — created lazily from env vars if omitted
    region_name  : AWS region passed to the S3 client
    endpoint_url : custom endpoint for S3-compatible backends (e.g. MinIO)
    """

    bucket: str
    key: str
    session: AioBoto3Session | None = None
    region_name: str | None = None
    endpoint_url: str | None = None

    def _client(self) -> Any:
        if self.session is None:
            try:
                import aioboto3  # type: ignore[import-untyped]
            except ImportError as exc:
                raise ImportError(
                    "S3Storage requires aioboto3. Install with: pip install 'docqueue[s3]'"
                ) from exc
            self.session = aioboto3.Session()
        kwargs = {
            name: value
            for name, value in (
                ("region_name", self.region_name),
                ("endpoint_url", self.endpoint_url),
            )
            if value
        }
        return self.session.client("s3", **kwargs)  # type: ignore[union-attr]

    async def read(self) -> tuple[bytes, str | None]:
        """Read the database object. Returns (b"", None) if the key does not exist."""
        try:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=self.key)
                content: bytes = await response["Body"].read()
                return content, str(response["ETag"])
        except Exception as exc:
            if _s3_error_code(exc) in _MISSING_CODES:
                return b"", None
            raise StorageError(f"S3 read of s3://{self.bucket}/{self.key} failed", exc) from exc

    async def write(
        self,
        content: bytes,
        if_match: str | None = None,
    ) -> str:
        """CAS write. Raises CASConflictError when the precondition fails."""
        guard = {"IfMatch": if_match} if if_match is not None else {"IfNoneMatch": "*"}
        try:
            async with self._client() as s3:
                response = await s3.put_object(
                    Bucket=self.bucket,
                    Key=self.key,
                    Body=content,
                    ContentType="application/json",
                    **guard,
                )
                return str(response["ETag"])
        except Exception as exc:
            if _s3_error_code(exc) in _CONFLICT_CODES:
                raise CASConflictError(
                    f"S3 conditional put rejected for s3://{self.bucket}/{self.key}"
                ) from exc
            raise StorageError(f"S3 write of s3://{self.bucket}/{self.key} failed", exc) from exc


def _s3_error_code(exc: BaseException) -> str:
    """Error code of a botocore ClientError, or "" for anything else."""
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return ""
    error = response.get("Error")
    if not isinstance(error, dict):
        return ""
    return str(error.get("Code") or "")
