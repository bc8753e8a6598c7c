"""
Codec — serialize and deserialize StoreState to/from bytes using Pydantic v2.

Pydantic handles the full wire format automatically:
  - datetime fields are serialized as ISO-8601 strings with UTC offset
  - payloads are plain JSON values and are stored verbatim
  - nested models (JobRecord inside CollectionState inside StoreState) are
    recursively serialized

Wire format (produced by model_dump_json):
------------------------------------------
{
  "collections": {
    "jobs": {
      "records": [
        {
          "id": "0000000000000001a1b2c3d4",
          "payload": {"to": "user@example.com"},
          "visible": "2026-01-01T00:00:30+00:00",
          "tries": 1,
          "ack": "5f1e0c...",
          "deleted": null
        }
      ],
      "unique_ack": true,
      "expire_deleted": true
    }
  },
  "sequence": 1,
  "version": 3
}
"""
from __future__ import annotations

from docqueue.domain.models import StoreState


def encode(state: StoreState) -> bytes:
    """Serialize StoreState to UTF-8 JSON bytes."""
    return state.model_dump_json(indent=2).encode("utf-8")


def decode(data: bytes) -> StoreState:
    """Deserialize UTF-8 JSON bytes to StoreState. Empty bytes → empty database."""
    if not data:
        return StoreState()
    return StoreState.model_validate_json(data)
