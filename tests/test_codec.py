import json
from datetime import datetime, timezone

from docqueue.core import codec
from docqueue.domain.models import (
    CollectionState,
    JobRecord,
    RecordDraft,
    StoreState,
)

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _state_with(payloads: list) -> StoreState:
    state, _ = StoreState().with_drafts_inserted(
        "jobs", [RecordDraft(payload=p, visible=NOW) for p in payloads]
    )
    return state


def test_decode_empty_bytes_returns_empty_state():
    state = codec.decode(b"")
    assert isinstance(state, StoreState)
    assert state.collections == {}
    assert state.sequence == 0
    assert state.version == 0


def test_encode_is_valid_json():
    data = json.loads(codec.encode(StoreState()))
    assert data == {"collections": {}, "sequence": 0, "version": 0}


def test_encode_decode_roundtrip():
    state = _state_with([{"to": "a@example.com"}, [1, 2], "text", 7, None])
    restored = codec.decode(codec.encode(state))
    assert restored == state
    assert [r.payload for r in restored.collection("jobs").records] == [
        {"to": "a@example.com"},
        [1, 2],
        "text",
        7,
        None,
    ]


def test_encode_preserves_index_flags():
    state = StoreState().with_indexes("jobs")
    data = json.loads(codec.encode(state))
    assert data["collections"]["jobs"]["unique_ack"] is True
    assert data["collections"]["jobs"]["expire_deleted"] is True


def test_payload_is_stored_verbatim():
    state = _state_with([{"nested": {"k": [1, "two"]}}])
    data = json.loads(codec.encode(state))
    assert data["collections"]["jobs"]["records"][0]["payload"] == {
        "nested": {"k": [1, "two"]}
    }


def test_encode_datetime_in_iso8601():
    record = JobRecord(id="r1", visible=NOW, ack="tok", deleted=NOW)
    state = StoreState(collections={"jobs": CollectionState(records=(record,))})
    data = json.loads(codec.encode(state))
    stored = data["collections"]["jobs"]["records"][0]
    assert stored["visible"].startswith("2026-01-01T00:00:00")
    assert stored["visible"].endswith(("Z", "+00:00"))
    assert stored["deleted"] == stored["visible"]


def test_decode_preserves_record_order():
    state = _state_with([f"p{i}" for i in range(5)])
    restored = codec.decode(codec.encode(state))
    assert [r.id for r in restored.collection("jobs").records] == [
        r.id for r in state.collection("jobs").records
    ]
    assert restored.sequence == 5
