import pytest

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


def test_docqueue_error_is_exception():
    err = DocQueueError("test message")
    assert isinstance(err, Exception)
    assert str(err) == "test message"


def test_configuration_error_is_docqueue_error():
    err = ConfigurationError("supply a record store")
    assert isinstance(err, DocQueueError)
    assert not isinstance(err, StoreError)


def test_unknown_ack_stores_token_and_operation():
    err = UnknownAckError("abc123", "ping")
    assert isinstance(err, DocQueueError)
    assert err.ack == "abc123"
    assert err.operation == "ping"
    assert str(err) == "Queue.ping(): unknown ack 'abc123'"


def test_unknown_ack_is_not_a_store_error():
    assert not issubclass(UnknownAckError, StoreError)


def test_duplicate_key_stores_fields():
    err = DuplicateKeyError("dead", "id", "0001")
    assert err.collection == "dead"
    assert err.field == "id"
    assert err.value == "0001"
    assert "'dead'" in str(err)
    assert "'0001'" in str(err)


def test_storage_error_stores_cause_and_message():
    cause = RuntimeError("disk full")
    err = StorageError("write failed", cause)
    assert isinstance(err, StoreError)
    assert err.cause is cause
    assert "write failed" in str(err)
    assert "disk full" in str(err)


def test_error_hierarchy():
    for cls in (CASConflictError, DuplicateKeyError, TransactionError, StorageError):
        assert issubclass(cls, StoreError)
    assert issubclass(StoreError, DocQueueError)
    assert issubclass(ConfigurationError, DocQueueError)
    assert issubclass(DocQueueError, Exception)


def test_can_catch_subclass_as_base():
    with pytest.raises(StoreError):
        raise CASConflictError("conflict")
