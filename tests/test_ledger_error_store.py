"""Tests for the lifecycle ledger and the error capture store."""

import pytest

from scripts.provisioning.models import EventType

SUBJECT = "3e2f1a0b-9c8d-4e7f-a6b5-c4d3e2f1a0b9"


def test_ledger_appends_in_order_without_dedup(ledger):
    ledger.append(SUBJECT, EventType.IDENTITY_CREATED, "a@example.com", {"source": "hook"})
    ledger.append(SUBJECT, EventType.IDENTITY_CREATED, "a@example.com")
    ledger.append(SUBJECT, "custom_event")

    events = ledger.events_for(SUBJECT)

    assert [e.event_type for e in events] == ["identity_created", "identity_created", "custom_event"]
    assert events[0].metadata == {"source": "hook"}
    assert events[0].email_snapshot == "a@example.com"
    assert events[1].metadata == {}


def test_ledger_write_failure_returns_none(db, ledger):
    db.fail_event_writes = True
    assert ledger.append(SUBJECT, EventType.PROFILE_BOOTSTRAP_OK) is None


def test_error_record_and_resolve(error_store):
    error_id = error_store.record(SUBJECT, "boom", detail="SQLSTATE 23505", context={"source": "test"})

    (record,) = error_store.list()
    assert record.id == error_id
    assert record.subject_id == SUBJECT
    assert record.context == {"source": "test"}
    assert record.resolved is False

    assert error_store.resolve(error_id, "ops@example.com", notes="duplicate key, fixed") is True
    assert error_store.list() == []
    (resolved,) = error_store.list(unresolved_only=False)
    assert resolved.resolved_by == "ops@example.com"
    assert resolved.notes == "duplicate key, fixed"


def test_resolve_twice_or_unknown_returns_false(error_store):
    error_id = error_store.record(SUBJECT, "boom")
    assert error_store.resolve(error_id, "ops") is True
    assert error_store.resolve(error_id, "ops") is False
    assert error_store.resolve(9999, "ops") is False


def test_resolve_requires_resolver(error_store):
    error_id = error_store.record(SUBJECT, "boom")
    with pytest.raises(ValueError):
        error_store.resolve(error_id, "  ")


def test_long_messages_are_truncated(db, error_store):
    error_store.record(SUBJECT, "x" * 5000)
    assert len(db.errors[0]["message"]) == 1000


def test_error_store_failure_is_swallowed(db, error_store):
    db.fail_error_writes = True
    assert error_store.record(SUBJECT, "boom") is None
