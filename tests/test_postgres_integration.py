"""Integration tests against a real PostgreSQL.

Skipped unless TEST_DATABASE_URL points at a disposable database; the
schema in schema/001_provisioning.sql is applied and the tables are
truncated before each test.
"""

import os
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg2.extras import Json

from scripts.provisioning.config import DatabaseConfig
from scripts.provisioning.db import Database
from scripts.provisioning.error_store import ErrorCaptureStore
from scripts.provisioning.ledger import EventLedger
from scripts.provisioning.merge import ProfileMergeEngine

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")
SCHEMA = Path(__file__).resolve().parent.parent / "schema" / "001_provisioning.sql"

pytestmark = pytest.mark.skipif(
    not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set"
)


@pytest.fixture
def pg():
    database = Database(DatabaseConfig(url=TEST_DATABASE_URL, max_connections=8))
    with database.transaction() as cur:
        cur.execute(SCHEMA.read_text())
        cur.execute(
            "TRUNCATE profiles, lifecycle_events, provisioning_errors, sweep_runs, "
            "auth.users, auth.audit_log_entries"
        )
    yield database
    database.close()


def _add_identity(pg, email=None, metadata=None):
    subject = str(uuid.uuid4())
    with pg.transaction() as cur:
        cur.execute(
            "INSERT INTO auth.users (id, email, raw_user_meta_data) VALUES (%s, %s, %s)",
            (subject, email, Json(metadata) if metadata is not None else None),
        )
    return subject


def test_upsert_keeps_first_values_and_fills_gaps(pg):
    engine = ProfileMergeEngine(pg)
    subject = _add_identity(pg)

    engine.ensure_profile(subject, f"missing-email-{subject}@example.invalid", account_type="investor")
    engine.ensure_profile(subject, "real@example.com", "Ada", account_type="donor")

    profile = engine.get_profile(subject)
    assert profile.email == "real@example.com"
    assert profile.full_name == "Ada"
    assert profile.account_type == "investor"


def test_concurrent_upserts_leave_one_row(pg):
    engine = ProfileMergeEngine(pg)
    subject = _add_identity(pg)
    kwargs = [dict(email="a@example.com"), dict(full_name="Ada"), dict(phone="+1")] * 4

    with ThreadPoolExecutor(max_workers=6) as pool:
        list(pool.map(lambda kw: engine.ensure_profile(subject, **kw), kwargs))

    with pg.transaction() as cur:
        cur.execute("SELECT COUNT(*) AS n FROM profiles WHERE id = %s", (subject,))
        assert cur.fetchone()["n"] == 1
    profile = engine.get_profile(subject)
    assert (profile.email, profile.full_name, profile.phone) == ("a@example.com", "Ada", "+1")


def test_gap_query_and_links(pg):
    engine = ProfileMergeEngine(pg)
    done = _add_identity(pg, "done@example.com")
    gap = _add_identity(pg, "gap@example.com")
    engine.ensure_profile(done, "done@example.com")

    assert [r["id"] for r in pg.fetch_identities_without_profile(10)] == [gap]
    assert pg.count_identities_without_profile() == 1
    links = {link["subject_id"]: link for link in pg.fetch_identity_profile_links()}
    assert links[done]["has_profile"] and not links[gap]["has_profile"]


def test_ledger_is_append_only(pg):
    subject = str(uuid.uuid4())
    event_id = EventLedger(pg).append(subject, "identity_created", "a@example.com")
    assert event_id is not None

    with pytest.raises(Exception, match="append-only"):
        with pg.transaction() as cur:
            cur.execute("DELETE FROM lifecycle_events WHERE id = %s", (event_id,))


def test_error_store_roundtrip(pg):
    store = ErrorCaptureStore(pg)
    error_id = store.record(str(uuid.uuid4()), "boom", "SQLSTATE 23514", {"source": "test"})
    assert store.resolve(error_id, "ops", "checked")
    assert store.list() == []


def test_blocked_audit_filter(pg):
    with pg.transaction() as cur:
        for actor in ("a@example.com [blocked]", "b@example.com"):
            cur.execute(
                "INSERT INTO auth.audit_log_entries (id, payload) VALUES (%s, %s)",
                (str(uuid.uuid4()), Json({"action": "user_signedup", "actor_username": actor})),
            )
    since = datetime.now(timezone.utc) - timedelta(hours=1)
    rows = pg.fetch_audit_entries(since, blocked_only=True)
    assert [r["payload"]["actor_username"] for r in rows] == ["a@example.com [blocked]"]
