"""Shared fixtures.

Unit tests run against ``InMemoryDatabase``, which implements the same
methods as ``scripts.provisioning.db.Database`` (including the coalescing
upsert rule) on plain dicts. ``test_postgres_integration.py`` exercises the
real SQL when TEST_DATABASE_URL is set.
"""

from __future__ import annotations

import copy
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from scripts.provisioning.analyzer import CorrelationAnalyzer
from scripts.provisioning.config import DatabaseConfig, ProvisioningConfig
from scripts.provisioning.error_store import ErrorCaptureStore
from scripts.provisioning.hook import ReactiveHook
from scripts.provisioning.ledger import EventLedger
from scripts.provisioning.merge import ProfileMergeEngine
from scripts.provisioning.sweeper import ReconciliationSweeper

# Wall-clock so analyzers running on the real clock agree with seeded rows
NOW = datetime.now(timezone.utc).replace(microsecond=0)


class FakeDatabaseError(Exception):
    """Stands in for a driver error carrying a SQLSTATE."""

    def __init__(self, message: str, pgcode: Optional[str] = None) -> None:
        super().__init__(message)
        self.pgcode = pgcode


def _like(pattern: str) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "%":
            parts.append(".*")
        elif ch == "_":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    return re.compile("^" + "".join(parts) + "$", re.DOTALL)


class InMemoryDatabase:
    """Dict-backed double for ``Database``."""

    def __init__(self, now: datetime = NOW) -> None:
        self.identity_table = "auth.users"
        self.audit_table = "auth.audit_log_entries"
        self.now = now
        self.identities: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.errors: list[dict[str, Any]] = []
        self.audit: list[dict[str, Any]] = []
        self.runs: dict[str, dict[str, Any]] = {}
        self.upsert_calls = 0
        self.closed = False

        # Fault injection
        self.fail_profile_writes = False
        self.fail_profile_for: set[str] = set()
        self.fail_event_writes = False
        self.fail_error_writes = False
        self.fail_gap_query = False

        self._lock = threading.RLock()
        self._event_seq = 0
        self._error_seq = 0

    # -- seeding helpers ------------------------------------------------

    def add_identity(
        self,
        subject_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        metadata: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        subject_id = subject_id or str(uuid.uuid4())
        self.identities[subject_id] = {
            "id": subject_id,
            "email": email,
            "phone": phone,
            "raw_user_meta_data": metadata,
            "created_at": created_at or self.now - timedelta(hours=1),
        }
        return subject_id

    def add_profile(self, subject_id: str, **fields: Any) -> None:
        row = {
            "id": subject_id,
            "email": None,
            "full_name": None,
            "phone": None,
            "account_type": "sme",
            "business_name": None,
            "created_at": self.now,
            "updated_at": self.now,
        }
        row.update(fields)
        self.profiles[subject_id] = row

    def add_audit(
        self,
        action: str,
        actor_username: Optional[str] = None,
        ip_address: Optional[str] = None,
        created_at: Optional[datetime] = None,
        traits: Optional[dict] = None,
    ) -> str:
        entry_id = str(uuid.uuid4())
        payload: dict[str, Any] = {"action": action}
        if actor_username is not None:
            payload["actor_username"] = actor_username
        if ip_address is not None:
            payload["ip_address"] = ip_address
        if traits is not None:
            payload["traits"] = traits
        self.audit.append({
            "id": entry_id,
            "payload": payload,
            "ip_address": None,
            "created_at": created_at or self.now - timedelta(minutes=10),
        })
        return entry_id

    def events_of(self, subject_id: str) -> list[str]:
        return [e["event_type"] for e in self.events if e["subject_id"] == subject_id]

    # -- Database surface -------------------------------------------------

    def close(self) -> None:
        self.closed = True

    @contextmanager
    def transaction(self):
        with self._lock:
            snapshot = copy.deepcopy(self.profiles)
            try:
                yield object()
            except Exception:
                self.profiles = snapshot
                raise

    def upsert_batch(
        self,
        cur,
        table,
        columns,
        rows,
        conflict_columns,
        update_columns,
        coalesce_columns=(),
        placeholder_patterns=None,
    ) -> int:
        assert table == "profiles"
        assert conflict_columns == ["id"]
        patterns = {c: _like(p) for c, p in (placeholder_patterns or {}).items()}
        with self._lock:
            self.upsert_calls += 1
            for values in rows:
                incoming = dict(zip(columns, values))
                subject_id = incoming["id"]
                if self.fail_profile_writes or subject_id in self.fail_profile_for:
                    raise FakeDatabaseError("profile write failed", pgcode="23514")
                existing = self.profiles.get(subject_id)
                if existing is None:
                    row = {c: None for c in ("email", "full_name", "phone", "business_name")}
                    row.update(incoming)
                    row["created_at"] = row["updated_at"] = self.now
                    self.profiles[subject_id] = row
                    continue
                for column in update_columns:
                    existing[column] = incoming[column]
                for column in coalesce_columns:
                    current = existing.get(column)
                    empty = current is None or current == ""
                    if not empty and column in patterns:
                        empty = bool(patterns[column].match(current))
                    if empty:
                        existing[column] = incoming[column]
                existing["updated_at"] = self.now
        return len(rows)

    def fetch_profile(self, subject_id):
        row = self.profiles.get(subject_id)
        return dict(row) if row else None

    def _gaps(self):
        if self.fail_gap_query:
            raise FakeDatabaseError("connection reset", pgcode="08006")
        gaps = [r for sid, r in self.identities.items() if sid not in self.profiles]
        return sorted(gaps, key=lambda r: (r["created_at"], r["id"]))

    def fetch_identities_without_profile(self, limit, after=None):
        gaps = self._gaps()
        if after is not None:
            gaps = [r for r in gaps if (r["created_at"], r["id"]) > after]
        return [dict(r) for r in gaps[:limit]]

    def count_identities_without_profile(self):
        return len(self._gaps())

    def fetch_identity_profile_links(self):
        subjects = list(self.identities) + [p for p in self.profiles if p not in self.identities]
        with_events = {e["subject_id"] for e in self.events}
        links = []
        for sid in subjects:
            identity = self.identities.get(sid)
            profile = self.profiles.get(sid)
            links.append({
                "subject_id": sid,
                "email": (identity or {}).get("email") or (profile or {}).get("email"),
                "has_identity": identity is not None,
                "has_profile": profile is not None,
                "has_event": sid in with_events,
                "identity_created_at": (identity or {}).get("created_at"),
                "profile_created_at": (profile or {}).get("created_at"),
            })
        return links

    def insert_lifecycle_event(self, subject_id, event_type, email_snapshot, metadata=None):
        if self.fail_event_writes:
            raise FakeDatabaseError("ledger unavailable")
        with self._lock:
            self._event_seq += 1
            self.events.append({
                "id": self._event_seq,
                "subject_id": subject_id,
                "event_type": event_type,
                "email_snapshot": email_snapshot,
                "metadata": dict(metadata or {}),
                "created_at": self.now,
            })
            return self._event_seq

    def fetch_lifecycle_events(self, subject_id=None, since=None, event_types=None):
        return [
            dict(e) for e in self.events
            if (subject_id is None or e["subject_id"] == subject_id)
            and (since is None or e["created_at"] >= since)
            and (not event_types or e["event_type"] in event_types)
        ]

    def insert_error_record(self, subject_id, message, detail, context=None):
        if self.fail_error_writes:
            raise FakeDatabaseError("error table unavailable")
        with self._lock:
            self._error_seq += 1
            self.errors.append({
                "id": self._error_seq,
                "subject_id": subject_id,
                "message": message,
                "detail": detail,
                "context": dict(context or {}),
                "created_at": self.now,
                "resolved": False,
                "resolved_by": None,
                "resolved_at": None,
                "notes": None,
            })
            return self._error_seq

    def resolve_error_record(self, error_id, resolved_by, notes=None):
        for row in self.errors:
            if row["id"] == error_id and not row["resolved"]:
                row.update(
                    resolved=True,
                    resolved_by=resolved_by,
                    resolved_at=self.now,
                    notes=notes if notes is not None else row["notes"],
                )
                return True
        return False

    def fetch_error_records(self, unresolved_only=True, since=None, limit=100):
        rows = [
            dict(r) for r in self.errors
            if (not unresolved_only or not r["resolved"])
            and (since is None or r["created_at"] >= since)
        ]
        rows.sort(key=lambda r: (r["created_at"], r["id"]), reverse=True)
        return rows[:limit]

    def fetch_audit_entries(self, since, blocked_only=False):
        rows = [
            dict(r) for r in self.audit
            if r["created_at"] >= since
            and (not blocked_only or "[blocked]" in (r["payload"].get("actor_username") or ""))
        ]
        return sorted(rows, key=lambda r: r["created_at"])

    def record_run_start(self, dry_run=False, metadata=None):
        run_id = str(uuid.uuid4())
        self.runs[run_id] = {
            "id": run_id,
            "status": "RUNNING",
            "dry_run": dry_run,
            "run_metadata": dict(metadata or {}),
            "started_at": self.now,
            "finished_at": None,
            "identities_scanned": 0,
            "profiles_repaired": 0,
            "failures": 0,
            "error_message": None,
            "error_detail": None,
        }
        return run_id

    def record_run_end(
        self,
        run_id,
        status,
        identities_scanned=0,
        profiles_repaired=0,
        failures=0,
        error_message=None,
        error_detail=None,
    ):
        self.runs[run_id].update(
            status=status,
            finished_at=self.now,
            identities_scanned=identities_scanned,
            profiles_repaired=profiles_repaired,
            failures=failures,
            error_message=error_message,
            error_detail=error_detail,
        )

    def get_recent_runs(self, limit=10):
        return list(self.runs.values())[::-1][:limit]


@pytest.fixture
def db():
    return InMemoryDatabase()


@pytest.fixture
def config():
    return ProvisioningConfig(database=DatabaseConfig(url="postgresql://test/test"))


@pytest.fixture
def ledger(db):
    return EventLedger(db)


@pytest.fixture
def error_store(db):
    return ErrorCaptureStore(db)


@pytest.fixture
def merge_engine(db, config, ledger):
    return ProfileMergeEngine(db, config.account_types, ledger)


@pytest.fixture
def hook(config, ledger, merge_engine, error_store):
    return ReactiveHook(config, ledger, merge_engine, error_store)


@pytest.fixture
def sweeper(config, db, merge_engine, ledger, error_store):
    return ReconciliationSweeper(config, db, merge_engine, ledger, error_store)


@pytest.fixture
def analyzer(config, db):
    return CorrelationAnalyzer(config, db, clock=lambda: db.now)
