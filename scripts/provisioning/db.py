"""Database helpers: connection pool, coalescing upserts, ledger/error/run tables."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Generator, Mapping, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.provisioning.config import DatabaseConfig

logger = logging.getLogger("provisioning.db")


def _sql_literal(text: str) -> str:
    # Only used for code-level constants; escapes quotes and psycopg2's %
    return "'" + text.replace("'", "''").replace("%", "%%") + "'"


def coalesce_clause(
    table: str,
    column: str,
    placeholder_pattern: Optional[str] = None,
) -> str:
    """SET clause keeping the stored value unless it is NULL, '' or a placeholder."""
    current = f"{table}.{column}"
    if placeholder_pattern is None:
        return f"{column} = COALESCE(NULLIF({current}, ''), EXCLUDED.{column})"
    return (
        f"{column} = CASE WHEN {current} IS NULL OR {current} = '' "
        f"OR {current} LIKE {_sql_literal(placeholder_pattern)} "
        f"THEN EXCLUDED.{column} ELSE {current} END"
    )


class Database:
    """Thin wrapper around a ThreadedConnectionPool with provisioning queries."""

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self.identity_table = config.identity_table
        self.audit_table = config.audit_table
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a dict cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def upsert_batch(
        self,
        cur,
        table: str,
        columns: list[str],
        rows: Sequence[tuple],
        conflict_columns: list[str],
        update_columns: list[str],
        coalesce_columns: Sequence[str] = (),
        placeholder_patterns: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Bulk upsert using execute_values with ON CONFLICT DO UPDATE.

        ``update_columns`` are overwritten by the incoming row;
        ``coalesce_columns`` keep the stored value when it is non-empty
        (first non-null wins). The whole batch is a single statement, so a
        concurrent writer for the same key is serialized by the unique
        constraint rather than by a check-then-insert. Returns rows affected.
        """
        if not rows:
            return 0

        placeholder_patterns = placeholder_patterns or {}
        col_list = ", ".join(columns)
        conflict_list = ", ".join(conflict_columns)
        set_clauses = [f"{c} = EXCLUDED.{c}" for c in update_columns]
        set_clauses += [
            coalesce_clause(table, c, placeholder_patterns.get(c))
            for c in coalesce_columns
        ]
        # Always refresh the timestamp on update
        set_clauses.append("updated_at = NOW()")

        sql = (
            f"INSERT INTO {table} ({col_list}) VALUES %s "
            f"ON CONFLICT ({conflict_list}) DO UPDATE SET {', '.join(set_clauses)}"
        )

        psycopg2.extras.execute_values(cur, sql, rows, page_size=500)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Profiles and identities
    # ------------------------------------------------------------------

    def fetch_profile(self, subject_id: str) -> Optional[dict[str, Any]]:
        with self.transaction() as cur:
            cur.execute(
                """SELECT id::text AS id, email, full_name, phone, account_type,
                          business_name, created_at, updated_at
                   FROM profiles WHERE id = %s""",
                (subject_id,),
            )
            row = cur.fetchone()
        return dict(row) if row else None

    def fetch_identities_without_profile(
        self,
        limit: int,
        after: Optional[tuple[datetime, str]] = None,
    ) -> list[dict[str, Any]]:
        """Identities lacking a profile, oldest first.

        ``after`` is a ``(created_at, id)`` keyset cursor; only gaps strictly
        after it are returned.
        """
        cursor_clause = ""
        params: list[Any] = []
        if after is not None:
            cursor_clause = "AND (u.created_at, u.id) > (%s, %s::uuid)"
            params.extend(after)
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT u.id::text AS id, u.email, u.phone,
                           u.raw_user_meta_data, u.created_at
                    FROM {self.identity_table} u
                    LEFT JOIN profiles p ON p.id = u.id
                    WHERE p.id IS NULL {cursor_clause}
                    ORDER BY u.created_at ASC, u.id ASC
                    LIMIT %s""",
                params,
            )
            return [dict(r) for r in cur.fetchall()]

    def count_identities_without_profile(self) -> int:
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT COUNT(*) AS n
                    FROM {self.identity_table} u
                    LEFT JOIN profiles p ON p.id = u.id
                    WHERE p.id IS NULL"""
            )
            return int(cur.fetchone()["n"])

    def fetch_identity_profile_links(self) -> list[dict[str, Any]]:
        """One row per subject seen in either the identity or profile table."""
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT COALESCE(u.id, p.id)::text AS subject_id,
                           COALESCE(u.email, p.email) AS email,
                           u.id IS NOT NULL AS has_identity,
                           p.id IS NOT NULL AS has_profile,
                           EXISTS (
                               SELECT 1 FROM lifecycle_events e
                               WHERE e.subject_id = COALESCE(u.id, p.id)
                           ) AS has_event,
                           u.created_at AS identity_created_at,
                           p.created_at AS profile_created_at
                    FROM {self.identity_table} u
                    FULL OUTER JOIN profiles p ON p.id = u.id
                    ORDER BY u.created_at ASC NULLS LAST"""
            )
            return [dict(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Lifecycle events (append-only)
    # ------------------------------------------------------------------

    def insert_lifecycle_event(
        self,
        subject_id: str,
        event_type: str,
        email_snapshot: Optional[str],
        metadata: Optional[dict] = None,
    ) -> int:
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO lifecycle_events
                   (subject_id, event_type, email_snapshot, metadata)
                   VALUES (%s, %s, %s, %s)
                   RETURNING id""",
                (
                    subject_id,
                    event_type,
                    email_snapshot,
                    psycopg2.extras.Json(metadata or {}),
                ),
            )
            return int(cur.fetchone()["id"])

    def fetch_lifecycle_events(
        self,
        subject_id: Optional[str] = None,
        since: Optional[datetime] = None,
        event_types: Optional[Sequence[str]] = None,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if subject_id is not None:
            clauses.append("subject_id = %s")
            params.append(subject_id)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if event_types:
            clauses.append("event_type = ANY(%s)")
            params.append(list(event_types))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT id, subject_id::text AS subject_id, event_type,
                           email_snapshot, metadata, created_at
                    FROM lifecycle_events {where}
                    ORDER BY created_at ASC, id ASC""",
                params,
            )
            return [dict(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Error capture
    # ------------------------------------------------------------------

    def insert_error_record(
        self,
        subject_id: Optional[str],
        message: str,
        detail: Optional[str],
        context: Optional[dict] = None,
    ) -> int:
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO provisioning_errors
                   (subject_id, message, detail, context)
                   VALUES (%s, %s, %s, %s)
                   RETURNING id""",
                (
                    subject_id,
                    message,
                    detail,
                    psycopg2.extras.Json(context or {}),
                ),
            )
            return int(cur.fetchone()["id"])

    def resolve_error_record(
        self,
        error_id: int,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> bool:
        with self.transaction() as cur:
            cur.execute(
                """UPDATE provisioning_errors
                   SET resolved = TRUE,
                       resolved_by = %s,
                       resolved_at = NOW(),
                       notes = COALESCE(%s, notes)
                   WHERE id = %s AND NOT resolved""",
                (resolved_by, notes, error_id),
            )
            return cur.rowcount > 0

    def fetch_error_records(
        self,
        unresolved_only: bool = True,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if unresolved_only:
            clauses.append("NOT resolved")
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT id, subject_id::text AS subject_id, message, detail,
                           context, created_at, resolved, resolved_by,
                           resolved_at, notes
                    FROM provisioning_errors {where}
                    ORDER BY created_at DESC, id DESC
                    LIMIT %s""",
                params,
            )
            return [dict(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Provider audit trail (read-only)
    # ------------------------------------------------------------------

    def fetch_audit_entries(
        self,
        since: datetime,
        blocked_only: bool = False,
    ) -> list[dict[str, Any]]:
        blocked = (
            "AND payload->>'actor_username' LIKE '%%[blocked]%%'" if blocked_only else ""
        )
        with self.transaction() as cur:
            cur.execute(
                f"""SELECT id::text AS id, payload, ip_address, created_at
                    FROM {self.audit_table}
                    WHERE created_at >= %s {blocked}
                    ORDER BY created_at ASC""",
                (since,),
            )
            return [dict(r) for r in cur.fetchall()]

    # ------------------------------------------------------------------
    # Sweep run tracking
    # ------------------------------------------------------------------

    def record_run_start(self, dry_run: bool = False, metadata: Optional[dict] = None) -> str:
        """Insert a new sweep_runs row with status RUNNING. Returns the run id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO sweep_runs (id, status, dry_run, run_metadata)
                   VALUES (%s, 'RUNNING', %s, %s)""",
                (run_id, dry_run, psycopg2.extras.Json(metadata or {})),
            )
        return run_id

    def record_run_end(
        self,
        run_id: str,
        status: str,
        identities_scanned: int = 0,
        profiles_repaired: int = 0,
        failures: int = 0,
        error_message: Optional[str] = None,
        error_detail: Optional[dict] = None,
    ) -> None:
        """Finalise a sweep_runs row."""
        with self.transaction() as cur:
            cur.execute(
                """UPDATE sweep_runs
                   SET status = %s,
                       finished_at = NOW(),
                       identities_scanned = %s,
                       profiles_repaired = %s,
                       failures = %s,
                       error_message = %s,
                       error_detail = %s
                   WHERE id = %s""",
                (
                    status,
                    identities_scanned,
                    profiles_repaired,
                    failures,
                    error_message,
                    psycopg2.extras.Json(error_detail) if error_detail else None,
                    run_id,
                ),
            )

    def get_recent_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        """Fetch recent sweep runs for status display."""
        with self.transaction() as cur:
            cur.execute(
                """SELECT id::text AS id, status, dry_run, started_at, finished_at,
                          identities_scanned, profiles_repaired, failures,
                          error_message
                   FROM sweep_runs
                   ORDER BY started_at DESC LIMIT %s""",
                (limit,),
            )
            return [dict(r) for r in cur.fetchall()]
