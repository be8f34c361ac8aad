"""Durable record of failed provisioning attempts, with operator triage."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from scripts.provisioning.db import Database
from scripts.provisioning.models import ErrorRecord

logger = logging.getLogger("provisioning.error_store")

_MAX_MESSAGE = 1000


class ErrorCaptureStore:
    """Append-only failure log.

    ``record`` is guarded a second time: if the error row itself cannot be
    written, the failure is logged and dropped. There is no retry here; the
    reconciliation sweep is what eventually repairs the subject.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def record(
        self,
        subject_id: Optional[str],
        message: str,
        detail: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        try:
            error_id = self.db.insert_error_record(
                subject_id, str(message)[:_MAX_MESSAGE], detail, context or {}
            )
        except Exception:
            logger.error(
                "Error record write failed; dropping: %s",
                message,
                exc_info=True,
                extra={"subject_id": subject_id, "context": context},
            )
            return None
        logger.info(
            "Recorded provisioning error %d: %s",
            error_id,
            message,
            extra={"subject_id": subject_id, "context": context},
        )
        return error_id

    def resolve(
        self,
        error_id: int,
        resolved_by: str,
        notes: Optional[str] = None,
    ) -> bool:
        """Mark an error as triaged. False when it is unknown or already resolved."""
        if not resolved_by or not resolved_by.strip():
            raise ValueError("resolved_by is required")
        updated = self.db.resolve_error_record(error_id, resolved_by.strip(), notes)
        if updated:
            logger.info("Error %d resolved by %s", error_id, resolved_by)
        return updated

    def list(
        self,
        unresolved_only: bool = True,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[ErrorRecord]:
        rows = self.db.fetch_error_records(
            unresolved_only=unresolved_only, since=since, limit=limit
        )
        return [ErrorRecord.from_row(r) for r in rows]
