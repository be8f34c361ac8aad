"""Append-only lifecycle event ledger.

Events are telemetry for counting and auditing, not a state machine: they
are never updated, never deduplicated, and a failed write must not disturb
the provisioning step that produced it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Union

from scripts.provisioning.db import Database
from scripts.provisioning.models import EventType, LifecycleEvent

logger = logging.getLogger("provisioning.ledger")


class EventLedger:
    def __init__(self, db: Database) -> None:
        self.db = db

    def append(
        self,
        subject_id: str,
        event_type: Union[EventType, str],
        email_snapshot: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[int]:
        """Write one event. Never raises; returns the event id or None."""
        kind = event_type.value if isinstance(event_type, EventType) else str(event_type)
        try:
            event_id = self.db.insert_lifecycle_event(
                subject_id, kind, email_snapshot, metadata or {}
            )
        except Exception:
            logger.warning(
                "Lifecycle event write failed",
                exc_info=True,
                extra={"subject_id": subject_id, "event_type": kind},
            )
            return None
        logger.debug(
            "Lifecycle event appended",
            extra={"subject_id": subject_id, "event_type": kind},
        )
        return event_id

    def events_for(self, subject_id: str) -> list[LifecycleEvent]:
        """A subject's history in insertion order."""
        rows = self.db.fetch_lifecycle_events(subject_id=subject_id)
        return [LifecycleEvent.from_row(r) for r in rows]
