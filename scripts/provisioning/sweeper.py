"""Reconciliation sweep: create profiles for identities that lack one.

The sweep never needs the original hook to have succeeded. It scans the
oldest gaps first, repairs each one through the merge engine, and isolates
per-subject failures. Stopping it mid-batch loses nothing: repaired
identities drop out of the gap query and the rest are picked up next run.
"""

from __future__ import annotations

import logging
import time
import traceback
from typing import Optional

from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.db import Database
from scripts.provisioning.error_store import ErrorCaptureStore
from scripts.provisioning.extraction import extract_signup_fields
from scripts.provisioning.hook import error_detail
from scripts.provisioning.ledger import EventLedger
from scripts.provisioning.merge import ProfileMergeEngine
from scripts.provisioning.models import EventType, IdentityRecord, SweepReport

logger = logging.getLogger("provisioning.sweeper")

SWEEP_CONTEXT = "reconciliation_sweep"


class ReconciliationSweeper:
    def __init__(
        self,
        config: ProvisioningConfig,
        db: Database,
        merge_engine: ProfileMergeEngine,
        ledger: EventLedger,
        error_store: ErrorCaptureStore,
    ) -> None:
        self.config = config
        self.db = db
        self.merge_engine = merge_engine
        self.ledger = ledger
        self.error_store = error_store

    def run(self, dry_run: bool = False, limit: Optional[int] = None) -> list[SweepReport]:
        """Repair up to ``limit`` gaps, tracked as one sweep_runs row.

        Subjects that fail do not count against ``limit``; the scan keeps
        paging past them, so a backlog of permanently failing identities
        cannot starve newer ones.
        """
        if limit is None:
            limit = self.config.sweep_batch_size
        if limit < 1:
            raise ValueError(f"sweep limit must be at least 1, got {limit}")
        run_id = self.db.record_run_start(dry_run=dry_run, metadata={"limit": limit})
        started = time.monotonic()
        try:
            reports = self._sweep(limit, dry_run)
        except Exception as exc:
            self.db.record_run_end(
                run_id=run_id,
                status="FAILED",
                error_message=str(exc)[:1000],
                error_detail={"traceback": traceback.format_exc()},
            )
            logger.error("Sweep failed: %s", exc, extra={"run_id": run_id})
            raise

        repaired = sum(1 for r in reports if r.status == "repaired")
        failed = sum(1 for r in reports if r.status == "failed")
        self.db.record_run_end(
            run_id=run_id,
            status="PARTIAL" if failed else "SUCCESS",
            identities_scanned=len(reports),
            profiles_repaired=repaired,
            failures=failed,
        )
        logger.info(
            "Sweep complete: %d scanned, %d repaired, %d failed",
            len(reports),
            repaired,
            failed,
            extra={
                "run_id": run_id,
                "records": repaired,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        return reports

    def _sweep(self, limit: int, dry_run: bool) -> list[SweepReport]:
        reports: list[SweepReport] = []
        done = 0
        after = None
        while done < limit:
            rows = self.db.fetch_identities_without_profile(limit - done, after=after)
            if not rows:
                break
            logger.info("Found %d identities without a profile", len(rows))
            for row in rows:
                report = self._repair(IdentityRecord.from_row(row), dry_run)
                reports.append(report)
                if report.status != "failed":
                    done += 1
            last = rows[-1]
            after = (last["created_at"], last["id"])
        return reports

    def _repair(self, identity: IdentityRecord, dry_run: bool) -> SweepReport:
        fields = extract_signup_fields(identity, self.config.placeholder_email_domain)

        if dry_run:
            return SweepReport(
                subject_id=identity.id,
                email=fields.email,
                account_type=fields.account_type,
                status="would_repair",
            )

        try:
            draft = self.merge_engine.ensure_profile(
                identity.id,
                fields.email,
                fields.full_name,
                fields.phone,
                fields.account_type,
                fields.company_name,
            )
        except Exception as exc:
            error_id = self.error_store.record(
                identity.id,
                str(exc) or exc.__class__.__name__,
                detail=error_detail(exc),
                context={"source": SWEEP_CONTEXT},
            )
            self.ledger.append(
                identity.id,
                EventType.PROFILE_BACKFILL_ERROR,
                fields.email,
                {"error": str(exc), "error_id": error_id},
            )
            logger.warning(
                "Backfill failed: %s",
                exc,
                extra={"subject_id": identity.id, "context": SWEEP_CONTEXT},
            )
            return SweepReport(
                subject_id=identity.id,
                email=fields.email,
                account_type=fields.account_type,
                status="failed",
                error=str(exc),
                error_id=error_id,
            )

        self.ledger.append(
            identity.id,
            EventType.PROFILE_BACKFILLED,
            draft.email,
            {"source": SWEEP_CONTEXT, "account_type": draft.account_type},
        )
        return SweepReport(
            subject_id=identity.id,
            email=draft.email,
            account_type=draft.account_type,
            status="repaired",
        )
