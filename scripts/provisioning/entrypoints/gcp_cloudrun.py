"""GCP Cloud Run Job entry point for scheduled provisioning work.

Deployed as Cloud Run Jobs triggered by Cloud Scheduler.
The PROVISIONING_JOB env var selects the work to do.

Usage:
  PROVISIONING_JOB=sweep python -m scripts.provisioning.entrypoints.gcp_cloudrun
  PROVISIONING_JOB=alerts python -m scripts.provisioning.entrypoints.gcp_cloudrun
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", ".."))

from scripts.provisioning.config import load_config
from scripts.provisioning.db import Database
from scripts.provisioning.logging_config import configure_logging

logger = logging.getLogger("provisioning.cloudrun")

JOBS = ("sweep", "alerts")


def _sweep_limit() -> Optional[int]:
    """SWEEP_LIMIT overrides the configured batch size; unset means no override."""
    raw = os.environ.get("SWEEP_LIMIT", "").strip()
    if not raw:
        return None
    try:
        limit = int(raw)
    except ValueError:
        raise ValueError(f"SWEEP_LIMIT must be an integer, got {raw!r}") from None
    if limit < 1:
        raise ValueError(f"SWEEP_LIMIT must be at least 1, got {limit}")
    return limit


def main() -> None:
    configure_logging()

    job = os.environ.get("PROVISIONING_JOB", "sweep")
    if job not in JOBS:
        logger.error("PROVISIONING_JOB must be one of %s, got %r", JOBS, job)
        sys.exit(1)

    try:
        limit = _sweep_limit() if job == "sweep" else None
    except ValueError as exc:
        logger.error("%s", exc)
        sys.exit(1)

    logger.info("Cloud Run Job started for job=%s", job)

    config = load_config()
    db = Database(config.database)

    try:
        if job == "sweep":
            from scripts.provisioning.cli import run_sweep

            reports = run_sweep(config, db, limit=limit)
            failed = [r for r in reports if r.status == "failed"]
            logger.info("Sweep finished: %d processed, %d failed", len(reports), len(failed))
        else:
            from scripts.provisioning.cli import run_alert_summary

            summary = run_alert_summary(config, db)
            logger.info("Alert summary: %s", summary)
            if summary["overall_status"] == "critical":
                sys.exit(2)
    except Exception as exc:
        logger.error("Job %s failed: %s", job, exc, exc_info=True)
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
