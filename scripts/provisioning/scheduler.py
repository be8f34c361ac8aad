"""APScheduler-based interval scheduling for sweeps and health checks."""

from __future__ import annotations

import logging
import time

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.schedulers.blocking import BlockingScheduler

from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.db import Database

logger = logging.getLogger("provisioning.scheduler")

BACKOFF_BASE_SECONDS = 30


def _sweep_job(config: ProvisioningConfig, db: Database) -> None:
    """Run one sweep, retrying whole-run failures with exponential backoff.

    Per-identity failures never reach here; they are isolated by the sweeper.
    """
    from scripts.provisioning.cli import run_sweep

    max_retries = config.scheduler.max_retries
    for attempt in range(max_retries + 1):
        try:
            reports = run_sweep(config, db)
            logger.info("Scheduled sweep processed %d identities", len(reports))
            return
        except Exception as exc:
            if attempt < max_retries:
                delay = BACKOFF_BASE_SECONDS * (2 ** attempt)
                logger.warning(
                    "Sweep failed (attempt %d/%d), retrying in %ds: %s",
                    attempt + 1, max_retries, delay, exc,
                )
                time.sleep(delay)
            else:
                logger.error("Sweep failed after %d retries: %s", max_retries, exc)


def _alert_job(config: ProvisioningConfig, db: Database) -> None:
    from scripts.provisioning.cli import run_alert_summary

    try:
        summary = run_alert_summary(config, db)
        logger.info("Alert summary: %s", summary["overall_status"])
    except Exception as exc:
        logger.error("Alert summary failed: %s", exc)


def _on_job_error(event) -> None:
    logger.error("Job %s raised an exception: %s", event.job_id, event.exception)


def build_scheduler(config: ProvisioningConfig, db: Database) -> BlockingScheduler:
    scheduler = BlockingScheduler()
    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    sched = config.scheduler

    scheduler.add_job(
        _sweep_job,
        "interval",
        minutes=sched.sweep_interval_min,
        args=[config, db],
        id="reconciliation_sweep",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    scheduler.add_job(
        _alert_job,
        "interval",
        minutes=sched.alert_interval_min,
        args=[config, db],
        id="alert_summary",
        max_instances=1,
        misfire_grace_time=sched.misfire_grace_time,
    )
    return scheduler


def start_scheduler(config: ProvisioningConfig, db: Database) -> None:
    """Start the blocking scheduler."""
    scheduler = build_scheduler(config, db)
    logger.info("Starting scheduler with jobs: %s", [j.id for j in scheduler.get_jobs()])
    scheduler.start()
