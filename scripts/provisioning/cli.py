"""CLI entry point: sweep, scheduler, status, health, blocked, anomalies, errors."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Optional

from scripts.provisioning.config import ProvisioningConfig, load_config
from scripts.provisioning.db import Database
from scripts.provisioning.logging_config import configure_logging

logger = logging.getLogger("provisioning.cli")


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


# ----------------------------------------------------------------------
# Wiring shared with the scheduler and cloud entry points
# ----------------------------------------------------------------------

def build_merge_engine(config: ProvisioningConfig, db: Database):
    from scripts.provisioning.ledger import EventLedger
    from scripts.provisioning.merge import ProfileMergeEngine

    return ProfileMergeEngine(db, config.account_types, EventLedger(db))


def build_hook(config: ProvisioningConfig, db: Database):
    from scripts.provisioning.error_store import ErrorCaptureStore
    from scripts.provisioning.hook import ReactiveHook
    from scripts.provisioning.ledger import EventLedger

    return ReactiveHook(
        config, EventLedger(db), build_merge_engine(config, db), ErrorCaptureStore(db)
    )


def build_sweeper(config: ProvisioningConfig, db: Database):
    from scripts.provisioning.error_store import ErrorCaptureStore
    from scripts.provisioning.ledger import EventLedger
    from scripts.provisioning.sweeper import ReconciliationSweeper

    return ReconciliationSweeper(
        config, db, build_merge_engine(config, db), EventLedger(db), ErrorCaptureStore(db)
    )


def run_sweep(
    config: ProvisioningConfig,
    db: Database,
    dry_run: bool = False,
    limit: Optional[int] = None,
) -> list:
    return build_sweeper(config, db).run(dry_run=dry_run, limit=limit)


def run_alert_summary(config: ProvisioningConfig, db: Database) -> dict[str, Any]:
    from scripts.provisioning.analyzer import CorrelationAnalyzer

    return CorrelationAnalyzer(config, db).alert_summary()


def _print_table(fmt: str, header: tuple, rows: list[tuple]) -> None:
    print(fmt.format(*header))
    print("-" * 120)
    for row in rows:
        print(fmt.format(*row))


def _ts(value) -> str:
    return str(value)[:19] if value else ""


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

def cmd_sweep(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Run one reconciliation sweep."""
    reports = run_sweep(config, db, dry_run=args.dry_run, limit=args.limit)
    if not reports:
        print("No identities without a profile.")
        return 0
    _print_table(
        "{:<36}  {:<14}  {:<16}  {:<40}  {}",
        ("SUBJECT", "STATUS", "ACCOUNT TYPE", "EMAIL", "ERROR"),
        [
            (r.subject_id, r.status, r.account_type or "", r.email or "", (r.error or "")[:40])
            for r in reports
        ],
    )
    return 1 if any(r.status == "failed" for r in reports) else 0


def cmd_repair(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Manually ensure one profile exists (same merge rules as hook and sweep)."""
    draft = build_merge_engine(config, db).ensure_profile(
        args.subject_id,
        email=args.email,
        full_name=args.full_name,
        phone=args.phone,
        account_type=args.account_type,
        company_name=args.company_name,
    )
    print(f"Profile ensured for {draft.id} (account_type={draft.account_type})")
    return 0


def cmd_scheduler(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Start the APScheduler-based loop."""
    from scripts.provisioning.scheduler import start_scheduler

    start_scheduler(config, db)
    return 0


def cmd_status(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Show recent sweep runs."""
    runs = db.get_recent_runs(limit=args.limit)
    if not runs:
        print("No sweep runs found.")
        return 0
    _print_table(
        "{:<36}  {:<8}  {:<5}  {:<19}  {:<19}  {:>7}  {:>8}  {:>6}  {}",
        ("RUN ID", "STATUS", "DRY", "STARTED", "FINISHED", "SCANNED", "REPAIRED", "FAILED", "ERROR"),
        [
            (
                r["id"], r["status"], "yes" if r.get("dry_run") else "no",
                _ts(r["started_at"]), _ts(r["finished_at"]),
                r.get("identities_scanned") or 0, r.get("profiles_repaired") or 0,
                r.get("failures") or 0, (r.get("error_message") or "")[:40],
            )
            for r in runs
        ],
    )
    return 0


def cmd_health(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Correlation counts plus the alert summary."""
    from scripts.provisioning.analyzer import CorrelationAnalyzer

    analyzer = CorrelationAnalyzer(config, db)
    rows = analyzer.correlation_report()
    counts: dict[str, int] = {}
    for row in rows:
        counts[row.status.value] = counts.get(row.status.value, 0) + 1
    print(json.dumps({"correlation": counts, **analyzer.alert_summary()}, indent=2, default=str))

    if args.details:
        problems = [r for r in rows if r.status.value != "healthy"]
        _print_table(
            "{:<36}  {:<24}  {:<40}  {}",
            ("SUBJECT", "STATUS", "EMAIL", "IDENTITY CREATED"),
            [(r.subject_id, r.status.value, r.email or "", _ts(r.identity_created_at)) for r in problems],
        )
    return 0


def cmd_blocked(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    """Blocked signup attempts aggregated by email."""
    from scripts.provisioning.analyzer import CorrelationAnalyzer

    analyzer = CorrelationAnalyzer(config, db)
    summaries = (
        analyzer.potentially_legitimate(args.hours)
        if args.legit_only
        else analyzer.blocked_signups(args.hours)
    )
    if not summaries:
        print("No blocked signups found.")
        return 0
    _print_table(
        "{:<40}  {:>8}  {:>7}  {:<19}  {:<19}  {:>10}",
        ("EMAIL", "ATTEMPTS", "SOURCES", "FIRST", "LAST", "SPAN (s)"),
        [
            (
                s.email, s.attempts, s.distinct_sources,
                _ts(s.first_attempt_at), _ts(s.last_attempt_at), int(s.span_seconds),
            )
            for s in summaries
        ],
    )
    return 0


def cmd_anomalies(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    from scripts.provisioning.analyzer import CorrelationAnalyzer

    found = CorrelationAnalyzer(config, db).anomalies(args.hours)
    if not found:
        print("No anomalies detected.")
        return 0
    for a in found:
        print(f"[{a.severity.value.upper()}] {a.anomaly_type}: {json.dumps(a.details, default=str)}")
        print(f"    {a.recommendation}")
    return 2 if any(a.severity.value == "critical" for a in found) else 1


def cmd_errors(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    from scripts.provisioning.error_store import ErrorCaptureStore

    records = ErrorCaptureStore(db).list(unresolved_only=not args.all, limit=args.limit)
    if not records:
        print("No provisioning errors.")
        return 0
    _print_table(
        "{:>6}  {:<36}  {:<19}  {:<8}  {:<16}  {}",
        ("ID", "SUBJECT", "CREATED", "RESOLVED", "SOURCE", "MESSAGE"),
        [
            (
                r.id, r.subject_id or "", _ts(r.created_at),
                "yes" if r.resolved else "no", r.context.get("source", ""), r.message[:50],
            )
            for r in records
        ],
    )
    return 0


def cmd_resolve_error(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    from scripts.provisioning.error_store import ErrorCaptureStore

    if ErrorCaptureStore(db).resolve(args.error_id, args.by, args.notes):
        print(f"Error {args.error_id} resolved.")
        return 0
    print(f"Error {args.error_id} not found or already resolved.")
    return 1


def cmd_events(args: argparse.Namespace, config: ProvisioningConfig, db: Database) -> int:
    from scripts.provisioning.ledger import EventLedger

    events = EventLedger(db).events_for(args.subject_id)
    if not events:
        print("No lifecycle events for this subject.")
        return 0
    _print_table(
        "{:>8}  {:<19}  {:<24}  {:<40}  {}",
        ("ID", "CREATED", "EVENT", "EMAIL", "METADATA"),
        [
            (e.id, _ts(e.created_at), e.event_type, e.email_snapshot or "", json.dumps(e.metadata, default=str))
            for e in events
        ],
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="provisioning",
        description="Profile provisioning: reconciliation, health and anomaly reports",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sweep = subparsers.add_parser("sweep", help="Create missing profiles")
    sweep.add_argument("--dry-run", action="store_true", help="Report without writing")
    sweep.add_argument("--limit", "-l", type=positive_int, default=None, help="Max identities to repair")
    sweep.set_defaults(func=cmd_sweep)

    repair = subparsers.add_parser("repair", help="Ensure a single profile exists")
    repair.add_argument("subject_id")
    repair.add_argument("--email")
    repair.add_argument("--full-name")
    repair.add_argument("--phone")
    repair.add_argument("--account-type")
    repair.add_argument("--company-name")
    repair.set_defaults(func=cmd_repair)

    sched = subparsers.add_parser("scheduler", help="Start the scheduled sweep loop")
    sched.set_defaults(func=cmd_scheduler)

    status = subparsers.add_parser("status", help="Show recent sweep runs")
    status.add_argument("--limit", "-l", type=int, default=10)
    status.set_defaults(func=cmd_status)

    health = subparsers.add_parser("health", help="Correlation counts and alert summary")
    health.add_argument("--details", action="store_true", help="List unhealthy subjects")
    health.set_defaults(func=cmd_health)

    blocked = subparsers.add_parser("blocked", help="Blocked signups by email")
    blocked.add_argument("--hours", type=float, default=None)
    blocked.add_argument("--legit-only", action="store_true")
    blocked.set_defaults(func=cmd_blocked)

    anomalies = subparsers.add_parser("anomalies", help="Detect blocking anomalies")
    anomalies.add_argument("--hours", type=int, default=None)
    anomalies.set_defaults(func=cmd_anomalies)

    errors = subparsers.add_parser("errors", help="List provisioning errors")
    errors.add_argument("--all", action="store_true", help="Include resolved errors")
    errors.add_argument("--limit", "-l", type=int, default=50)
    errors.set_defaults(func=cmd_errors)

    resolve = subparsers.add_parser("resolve-error", help="Mark an error as triaged")
    resolve.add_argument("error_id", type=int)
    resolve.add_argument("--by", required=True)
    resolve.add_argument("--notes")
    resolve.set_defaults(func=cmd_resolve_error)

    events = subparsers.add_parser("events", help="Lifecycle events for one subject")
    events.add_argument("subject_id")
    events.set_defaults(func=cmd_events)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main CLI entry point."""
    configure_logging()
    args = build_parser().parse_args(argv)

    config = load_config()
    db = Database(config.database)
    try:
        code = args.func(args, config, db)
    except Exception as exc:
        logger.error("Command %s failed: %s", args.command, exc, exc_info=True)
        code = 1
    finally:
        db.close()
    sys.exit(code)
