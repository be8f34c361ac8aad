"""Read-only correlation and anomaly analysis.

Joins identities, profiles and lifecycle events to report provisioning
health, and reads the identity provider's audit trail to spot blocked
signups. The provider tags a blocked attempt by appending a marker to the
actor string (``"jane@example.com [blocked]"``); the email is recovered by
stripping it.

The classifiers are plain functions over already-loaded rows so they can be
reused by the CLI, the scheduler and tests; ``CorrelationAnalyzer`` only
fetches rows and applies them.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from scripts.provisioning.config import AlertConfig, AnomalyThresholds, ProvisioningConfig
from scripts.provisioning.db import Database
from scripts.provisioning.models import (
    Anomaly,
    AuditCorrelation,
    AuditEntry,
    BlockedEmailSummary,
    CorrelationRow,
    CorrelationStatus,
    Severity,
    SignupHealthMetrics,
)

logger = logging.getLogger("provisioning.analyzer")

BLOCKED_MARKER = re.compile(r"\s*\[blocked\]\s*$", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")

SIGNUP_ACTIONS = frozenset({
    "user_signedup",
    "user_signup",
    "user_repeated_signup",
    "user_confirmation_requested",
})
SUCCESSFUL_SIGNUP_ACTIONS = frozenset({"user_signedup", "user_signup"})


# ----------------------------------------------------------------------
# Identity / profile / event correlation
# ----------------------------------------------------------------------

def classify(has_identity: bool, has_profile: bool, has_event: bool) -> CorrelationStatus:
    if not has_identity:
        return CorrelationStatus.ORPHAN_PROFILE
    if not has_profile:
        return CorrelationStatus.MISSING_PROFILE
    if not has_event:
        return CorrelationStatus.MISSING_LIFECYCLE_EVENT
    return CorrelationStatus.HEALTHY


def classify_links(links: Iterable[Mapping[str, Any]]) -> list[CorrelationRow]:
    return [
        CorrelationRow(
            subject_id=str(link["subject_id"]),
            email=link.get("email"),
            status=classify(
                bool(link["has_identity"]),
                bool(link["has_profile"]),
                bool(link["has_event"]),
            ),
            identity_created_at=link.get("identity_created_at"),
        )
        for link in links
    ]


def count_by_status(rows: Iterable[CorrelationRow]) -> dict[str, int]:
    counts = {status.value: 0 for status in CorrelationStatus}
    for row in rows:
        counts[row.status.value] += 1
    return counts


# ----------------------------------------------------------------------
# Blocked signups
# ----------------------------------------------------------------------

def extract_blocked_email(actor: Optional[str]) -> Optional[str]:
    """Recover the email from a blocked actor string, or None if not blocked."""
    if not actor or not BLOCKED_MARKER.search(actor):
        return None
    email = BLOCKED_MARKER.sub("", actor).strip()
    return email or None


def is_blocked(entry: AuditEntry) -> bool:
    return extract_blocked_email(entry.actor_username) is not None


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def aggregate_blocked(entries: Iterable[AuditEntry]) -> list[BlockedEmailSummary]:
    """Group blocked attempts by recovered email, most attempts first."""
    grouped: dict[str, list[AuditEntry]] = defaultdict(list)
    for entry in entries:
        email = extract_blocked_email(entry.actor_username)
        if email:
            grouped[email.lower()].append(entry)

    summaries = []
    for email, attempts in grouped.items():
        times = [a.created_at for a in attempts]
        summaries.append(BlockedEmailSummary(
            email=email,
            attempts=len(attempts),
            distinct_sources=len({a.ip_address for a in attempts if a.ip_address}),
            first_attempt_at=min(times),
            last_attempt_at=max(times),
            actions=tuple(sorted({a.action for a in attempts if a.action})),
        ))
    summaries.sort(key=lambda s: (s.attempts, s.last_attempt_at), reverse=True)
    return summaries


def is_potentially_legitimate(
    summary: BlockedEmailSummary,
    thresholds: AnomalyThresholds,
    now: datetime,
) -> bool:
    """A blocked email that looks like a real person retrying, not a bot."""
    if not thresholds.legit_min_attempts <= summary.attempts <= thresholds.legit_max_attempts:
        return False
    if not is_valid_email(summary.email):
        return False
    lowered = summary.email.lower()
    if any(marker in lowered for marker in thresholds.disposable_domain_markers):
        return False
    if summary.distinct_sources > thresholds.legit_max_sources:
        return False
    return summary.last_attempt_at > now - timedelta(days=thresholds.legit_recent_days)


def signup_health_metrics(entries: Iterable[AuditEntry], period_hours: int) -> SignupHealthMetrics:
    total = successful = blocked = 0
    for entry in entries:
        if entry.action not in SIGNUP_ACTIONS:
            continue
        total += 1
        if is_blocked(entry):
            blocked += 1
        elif entry.action in SUCCESSFUL_SIGNUP_ACTIONS:
            successful += 1
    return SignupHealthMetrics(
        period_hours=period_hours,
        total_attempts=total,
        successful=successful,
        blocked=blocked,
    )


def detect_anomalies(
    metrics: SignupHealthMetrics,
    distinct_sources: int,
    thresholds: AnomalyThresholds,
    legitimate_blocked: Sequence[BlockedEmailSummary] = (),
) -> list[Anomaly]:
    """Apply the block-rate, distributed-abuse and legitimate-user rules.

    An empty list means nothing needs attention.
    """
    anomalies: list[Anomaly] = []
    rate = metrics.block_rate_pct or 0.0

    if rate > thresholds.critical_block_rate_pct:
        anomalies.append(Anomaly(
            anomaly_type="high_block_rate",
            severity=Severity.CRITICAL,
            details={
                "block_rate_percent": rate,
                "total_blocks": metrics.blocked,
                "period_hours": metrics.period_hours,
            },
            recommendation=(
                "Most signups are being blocked. Check for UX issues causing "
                "retries or a flood of automated signups."
            ),
        ))
    elif rate > thresholds.warning_block_rate_pct:
        anomalies.append(Anomaly(
            anomaly_type="elevated_block_rate",
            severity=Severity.WARNING,
            details={
                "block_rate_percent": rate,
                "total_blocks": metrics.blocked,
                "period_hours": metrics.period_hours,
            },
            recommendation="Block rate is elevated. Review recent blocked signups for patterns.",
        ))

    if (
        metrics.blocked > thresholds.distributed_min_blocked
        and distinct_sources > thresholds.distributed_min_sources
    ):
        anomalies.append(Anomaly(
            anomaly_type="distributed-abuse",
            severity=Severity.CRITICAL,
            details={
                "total_blocks": metrics.blocked,
                "distinct_sources": distinct_sources,
                "period_hours": metrics.period_hours,
            },
            recommendation="Many blocks from many sources. Consider enabling CAPTCHA.",
        ))

    if legitimate_blocked:
        anomalies.append(Anomaly(
            anomaly_type="legitimate_users_blocked",
            severity=Severity.WARNING,
            details={
                "count": len(legitimate_blocked),
                "emails": [s.email for s in legitimate_blocked],
                "period_hours": metrics.period_hours,
            },
            recommendation="Some blocked signups look legitimate. Review them and consider reaching out.",
        ))

    return anomalies


# ----------------------------------------------------------------------
# Audit trail correlation
# ----------------------------------------------------------------------

def _as_identity_id(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    try:
        return str(uuid.UUID(value))
    except ValueError:
        return None


def _candidate_email(entry: AuditEntry) -> Optional[str]:
    if entry.traits_user_email:
        return entry.traits_user_email
    blocked = extract_blocked_email(entry.actor_username)
    if blocked:
        return blocked
    if is_valid_email(entry.actor_username):
        return entry.actor_username
    return None


def correlate_audit(
    entries: Iterable[AuditEntry],
    links: Iterable[Mapping[str, Any]],
) -> list[AuditCorrelation]:
    """Match signup audit entries to identities.

    Prefers the stable identity id in the payload; when it is missing or
    malformed, falls back to matching on email.
    """
    by_id: dict[str, Mapping[str, Any]] = {}
    by_email: dict[str, Mapping[str, Any]] = {}
    for link in links:
        if not link["has_identity"]:
            continue
        by_id[str(link["subject_id"])] = link
        if link.get("email"):
            by_email.setdefault(str(link["email"]).lower(), link)

    results = []
    for entry in entries:
        if entry.action not in SIGNUP_ACTIONS:
            continue
        identity_id = _as_identity_id(entry.traits_user_id)
        email = _candidate_email(entry)

        match: Optional[Mapping[str, Any]] = None
        method = "none"
        if identity_id and identity_id in by_id:
            match, method = by_id[identity_id], "identity_id"
        elif email and email.lower() in by_email:
            match, method = by_email[email.lower()], "email"

        if match is not None:
            status = "correlated" if match["has_profile"] else "auth_only"
        elif identity_id is None and email is None:
            status = "no_traits"
        else:
            status = "audit_only"

        results.append(AuditCorrelation(
            audit_id=entry.id,
            action=entry.action,
            subject_id=str(match["subject_id"]) if match is not None else identity_id,
            email=email,
            match_method=method,
            status=status,
        ))
    return results


# ----------------------------------------------------------------------
# Alert summary
# ----------------------------------------------------------------------

def summarize_alerts(
    links: Iterable[Mapping[str, Any]],
    recent_error_count: int,
    blocked_last_hour: Iterable[AuditEntry],
    alerts: AlertConfig,
    now: datetime,
) -> dict[str, Any]:
    """Traffic-light summary of provisioning health."""
    grace_end = now - timedelta(minutes=alerts.profile_grace_minutes)
    profile_window = now - timedelta(minutes=alerts.profile_lookback_minutes)
    event_window = now - timedelta(minutes=alerts.missing_event_lookback_minutes)

    without_profile = missing_events = 0
    for link in links:
        created = link.get("identity_created_at")
        if not link["has_identity"] or created is None or created >= grace_end:
            continue
        if not link["has_profile"] and created > profile_window:
            without_profile += 1
        elif link["has_profile"] and not link["has_event"] and created > event_window:
            missing_events += 1

    abusive = sum(
        1 for s in aggregate_blocked(blocked_last_hour)
        if s.attempts > alerts.abusive_attempts_per_email
    )

    def _severity(triggered: bool, level: Severity) -> str:
        return level.value if triggered else Severity.OK.value

    summary = {
        "users_without_profiles": {
            "count": without_profile,
            "severity": _severity(without_profile > 0, Severity.CRITICAL),
        },
        "profile_creation_errors": {
            "count": recent_error_count,
            "severity": _severity(recent_error_count > 0, Severity.CRITICAL),
        },
        "missing_lifecycle_events": {
            "count": missing_events,
            "severity": _severity(
                missing_events > alerts.missing_event_tolerance, Severity.WARNING
            ),
        },
        "blocked_abuse_patterns": {
            "count": abusive,
            "severity": _severity(abusive > 0, Severity.WARNING),
        },
    }

    if without_profile > 0 or recent_error_count > 0:
        overall = "critical"
    elif missing_events > alerts.missing_event_tolerance or abusive > 0:
        overall = "warning"
    else:
        overall = "healthy"

    return {"timestamp": now.isoformat(), "alerts": summary, "overall_status": overall}


class CorrelationAnalyzer:
    """Fetches rows from the database and applies the classifiers above."""

    def __init__(
        self,
        config: ProvisioningConfig,
        db: Database,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config
        self.db = db
        self.thresholds = config.thresholds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _audit_entries(self, hours: float, blocked_only: bool = False) -> list[AuditEntry]:
        since = self._clock() - timedelta(hours=hours)
        rows = self.db.fetch_audit_entries(since, blocked_only=blocked_only)
        return [AuditEntry.from_row(r) for r in rows]

    def correlation_report(self) -> list[CorrelationRow]:
        return classify_links(self.db.fetch_identity_profile_links())

    def correlation_counts(self) -> dict[str, int]:
        return count_by_status(self.correlation_report())

    def signup_health(self, hours: Optional[int] = None) -> SignupHealthMetrics:
        hours = hours or self.thresholds.window_hours
        return signup_health_metrics(self._audit_entries(hours), hours)

    def blocked_signups(self, hours: Optional[float] = None) -> list[BlockedEmailSummary]:
        hours = hours or self.thresholds.legit_recent_days * 24
        return aggregate_blocked(self._audit_entries(hours, blocked_only=True))

    def potentially_legitimate(self, hours: Optional[float] = None) -> list[BlockedEmailSummary]:
        now = self._clock()
        return [
            s for s in self.blocked_signups(hours)
            if is_potentially_legitimate(s, self.thresholds, now)
        ]

    def anomalies(self, hours: Optional[int] = None) -> list[Anomaly]:
        hours = hours or self.thresholds.window_hours
        now = self._clock()
        window_entries = self._audit_entries(hours)
        metrics = signup_health_metrics(window_entries, hours)
        distinct_sources = len({
            e.ip_address for e in window_entries if e.ip_address and is_blocked(e)
        })
        window_start = now - timedelta(hours=hours)
        legitimate = [
            s for s in self.potentially_legitimate()
            if s.last_attempt_at > window_start
        ]
        found = detect_anomalies(metrics, distinct_sources, self.thresholds, legitimate)
        for anomaly in found:
            logger.warning(
                "Anomaly %s (%s): %s",
                anomaly.anomaly_type,
                anomaly.severity.value,
                anomaly.details,
            )
        return found

    def audit_correlation(self, hours: float = 24) -> list[AuditCorrelation]:
        return correlate_audit(
            self._audit_entries(hours), self.db.fetch_identity_profile_links()
        )

    def blocked_attempts_for(self, email: str, hours: Optional[float] = None) -> list[AuditEntry]:
        hours = hours or self.thresholds.legit_recent_days * 24
        wanted = email.strip().lower()
        return [
            e for e in self._audit_entries(hours, blocked_only=True)
            if (extract_blocked_email(e.actor_username) or "").lower() == wanted
        ]

    def is_email_rate_limited(self, email: str, lookback_hours: Optional[int] = None) -> bool:
        hours = lookback_hours or self.thresholds.rate_limit_lookback_hours
        return bool(self.blocked_attempts_for(email, hours))

    def alert_summary(self) -> dict[str, Any]:
        now = self._clock()
        alerts = self.config.alerts
        since_errors = now - timedelta(minutes=alerts.error_lookback_minutes)
        recent_errors = self.db.fetch_error_records(
            unresolved_only=False, since=since_errors, limit=10_000
        )
        summary = summarize_alerts(
            self.db.fetch_identity_profile_links(),
            len(recent_errors),
            self._audit_entries(1, blocked_only=True),
            alerts,
            now,
        )
        if summary["overall_status"] != "healthy":
            logger.warning("Provisioning health is %s", summary["overall_status"])
        return summary
