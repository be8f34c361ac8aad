"""Configuration via environment variables with cloud-native secret support.

Supports:
  - Environment variables (local dev, .env files)
  - AWS Secrets Manager (aws-secret://name#key)
  - GCP Secret Manager (gcp-secret://name)

Every tunable the provisioning pipeline uses (fallback account type, the
unknown-value policy, anomaly thresholds, alert windows, sweep sizes) lives
here so operators can change behaviour without a deploy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from scripts.provisioning.account_types import CANONICAL_ACCOUNT_TYPES
from scripts.provisioning.secrets import resolve_database_url

ACCOUNT_TYPE_POLICIES = ("coerce", "reject")

DEFAULT_DISPOSABLE_MARKERS = (
    "tempmail",
    "throwaway",
    "disposable",
    "guerrillamail",
    "mailinator",
)


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 1
    max_connections: int = 5
    # Tables owned by the identity provider; read-only to this service
    identity_table: str = "auth.users"
    audit_table: str = "auth.audit_log_entries"


@dataclass(frozen=True)
class AccountTypeConfig:
    default: str = "sme"
    unknown_policy: str = "coerce"  # "coerce" | "reject"


@dataclass(frozen=True)
class AnomalyThresholds:
    critical_block_rate_pct: float = 50.0
    warning_block_rate_pct: float = 25.0
    distributed_min_blocked: int = 100
    distributed_min_sources: int = 50
    legit_min_attempts: int = 2
    legit_max_attempts: int = 20
    legit_max_sources: int = 3
    legit_recent_days: int = 7
    window_hours: int = 1
    rate_limit_lookback_hours: int = 2
    disposable_domain_markers: tuple[str, ...] = DEFAULT_DISPOSABLE_MARKERS


@dataclass(frozen=True)
class AlertConfig:
    profile_grace_minutes: int = 2
    profile_lookback_minutes: int = 10
    error_lookback_minutes: int = 5
    missing_event_lookback_minutes: int = 15
    missing_event_tolerance: int = 5
    abusive_attempts_per_email: int = 10


@dataclass(frozen=True)
class SchedulerConfig:
    sweep_interval_min: int = 15
    alert_interval_min: int = 5
    misfire_grace_time: int = 300
    max_retries: int = 3


@dataclass(frozen=True)
class ProvisioningConfig:
    database: DatabaseConfig
    account_types: AccountTypeConfig = field(default_factory=AccountTypeConfig)
    thresholds: AnomalyThresholds = field(default_factory=AnomalyThresholds)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    placeholder_email_domain: str = "example.invalid"
    sweep_batch_size: int = 100


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return tuple(s.strip().lower() for s in raw.split(",") if s.strip())


def load_account_type_config() -> AccountTypeConfig:
    default = os.environ.get("ACCOUNT_TYPE_DEFAULT", "sme").strip().lower()
    if default not in CANONICAL_ACCOUNT_TYPES:
        raise ValueError(
            f"ACCOUNT_TYPE_DEFAULT must be one of {sorted(CANONICAL_ACCOUNT_TYPES)}, got {default!r}"
        )
    policy = os.environ.get("ACCOUNT_TYPE_UNKNOWN_POLICY", "coerce").strip().lower()
    if policy not in ACCOUNT_TYPE_POLICIES:
        raise ValueError(
            f"ACCOUNT_TYPE_UNKNOWN_POLICY must be one of {ACCOUNT_TYPE_POLICIES}, got {policy!r}"
        )
    return AccountTypeConfig(default=default, unknown_policy=policy)


def load_thresholds() -> AnomalyThresholds:
    return AnomalyThresholds(
        critical_block_rate_pct=_env_float("ANOMALY_CRITICAL_BLOCK_RATE_PCT", 50.0),
        warning_block_rate_pct=_env_float("ANOMALY_WARNING_BLOCK_RATE_PCT", 25.0),
        distributed_min_blocked=_env_int("ANOMALY_DISTRIBUTED_MIN_BLOCKED", 100),
        distributed_min_sources=_env_int("ANOMALY_DISTRIBUTED_MIN_SOURCES", 50),
        legit_min_attempts=_env_int("ANOMALY_LEGIT_MIN_ATTEMPTS", 2),
        legit_max_attempts=_env_int("ANOMALY_LEGIT_MAX_ATTEMPTS", 20),
        legit_max_sources=_env_int("ANOMALY_LEGIT_MAX_SOURCES", 3),
        legit_recent_days=_env_int("ANOMALY_LEGIT_RECENT_DAYS", 7),
        window_hours=_env_int("ANOMALY_WINDOW_HOURS", 1),
        rate_limit_lookback_hours=_env_int("RATE_LIMIT_LOOKBACK_HOURS", 2),
        disposable_domain_markers=_env_list(
            "DISPOSABLE_DOMAIN_MARKERS", DEFAULT_DISPOSABLE_MARKERS
        ),
    )


def load_config(database_url: Optional[str] = None) -> ProvisioningConfig:
    """Load configuration from environment variables.

    In cloud environments the database credentials are resolved via AWS
    Secrets Manager or GCP Secret Manager. Locally, plain env vars or .env
    files are used.
    """
    load_dotenv()

    database = DatabaseConfig(
        url=database_url or resolve_database_url(),
        min_connections=_env_int("DB_MIN_CONNECTIONS", 1),
        max_connections=_env_int("DB_MAX_CONNECTIONS", 5),
        identity_table=os.environ.get("IDENTITY_TABLE", "auth.users"),
        audit_table=os.environ.get("AUDIT_TABLE", "auth.audit_log_entries"),
    )

    alerts = AlertConfig(
        profile_grace_minutes=_env_int("ALERT_PROFILE_GRACE_MINUTES", 2),
        profile_lookback_minutes=_env_int("ALERT_PROFILE_LOOKBACK_MINUTES", 10),
        error_lookback_minutes=_env_int("ALERT_ERROR_LOOKBACK_MINUTES", 5),
        missing_event_lookback_minutes=_env_int("ALERT_MISSING_EVENT_LOOKBACK_MINUTES", 15),
        missing_event_tolerance=_env_int("ALERT_MISSING_EVENT_TOLERANCE", 5),
        abusive_attempts_per_email=_env_int("ALERT_ABUSIVE_ATTEMPTS_PER_EMAIL", 10),
    )

    scheduler = SchedulerConfig(
        sweep_interval_min=_env_int("SWEEP_INTERVAL_MIN", 15),
        alert_interval_min=_env_int("ALERT_INTERVAL_MIN", 5),
        misfire_grace_time=_env_int("SCHEDULER_MISFIRE_GRACE_TIME", 300),
        max_retries=_env_int("SCHEDULER_MAX_RETRIES", 3),
    )

    return ProvisioningConfig(
        database=database,
        account_types=load_account_type_config(),
        thresholds=load_thresholds(),
        alerts=alerts,
        scheduler=scheduler,
        placeholder_email_domain=os.environ.get(
            "PLACEHOLDER_EMAIL_DOMAIN", "example.invalid"
        ),
        sweep_batch_size=_env_int("SWEEP_BATCH_SIZE", 100, minimum=1),
    )
