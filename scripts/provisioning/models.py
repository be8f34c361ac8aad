"""Typed records shared across the provisioning pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

# Keys a provider may use for the free-form signup metadata blob
_METADATA_KEYS = ("metadata", "raw_user_meta_data", "user_metadata")


class EventType(str, Enum):
    IDENTITY_CREATED = "identity_created"
    PROFILE_BOOTSTRAP_OK = "profile_bootstrap_ok"
    PROFILE_BOOTSTRAP_ERROR = "profile_bootstrap_error"
    PROFILE_BACKFILLED = "profile_backfilled"
    PROFILE_BACKFILL_ERROR = "profile_backfill_error"
    ACCOUNT_TYPE_COERCED = "account_type_coerced"


class CorrelationStatus(str, Enum):
    HEALTHY = "healthy"
    MISSING_PROFILE = "missing_profile"
    MISSING_LIFECYCLE_EVENT = "missing_lifecycle_event"
    ORPHAN_PROFILE = "orphan_profile"


class Severity(str, Enum):
    OK = "ok"
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def _clean(value: Any) -> Optional[str]:
    """Stringify and trim a loosely-typed value; blanks become None."""
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    text = text.strip()
    return text or None


@dataclass(frozen=True)
class SignupMetadata:
    """Typed view over the provider's free-form signup metadata."""

    email: Optional[str] = None
    user_email: Optional[str] = None
    full_name: Optional[str] = None
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    msisdn: Optional[str] = None
    account_type: Optional[str] = None
    company_name: Optional[str] = None
    business_name: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, raw: Optional[Mapping[str, Any]]) -> "SignupMetadata":
        if not raw or not isinstance(raw, Mapping):
            return cls()
        known = {
            name: _clean(raw.get(name))
            for name in cls.__dataclass_fields__
            if name != "extra"
        }
        extra = {
            str(k): str(v)
            for k, v in raw.items()
            if k not in known and v is not None
        }
        return cls(**known, extra=extra)


@dataclass(frozen=True)
class IdentityRecord:
    """An identity as delivered by the authentication provider.

    Only ``id`` is trusted; everything else is best-effort input.
    """

    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    metadata: SignupMetadata = field(default_factory=SignupMetadata)
    created_at: Optional[datetime] = None

    @classmethod
    def from_signal(cls, payload: Mapping[str, Any]) -> "IdentityRecord":
        """Parse an inbound signal or a Supabase database-webhook envelope."""
        if isinstance(payload.get("record"), Mapping):
            payload = payload["record"]

        subject_id = _clean(payload.get("id"))
        if not subject_id:
            raise ValueError("identity signal is missing 'id'")

        raw_meta: Optional[Mapping[str, Any]] = None
        for key in _METADATA_KEYS:
            if isinstance(payload.get(key), Mapping):
                raw_meta = payload[key]
                break

        created_at = payload.get("created_at")
        if isinstance(created_at, str):
            try:
                created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
            except ValueError:
                created_at = None
        elif not isinstance(created_at, datetime):
            created_at = None

        return cls(
            id=subject_id,
            email=_clean(payload.get("email")),
            phone=_clean(payload.get("phone")),
            metadata=SignupMetadata.from_mapping(raw_meta),
            created_at=created_at,
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "IdentityRecord":
        """Build from a row of the identity table."""
        return cls(
            id=str(row["id"]),
            email=_clean(row.get("email")),
            phone=_clean(row.get("phone")),
            metadata=SignupMetadata.from_mapping(row.get("raw_user_meta_data")),
            created_at=row.get("created_at"),
        )


@dataclass(frozen=True)
class SignupFields:
    """Best-effort profile fields extracted from an identity."""

    email: str
    full_name: Optional[str]
    phone: Optional[str]
    account_type: Optional[str]
    company_name: Optional[str]
    email_is_placeholder: bool = False


@dataclass(frozen=True)
class ProfileDraft:
    """Normalized values handed to the atomic upsert."""

    id: str
    email: Optional[str]
    full_name: Optional[str]
    phone: Optional[str]
    account_type: str
    business_name: Optional[str]
    account_type_coerced: bool = False


@dataclass(frozen=True)
class Profile:
    id: str
    email: Optional[str]
    full_name: Optional[str]
    phone: Optional[str]
    account_type: str
    business_name: Optional[str]
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        return cls(
            id=str(row["id"]),
            email=row.get("email"),
            full_name=row.get("full_name"),
            phone=row.get("phone"),
            account_type=row["account_type"],
            business_name=row.get("business_name"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass(frozen=True)
class LifecycleEvent:
    id: int
    subject_id: str
    event_type: str
    email_snapshot: Optional[str]
    metadata: dict[str, Any]
    created_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LifecycleEvent":
        return cls(
            id=row["id"],
            subject_id=str(row["subject_id"]),
            event_type=row["event_type"],
            email_snapshot=row.get("email_snapshot"),
            metadata=dict(row.get("metadata") or {}),
            created_at=row["created_at"],
        )


@dataclass(frozen=True)
class ErrorRecord:
    id: int
    subject_id: Optional[str]
    message: str
    detail: Optional[str]
    context: dict[str, Any]
    created_at: datetime
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    notes: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "ErrorRecord":
        subject_id = row.get("subject_id")
        return cls(
            id=row["id"],
            subject_id=str(subject_id) if subject_id is not None else None,
            message=row["message"],
            detail=row.get("detail"),
            context=dict(row.get("context") or {}),
            created_at=row["created_at"],
            resolved=bool(row.get("resolved")),
            resolved_by=row.get("resolved_by"),
            resolved_at=row.get("resolved_at"),
            notes=row.get("notes"),
        )


@dataclass(frozen=True)
class HookOutcome:
    subject_id: str
    profile_ok: bool
    error_id: Optional[int] = None


@dataclass(frozen=True)
class SweepReport:
    subject_id: str
    email: Optional[str]
    account_type: Optional[str]
    status: str  # "repaired" | "failed" | "would_repair"
    error: Optional[str] = None
    error_id: Optional[int] = None


@dataclass(frozen=True)
class CorrelationRow:
    subject_id: str
    email: Optional[str]
    status: CorrelationStatus
    identity_created_at: Optional[datetime] = None


@dataclass(frozen=True)
class AuditEntry:
    """One row of the provider audit trail, with the payload flattened."""

    id: str
    created_at: datetime
    action: Optional[str]
    actor_username: Optional[str]
    actor_id: Optional[str]
    ip_address: Optional[str]
    traits_user_id: Optional[str]
    traits_user_email: Optional[str]

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "AuditEntry":
        payload = row.get("payload") or {}
        traits = payload.get("traits") or {}
        actor = payload.get("actor") or {}
        return cls(
            id=str(row["id"]),
            created_at=row["created_at"],
            action=_clean(payload.get("action")),
            actor_username=_clean(payload.get("actor_username")),
            actor_id=_clean(payload.get("actor_id") or actor.get("id")),
            ip_address=_clean(payload.get("ip_address") or row.get("ip_address")),
            traits_user_id=_clean(traits.get("user_id")),
            traits_user_email=_clean(traits.get("user_email")),
        )


@dataclass(frozen=True)
class BlockedEmailSummary:
    email: str
    attempts: int
    distinct_sources: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    actions: tuple[str, ...] = ()

    @property
    def span_seconds(self) -> float:
        return (self.last_attempt_at - self.first_attempt_at).total_seconds()


@dataclass(frozen=True)
class SignupHealthMetrics:
    period_hours: int
    total_attempts: int
    successful: int
    blocked: int

    @property
    def success_rate_pct(self) -> Optional[float]:
        if not self.total_attempts:
            return None
        return round(100.0 * self.successful / self.total_attempts, 2)

    @property
    def block_rate_pct(self) -> Optional[float]:
        if not self.total_attempts:
            return None
        return round(100.0 * self.blocked / self.total_attempts, 2)


@dataclass(frozen=True)
class Anomaly:
    anomaly_type: str
    severity: Severity
    details: dict[str, Any]
    recommendation: str


@dataclass(frozen=True)
class AuditCorrelation:
    audit_id: str
    action: Optional[str]
    subject_id: Optional[str]
    email: Optional[str]
    match_method: str  # "identity_id" | "email" | "none"
    status: str  # "correlated" | "auth_only" | "audit_only" | "no_traits"
