"""Best-effort extraction of profile fields from an identity signal.

Which source wins for which field is data, not control flow: each field has
an ordered tuple of sources in ``FIELD_PRECEDENCE`` and the first non-blank
value is taken. Fields that can still be empty afterwards fall back to a
synthesizer (placeholder email, name composed from first/last).
"""

from __future__ import annotations

from typing import Callable, Optional

from scripts.provisioning.models import IdentityRecord, SignupFields

PLACEHOLDER_EMAIL_PREFIX = "missing-email-"

# field -> ordered (origin, attribute) pairs; origin is "record" or "metadata"
FIELD_PRECEDENCE: dict[str, tuple[tuple[str, str], ...]] = {
    "email": (
        ("record", "email"),
        ("metadata", "email"),
        ("metadata", "user_email"),
    ),
    "full_name": (
        ("metadata", "full_name"),
        ("metadata", "name"),
    ),
    "phone": (
        ("record", "phone"),
        ("metadata", "phone"),
        ("metadata", "msisdn"),
    ),
    "account_type": (
        ("metadata", "account_type"),
    ),
    "company_name": (
        ("metadata", "company_name"),
        ("metadata", "business_name"),
    ),
}


def placeholder_email(subject_id: str, domain: str = "example.invalid") -> str:
    return f"{PLACEHOLDER_EMAIL_PREFIX}{subject_id}@{domain}"


def is_placeholder_email(email: Optional[str]) -> bool:
    return bool(email) and email.startswith(PLACEHOLDER_EMAIL_PREFIX)


def _compose_name(identity: IdentityRecord) -> Optional[str]:
    meta = identity.metadata
    parts = [p for p in (meta.first_name, meta.last_name) if p]
    return " ".join(parts) or None


# field -> synthesizer used when every source in FIELD_PRECEDENCE is blank
_SYNTHESIZERS: dict[str, Callable[[IdentityRecord], Optional[str]]] = {
    "full_name": _compose_name,
}


def _source_value(identity: IdentityRecord, origin: str, attr: str) -> Optional[str]:
    holder = identity if origin == "record" else identity.metadata
    value = getattr(holder, attr, None)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def resolve_field(identity: IdentityRecord, field_name: str) -> Optional[str]:
    """First non-blank value for ``field_name`` following the precedence table."""
    for origin, attr in FIELD_PRECEDENCE[field_name]:
        value = _source_value(identity, origin, attr)
        if value is not None:
            return value
    synthesize = _SYNTHESIZERS.get(field_name)
    return synthesize(identity) if synthesize else None


def extract_signup_fields(
    identity: IdentityRecord,
    placeholder_domain: str = "example.invalid",
) -> SignupFields:
    email = resolve_field(identity, "email")
    email_is_placeholder = email is None
    if email is None:
        email = placeholder_email(identity.id, placeholder_domain)
    else:
        email = email.lower()

    return SignupFields(
        email=email,
        full_name=resolve_field(identity, "full_name"),
        phone=resolve_field(identity, "phone"),
        account_type=resolve_field(identity, "account_type"),
        company_name=resolve_field(identity, "company_name"),
        email_is_placeholder=email_is_placeholder,
    )
