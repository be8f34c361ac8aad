"""Account-type normalization.

The account-type enum was renamed and widened several times. Instead of
rewriting rows per release, every historical raw value is reduced to the
current canonical set through a versioned table: revisions are applied in
order and later revisions win, so the mapping is deterministic.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

CANONICAL_ACCOUNT_TYPES = frozenset({
    "sme",
    "professional",
    "investor",
    "donor",
    "government",
    "sole_proprietor",
})

# (revision, {raw value: canonical value})
ACCOUNT_TYPE_REVISIONS: tuple[tuple[int, dict[str, str]], ...] = (
    # 1: original upper-case enum
    (1, {
        "SME": "sme",
        "INVESTOR": "investor",
        "SERVICE_PROVIDER": "professional",
        "PARTNER": "government",
        "ADMIN": "government",
    }),
    # 2: lower-case enum aligned with the signup form
    (2, {value: value for value in CANONICAL_ACCOUNT_TYPES}),
    # 3: aliases sent by onboarding flows and older clients
    (3, {
        "government_institution": "government",
        "public_sector": "government",
        "freelancer": "professional",
        "service_provider": "professional",
        "sole_trader": "sole_proprietor",
        "soleproprietor": "sole_proprietor",
        "business": "sme",
        "company": "sme",
        "donor_partner": "donor",
        "funder": "donor",
    }),
)

CURRENT_REVISION = ACCOUNT_TYPE_REVISIONS[-1][0]

_SEPARATORS = re.compile(r"[\s\-]+")


class InvalidAccountType(ValueError):
    """Raised for an unrecognized account type under the ``reject`` policy."""


def _lookup_key(raw: str) -> str:
    return _SEPARATORS.sub("_", raw.strip()).lower()


def _build_lookup() -> dict[str, str]:
    lookup: dict[str, str] = {}
    for _revision, mapping in sorted(ACCOUNT_TYPE_REVISIONS, key=lambda r: r[0]):
        for raw, canonical in mapping.items():
            if canonical not in CANONICAL_ACCOUNT_TYPES:
                raise ValueError(f"revision maps {raw!r} to non-canonical {canonical!r}")
            lookup[_lookup_key(raw)] = canonical
    return lookup


_LOOKUP = _build_lookup()


@dataclass(frozen=True)
class AccountTypeResolution:
    value: str
    raw: Optional[str]
    coerced: bool


def canonical_account_type(raw: Optional[str]) -> Optional[str]:
    """Return the canonical value for ``raw`` or None if it is unknown."""
    if raw is None or not raw.strip():
        return None
    return _LOOKUP.get(_lookup_key(raw))


def normalize_account_type(
    raw: Optional[str],
    default: str = "sme",
    policy: str = "coerce",
) -> AccountTypeResolution:
    """Reduce untrusted account-type text to the canonical set.

    Blank input silently takes the default. Unknown input takes the default
    under ``coerce`` (flagged as coerced) and raises under ``reject``.
    """
    if default not in CANONICAL_ACCOUNT_TYPES:
        raise ValueError(f"default account type {default!r} is not canonical")

    if raw is None or not str(raw).strip():
        return AccountTypeResolution(value=default, raw=None, coerced=False)

    raw = str(raw)
    canonical = canonical_account_type(raw)
    if canonical is not None:
        return AccountTypeResolution(value=canonical, raw=raw, coerced=False)

    if policy == "reject":
        raise InvalidAccountType(f"unrecognized account type {raw!r}")
    return AccountTypeResolution(value=default, raw=raw, coerced=True)
