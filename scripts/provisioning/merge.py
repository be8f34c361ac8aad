"""Idempotent, field-level profile upsert.

Several uncoordinated callers (the signup hook, the reconciliation sweep,
manual repair) may race to create the same profile. The merge rule is
first-non-empty-wins per field: on conflict each column keeps its stored
value when that value is non-empty and otherwise adopts the incoming one.
The result is independent of which racing write lands last, repeated calls
are no-ops, and a later call can still fill fields that are missing.

The insert-or-merge is one ``INSERT ... ON CONFLICT DO UPDATE`` statement;
the unique constraint on ``profiles.id`` serializes concurrent writers.
"""

from __future__ import annotations

import logging
from typing import Optional

from scripts.provisioning.account_types import normalize_account_type
from scripts.provisioning.config import AccountTypeConfig
from scripts.provisioning.db import Database
from scripts.provisioning.extraction import PLACEHOLDER_EMAIL_PREFIX
from scripts.provisioning.ledger import EventLedger
from scripts.provisioning.models import EventType, Profile, ProfileDraft

logger = logging.getLogger("provisioning.merge")

PROFILE_TABLE = "profiles"
PROFILE_COLUMNS = [
    "id", "email", "full_name", "phone", "account_type", "business_name",
]
COALESCE_COLUMNS = [
    "email", "full_name", "phone", "account_type", "business_name",
]
# A synthesized email does not count as a genuine value
PLACEHOLDER_PATTERNS = {"email": PLACEHOLDER_EMAIL_PREFIX + "%"}


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ProfileMergeEngine:
    def __init__(
        self,
        db: Database,
        account_types: Optional[AccountTypeConfig] = None,
        ledger: Optional[EventLedger] = None,
    ) -> None:
        self.db = db
        self.account_types = account_types or AccountTypeConfig()
        self.ledger = ledger

    def build_draft(
        self,
        subject_id: str,
        email: Optional[str],
        full_name: Optional[str],
        phone: Optional[str],
        account_type: Optional[str],
        company_name: Optional[str],
    ) -> ProfileDraft:
        """Normalize untrusted input. Raises InvalidAccountType under ``reject``."""
        if not subject_id or not str(subject_id).strip():
            raise ValueError("subject_id is required")

        resolution = normalize_account_type(
            account_type,
            default=self.account_types.default,
            policy=self.account_types.unknown_policy,
        )
        return ProfileDraft(
            id=str(subject_id).strip(),
            email=_blank_to_none(email),
            full_name=_blank_to_none(full_name),
            phone=_blank_to_none(phone),
            account_type=resolution.value,
            business_name=_blank_to_none(company_name),
            account_type_coerced=resolution.coerced,
        )

    def ensure_profile(
        self,
        subject_id: str,
        email: Optional[str] = None,
        full_name: Optional[str] = None,
        phone: Optional[str] = None,
        account_type: Optional[str] = None,
        company_name: Optional[str] = None,
    ) -> ProfileDraft:
        """Insert the profile or merge missing fields into the existing row."""
        draft = self.build_draft(
            subject_id, email, full_name, phone, account_type, company_name
        )

        if draft.account_type_coerced:
            logger.warning(
                "Unrecognized account type %r coerced to %r",
                account_type,
                draft.account_type,
                extra={"subject_id": draft.id},
            )
            if self.ledger is not None:
                self.ledger.append(
                    draft.id,
                    EventType.ACCOUNT_TYPE_COERCED,
                    draft.email,
                    {"raw": account_type, "coerced_to": draft.account_type},
                )

        row = (
            draft.id,
            draft.email,
            draft.full_name,
            draft.phone,
            draft.account_type,
            draft.business_name,
        )
        with self.db.transaction() as cur:
            self.db.upsert_batch(
                cur,
                PROFILE_TABLE,
                PROFILE_COLUMNS,
                [row],
                conflict_columns=["id"],
                update_columns=[],
                coalesce_columns=COALESCE_COLUMNS,
                placeholder_patterns=PLACEHOLDER_PATTERNS,
            )
        logger.debug("Profile ensured", extra={"subject_id": draft.id})
        return draft

    def get_profile(self, subject_id: str) -> Optional[Profile]:
        row = self.db.fetch_profile(subject_id)
        return Profile.from_row(row) if row else None
