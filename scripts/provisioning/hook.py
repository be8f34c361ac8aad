"""Reactive hook run once per "identity created" signal.

The hook executes inside the identity provider's own write path, so it
must never make that write fail. Profile failures are recorded in the
error store and the ledger, and the hook still completes normally; the
reconciliation sweep repairs the gap later.
"""

from __future__ import annotations

import logging

from scripts.provisioning.config import ProvisioningConfig
from scripts.provisioning.error_store import ErrorCaptureStore
from scripts.provisioning.extraction import extract_signup_fields
from scripts.provisioning.ledger import EventLedger
from scripts.provisioning.merge import ProfileMergeEngine
from scripts.provisioning.models import EventType, HookOutcome, IdentityRecord

logger = logging.getLogger("provisioning.hook")

HOOK_CONTEXT = "identity_created_hook"


class ReactiveHook:
    def __init__(
        self,
        config: ProvisioningConfig,
        ledger: EventLedger,
        merge_engine: ProfileMergeEngine,
        error_store: ErrorCaptureStore,
    ) -> None:
        self.config = config
        self.ledger = ledger
        self.merge_engine = merge_engine
        self.error_store = error_store

    def handle_identity_created(self, identity: IdentityRecord) -> HookOutcome:
        fields = extract_signup_fields(identity, self.config.placeholder_email_domain)

        self.ledger.append(
            identity.id,
            EventType.IDENTITY_CREATED,
            fields.email,
            {"source": "hook", "email_is_placeholder": fields.email_is_placeholder},
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
            # Fail open: record, then report normal completion upstream
            error_id = self.error_store.record(
                identity.id,
                str(exc) or exc.__class__.__name__,
                detail=error_detail(exc),
                context={"source": HOOK_CONTEXT},
            )
            self.ledger.append(
                identity.id,
                EventType.PROFILE_BOOTSTRAP_ERROR,
                fields.email,
                {"error": str(exc), "code": error_detail(exc), "error_id": error_id},
            )
            logger.error(
                "Profile bootstrap failed: %s",
                exc,
                extra={"subject_id": identity.id, "context": HOOK_CONTEXT},
            )
            return HookOutcome(subject_id=identity.id, profile_ok=False, error_id=error_id)

        self.ledger.append(
            identity.id,
            EventType.PROFILE_BOOTSTRAP_OK,
            fields.email,
            {"source": "hook", "account_type": draft.account_type},
        )
        logger.info("Profile bootstrapped", extra={"subject_id": identity.id})
        return HookOutcome(subject_id=identity.id, profile_ok=True)


def error_detail(exc: BaseException) -> str:
    """SQLSTATE when the database raised, otherwise the exception class."""
    pgcode = getattr(exc, "pgcode", None)
    if pgcode:
        return f"SQLSTATE {pgcode}"
    return exc.__class__.__name__
