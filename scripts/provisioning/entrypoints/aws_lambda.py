"""AWS Lambda handler invoked when the identity provider creates a user.

Wired as the target of a Supabase database webhook (INSERT on auth.users)
or any caller that posts the identity signal directly.

Event format:
  {"id": "<uuid>", "email": "...", "phone": "...", "metadata": {...}}
  {"type": "INSERT", "table": "users", "record": {...}}

The handler is fail-open: whatever happens, it answers 200 so the
provider never treats user creation as failed. A missing profile is
repaired by the reconciliation sweep.
"""

from __future__ import annotations

import json
import logging
import os
import sys

# Ensure the project root is on sys.path for Lambda packaging
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", ".."))

from scripts.provisioning.config import load_config
from scripts.provisioning.db import Database
from scripts.provisioning.logging_config import configure_logging
from scripts.provisioning.models import IdentityRecord

logger = logging.getLogger("provisioning.lambda")


def _response(body: dict) -> dict:
    return {"statusCode": 200, "body": json.dumps(body)}


def handler(event: dict, context) -> dict:
    """Lambda entry point."""
    configure_logging()

    if isinstance(event, dict) and isinstance(event.get("body"), str):
        # API Gateway / function URL proxy integration
        try:
            event = json.loads(event["body"])
        except ValueError:
            logger.error("Request body is not JSON")
            return _response({"provisioned": False, "reason": "invalid body"})

    try:
        identity = IdentityRecord.from_signal(event or {})
    except (AttributeError, TypeError, ValueError) as exc:
        logger.error("Rejected identity signal: %s", exc)
        return _response({"provisioned": False, "reason": str(exc)})

    logger.info("Identity created signal received", extra={"subject_id": identity.id})

    try:
        config = load_config()
        db = Database(config.database)
    except Exception as exc:
        logger.error(
            "Provisioning unavailable: %s", exc, exc_info=True,
            extra={"subject_id": identity.id},
        )
        return _response({"id": identity.id, "provisioned": False, "reason": "unavailable"})

    try:
        from scripts.provisioning.cli import build_hook

        outcome = build_hook(config, db).handle_identity_created(identity)
        return _response({
            "id": outcome.subject_id,
            "provisioned": outcome.profile_ok,
            "error_id": outcome.error_id,
        })
    except Exception as exc:
        logger.error(
            "Hook raised unexpectedly: %s", exc, exc_info=True,
            extra={"subject_id": identity.id},
        )
        return _response({"id": identity.id, "provisioned": False, "reason": "error"})
    finally:
        db.close()
