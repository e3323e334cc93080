"""Billing webhook orchestration.

The HTTP endpoint acknowledges every delivery straight away and hands the
raw body to :func:`ingest_stripe_webhook`, which runs after the response.
Verification and processing outcomes are only visible in the logs, the
metrics and the inbound event ledger.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal
from app.metrics import observe_webhook
from app.services import signature
from app.services.events.dispatcher import EventDispatcher, get_dispatcher

logger = logging.getLogger(__name__)

OUTCOME_REJECTED = "rejected"
OUTCOME_ERROR = "error"


def ingest_stripe_webhook(
    body: bytes,
    signature_header: str | None,
    *,
    session_factory: Callable[[], Session] | None = None,
    dispatcher: EventDispatcher | None = None,
    secret: str | None = None,
    tolerance: int | None = None,
) -> str:
    """Verify and process one webhook delivery; returns the outcome label."""
    try:
        event = signature.verify(
            body,
            signature_header,
            secret if secret is not None else settings.stripe_webhook_secret,
            tolerance=(
                settings.stripe_signature_tolerance_seconds if tolerance is None else tolerance
            ),
        )
    except signature.SignatureError as exc:
        logger.warning(f"Rejected processor webhook: {exc}")
        observe_webhook("unknown", OUTCOME_REJECTED)
        return OUTCOME_REJECTED

    dispatcher = dispatcher or get_dispatcher()
    db = (session_factory or SessionLocal)()
    try:
        return dispatcher.process(db, event)
    except Exception:
        db.rollback()
        logger.exception(f"Could not ingest event {event.type} ({event.id})")
        observe_webhook(event.type, OUTCOME_ERROR)
        return OUTCOME_ERROR
    finally:
        db.close()
