"""Celery tasks for inbound event maintenance.

Replays processor events whose handler failed, e.g. because the processor
API was unreachable while a new customer was being materialized, and events
a crashed worker left unprocessed.
"""

import logging
import time
from datetime import timedelta

from fastapi import HTTPException

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job

logger = logging.getLogger(__name__)

# Configuration
MAX_EVENT_AGE_HOURS = 24
BATCH_SIZE = 100


@celery_app.task(name="app.tasks.events.replay_failed_events")
def replay_failed_events():
    """Replay failed or stalled events received within the last MAX_EVENT_AGE_HOURS."""
    from app.services.event_store import InboundEvents, stall_cutoff
    from app.services.events.dispatcher import get_dispatcher

    started = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        pending_events = InboundEvents.list_replayable(
            session, timedelta(hours=MAX_EVENT_AGE_HOURS), stall_cutoff(), BATCH_SIZE
        )
        if not pending_events:
            return {"replayed": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        dispatcher = get_dispatcher()
        succeeded = 0
        failed = 0
        skipped = 0

        for event_record in pending_events:
            external_id = event_record.external_id
            try:
                replayed = dispatcher.replay(session, external_id)
            except HTTPException as exc:
                if exc.status_code == 409:
                    # Claimed by a concurrent replay since it was listed.
                    skipped += 1
                    logger.info(f"Event {external_id} no longer replayable; skipping")
                else:
                    failed += 1
                    logger.error(f"Cannot replay event {external_id}: {exc.detail}")
                continue
            except Exception as exc:
                failed += 1
                logger.exception(f"Error replaying event {external_id}: {exc}")
                session.rollback()
                continue
            if replayed.error:
                failed += 1
                logger.warning(f"Event {external_id} failed again on replay: {replayed.error}")
            else:
                succeeded += 1
                logger.info(f"Successfully replayed event {external_id} ({replayed.event_type})")

        result = {
            "replayed": len(pending_events) - skipped,
            "succeeded": succeeded,
            "failed": failed,
            "skipped": skipped,
        }
        logger.info(f"Event replay task completed: {result}")
        return result
    except Exception:
        status = "error"
        session.rollback()
        raise
    finally:
        session.close()
        observe_job("replay_failed_events", status, time.monotonic() - started)
