"""Durable ledger of inbound processor events.

``record_if_new`` is the idempotency gate of the ingestion pipeline. It is a
single ``INSERT ... ON CONFLICT (external_id) DO NOTHING RETURNING id``
statement, so two concurrent deliveries of the same event cannot both be
told they are new.

``claim_for_replay`` is the matching gate for replays: a conditional
``UPDATE`` that only one of two racing replays of an event can win.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import HTTPException
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.config import settings
from app.models.event_store import InboundEvent
from app.services.common import apply_ordering, apply_pagination, utcnow

logger = logging.getLogger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass(frozen=True)
class RecordResult:
    is_new: bool
    stored_id: uuid.UUID


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    try:
        return _INSERT_BY_DIALECT[dialect]
    except KeyError as exc:
        raise RuntimeError(f"Event store does not support the {dialect} dialect") from exc


def record_if_new(
    db: Session,
    external_id: str,
    event_type: str,
    payload: dict,
    api_version: str | None = None,
) -> RecordResult:
    """Insert the event unless its external id was already recorded.

    The insert is flushed in the caller's transaction; the caller commits.
    """
    insert = _insert_for(db)
    stmt = (
        insert(InboundEvent)
        .values(
            id=uuid.uuid4(),
            external_id=external_id,
            event_type=event_type,
            api_version=api_version,
            raw_payload=payload,
            received_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["external_id"])
        .returning(InboundEvent.id)
    )
    inserted_id = db.execute(stmt).scalar_one_or_none()
    if inserted_id is not None:
        return RecordResult(is_new=True, stored_id=inserted_id)

    existing_id = db.scalars(
        select(InboundEvent.id).where(InboundEvent.external_id == external_id)
    ).one()
    logger.info(f"Duplicate delivery of event {external_id} ({event_type}) ignored")
    return RecordResult(is_new=False, stored_id=existing_id)


def mark_processed(
    db: Session,
    external_id: str,
    error: str | None = None,
    now: datetime | None = None,
) -> None:
    """Stamp the event as processed, recording the failure text if any.

    Calling it again overwrites the previous outcome. Flushes only; the
    caller commits.
    """
    event = db.scalars(
        select(InboundEvent).where(InboundEvent.external_id == external_id)
    ).first()
    if event is None:
        logger.warning(f"Cannot mark unknown event {external_id} as processed")
        return
    event.processed_at = now or utcnow()
    event.error = error
    db.flush()


def stall_cutoff(now: datetime | None = None) -> datetime:
    """Unprocessed events last touched before this instant count as abandoned."""
    return (now or utcnow()) - timedelta(minutes=settings.event_stall_minutes)


def _replayable(stalled_before: datetime):
    # Failed outright, or left unprocessed by a crashed worker.
    last_touched = func.coalesce(
        InboundEvent.processing_started_at, InboundEvent.received_at
    )
    return or_(
        and_(InboundEvent.processed_at.isnot(None), InboundEvent.error.isnot(None)),
        and_(InboundEvent.processed_at.is_(None), last_touched < stalled_before),
    )


def claim_for_replay(
    db: Session,
    external_id: str,
    stalled_before: datetime,
    now: datetime | None = None,
) -> bool:
    """Atomically return a replayable event to the received state.

    A single conditional ``UPDATE`` clears the previous outcome and stamps
    ``processing_started_at``. Only one of several concurrent callers can
    match the row, so only that caller gets ``True`` and may dispatch the
    event. Flushes only; the caller commits.
    """
    result = db.execute(
        update(InboundEvent)
        .where(InboundEvent.external_id == external_id)
        .where(_replayable(stalled_before))
        .values(processed_at=None, error=None, processing_started_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Event {external_id} is not replayable or already claimed")
        return False
    return True


class InboundEvents:
    """Operator reads over the inbound event ledger."""

    @staticmethod
    def get(db: Session, external_id: str) -> InboundEvent:
        event = db.scalars(
            select(InboundEvent).where(InboundEvent.external_id == external_id)
        ).first()
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")
        return event

    @staticmethod
    def list(
        db: Session,
        event_type: str | None,
        failed_only: bool,
        unprocessed_only: bool,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[InboundEvent]:
        query = db.query(InboundEvent)
        if event_type:
            query = query.filter(InboundEvent.event_type == event_type)
        if failed_only:
            query = query.filter(InboundEvent.error.isnot(None))
        if unprocessed_only:
            query = query.filter(InboundEvent.processed_at.is_(None))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "received_at": InboundEvent.received_at,
                "processed_at": InboundEvent.processed_at,
                "event_type": InboundEvent.event_type,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def list_replayable(
        db: Session,
        window: timedelta,
        stalled_before: datetime,
        limit: int,
    ) -> list[InboundEvent]:
        """Failed or stalled events received within ``window``, oldest first."""
        cutoff = utcnow() - window
        return (
            db.query(InboundEvent)
            .filter(_replayable(stalled_before))
            .filter(InboundEvent.received_at >= cutoff)
            .order_by(InboundEvent.received_at.asc())
            .limit(limit)
            .all()
        )
