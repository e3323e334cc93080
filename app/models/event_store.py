"""Inbound processor event ledger.

Every authenticated event received from the payment processor is stored
here, keyed by the processor's own event id. The unique constraint on
``external_id`` is the idempotency gate of the ingestion pipeline: a
second delivery of the same event cannot insert a second row.

Rows are never deleted; only ``processed_at``, ``error`` and
``processing_started_at`` change after insertion. A replay stamps
``processing_started_at`` when it claims the row, so a second replay can
tell the event is already being worked on.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class InboundEvent(Base):
    __tablename__ = "inbound_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    external_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    api_version: Mapped[str | None] = mapped_column(String(40))
    raw_payload: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error: Mapped[str | None] = mapped_column(Text)

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None

    @property
    def has_failed(self) -> bool:
        return self.processed_at is not None and self.error is not None
