import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base


class EventSeverity(enum.Enum):
    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"


class EventSource(enum.Enum):
    webhook = "webhook"
    system = "system"


class PaymentEventLog(Base):
    """Severity-tagged structured log of billing activity."""

    __tablename__ = "payment_event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    event_type: Mapped[str] = mapped_column(String(120), nullable=False, index=True)
    customer_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), index=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    transaction_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    inbound_event_id: Mapped[str | None] = mapped_column(String(255), index=True)
    event_data: Mapped[dict | None] = mapped_column(JSON)
    severity: Mapped[EventSeverity] = mapped_column(
        Enum(EventSeverity), default=EventSeverity.info, index=True
    )
    source: Mapped[EventSource] = mapped_column(
        Enum(EventSource), default=EventSource.webhook
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
