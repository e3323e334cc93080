from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class InboundEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    external_id: str
    event_type: str
    api_version: str | None = None
    received_at: datetime
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None
    error: str | None = None


class InboundEventDetail(InboundEventRead):
    raw_payload: dict = Field(default_factory=dict)


class WebhookAck(BaseModel):
    received: bool = True


class ReplayResult(BaseModel):
    external_id: str
    processed_at: datetime | None = None
    error: str | None = None
