"""Adapters from payment processor payloads to internal commands.

Processor objects arrive in the processor's own wire shape (Stripe-style
``data.object`` dictionaries with unix timestamps and nested price items).
Handlers and services never read raw payload keys; they receive the
snapshot models defined here.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.models.billing import InvoiceStatus
from app.models.subscription import SubscriptionStatus

# Processor statuses outside the local lifecycle are folded onto it.
SUBSCRIPTION_STATUS_MAP = {
    "trialing": SubscriptionStatus.trialing,
    "active": SubscriptionStatus.active,
    "past_due": SubscriptionStatus.past_due,
    "unpaid": SubscriptionStatus.past_due,
    "incomplete": SubscriptionStatus.past_due,
    "paused": SubscriptionStatus.paused,
    "canceled": SubscriptionStatus.canceled,
    "incomplete_expired": SubscriptionStatus.canceled,
}

INVOICE_STATUS_MAP = {
    "draft": InvoiceStatus.open,
    "open": InvoiceStatus.open,
    "paid": InvoiceStatus.paid,
    "void": InvoiceStatus.void,
    "uncollectible": InvoiceStatus.uncollectible,
}


def from_unix(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _object_id(value: Any) -> str | None:
    """Return the id of a reference that may be a bare id or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _coerce_owner_id(value: Any) -> uuid.UUID | None:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _first_item(obj: dict) -> dict:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


class ProcessorEvent(BaseModel):
    """Envelope of an authenticated processor event."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=120)
    api_version: str | None = None
    created: datetime | None = None
    data: dict = Field(default_factory=dict)
    # The payload exactly as received; stored for audit and replay.
    raw_payload: dict = Field(default_factory=dict, exclude=True, repr=False)

    @field_validator("created", mode="before")
    @classmethod
    def _parse_created(cls, v):
        return from_unix(v)

    @classmethod
    def from_payload(cls, payload: dict) -> "ProcessorEvent":
        event = cls.model_validate(payload)
        event.raw_payload = payload
        return event

    @property
    def data_object(self) -> dict:
        return self.data.get("object") or {}


class CustomerHints(BaseModel):
    """Data available to materialize a customer seen for the first time."""

    email: str | None = None
    name: str | None = None
    owner_id: uuid.UUID | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.email) and self.owner_id is not None

    def merged_with(self, other: "CustomerHints") -> "CustomerHints":
        return CustomerHints(
            email=self.email or other.email,
            name=self.name or other.name,
            owner_id=self.owner_id or other.owner_id,
        )

    @classmethod
    def from_processor(cls, obj: dict) -> "CustomerHints":
        metadata = obj.get("metadata") or {}
        return cls(
            email=obj.get("email"),
            name=obj.get("name"),
            owner_id=_coerce_owner_id(metadata.get("owner_id")),
        )


class SubscriptionChange(BaseModel):
    """Processor-reported state of a subscription."""

    external_id: str
    customer_external_id: str | None = None
    status: SubscriptionStatus
    plan_name: str | None = None
    amount: int = 0
    currency: str = "usd"
    billing_interval: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    customer_hints: CustomerHints = Field(default_factory=CustomerHints)

    @classmethod
    def from_processor(cls, obj: dict) -> "SubscriptionChange":
        item = _first_item(obj)
        price = item.get("price") or obj.get("plan") or {}
        recurring = price.get("recurring") or {}
        metadata = obj.get("metadata") or {}
        raw_status = obj.get("status")
        status = SUBSCRIPTION_STATUS_MAP.get(raw_status)
        if status is None:
            raise ValueError(f"Unsupported subscription status: {raw_status!r}")

        customer = obj.get("customer")
        hints = CustomerHints(owner_id=_coerce_owner_id(metadata.get("owner_id")))
        if isinstance(customer, dict):
            hints = hints.merged_with(CustomerHints.from_processor(customer))

        return cls(
            external_id=obj["id"],
            customer_external_id=_object_id(customer),
            status=status,
            plan_name=price.get("nickname"),
            amount=int(price.get("unit_amount") or price.get("amount") or 0),
            currency=(obj.get("currency") or price.get("currency") or "usd").lower(),
            billing_interval=recurring.get("interval") or price.get("interval"),
            current_period_start=from_unix(
                obj.get("current_period_start") or item.get("current_period_start")
            ),
            current_period_end=from_unix(
                obj.get("current_period_end") or item.get("current_period_end")
            ),
            trial_end=from_unix(obj.get("trial_end")),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=from_unix(obj.get("canceled_at")),
            customer_hints=hints,
        )


class InvoiceLineSnapshot(BaseModel):
    external_id: str | None = None
    description: str | None = None
    quantity: int = 1
    unit_amount: int | None = None
    amount: int = 0
    period_start: datetime | None = None
    period_end: datetime | None = None

    @classmethod
    def from_processor(cls, obj: dict) -> "InvoiceLineSnapshot":
        price = obj.get("price") or {}
        period = obj.get("period") or {}
        return cls(
            external_id=obj.get("id"),
            description=obj.get("description"),
            quantity=int(obj.get("quantity") or 1),
            unit_amount=price.get("unit_amount"),
            amount=int(obj.get("amount") or 0),
            period_start=from_unix(period.get("start")),
            period_end=from_unix(period.get("end")),
        )


class InvoiceSnapshot(BaseModel):
    """Processor-reported state of an invoice."""

    external_id: str
    number: str | None = None
    customer_external_id: str | None = None
    subscription_external_id: str | None = None
    status: InvoiceStatus = InvoiceStatus.open
    currency: str = "usd"
    amount_due: int = 0
    amount_paid: int = 0
    amount_remaining: int = 0
    subtotal: int = 0
    tax: int = 0
    total: int = 0
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    due_date: datetime | None = None
    billing_reason: str | None = None
    collection_method: str | None = None
    metadata: dict | None = None
    payment_intent_external_id: str | None = None
    charge_external_id: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    lines: list[InvoiceLineSnapshot] = Field(default_factory=list)
    customer_hints: CustomerHints = Field(default_factory=CustomerHints)

    @classmethod
    def from_processor(cls, obj: dict) -> "InvoiceSnapshot":
        subscription = obj.get("subscription")
        if subscription is None:
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            subscription = details.get("subscription")
        error = obj.get("last_finalization_error") or {}
        lines = (obj.get("lines") or {}).get("data") or []
        metadata = obj.get("metadata") or {}
        hints = CustomerHints(
            email=obj.get("customer_email"),
            name=obj.get("customer_name"),
            owner_id=_coerce_owner_id(metadata.get("owner_id")),
        )
        if isinstance(obj.get("customer"), dict):
            hints = hints.merged_with(CustomerHints.from_processor(obj["customer"]))
        return cls(
            external_id=obj["id"],
            number=obj.get("number"),
            customer_external_id=_object_id(obj.get("customer")),
            subscription_external_id=_object_id(subscription),
            status=INVOICE_STATUS_MAP.get(obj.get("status"), InvoiceStatus.open),
            currency=(obj.get("currency") or "usd").lower(),
            amount_due=int(obj.get("amount_due") or 0),
            amount_paid=int(obj.get("amount_paid") or 0),
            amount_remaining=int(obj.get("amount_remaining") or 0),
            subtotal=int(obj.get("subtotal") or 0),
            tax=int(obj.get("tax") or 0),
            total=int(obj.get("total") or 0),
            hosted_invoice_url=obj.get("hosted_invoice_url"),
            invoice_pdf=obj.get("invoice_pdf"),
            due_date=from_unix(obj.get("due_date")),
            billing_reason=obj.get("billing_reason"),
            collection_method=obj.get("collection_method"),
            metadata=obj.get("metadata") or None,
            payment_intent_external_id=_object_id(obj.get("payment_intent")),
            charge_external_id=_object_id(obj.get("charge")),
            failure_code=error.get("code"),
            failure_message=error.get("message"),
            lines=[InvoiceLineSnapshot.from_processor(line) for line in lines],
            customer_hints=hints,
        )


class PaymentIntentSnapshot(BaseModel):
    external_id: str
    amount: int = 0
    currency: str = "usd"
    failure_code: str | None = None
    failure_message: str | None = None

    @classmethod
    def from_processor(cls, obj: dict) -> "PaymentIntentSnapshot":
        error = obj.get("last_payment_error") or {}
        return cls(
            external_id=obj["id"],
            amount=int(obj.get("amount") or 0),
            currency=(obj.get("currency") or "usd").lower(),
            failure_code=error.get("code"),
            failure_message=error.get("message"),
        )


class DisputeSnapshot(BaseModel):
    external_id: str
    charge_external_id: str | None = None
    amount: int = 0
    currency: str = "usd"
    reason: str | None = None
    status: str | None = None
    evidence_due_by: datetime | None = None
    is_charge_refundable: bool = False

    @classmethod
    def from_processor(cls, obj: dict) -> "DisputeSnapshot":
        evidence = obj.get("evidence_details") or {}
        return cls(
            external_id=obj["id"],
            charge_external_id=_object_id(obj.get("charge")),
            amount=int(obj.get("amount") or 0),
            currency=(obj.get("currency") or "usd").lower(),
            reason=obj.get("reason"),
            status=obj.get("status"),
            evidence_due_by=from_unix(evidence.get("due_by")),
            is_charge_refundable=bool(obj.get("is_charge_refundable")),
        )
