"""Tests for processor payload adapters."""

import uuid

import pytest

from app.models.billing import InvoiceStatus
from app.models.subscription import SubscriptionStatus
from app.schemas.processor import (
    DisputeSnapshot,
    InvoiceSnapshot,
    PaymentIntentSnapshot,
    ProcessorEvent,
    SubscriptionChange,
)
from tests.mocks import (
    dispute_object,
    invoice_object,
    payment_intent_object,
    processor_event,
    subscription_object,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("active", SubscriptionStatus.active),
        ("trialing", SubscriptionStatus.trialing),
        ("unpaid", SubscriptionStatus.past_due),
        ("incomplete", SubscriptionStatus.past_due),
        ("incomplete_expired", SubscriptionStatus.canceled),
        ("paused", SubscriptionStatus.paused),
    ],
)
def test_subscription_status_mapping(raw, expected):
    assert SubscriptionChange.from_processor(subscription_object(status=raw)).status == expected


def test_unsupported_subscription_status_raises():
    with pytest.raises(ValueError, match="Unsupported subscription status"):
        SubscriptionChange.from_processor(subscription_object(status="exploded"))


def test_subscription_change_reads_price_item():
    owner = uuid.uuid4()
    change = SubscriptionChange.from_processor(
        subscription_object(amount=4900, nickname="Business", interval="year", owner_id=owner)
    )

    assert change.amount == 4900
    assert change.plan_name == "Business"
    assert change.billing_interval == "year"
    assert change.customer_external_id == "cus_test"
    assert change.customer_hints.owner_id == owner
    assert change.current_period_end.tzinfo is not None


def test_expanded_customer_supplies_hints():
    change = SubscriptionChange.from_processor(
        subscription_object(
            customer={"id": "cus_x", "email": "x@example.com", "metadata": {"owner_id": "bad"}}
        )
    )

    assert change.customer_external_id == "cus_x"
    assert change.customer_hints.email == "x@example.com"
    assert change.customer_hints.owner_id is None
    assert not change.customer_hints.is_complete


def test_invoice_snapshot_maps_draft_to_open():
    snapshot = InvoiceSnapshot.from_processor(invoice_object(status="draft"))

    assert snapshot.status == InvoiceStatus.open
    assert snapshot.subscription_external_id == "sub_test"
    assert snapshot.payment_intent_external_id == "pi_test"
    assert len(snapshot.lines) == 1
    assert snapshot.lines[0].period_start is not None


def test_invoice_snapshot_reads_subscription_from_parent():
    obj = invoice_object(subscription=None)
    obj["parent"] = {"subscription_details": {"subscription": "sub_parent"}}

    assert InvoiceSnapshot.from_processor(obj).subscription_external_id == "sub_parent"


def test_payment_intent_and_dispute_snapshots():
    intent = PaymentIntentSnapshot.from_processor(
        payment_intent_object(error={"code": "card_declined", "message": "Declined"})
    )
    dispute = DisputeSnapshot.from_processor(dispute_object())

    assert intent.failure_code == "card_declined"
    assert dispute.charge_external_id == "ch_test"
    assert dispute.evidence_due_by is not None


def test_processor_event_keeps_raw_payload():
    payload = processor_event("invoice.paid", invoice_object(), event_id="evt_raw")

    event = ProcessorEvent.from_payload(payload)

    assert event.raw_payload is payload
    assert event.data_object["id"] == "in_test"
    assert "raw_payload" not in event.model_dump()
