"""End-to-end tests for processor event dispatch."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException

from app.models.billing import (
    BillingHistoryEntry,
    Dispute,
    Invoice,
    InvoiceStatus,
    Transaction,
    TransactionStatus,
)
from app.models.collections import DunningAttempt, DunningAttemptStatus
from app.models.customer import Customer
from app.models.event_store import InboundEvent
from app.models.lifecycle import SubscriptionStateTransition
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.processor import ProcessorEvent
from app.services import event_store
from app.services.events import dispatcher as dispatcher_module
from app.services.events.dispatcher import EventDispatcher
from app.services.events.types import ProcessorEventType
from tests.mocks import (
    dispute_object,
    invoice_object,
    payment_intent_object,
    processor_event,
    subscription_object,
)


def _event(event_type, obj, **kwargs) -> ProcessorEvent:
    return ProcessorEvent.from_payload(processor_event(event_type, obj, **kwargs))


def _stored(db_session, external_id) -> InboundEvent:
    return db_session.query(InboundEvent).filter(InboundEvent.external_id == external_id).one()


def test_subscription_created_materializes_customer_from_payload(db_session, dispatcher, processor_client):
    owner = uuid.uuid4()
    customer = {
        "id": "cus_new",
        "email": "grace@example.com",
        "name": "Grace Hopper",
        "metadata": {"owner_id": str(owner)},
    }
    event = _event(
        "customer.subscription.created",
        subscription_object("sub_new", customer, "trialing"),
    )

    outcome = dispatcher.process(db_session, event)

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    created = db_session.query(Customer).filter(Customer.external_id == "cus_new").one()
    assert created.owner_id == owner
    subscription = db_session.query(Subscription).filter(Subscription.external_id == "sub_new").one()
    assert subscription.status == SubscriptionStatus.trialing
    assert subscription.customer_id == created.id
    assert subscription.plan_name == "Pro"
    processor_client.retrieve_customer.assert_not_called()
    assert _stored(db_session, event.id).is_processed


def test_subscription_created_fetches_unknown_customer(db_session, dispatcher, processor_client):
    processor_client.retrieve_customer.return_value = {
        "id": "cus_fetched",
        "email": "linus@example.com",
        "metadata": {"owner_id": str(uuid.uuid4())},
    }
    event = _event("customer.subscription.created", subscription_object("sub_f", "cus_fetched"))

    outcome = dispatcher.process(db_session, event)

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    processor_client.retrieve_customer.assert_called_once_with("cus_fetched")
    assert db_session.query(Customer).filter(Customer.email == "linus@example.com").count() == 1


def test_subscription_created_for_existing_is_an_update(db_session, dispatcher, subscription):
    event = _event(
        "customer.subscription.created",
        subscription_object("sub_test", "cus_test", "past_due"),
    )

    dispatcher.process(db_session, event)

    assert db_session.query(Subscription).count() == 1
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.past_due


def test_update_for_unknown_subscription_is_skipped(db_session, dispatcher, customer):
    event = _event("customer.subscription.updated", subscription_object("sub_missing"))

    outcome = dispatcher.process(db_session, event)

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    assert db_session.query(Subscription).count() == 0


def test_billing_cycle_scenario(db_session, dispatcher, notifier, subscription):
    created = _event("invoice.created", invoice_object())
    failed = _event("invoice.payment_failed", invoice_object())
    paid = _event("invoice.paid", invoice_object("in_test", status="paid", amount_paid=2500))

    assert dispatcher.process(db_session, created) == dispatcher_module.OUTCOME_PROCESSED
    assert dispatcher.process(db_session, failed) == dispatcher_module.OUTCOME_PROCESSED

    invoice = db_session.query(Invoice).filter(Invoice.external_id == "in_test").one()
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.past_due
    assert invoice.retry_count == 1
    assert invoice.next_retry_at - invoice.payment_failed_at == timedelta(days=3)
    assert invoice.last_finalization_error == "Payment failed"
    attempt = db_session.query(DunningAttempt).one()
    assert attempt.status == DunningAttemptStatus.scheduled
    transition = db_session.query(SubscriptionStateTransition).one()
    assert transition.reason == "invoice_payment_failed"
    failed_tx = db_session.query(Transaction).one()
    assert failed_tx.status == TransactionStatus.failed
    history = db_session.query(BillingHistoryEntry).filter(
        BillingHistoryEntry.action == "payment_failed"
    ).one()
    assert history.success is False

    assert dispatcher.process(db_session, paid) == dispatcher_module.OUTCOME_PROCESSED

    db_session.refresh(invoice)
    db_session.refresh(attempt)
    assert invoice.status == InvoiceStatus.paid
    assert invoice.retry_count == 0
    assert invoice.next_retry_at is None
    assert attempt.status == DunningAttemptStatus.abandoned
    statuses = sorted(t.status.value for t in db_session.query(Transaction).all())
    assert statuses == ["failed", "succeeded"]
    recipients = [c.args[0] for c in notifier.send.call_args_list]
    assert recipients == ["ada@example.com", "ada@example.com"]


def test_duplicate_delivery_is_applied_once(db_session, dispatcher, notifier, invoice):
    payload = processor_event("invoice.payment_failed", invoice_object(), event_id="evt_dup")

    first = dispatcher.process(db_session, ProcessorEvent.from_payload(payload))
    second = dispatcher.process(db_session, ProcessorEvent.from_payload(payload))

    assert first == dispatcher_module.OUTCOME_PROCESSED
    assert second == dispatcher_module.OUTCOME_DUPLICATE
    assert db_session.query(InboundEvent).count() == 1
    assert db_session.query(Transaction).count() == 1
    assert db_session.query(DunningAttempt).count() == 1
    db_session.refresh(invoice)
    assert invoice.retry_count == 1
    assert notifier.send.call_count == 1


def test_paid_twice_records_one_payment(db_session, dispatcher, notifier, invoice):
    obj = invoice_object(status="paid", amount_paid=2500)

    dispatcher.process(db_session, _event("invoice.paid", obj))
    dispatcher.process(db_session, _event("invoice.payment_succeeded", obj))

    assert db_session.query(Transaction).count() == 1
    assert notifier.send.call_count == 1


def test_unknown_event_type_is_stored_and_ignored(db_session, dispatcher):
    event = _event("customer.created", {"id": "cus_x"}, event_id="evt_unknown")

    outcome = dispatcher.process(db_session, event)

    stored = _stored(db_session, "evt_unknown")
    assert outcome == dispatcher_module.OUTCOME_IGNORED
    assert stored.is_processed
    assert stored.error is None


def test_handler_failure_is_stored_then_replayed(db_session, dispatcher, processor_client):
    processor_client.retrieve_customer.return_value = {"id": "cus_nobody"}
    event = _event(
        "customer.subscription.created",
        subscription_object("sub_r", "cus_nobody"),
        event_id="evt_fail",
    )

    outcome = dispatcher.process(db_session, event)

    stored = _stored(db_session, "evt_fail")
    assert outcome == dispatcher_module.OUTCOME_FAILED
    assert stored.has_failed
    assert stored.error.startswith("ValueError:")
    assert db_session.query(Subscription).count() == 0

    processor_client.retrieve_customer.return_value = {
        "id": "cus_nobody",
        "email": "nobody@example.com",
        "metadata": {"owner_id": str(uuid.uuid4())},
    }
    replayed = dispatcher.replay(db_session, "evt_fail")

    assert replayed.error is None
    assert replayed.processed_at is not None
    assert db_session.query(Subscription).count() == 1


def test_replay_rejects_processed_and_unknown_events(db_session, dispatcher):
    dispatcher.process(db_session, _event("customer.created", {"id": "c"}, event_id="evt_ok"))

    with pytest.raises(HTTPException) as conflict:
        dispatcher.replay(db_session, "evt_ok")
    with pytest.raises(HTTPException) as missing:
        dispatcher.replay(db_session, "evt_missing")

    assert conflict.value.status_code == 409
    assert missing.value.status_code == 404


def _store_unfinished(db_session, payload, error=None, received_ago=None):
    """Store an event as a worker would before it failed or died mid-dispatch."""
    event_store.record_if_new(db_session, payload["id"], payload["type"], payload)
    if error is not None:
        event_store.mark_processed(db_session, payload["id"], error=error)
    if received_ago is not None:
        _stored(db_session, payload["id"]).received_at = datetime.now(timezone.utc) - received_ago
    db_session.commit()


def test_second_replay_of_same_event_is_rejected(db_session, dispatcher, notifier, invoice):
    payload = processor_event("invoice.payment_failed", invoice_object(), event_id="evt_twice")
    _store_unfinished(db_session, payload, error="OperationalError: database gone")

    dispatcher.replay(db_session, "evt_twice")
    with pytest.raises(HTTPException) as conflict:
        dispatcher.replay(db_session, "evt_twice")

    assert conflict.value.status_code == 409
    db_session.refresh(invoice)
    assert invoice.retry_count == 1
    assert db_session.query(DunningAttempt).count() == 1
    assert notifier.send.call_count == 1


def test_replay_loses_to_a_claim_in_progress(db_session, dispatcher, invoice):
    payload = processor_event("invoice.payment_failed", invoice_object(), event_id="evt_race")
    _store_unfinished(db_session, payload, error="OperationalError: database gone")

    # Another worker has claimed the event and not finished dispatching it.
    assert event_store.claim_for_replay(db_session, "evt_race", event_store.stall_cutoff())
    db_session.commit()
    with pytest.raises(HTTPException) as conflict:
        dispatcher.replay(db_session, "evt_race")
    outcome = dispatcher.dispatch(db_session, ProcessorEvent.from_payload(payload))

    assert conflict.value.status_code == 409
    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    db_session.refresh(invoice)
    assert invoice.retry_count == 1
    assert db_session.query(DunningAttempt).count() == 1


def test_stalled_event_is_replayed(db_session, dispatcher, notifier, invoice):
    payload = processor_event("invoice.payment_failed", invoice_object(), event_id="evt_stalled")
    _store_unfinished(db_session, payload, received_ago=timedelta(hours=1))

    redelivered = dispatcher.process(db_session, ProcessorEvent.from_payload(payload))
    replayed = dispatcher.replay(db_session, "evt_stalled")

    assert redelivered == dispatcher_module.OUTCOME_DUPLICATE
    assert replayed.processed_at is not None
    assert replayed.error is None
    db_session.refresh(invoice)
    assert invoice.retry_count == 1
    assert notifier.send.call_count == 1


def test_recently_received_unprocessed_event_is_not_replayed(db_session, dispatcher, invoice):
    payload = processor_event("invoice.payment_failed", invoice_object(), event_id="evt_fresh")
    _store_unfinished(db_session, payload)

    with pytest.raises(HTTPException) as conflict:
        dispatcher.replay(db_session, "evt_fresh")

    assert conflict.value.status_code == 409
    assert not _stored(db_session, "evt_fresh").is_processed
    db_session.refresh(invoice)
    assert invoice.retry_count == 0


def test_failure_after_payment_leaves_invoice_paid(db_session, dispatcher, notifier, invoice, subscription):
    dispatcher.process(
        db_session, _event("invoice.paid", invoice_object(status="paid", amount_paid=2500))
    )

    outcome = dispatcher.process(db_session, _event("invoice.payment_failed", invoice_object()))

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    db_session.refresh(invoice)
    db_session.refresh(subscription)
    assert invoice.status == InvoiceStatus.paid
    assert invoice.retry_count == 0
    assert invoice.next_retry_at is None
    assert subscription.status == SubscriptionStatus.active
    assert db_session.query(DunningAttempt).count() == 0
    assert [t.status for t in db_session.query(Transaction).all()] == [TransactionStatus.succeeded]
    assert notifier.send.call_count == 1


def test_deleted_subscription_stays_canceled(db_session, dispatcher, notifier, subscription):
    start = datetime.now(timezone.utc)
    deleted = _event(
        "customer.subscription.deleted",
        subscription_object(status="canceled"),
        created=start,
    )
    revived = _event(
        "customer.subscription.updated",
        subscription_object(status="active"),
        created=start + timedelta(minutes=1),
    )

    dispatcher.process(db_session, deleted)
    dispatcher.process(db_session, revived)

    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.canceled
    assert subscription.ended_at is not None
    assert notifier.send.call_count == 1


def test_out_of_order_update_is_ignored(db_session, dispatcher, subscription):
    start = datetime.now(timezone.utc)
    newer = _event(
        "customer.subscription.updated",
        subscription_object(status="past_due"),
        created=start,
    )
    older = _event(
        "customer.subscription.updated",
        subscription_object(status="active", amount=1),
        created=start - timedelta(minutes=10),
    )

    dispatcher.process(db_session, newer)
    outcome = dispatcher.process(db_session, older)

    db_session.refresh(subscription)
    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    assert subscription.status == SubscriptionStatus.past_due
    assert subscription.amount == 2500


def test_trial_will_end_sends_reminder(db_session, dispatcher, notifier, subscription):
    trial_end = int((datetime.now(timezone.utc) + timedelta(days=3)).timestamp())
    event = _event(
        "customer.subscription.trial_will_end",
        subscription_object(status="trialing", trial_end=trial_end),
    )

    dispatcher.process(db_session, event)

    notifier.send.assert_called_once()
    assert notifier.send.call_args.args[0] == "ada@example.com"
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active


def test_payment_intent_failure_updates_ledger(db_session, dispatcher, invoice):
    dispatcher.process(db_session, _event("invoice.payment_failed", invoice_object()))
    error = {"code": "card_declined", "message": "Your card was declined."}

    dispatcher.process(
        db_session,
        _event("payment_intent.payment_failed", payment_intent_object(error=error)),
    )

    transaction = db_session.query(Transaction).one()
    assert transaction.failure_code == "card_declined"
    assert transaction.failure_message == "Your card was declined."


def test_dispute_is_recorded_once(db_session, dispatcher, invoice):
    dispatcher.process(
        db_session, _event("invoice.paid", invoice_object(status="paid", amount_paid=2500))
    )
    event = _event("charge.dispute.created", dispute_object())

    dispatcher.process(db_session, event)
    dispatcher.process(db_session, _event("charge.dispute.created", dispute_object()))

    dispute = db_session.query(Dispute).one()
    assert dispute.customer_id == invoice.customer_id
    assert dispute.reason == "fraudulent"


def test_dispute_without_transaction_is_skipped(db_session, dispatcher):
    outcome = dispatcher.process(
        db_session, _event("charge.dispute.created", dispute_object(charge="ch_unknown"))
    )

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    assert db_session.query(Dispute).count() == 0


def test_notifier_errors_do_not_fail_event(db_session, dispatcher, notifier, invoice):
    notifier.send.side_effect = RuntimeError("smtp down")
    event = _event("invoice.payment_failed", invoice_object(), event_id="evt_smtp")

    outcome = dispatcher.process(db_session, event)

    assert outcome == dispatcher_module.OUTCOME_PROCESSED
    assert _stored(db_session, "evt_smtp").error is None


def test_registration_is_closed_after_freeze(dispatcher):
    with pytest.raises(RuntimeError):
        dispatcher.register_handler(ProcessorEventType.invoice_paid, object())

    fresh = EventDispatcher()
    fresh.register_handler(ProcessorEventType.invoice_paid, object())
    with pytest.raises(ValueError):
        fresh.register_handler(ProcessorEventType.invoice_paid, object())


def test_every_event_type_has_a_handler(dispatcher):
    assert set(dispatcher.handlers) == {event_type.value for event_type in ProcessorEventType}
