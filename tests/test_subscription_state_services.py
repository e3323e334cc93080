"""Tests for the subscription status machine."""

from datetime import datetime, timedelta, timezone

from app.models.lifecycle import SubscriptionStateTransition
from app.models.subscription import SubscriptionStatus
from app.schemas.processor import SubscriptionChange
from app.services import subscription_state
from app.services.common import as_utc


def _change(status: SubscriptionStatus, **overrides) -> SubscriptionChange:
    data = {
        "external_id": "sub_test",
        "customer_external_id": "cus_test",
        "status": status,
        "plan_name": "Pro",
        "amount": 2500,
        "currency": "usd",
        "billing_interval": "month",
    }
    data.update(overrides)
    return SubscriptionChange(**data)


def _transitions(db_session, subscription):
    return (
        db_session.query(SubscriptionStateTransition)
        .filter(SubscriptionStateTransition.subscription_id == subscription.id)
        .order_by(SubscriptionStateTransition.created_at)
        .all()
    )


def test_create_records_initial_transition(db_session, customer):
    change = _change(
        SubscriptionStatus.trialing,
        customer_external_id=customer.external_id,
        external_id="sub_new",
    )

    subscription = subscription_state.create(db_session, customer, change, reason="created")
    db_session.commit()

    transitions = _transitions(db_session, subscription)
    assert subscription.status == SubscriptionStatus.trialing
    assert len(transitions) == 1
    assert transitions[0].from_status is None
    assert transitions[0].to_status == SubscriptionStatus.trialing


def test_apply_status_change_appends_transition(db_session, subscription):
    changed = subscription_state.apply(
        db_session, subscription, _change(SubscriptionStatus.past_due), reason="updated"
    )
    db_session.commit()

    transitions = _transitions(db_session, subscription)
    assert changed is True
    assert subscription.status == SubscriptionStatus.past_due
    assert len(transitions) == 1
    assert transitions[0].from_status == SubscriptionStatus.active
    assert transitions[0].to_status == SubscriptionStatus.past_due
    assert transitions[0].reason == "updated"


def test_apply_same_status_refreshes_fields_only(db_session, subscription):
    change = _change(SubscriptionStatus.active, amount=4900, plan_name="Business")

    changed = subscription_state.apply(db_session, subscription, change)
    db_session.commit()

    assert changed is False
    assert subscription.amount == 4900
    assert subscription.plan_name == "Business"
    assert _transitions(db_session, subscription) == []


def test_apply_ignores_stale_event(db_session, subscription):
    newer = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    subscription_state.apply(
        db_session, subscription, _change(SubscriptionStatus.past_due), event_time=newer
    )
    db_session.commit()

    changed = subscription_state.apply(
        db_session,
        subscription,
        _change(SubscriptionStatus.active, amount=1),
        event_time=newer - timedelta(minutes=5),
    )
    db_session.commit()

    assert changed is False
    assert subscription.status == SubscriptionStatus.past_due
    assert subscription.amount == 2500
    assert as_utc(subscription.last_event_timestamp) == newer


def test_apply_accepts_event_with_equal_timestamp(db_session, subscription):
    moment = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)
    subscription_state.apply(
        db_session, subscription, _change(SubscriptionStatus.past_due), event_time=moment
    )
    db_session.commit()

    changed = subscription_state.apply(
        db_session, subscription, _change(SubscriptionStatus.active), event_time=moment
    )

    assert changed is True
    assert subscription.status == SubscriptionStatus.active


def test_canceled_is_terminal(db_session, subscription):
    subscription_state.cancel(db_session, subscription)
    db_session.commit()

    changed = subscription_state.apply(
        db_session, subscription, _change(SubscriptionStatus.active)
    )
    forced = subscription_state.force_status(
        db_session, subscription, SubscriptionStatus.past_due, "invoice_payment_failed"
    )
    db_session.commit()

    assert changed is False
    assert forced is False
    assert subscription.status == SubscriptionStatus.canceled
    assert len(_transitions(db_session, subscription)) == 1


def test_cancel_sets_end_timestamps(db_session, subscription):
    now = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

    changed = subscription_state.cancel(db_session, subscription, now=now, reason="deleted")
    db_session.commit()

    assert changed is True
    assert as_utc(subscription.ended_at) == now
    assert as_utc(subscription.canceled_at) == now
    transition = _transitions(db_session, subscription)[0]
    assert transition.from_status == SubscriptionStatus.active
    assert transition.to_status == SubscriptionStatus.canceled


def test_cancel_already_canceled_writes_no_transition(db_session, subscription):
    subscription_state.cancel(db_session, subscription)
    db_session.commit()

    changed = subscription_state.cancel(db_session, subscription)
    db_session.commit()

    assert changed is False
    assert len(_transitions(db_session, subscription)) == 1


def test_force_status_records_reason(db_session, subscription):
    forced = subscription_state.force_status(
        db_session, subscription, SubscriptionStatus.past_due, "invoice_payment_failed"
    )
    again = subscription_state.force_status(
        db_session, subscription, SubscriptionStatus.past_due, "invoice_payment_failed"
    )
    db_session.commit()

    transitions = _transitions(db_session, subscription)
    assert forced is True
    assert again is False
    assert len(transitions) == 1
    assert transitions[0].reason == "invoice_payment_failed"
