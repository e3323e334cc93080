"""Tests for invoice dunning state and reminder runs."""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.billing import InvoiceLine, InvoiceStatus
from app.models.collections import DunningAttempt, DunningAttemptStatus
from app.models.lifecycle import SubscriptionStateTransition
from app.models.subscription import SubscriptionStatus
from app.schemas.processor import InvoiceSnapshot
from app.services import dunning
from app.services.common import as_utc
from tests.mocks import invoice_object

NOW = datetime(2026, 10, 18, 8, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "previous, expected_days",
    [(0, 3), (1, 5), (2, 7), (3, None), (10, None)],
)
def test_compute_next_retry_at_follows_schedule(previous, expected_days):
    result = dunning.compute_next_retry_at(previous, NOW, schedule=(3, 5, 7))

    if expected_days is None:
        assert result is None
    else:
        assert result == NOW + timedelta(days=expected_days)


def test_compute_next_retry_at_uses_configured_schedule():
    assert dunning.compute_next_retry_at(0, NOW) == NOW + timedelta(days=3)


def test_create_invoice_inserts_lines_once(db_session, customer, subscription):
    snapshot = InvoiceSnapshot.from_processor(invoice_object("in_new"))

    invoice, created = dunning.create_invoice(db_session, snapshot, customer, subscription)
    again, created_again = dunning.create_invoice(db_session, snapshot, customer, subscription)
    db_session.commit()

    assert created is True
    assert created_again is False
    assert again.id == invoice.id
    assert invoice.retry_count == 0
    assert invoice.subscription_id == subscription.id
    lines = db_session.query(InvoiceLine).filter(InvoiceLine.invoice_id == invoice.id).all()
    assert len(lines) == 1


def test_first_failure_schedules_retry_and_reminder(db_session, invoice, subscription):
    attempt = dunning.record_payment_failure(
        db_session,
        invoice,
        "Your card was declined.",
        subscription=subscription,
        now=NOW,
        schedule=(3, 5, 7),
        reminder_days=3,
    )
    db_session.commit()

    assert invoice.retry_count == 1
    assert as_utc(invoice.next_retry_at) - as_utc(invoice.payment_failed_at) == timedelta(days=3)
    assert invoice.last_finalization_error == "Your card was declined."
    assert attempt.attempt_number == 1
    assert attempt.status == DunningAttemptStatus.scheduled
    assert as_utc(attempt.retry_at) == NOW + timedelta(days=3)
    assert attempt.customer_id == invoice.customer_id


def test_failure_moves_subscription_to_past_due(db_session, invoice, subscription):
    dunning.record_payment_failure(db_session, invoice, None, subscription=subscription, now=NOW)
    db_session.commit()

    transitions = db_session.query(SubscriptionStateTransition).all()
    assert subscription.status == SubscriptionStatus.past_due
    assert len(transitions) == 1
    assert transitions[0].reason == dunning.PAST_DUE_REASON


def test_repeated_failures_walk_then_exhaust_schedule(db_session, invoice, subscription):
    gaps = []
    for offset in range(4):
        now = NOW + timedelta(days=offset)
        dunning.record_payment_failure(
            db_session, invoice, None, subscription=subscription, now=now, schedule=(3, 5, 7)
        )
        db_session.commit()
        next_retry = as_utc(invoice.next_retry_at)
        gaps.append(None if next_retry is None else next_retry - now)

    assert gaps == [timedelta(days=3), timedelta(days=5), timedelta(days=7), None]
    assert invoice.retry_count == 4
    assert db_session.query(DunningAttempt).count() == 4
    # Only the first failure changes the subscription status.
    assert db_session.query(SubscriptionStateTransition).count() == 1


def test_mark_paid_resets_dunning_state(db_session, invoice, subscription):
    dunning.record_payment_failure(db_session, invoice, None, subscription=subscription, now=NOW)
    db_session.commit()

    dunning.mark_paid(db_session, invoice, 2500, now=NOW + timedelta(days=1))
    db_session.commit()

    assert invoice.status == InvoiceStatus.paid
    assert invoice.amount_paid == 2500
    assert invoice.amount_remaining == 0
    assert invoice.retry_count == 0
    assert invoice.next_retry_at is None
    assert invoice.payment_failed_at is None
    attempt = db_session.query(DunningAttempt).one()
    assert attempt.status == DunningAttemptStatus.abandoned


def test_run_due_attempts_sends_reminders(db_session, invoice, subscription, notifier):
    dunning.record_payment_failure(
        db_session, invoice, None, subscription=subscription, now=NOW, reminder_days=3
    )
    db_session.commit()

    early = dunning.run_due_attempts(db_session, notifier, now=NOW + timedelta(days=1))
    due = dunning.run_due_attempts(db_session, notifier, now=NOW + timedelta(days=4))

    assert early == {"executed": 0, "abandoned": 0, "notified": 0}
    assert due == {"executed": 1, "abandoned": 0, "notified": 1}
    notifier.send.assert_called_once()
    to_address, subject, _html = notifier.send.call_args.args
    assert to_address == "ada@example.com"
    assert "INV-0001" in subject
    attempt = db_session.query(DunningAttempt).one()
    assert attempt.status == DunningAttemptStatus.executed
    assert attempt.executed_at is not None


def test_run_due_attempts_abandons_settled_invoices(db_session, invoice, subscription, notifier):
    dunning.record_payment_failure(db_session, invoice, None, subscription=subscription, now=NOW)
    db_session.commit()
    invoice.status = InvoiceStatus.void
    db_session.commit()

    result = dunning.run_due_attempts(db_session, notifier, now=NOW + timedelta(days=30))

    assert result == {"executed": 0, "abandoned": 1, "notified": 0}
    notifier.send.assert_not_called()


def test_run_due_attempts_counts_undelivered(db_session, invoice, subscription, notifier):
    notifier.send.return_value = False
    dunning.record_payment_failure(db_session, invoice, None, subscription=subscription, now=NOW)
    db_session.commit()

    result = dunning.run_due_attempts(db_session, notifier, now=NOW + timedelta(days=30))

    assert result == {"executed": 1, "abandoned": 0, "notified": 0}
    assert db_session.query(DunningAttempt).one().status == DunningAttemptStatus.executed
