"""Invoice lifecycle and dunning scheduling.

Two clocks are kept per failed invoice:

* ``Invoice.next_retry_at`` is when the processor is expected to retry the
  charge, taken from the retry schedule indexed by the number of failures
  seen before this one (``3, 5, 7`` days by default; none after that).
* ``DunningAttempt.retry_at`` is when we next remind the customer. One
  attempt is scheduled per observed failure, a fixed horizon after it.

Functions here flush and leave the commit to the handler.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import observe_job
from app.models.billing import Invoice, InvoiceLine, InvoiceStatus
from app.models.collections import DunningAttempt, DunningAttemptStatus
from app.models.customer import Customer
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.processor import InvoiceSnapshot
from app.services import subscription_state
from app.services.common import utcnow
from app.services.email import Notifier, dunning_reminder_email
from app.services.resolvers import resolve_invoice

logger = logging.getLogger(__name__)

PAST_DUE_REASON = "invoice_payment_failed"


def compute_next_retry_at(
    previous_retry_count: int,
    now: datetime,
    schedule: Sequence[int] | None = None,
) -> datetime | None:
    """Return when the processor should next retry, or None once exhausted."""
    schedule = settings.dunning_retry_schedule_days if schedule is None else schedule
    if previous_retry_count < 0 or previous_retry_count >= len(schedule):
        return None
    return now + timedelta(days=schedule[previous_retry_count])


def create_invoice(
    db: Session,
    snapshot: InvoiceSnapshot,
    customer: Customer,
    subscription: Subscription | None = None,
) -> tuple[Invoice, bool]:
    """Insert the invoice and its lines unless the external id is known.

    Returns ``(invoice, created)``.
    """
    existing = resolve_invoice(db, snapshot.external_id)
    if existing:
        return existing, False

    invoice = Invoice(
        external_id=snapshot.external_id,
        customer_id=customer.id,
        subscription_id=subscription.id if subscription else None,
        number=snapshot.number,
        status=snapshot.status,
        currency=snapshot.currency,
        amount_due=snapshot.amount_due,
        amount_paid=snapshot.amount_paid,
        amount_remaining=snapshot.amount_remaining,
        subtotal=snapshot.subtotal,
        tax=snapshot.tax,
        total=snapshot.total,
        hosted_invoice_url=snapshot.hosted_invoice_url,
        invoice_pdf=snapshot.invoice_pdf,
        due_date=snapshot.due_date,
        billing_reason=snapshot.billing_reason,
        collection_method=snapshot.collection_method,
        metadata_=snapshot.metadata,
        retry_count=0,
    )
    db.add(invoice)
    db.flush()
    for line in snapshot.lines:
        db.add(
            InvoiceLine(
                invoice_id=invoice.id,
                external_id=line.external_id,
                description=line.description,
                quantity=line.quantity,
                unit_amount=line.unit_amount,
                amount=line.amount,
                currency=snapshot.currency,
                period_start=line.period_start,
                period_end=line.period_end,
            )
        )
    db.flush()
    logger.info(
        f"Created invoice {invoice.external_id} with {len(snapshot.lines)} line(s)"
    )
    return invoice, True


def _abandon_scheduled(db: Session, invoice: Invoice) -> int:
    attempts = db.scalars(
        select(DunningAttempt)
        .where(DunningAttempt.invoice_id == invoice.id)
        .where(DunningAttempt.status == DunningAttemptStatus.scheduled)
    ).all()
    for attempt in attempts:
        attempt.status = DunningAttemptStatus.abandoned
    return len(attempts)


def mark_paid(
    db: Session,
    invoice: Invoice,
    amount_paid: int,
    now: datetime | None = None,
) -> None:
    """Record a successful payment and clear the dunning state."""
    now = now or utcnow()
    invoice.status = InvoiceStatus.paid
    invoice.amount_paid = amount_paid
    invoice.amount_remaining = 0
    invoice.paid_at = now
    invoice.retry_count = 0
    invoice.payment_failed_at = None
    invoice.next_retry_at = None
    abandoned = _abandon_scheduled(db, invoice)
    db.flush()
    logger.info(
        f"Invoice {invoice.external_id} paid; {abandoned} pending reminder(s) abandoned"
    )


def record_payment_failure(
    db: Session,
    invoice: Invoice,
    failure_message: str | None,
    subscription: Subscription | None = None,
    now: datetime | None = None,
    schedule: Sequence[int] | None = None,
    reminder_days: int | None = None,
) -> DunningAttempt:
    """Advance the invoice's dunning state after a failed payment.

    The linked subscription, which the caller must already hold locked, is
    moved to ``past_due``. Returns the reminder attempt scheduled for this
    failure.
    """
    now = now or utcnow()
    reminder_days = settings.dunning_reminder_days if reminder_days is None else reminder_days

    previous_count = invoice.retry_count or 0
    invoice.next_retry_at = compute_next_retry_at(previous_count, now, schedule)
    invoice.retry_count = previous_count + 1
    invoice.payment_failed_at = now
    invoice.last_finalization_error = failure_message

    if subscription is not None:
        subscription_state.force_status(
            db, subscription, SubscriptionStatus.past_due, PAST_DUE_REASON
        )

    attempt = DunningAttempt(
        invoice_id=invoice.id,
        subscription_id=subscription.id if subscription else invoice.subscription_id,
        customer_id=invoice.customer_id,
        attempt_number=invoice.retry_count,
        retry_at=now + timedelta(days=reminder_days),
        status=DunningAttemptStatus.scheduled,
    )
    db.add(attempt)
    db.flush()
    logger.info(
        f"Invoice {invoice.external_id} payment failed (attempt {invoice.retry_count}); "
        f"next retry {invoice.next_retry_at.isoformat() if invoice.next_retry_at else 'none'}"
    )
    return attempt


def list_due_attempts(db: Session, now: datetime, limit: int = 100) -> list[DunningAttempt]:
    return list(
        db.scalars(
            select(DunningAttempt)
            .where(DunningAttempt.status == DunningAttemptStatus.scheduled)
            .where(DunningAttempt.retry_at <= now)
            .order_by(DunningAttempt.retry_at.asc())
            .limit(limit)
        ).all()
    )


def run_due_attempts(
    db: Session,
    notifier: Notifier,
    now: datetime | None = None,
    limit: int = 100,
) -> dict:
    """Send reminders for every scheduled attempt that has come due.

    Attempts whose invoice is no longer open are abandoned instead. Each
    attempt is committed on its own; reminders are sent after the commit.
    """
    now = now or utcnow()
    started = time.monotonic()
    results = {"executed": 0, "abandoned": 0, "notified": 0}
    status = "success"
    try:
        for attempt in list_due_attempts(db, now, limit):
            invoice = attempt.invoice
            if invoice is None or invoice.status != InvoiceStatus.open:
                attempt.status = DunningAttemptStatus.abandoned
                db.commit()
                results["abandoned"] += 1
                continue

            attempt.status = DunningAttemptStatus.executed
            attempt.executed_at = now
            customer = attempt.customer
            message = dunning_reminder_email(
                customer.name,
                invoice.number,
                invoice.amount_due,
                invoice.currency,
                attempt.attempt_number,
                invoice.hosted_invoice_url,
            )
            to_address = customer.email
            db.commit()
            results["executed"] += 1

            if notifier.send(to_address, message.subject, message.html):
                results["notified"] += 1
            else:
                logger.error(f"Dunning reminder for invoice {invoice.external_id} was not delivered")
    except Exception:
        status = "error"
        db.rollback()
        raise
    finally:
        observe_job("run_dunning_reminders", status, time.monotonic() - started)
    logger.info(
        f"Dunning run: {results['executed']} executed, {results['abandoned']} abandoned"
    )
    return results
