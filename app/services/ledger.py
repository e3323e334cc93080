"""Billing audit writer.

Contract: billing state is applied exactly once; audit rows are best-effort.
Each write here runs inside its own SAVEPOINT. If it fails, only the
savepoint is rolled back, a warning is logged and ``None`` is returned, so a
broken audit table can never undo or block the state change that is being
described. None of these functions commit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import EventSeverity, EventSource, PaymentEventLog
from app.models.billing import (
    BillingHistoryEntry,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.services.common import utcnow

logger = logging.getLogger(__name__)


def _write(db: Session, row, label: str):
    try:
        with db.begin_nested():
            db.add(row)
            db.flush()
    except Exception as exc:
        logger.warning(f"Audit write for {label} failed and was skipped: {exc}")
        return None
    return row


def record_transaction(
    db: Session,
    *,
    customer_id: uuid.UUID,
    amount: int,
    currency: str,
    status: TransactionStatus,
    transaction_type: TransactionType = TransactionType.payment,
    subscription_id: uuid.UUID | None = None,
    invoice_id: uuid.UUID | None = None,
    payment_intent_external_id: str | None = None,
    charge_external_id: str | None = None,
    description: str | None = None,
    failure_code: str | None = None,
    failure_message: str | None = None,
    now: datetime | None = None,
) -> Transaction | None:
    now = now or utcnow()
    transaction = Transaction(
        customer_id=customer_id,
        subscription_id=subscription_id,
        invoice_id=invoice_id,
        payment_intent_external_id=payment_intent_external_id,
        charge_external_id=charge_external_id,
        transaction_type=transaction_type,
        status=status,
        amount=amount,
        currency=currency,
        description=description,
        failure_code=failure_code,
        failure_message=failure_message,
        succeeded_at=now if status == TransactionStatus.succeeded else None,
        failed_at=now if status == TransactionStatus.failed else None,
    )
    return _write(db, transaction, "transaction")


def add_billing_history_entry(
    db: Session,
    *,
    customer_id: uuid.UUID,
    action: str,
    description: str,
    amount: int | None = None,
    currency: str = "usd",
    success: bool = True,
    subscription_id: uuid.UUID | None = None,
    invoice_id: uuid.UUID | None = None,
    metadata: dict | None = None,
) -> BillingHistoryEntry | None:
    entry = BillingHistoryEntry(
        customer_id=customer_id,
        subscription_id=subscription_id,
        invoice_id=invoice_id,
        action=action,
        description=description,
        amount=amount,
        currency=currency,
        success=success,
        metadata_=metadata,
    )
    return _write(db, entry, f"billing history ({action})")


def log_payment_event(
    db: Session,
    event_type: str,
    *,
    severity: EventSeverity = EventSeverity.info,
    source: EventSource = EventSource.webhook,
    customer_id: uuid.UUID | None = None,
    subscription_id: uuid.UUID | None = None,
    invoice_id: uuid.UUID | None = None,
    transaction_id: uuid.UUID | None = None,
    inbound_event_id: str | None = None,
    event_data: dict | None = None,
) -> PaymentEventLog | None:
    entry = PaymentEventLog(
        event_type=event_type,
        severity=severity,
        source=source,
        customer_id=customer_id,
        subscription_id=subscription_id,
        invoice_id=invoice_id,
        transaction_id=transaction_id,
        inbound_event_id=inbound_event_id,
        event_data=event_data,
    )
    return _write(db, entry, f"payment event ({event_type})")


def update_transaction_status(
    db: Session,
    payment_intent_external_id: str,
    status: TransactionStatus,
    *,
    failure_code: str | None = None,
    failure_message: str | None = None,
    now: datetime | None = None,
) -> int:
    """Move ledger rows of a payment intent to ``status``.

    Returns the number of rows updated, or 0 if the update had to be skipped.
    """
    now = now or utcnow()
    try:
        with db.begin_nested():
            transactions = db.scalars(
                select(Transaction).where(
                    Transaction.payment_intent_external_id == payment_intent_external_id
                )
            ).all()
            for transaction in transactions:
                transaction.status = status
                if status == TransactionStatus.succeeded:
                    transaction.succeeded_at = now
                elif status == TransactionStatus.failed:
                    transaction.failed_at = now
                    transaction.failure_code = failure_code
                    transaction.failure_message = failure_message
            db.flush()
    except Exception as exc:
        logger.warning(
            f"Transaction status update for {payment_intent_external_id} "
            f"failed and was skipped: {exc}"
        )
        return 0
    return len(transactions)
