"""Payment intent and dispute event handler."""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models.audit import EventSeverity
from app.models.billing import Dispute, Transaction, TransactionStatus
from app.schemas.processor import DisputeSnapshot, PaymentIntentSnapshot, ProcessorEvent
from app.services import ledger
from app.services.common import format_minor_amount, utcnow
from app.services.events.types import PendingEmail, ProcessorEventType

logger = logging.getLogger(__name__)


class PaymentHandler:
    """Handler for ``payment_intent.*`` and ``charge.dispute.created`` events."""

    handles = (
        ProcessorEventType.payment_intent_succeeded,
        ProcessorEventType.payment_intent_failed,
        ProcessorEventType.dispute_created,
    )

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def handle(self, db: Session, event: ProcessorEvent) -> list[PendingEmail]:
        event_type = ProcessorEventType(event.type)
        if event_type == ProcessorEventType.dispute_created:
            self._dispute_created(db, event, DisputeSnapshot.from_processor(event.data_object))
        else:
            self._payment_intent(
                db, event, PaymentIntentSnapshot.from_processor(event.data_object)
            )
        return []

    def _payment_intent(
        self, db: Session, event: ProcessorEvent, snapshot: PaymentIntentSnapshot
    ) -> None:
        succeeded = event.type == ProcessorEventType.payment_intent_succeeded.value
        status = TransactionStatus.succeeded if succeeded else TransactionStatus.failed
        updated = ledger.update_transaction_status(
            db,
            snapshot.external_id,
            status,
            failure_code=snapshot.failure_code,
            failure_message=snapshot.failure_message,
            now=self.clock(),
        )
        if not updated:
            logger.info(
                f"No ledger transaction for payment intent {snapshot.external_id}"
            )
        ledger.log_payment_event(
            db,
            event.type,
            severity=EventSeverity.info if succeeded else EventSeverity.warning,
            inbound_event_id=event.id,
            event_data={
                "payment_intent": snapshot.external_id,
                "amount": snapshot.amount,
                "currency": snapshot.currency,
                "failure_code": snapshot.failure_code,
                "transactions_updated": updated,
            },
        )
        db.commit()

    def _dispute_created(
        self, db: Session, event: ProcessorEvent, snapshot: DisputeSnapshot
    ) -> None:
        existing = db.scalars(
            select(Dispute).where(Dispute.external_id == snapshot.external_id)
        ).first()
        if existing:
            logger.info(f"Dispute {snapshot.external_id} already recorded")
            return
        transaction = None
        if snapshot.charge_external_id:
            transaction = db.scalars(
                select(Transaction)
                .where(Transaction.charge_external_id == snapshot.charge_external_id)
                .order_by(Transaction.created_at.desc())
            ).first()
        if transaction is None:
            logger.warning(
                f"No transaction for disputed charge {snapshot.charge_external_id}; skipping"
            )
            return

        dispute = Dispute(
            external_id=snapshot.external_id,
            transaction_id=transaction.id,
            customer_id=transaction.customer_id,
            amount=snapshot.amount,
            currency=snapshot.currency,
            reason=snapshot.reason,
            status=snapshot.status,
            evidence_due_by=snapshot.evidence_due_by,
            is_charge_refundable=snapshot.is_charge_refundable,
        )
        db.add(dispute)
        db.flush()
        ledger.add_billing_history_entry(
            db,
            customer_id=transaction.customer_id,
            subscription_id=transaction.subscription_id,
            invoice_id=transaction.invoice_id,
            action="dispute_created",
            description=(
                f"Dispute of {format_minor_amount(snapshot.amount, snapshot.currency)} "
                f"opened ({snapshot.reason or 'no reason given'})"
            ),
            amount=snapshot.amount,
            currency=snapshot.currency,
            success=False,
        )
        ledger.log_payment_event(
            db,
            event.type,
            severity=EventSeverity.critical,
            customer_id=transaction.customer_id,
            subscription_id=transaction.subscription_id,
            invoice_id=transaction.invoice_id,
            transaction_id=transaction.id,
            inbound_event_id=event.id,
            event_data={
                "dispute": snapshot.external_id,
                "reason": snapshot.reason,
                "evidence_due_by": (
                    snapshot.evidence_due_by.isoformat() if snapshot.evidence_due_by else None
                ),
            },
        )
        db.commit()
        logger.warning(
            f"Dispute {snapshot.external_id} opened against charge {snapshot.charge_external_id}"
        )
