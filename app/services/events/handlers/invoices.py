"""Invoice event handler.

Lock order is invoice first, then the invoice's subscription.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.audit import EventSeverity
from app.models.billing import Invoice, InvoiceStatus, TransactionStatus
from app.schemas.processor import InvoiceSnapshot, ProcessorEvent
from app.services import dunning, ledger
from app.services.common import format_minor_amount, utcnow
from app.services.email import payment_failed_email, payment_succeeded_email
from app.services.entity_locks import entity_locks
from app.services.events.handlers._common import materialize_customer
from app.services.events.types import PendingEmail, ProcessorEventType
from app.services.processor_client import get_processor_client
from app.services.resolvers import resolve_invoice, resolve_subscription

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Payment failed"


class InvoiceHandler:
    """Handler for ``invoice.*`` events."""

    handles = (
        ProcessorEventType.invoice_created,
        ProcessorEventType.invoice_paid,
        ProcessorEventType.invoice_payment_succeeded,
        ProcessorEventType.invoice_payment_failed,
    )

    def __init__(
        self,
        client_factory: Callable = get_processor_client,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client_factory = client_factory
        self.clock = clock

    def handle(self, db: Session, event: ProcessorEvent) -> list[PendingEmail]:
        event_type = ProcessorEventType(event.type)
        snapshot = InvoiceSnapshot.from_processor(event.data_object)

        with entity_locks.hold("invoice", snapshot.external_id):
            if event_type == ProcessorEventType.invoice_created:
                return self._created(db, event, snapshot)

            invoice = resolve_invoice(db, snapshot.external_id, for_update=True)
            if invoice is None:
                logger.warning(
                    f"Invoice {snapshot.external_id} not found for {event.type}; skipping"
                )
                return []
            if event_type == ProcessorEventType.invoice_payment_failed:
                return self._payment_failed(db, event, invoice, snapshot)
            return self._paid(db, event, invoice, snapshot)

    def _created(
        self, db: Session, event: ProcessorEvent, snapshot: InvoiceSnapshot
    ) -> list[PendingEmail]:
        if resolve_invoice(db, snapshot.external_id):
            logger.info(f"Invoice {snapshot.external_id} already exists; skipping create")
            return []
        customer = materialize_customer(
            db, snapshot.customer_external_id, snapshot.customer_hints, self.client_factory
        )
        subscription = resolve_subscription(db, snapshot.subscription_external_id)
        if snapshot.subscription_external_id and subscription is None:
            logger.warning(
                f"Invoice {snapshot.external_id} references unknown subscription "
                f"{snapshot.subscription_external_id}"
            )
        invoice, created = dunning.create_invoice(db, snapshot, customer, subscription)
        if created:
            ledger.add_billing_history_entry(
                db,
                customer_id=customer.id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.id,
                action="invoice_created",
                description=(
                    f"Invoice {invoice.number or invoice.external_id} for "
                    f"{format_minor_amount(invoice.amount_due, invoice.currency)} created"
                ),
                amount=invoice.amount_due,
                currency=invoice.currency,
            )
            ledger.log_payment_event(
                db,
                event.type,
                customer_id=customer.id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.id,
                inbound_event_id=event.id,
                event_data={"amount_due": invoice.amount_due, "currency": invoice.currency},
            )
        db.commit()
        return []

    def _paid(
        self,
        db: Session,
        event: ProcessorEvent,
        invoice: Invoice,
        snapshot: InvoiceSnapshot,
    ) -> list[PendingEmail]:
        # invoice.paid and invoice.payment_succeeded describe the same payment.
        if invoice.status == InvoiceStatus.paid:
            logger.info(f"Invoice {invoice.external_id} already paid; nothing to record")
            return []
        now = self.clock()
        dunning.mark_paid(db, invoice, snapshot.amount_paid, now=now)
        transaction = ledger.record_transaction(
            db,
            customer_id=invoice.customer_id,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
            payment_intent_external_id=snapshot.payment_intent_external_id,
            charge_external_id=snapshot.charge_external_id,
            status=TransactionStatus.succeeded,
            amount=snapshot.amount_paid,
            currency=invoice.currency,
            description=f"Payment for invoice {invoice.number or invoice.external_id}",
            now=now,
        )
        ledger.add_billing_history_entry(
            db,
            customer_id=invoice.customer_id,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
            action="payment_succeeded",
            description=(
                f"Payment of {format_minor_amount(snapshot.amount_paid, invoice.currency)} "
                f"received for invoice {invoice.number or invoice.external_id}"
            ),
            amount=snapshot.amount_paid,
            currency=invoice.currency,
        )
        ledger.log_payment_event(
            db,
            event.type,
            customer_id=invoice.customer_id,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
            transaction_id=transaction.id if transaction else None,
            inbound_event_id=event.id,
            event_data={"amount_paid": snapshot.amount_paid},
        )
        db.commit()
        customer = invoice.customer
        message = payment_succeeded_email(
            customer.name,
            invoice.number,
            snapshot.amount_paid,
            invoice.currency,
            invoice.hosted_invoice_url,
        )
        return [PendingEmail(customer.email, message.subject, message.html)]

    def _payment_failed(
        self,
        db: Session,
        event: ProcessorEvent,
        invoice: Invoice,
        snapshot: InvoiceSnapshot,
    ) -> list[PendingEmail]:
        # A failure delivered after the invoice was settled must not reopen dunning.
        if invoice.status != InvoiceStatus.open:
            logger.info(
                f"Invoice {invoice.external_id} is {invoice.status.value}; "
                f"ignoring late {event.type} ({event.id})"
            )
            return []
        now = self.clock()
        failure_message = snapshot.failure_message or DEFAULT_FAILURE_MESSAGE
        subscription_external_id = (
            invoice.subscription.external_id if invoice.subscription else None
        )
        with entity_locks.hold("subscription", subscription_external_id):
            subscription = resolve_subscription(
                db, subscription_external_id, for_update=True
            )
            attempt = dunning.record_payment_failure(
                db, invoice, failure_message, subscription=subscription, now=now
            )
            transaction = ledger.record_transaction(
                db,
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.id,
                payment_intent_external_id=snapshot.payment_intent_external_id,
                charge_external_id=snapshot.charge_external_id,
                status=TransactionStatus.failed,
                amount=snapshot.amount_due,
                currency=invoice.currency,
                description=f"Failed payment for invoice {invoice.number or invoice.external_id}",
                failure_code=snapshot.failure_code,
                failure_message=failure_message,
                now=now,
            )
            ledger.add_billing_history_entry(
                db,
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.id,
                action="payment_failed",
                description=(
                    f"Payment of {format_minor_amount(snapshot.amount_due, invoice.currency)} "
                    f"failed for invoice {invoice.number or invoice.external_id}: {failure_message}"
                ),
                amount=snapshot.amount_due,
                currency=invoice.currency,
                success=False,
            )
            ledger.log_payment_event(
                db,
                event.type,
                severity=EventSeverity.warning,
                customer_id=invoice.customer_id,
                subscription_id=invoice.subscription_id,
                invoice_id=invoice.id,
                transaction_id=transaction.id if transaction else None,
                inbound_event_id=event.id,
                event_data={
                    "retry_count": invoice.retry_count,
                    "next_retry_at": (
                        invoice.next_retry_at.isoformat() if invoice.next_retry_at else None
                    ),
                    "dunning_attempt": attempt.attempt_number,
                    "failure_code": snapshot.failure_code,
                },
            )
            db.commit()
        customer = invoice.customer
        message = payment_failed_email(
            customer.name,
            invoice.number,
            snapshot.amount_due,
            invoice.currency,
            failure_message,
            invoice.hosted_invoice_url,
        )
        return [PendingEmail(customer.email, message.subject, message.html)]
