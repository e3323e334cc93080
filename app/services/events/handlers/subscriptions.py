"""Subscription event handler.

Applies processor subscription events through the subscription state
machine. Subscription handlers never lock invoices.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.audit import EventSeverity
from app.models.subscription import Subscription, SubscriptionStatus
from app.schemas.processor import ProcessorEvent, SubscriptionChange
from app.services import ledger, subscription_state
from app.services.common import utcnow
from app.services.email import subscription_canceled_email, trial_ending_email
from app.services.entity_locks import entity_locks
from app.services.events.handlers._common import materialize_customer
from app.services.events.types import PendingEmail, ProcessorEventType
from app.services.processor_client import get_processor_client
from app.services.resolvers import resolve_subscription

logger = logging.getLogger(__name__)


class SubscriptionHandler:
    """Handler for ``customer.subscription.*`` events."""

    handles = (
        ProcessorEventType.subscription_created,
        ProcessorEventType.subscription_updated,
        ProcessorEventType.subscription_deleted,
        ProcessorEventType.subscription_trial_will_end,
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
        change = SubscriptionChange.from_processor(event.data_object)

        if event_type == ProcessorEventType.subscription_trial_will_end:
            return self._trial_will_end(db, event, change)

        with entity_locks.hold("subscription", change.external_id):
            subscription = resolve_subscription(db, change.external_id, for_update=True)
            if event_type == ProcessorEventType.subscription_deleted:
                return self._deleted(db, event, subscription, change)
            if subscription is None:
                if event_type != ProcessorEventType.subscription_created:
                    logger.warning(
                        f"Subscription {change.external_id} not found for {event.type}; skipping"
                    )
                    return []
                return self._created(db, event, change)
            return self._updated(db, event, subscription, change)

    def _created(
        self, db: Session, event: ProcessorEvent, change: SubscriptionChange
    ) -> list[PendingEmail]:
        customer = materialize_customer(
            db, change.customer_external_id, change.customer_hints, self.client_factory
        )
        subscription = subscription_state.create(
            db, customer, change, reason=event.type, event_time=event.created
        )
        ledger.add_billing_history_entry(
            db,
            customer_id=customer.id,
            subscription_id=subscription.id,
            action="subscription_created",
            description=(
                f"Subscription to {subscription.plan_name or 'plan'} created "
                f"({subscription.status.value})"
            ),
            amount=subscription.amount,
            currency=subscription.currency,
        )
        ledger.log_payment_event(
            db,
            event.type,
            customer_id=customer.id,
            subscription_id=subscription.id,
            inbound_event_id=event.id,
            event_data={"status": subscription.status.value},
        )
        db.commit()
        return []

    def _updated(
        self,
        db: Session,
        event: ProcessorEvent,
        subscription: Subscription,
        change: SubscriptionChange,
    ) -> list[PendingEmail]:
        previous = subscription.status
        changed = subscription_state.apply(
            db, subscription, change, reason=event.type, event_time=event.created
        )
        if changed:
            ledger.add_billing_history_entry(
                db,
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                action="subscription_status_changed",
                description=(
                    f"Subscription status changed from {previous.value} "
                    f"to {subscription.status.value}"
                ),
                amount=subscription.amount,
                currency=subscription.currency,
            )
            ledger.log_payment_event(
                db,
                event.type,
                customer_id=subscription.customer_id,
                subscription_id=subscription.id,
                inbound_event_id=event.id,
                event_data={
                    "from_status": previous.value,
                    "to_status": subscription.status.value,
                },
            )
        db.commit()
        if changed and subscription.status == SubscriptionStatus.canceled:
            return [self._canceled_email(subscription)]
        return []

    def _deleted(
        self,
        db: Session,
        event: ProcessorEvent,
        subscription: Subscription | None,
        change: SubscriptionChange,
    ) -> list[PendingEmail]:
        if subscription is None:
            logger.warning(
                f"Subscription {change.external_id} not found for {event.type}; skipping"
            )
            return []
        changed = subscription_state.cancel(
            db,
            subscription,
            now=self.clock(),
            reason=event.type,
            event_time=event.created,
        )
        ledger.add_billing_history_entry(
            db,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            action="subscription_canceled",
            description=f"Subscription to {subscription.plan_name or 'plan'} canceled",
        )
        ledger.log_payment_event(
            db,
            event.type,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            inbound_event_id=event.id,
        )
        db.commit()
        return [self._canceled_email(subscription)] if changed else []

    def _trial_will_end(
        self, db: Session, event: ProcessorEvent, change: SubscriptionChange
    ) -> list[PendingEmail]:
        subscription = resolve_subscription(db, change.external_id)
        if subscription is None:
            logger.warning(
                f"Subscription {change.external_id} not found for {event.type}; skipping"
            )
            return []
        ledger.log_payment_event(
            db,
            event.type,
            customer_id=subscription.customer_id,
            subscription_id=subscription.id,
            inbound_event_id=event.id,
            severity=EventSeverity.info,
            event_data={"trial_end": change.trial_end.isoformat() if change.trial_end else None},
        )
        db.commit()
        customer = subscription.customer
        message = trial_ending_email(
            customer.name,
            subscription.plan_name,
            change.trial_end.date().isoformat() if change.trial_end else None,
        )
        return [PendingEmail(customer.email, message.subject, message.html)]

    @staticmethod
    def _canceled_email(subscription: Subscription) -> PendingEmail:
        customer = subscription.customer
        message = subscription_canceled_email(customer.name, subscription.plan_name)
        return PendingEmail(customer.email, message.subject, message.html)
