"""Processor event types and handler result structures."""

import enum
from dataclasses import dataclass


class ProcessorEventType(enum.Enum):
    """Processor event types with a registered handler.

    Event naming convention: {object}.{action}
    """

    # Subscription events (4)
    subscription_created = "customer.subscription.created"
    subscription_updated = "customer.subscription.updated"
    subscription_deleted = "customer.subscription.deleted"
    subscription_trial_will_end = "customer.subscription.trial_will_end"

    # Invoice events (4)
    invoice_created = "invoice.created"
    invoice_paid = "invoice.paid"
    invoice_payment_succeeded = "invoice.payment_succeeded"
    invoice_payment_failed = "invoice.payment_failed"

    # Payment events (2)
    payment_intent_succeeded = "payment_intent.succeeded"
    payment_intent_failed = "payment_intent.payment_failed"

    # Dispute events (1)
    dispute_created = "charge.dispute.created"


@dataclass(frozen=True)
class PendingEmail:
    """A customer email to send once the handler's changes are committed."""

    to_address: str
    subject: str
    html_body: str
