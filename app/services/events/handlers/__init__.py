"""Event handlers module.

Provides handlers for processor events:
- SubscriptionHandler: customer.subscription.* events
- InvoiceHandler: invoice.* events and dunning
- PaymentHandler: payment_intent.* and charge.dispute.created events
"""

from app.services.events.handlers.invoices import InvoiceHandler
from app.services.events.handlers.payments import PaymentHandler
from app.services.events.handlers.subscriptions import SubscriptionHandler

__all__ = [
    "InvoiceHandler",
    "PaymentHandler",
    "SubscriptionHandler",
]
