from app.models.audit import EventSeverity, EventSource, PaymentEventLog  # noqa: F401
from app.models.billing import (  # noqa: F401
    BillingHistoryEntry,
    Dispute,
    Invoice,
    InvoiceLine,
    InvoiceStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from app.models.collections import DunningAttempt, DunningAttemptStatus  # noqa: F401
from app.models.customer import Customer  # noqa: F401
from app.models.event_store import InboundEvent  # noqa: F401
from app.models.lifecycle import SubscriptionStateTransition  # noqa: F401
from app.models.subscription import Subscription, SubscriptionStatus  # noqa: F401
