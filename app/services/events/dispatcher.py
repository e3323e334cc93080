"""Central dispatcher for inbound processor events.

Pipeline for one authenticated event:

1. ``record_if_new`` stores the event; a redelivery stops here.
2. The handler registered for the event type applies it and commits.
3. The event is marked processed, with the error text if the handler failed.
4. Customer emails returned by the handler are sent after the commit.

Handler failures never propagate to the caller; they are stored on the
event so it can be replayed.
"""

import logging
import time
from collections.abc import Callable
from datetime import datetime
from types import MappingProxyType

from fastapi import HTTPException
from sqlalchemy.orm import Session

from app.metrics import WEBHOOK_PROCESSING_LATENCY, observe_webhook
from app.models.event_store import InboundEvent
from app.schemas.processor import ProcessorEvent
from app.services import event_store
from app.services.common import utcnow
from app.services.email import Notifier, get_notifier
from app.services.events.types import PendingEmail, ProcessorEventType

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_IGNORED = "ignored"
OUTCOME_FAILED = "failed"


class EventDispatcher:
    """Routes each processor event type to exactly one handler.

    Handlers are registered at startup; ``freeze`` makes the table
    read-only before any event is dispatched.
    """

    def __init__(self, notifier: Notifier | None = None):
        self._handlers: dict[str, object] = {}
        self._frozen = False
        self._notifier = notifier

    def register_handler(self, event_type: ProcessorEventType, handler) -> None:
        """Register the handler for an event type."""
        if self._frozen:
            raise RuntimeError("Cannot register handlers after startup")
        if event_type.value in self._handlers:
            raise ValueError(f"Handler already registered for {event_type.value}")
        self._handlers[event_type.value] = handler

    def freeze(self) -> None:
        self._handlers = MappingProxyType(dict(self._handlers))
        self._frozen = True

    @property
    def handlers(self):
        return self._handlers

    @property
    def notifier(self) -> Notifier:
        if self._notifier is None:
            self._notifier = get_notifier()
        return self._notifier

    def process(self, db: Session, event: ProcessorEvent) -> str:
        """Run one verified event through the pipeline and return its outcome."""
        result = event_store.record_if_new(
            db,
            event.id,
            event.type,
            event.raw_payload or event.model_dump(mode="json"),
            api_version=event.api_version,
        )
        db.commit()
        if not result.is_new:
            observe_webhook(event.type, OUTCOME_DUPLICATE)
            return OUTCOME_DUPLICATE
        return self.dispatch(db, event)

    def dispatch(self, db: Session, event: ProcessorEvent) -> str:
        """Apply a stored event with its handler and record the outcome."""
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info(f"No handler for event type {event.type} ({event.id}); ignoring")
            event_store.mark_processed(db, event.id)
            db.commit()
            observe_webhook(event.type, OUTCOME_IGNORED)
            return OUTCOME_IGNORED

        started = time.monotonic()
        try:
            emails = handler.handle(db, event) or []
        except Exception as exc:
            db.rollback()
            logger.exception(
                f"Handler {handler.__class__.__name__} failed for event "
                f"{event.type} ({event.id}): {exc}"
            )
            event_store.mark_processed(db, event.id, error=f"{exc.__class__.__name__}: {exc}")
            db.commit()
            observe_webhook(event.type, OUTCOME_FAILED)
            return OUTCOME_FAILED
        finally:
            WEBHOOK_PROCESSING_LATENCY.labels(event_type=event.type).observe(
                time.monotonic() - started
            )

        event_store.mark_processed(db, event.id)
        db.commit()
        observe_webhook(event.type, OUTCOME_PROCESSED)
        self._send(emails)
        logger.info(f"Processed event {event.type} ({event.id})")
        return OUTCOME_PROCESSED

    def replay(
        self, db: Session, external_id: str, now: datetime | None = None
    ) -> InboundEvent:
        """Re-dispatch a stored event whose previous processing failed or stalled.

        An event stalls when a worker stopped between storing and finishing
        it; it is replayable once ``settings.event_stall_minutes`` have passed.
        The row is claimed before dispatch, so a concurrent replay of the same
        event gets a 409 instead of applying it a second time.

        Raises:
            HTTPException: 404 if the event is unknown, 409 if it is not
                replayable or another replay already claimed it.
        """
        stored = event_store.InboundEvents.get(db, external_id)
        now = now or utcnow()
        if not event_store.claim_for_replay(
            db, external_id, event_store.stall_cutoff(now), now=now
        ):
            db.rollback()
            raise HTTPException(
                status_code=409, detail="Only failed or stalled events can be replayed"
            )
        db.commit()
        event = ProcessorEvent.from_payload(stored.raw_payload)
        logger.info(f"Replaying event {stored.event_type} ({external_id})")
        self.dispatch(db, event)
        db.refresh(stored)
        return stored

    def _send(self, emails: list[PendingEmail]) -> None:
        for email in emails:
            try:
                delivered = self.notifier.send(email.to_address, email.subject, email.html_body)
            except Exception as exc:
                logger.error(f"Notifier raised while emailing {email.to_address}: {exc}")
                continue
            if not delivered:
                logger.error(f"Email '{email.subject}' to {email.to_address} was not delivered")


def build_dispatcher(
    notifier: Notifier | None = None,
    client_factory: Callable | None = None,
    clock: Callable | None = None,
) -> EventDispatcher:
    """Create a dispatcher with every processor event handler registered."""
    from app.services.events.handlers import (
        InvoiceHandler,
        PaymentHandler,
        SubscriptionHandler,
    )

    options = {}
    if clock is not None:
        options["clock"] = clock
    client_options = dict(options)
    if client_factory is not None:
        client_options["client_factory"] = client_factory

    dispatcher = EventDispatcher(notifier=notifier)
    for handler in (
        SubscriptionHandler(**client_options),
        InvoiceHandler(**client_options),
        PaymentHandler(**options),
    ):
        for event_type in handler.handles:
            dispatcher.register_handler(event_type, handler)
    dispatcher.freeze()
    return dispatcher


# Global dispatcher instance
_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher, initializing handlers if needed."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = build_dispatcher()
        logger.info(
            f"Event handlers initialized for {len(_dispatcher.handlers)} event types"
        )
    return _dispatcher
