"""Subscription status machine.

Every status change is written together with a
:class:`SubscriptionStateTransition` row in the caller's transaction; the
functions here flush but never commit. ``canceled`` is terminal.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from app.models.customer import Customer
from app.models.lifecycle import SubscriptionStateTransition
from app.models.subscription import (
    TERMINAL_SUBSCRIPTION_STATUSES,
    Subscription,
    SubscriptionStatus,
)
from app.schemas.processor import SubscriptionChange
from app.services.common import as_utc, utcnow

logger = logging.getLogger(__name__)


def _record_transition(
    db: Session,
    subscription: Subscription,
    from_status: SubscriptionStatus | None,
    to_status: SubscriptionStatus,
    reason: str | None,
) -> SubscriptionStateTransition:
    transition = SubscriptionStateTransition(
        subscription_id=subscription.id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
    )
    db.add(transition)
    return transition


def _copy_fields(subscription: Subscription, change: SubscriptionChange) -> None:
    subscription.plan_name = change.plan_name or subscription.plan_name
    subscription.amount = change.amount
    subscription.currency = change.currency
    subscription.billing_interval = change.billing_interval
    subscription.current_period_start = change.current_period_start
    subscription.current_period_end = change.current_period_end
    subscription.trial_end = change.trial_end
    subscription.cancel_at_period_end = change.cancel_at_period_end
    if change.canceled_at is not None:
        subscription.canceled_at = change.canceled_at


def _is_stale(subscription: Subscription, event_time: datetime | None) -> bool:
    last_seen = as_utc(subscription.last_event_timestamp)
    if event_time is None or last_seen is None:
        return False
    return as_utc(event_time) < last_seen


def _touch(subscription: Subscription, event_time: datetime | None) -> None:
    if event_time is not None:
        subscription.last_event_timestamp = event_time


def create(
    db: Session,
    customer: Customer,
    change: SubscriptionChange,
    reason: str | None = None,
    event_time: datetime | None = None,
) -> Subscription:
    """Insert a subscription with its initial transition (no from-status)."""
    subscription = Subscription(
        external_id=change.external_id,
        customer_id=customer.id,
        status=change.status,
    )
    _copy_fields(subscription, change)
    if change.status == SubscriptionStatus.canceled:
        subscription.ended_at = utcnow()
    _touch(subscription, event_time)
    db.add(subscription)
    db.flush()
    _record_transition(db, subscription, None, change.status, reason)
    db.flush()
    logger.info(
        f"Created subscription {subscription.external_id} in status {change.status.value}"
    )
    return subscription


def apply(
    db: Session,
    subscription: Subscription,
    change: SubscriptionChange,
    reason: str | None = None,
    event_time: datetime | None = None,
) -> bool:
    """Bring ``subscription`` in line with the processor-reported ``change``.

    Returns True when the status changed. Fields are refreshed whether or
    not the status moved. Events older than the last applied one and
    attempts to leave ``canceled`` are ignored.
    """
    if _is_stale(subscription, event_time):
        logger.info(
            f"Ignoring stale event for subscription {subscription.external_id}: "
            f"{event_time.isoformat()} is older than the last applied event"
        )
        return False
    if (
        subscription.status in TERMINAL_SUBSCRIPTION_STATUSES
        and change.status != subscription.status
    ):
        logger.info(
            f"Subscription {subscription.external_id} is {subscription.status.value}; "
            f"ignoring reported status {change.status.value}"
        )
        return False

    previous = subscription.status
    _copy_fields(subscription, change)
    _touch(subscription, event_time)
    if change.status == previous:
        db.flush()
        return False

    subscription.status = change.status
    if change.status == SubscriptionStatus.canceled:
        now = utcnow()
        subscription.canceled_at = subscription.canceled_at or now
        subscription.ended_at = subscription.ended_at or now
    _record_transition(db, subscription, previous, change.status, reason)
    db.flush()
    logger.info(
        f"Subscription {subscription.external_id} moved "
        f"{previous.value} -> {change.status.value}"
    )
    return True


def cancel(
    db: Session,
    subscription: Subscription,
    now: datetime | None = None,
    reason: str | None = None,
    event_time: datetime | None = None,
) -> bool:
    """Force the subscription to ``canceled`` whatever its current status."""
    now = now or utcnow()
    previous = subscription.status
    subscription.status = SubscriptionStatus.canceled
    subscription.ended_at = now
    if subscription.canceled_at is None:
        subscription.canceled_at = now
    if event_time is not None and not _is_stale(subscription, event_time):
        subscription.last_event_timestamp = event_time
    if previous == SubscriptionStatus.canceled:
        db.flush()
        return False
    _record_transition(db, subscription, previous, SubscriptionStatus.canceled, reason)
    db.flush()
    logger.info(f"Subscription {subscription.external_id} canceled (was {previous.value})")
    return True


def force_status(
    db: Session,
    subscription: Subscription,
    status: SubscriptionStatus,
    reason: str,
) -> bool:
    """Move the subscription to ``status`` as a side effect of another entity.

    Used when an invoice event implies a subscription status. A canceled
    subscription is left alone.
    """
    previous = subscription.status
    if previous == status:
        return False
    if previous in TERMINAL_SUBSCRIPTION_STATUSES:
        logger.info(
            f"Not moving {previous.value} subscription {subscription.external_id} "
            f"to {status.value}"
        )
        return False
    subscription.status = status
    _record_transition(db, subscription, previous, status, reason)
    db.flush()
    logger.info(
        f"Subscription {subscription.external_id} moved {previous.value} -> "
        f"{status.value} ({reason})"
    )
    return True
