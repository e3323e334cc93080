"""Lookups of local billing rows by processor external id.

Only customers are ever created on first sight. Subscriptions and invoices
that are not found are reported as ``None`` and the calling handler decides
whether that is a no-op.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.billing import Invoice
from app.models.customer import Customer
from app.models.subscription import Subscription
from app.schemas.processor import CustomerHints

logger = logging.getLogger(__name__)


def _by_external_id(db: Session, model, external_id: str | None, for_update: bool):
    if not external_id:
        return None
    stmt = select(model).where(model.external_id == external_id)
    if for_update:
        stmt = stmt.with_for_update()
    return db.scalars(stmt).first()


def resolve_customer(
    db: Session, external_id: str | None, for_update: bool = False
) -> Customer | None:
    return _by_external_id(db, Customer, external_id, for_update)


def resolve_subscription(
    db: Session, external_id: str | None, for_update: bool = False
) -> Subscription | None:
    return _by_external_id(db, Subscription, external_id, for_update)


def resolve_invoice(
    db: Session, external_id: str | None, for_update: bool = False
) -> Invoice | None:
    return _by_external_id(db, Invoice, external_id, for_update)


def resolve_or_create_customer(
    db: Session, external_id: str | None, hints: CustomerHints
) -> Customer | None:
    """Return the customer for ``external_id``, creating it if needed.

    Creation needs an owner id and an email. The insert runs in a savepoint
    so that losing a race to a concurrent creator only rolls back the
    savepoint; the winner's row is then returned.
    """
    if not external_id:
        return None
    customer = resolve_customer(db, external_id)
    if customer:
        return customer
    if not hints.is_complete:
        logger.warning(
            f"Cannot create customer {external_id}: owner id or email missing"
        )
        return None

    try:
        with db.begin_nested():
            customer = Customer(
                external_id=external_id,
                owner_id=hints.owner_id,
                email=hints.email,
                name=hints.name,
            )
            db.add(customer)
            db.flush()
    except IntegrityError:
        logger.info(f"Customer {external_id} was created concurrently; reusing it")
        return resolve_customer(db, external_id)
    logger.info(f"Created customer {external_id} for owner {hints.owner_id}")
    return customer
