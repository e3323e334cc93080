import logging
from collections.abc import Callable

from sqlalchemy.orm import Session

from app.models.customer import Customer
from app.schemas.processor import CustomerHints
from app.services.processor_client import ProcessorClient
from app.services.resolvers import resolve_customer, resolve_or_create_customer

logger = logging.getLogger(__name__)


def materialize_customer(
    db: Session,
    external_id: str | None,
    hints: CustomerHints,
    client_factory: Callable[[], ProcessorClient],
) -> Customer:
    """Return the local customer, creating it on first sight.

    When the event payload does not carry the owner id and email, the
    customer object is fetched from the processor API. Raises ValueError if
    the customer still cannot be created, so the event is stored as failed
    and can be replayed.
    """
    if not external_id:
        raise ValueError("Event does not reference a customer")
    customer = resolve_customer(db, external_id)
    if customer:
        return customer
    if not hints.is_complete:
        logger.info(f"Fetching customer {external_id} from the processor")
        fetched = client_factory().retrieve_customer(external_id)
        hints = hints.merged_with(CustomerHints.from_processor(fetched))
    customer = resolve_or_create_customer(db, external_id, hints)
    if customer is None:
        raise ValueError(f"Customer {external_id} has no owner id or email")
    return customer
