from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.common import ListResponse
from app.schemas.events import InboundEventDetail, InboundEventRead, ReplayResult, WebhookAck
from app.services import api_billing_webhooks as api_billing_webhooks_service
from app.services import event_store as event_store_service
from app.services.events import get_dispatcher
from app.services.signature import SIGNATURE_HEADER

router = APIRouter(prefix="/billing/webhooks")


@router.post(
    "/stripe",
    response_model=WebhookAck,
    tags=["billing-webhooks"],
)
async def stripe_webhook(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    background_tasks.add_task(
        api_billing_webhooks_service.ingest_stripe_webhook, body, signature
    )
    return WebhookAck()


@router.get(
    "/events",
    response_model=ListResponse[InboundEventRead],
    tags=["billing-webhook-events"],
)
def list_inbound_events(
    event_type: str | None = None,
    failed_only: bool = False,
    unprocessed_only: bool = False,
    order_by: str = Query(default="received_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = event_store_service.InboundEvents.list(
        db,
        event_type,
        failed_only,
        unprocessed_only,
        order_by,
        order_dir,
        limit,
        offset,
    )
    return {"items": items, "count": len(items), "limit": limit, "offset": offset}


@router.get(
    "/events/{external_id}",
    response_model=InboundEventDetail,
    tags=["billing-webhook-events"],
)
def get_inbound_event(external_id: str, db: Session = Depends(get_db)):
    return event_store_service.InboundEvents.get(db, external_id)


@router.post(
    "/events/{external_id}/replay",
    response_model=ReplayResult,
    tags=["billing-webhook-events"],
)
def replay_inbound_event(external_id: str, db: Session = Depends(get_db)):
    event = get_dispatcher().replay(db, external_id)
    return ReplayResult(
        external_id=event.external_id,
        processed_at=event.processed_at,
        error=event.error,
    )
