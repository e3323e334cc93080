import logging
import time
import uuid

from fastapi import FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.webhooks import router as webhooks_router
from app.errors import register_error_handlers
from app.logging import configure_logging
from app.metrics import REQUEST_COUNT, REQUEST_LATENCY
from app.services.events import get_dispatcher

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="PayFlow Billing API")
register_error_handlers(app)


@app.middleware("http")
async def request_metrics_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        response.headers["X-Request-ID"] = request.state.request_id
        return response
    finally:
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        REQUEST_COUNT.labels(method=request.method, path=path, status=status).inc()
        REQUEST_LATENCY.labels(method=request.method, path=path, status=status).observe(
            time.perf_counter() - started
        )


app.include_router(webhooks_router)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
def _init_dispatcher():
    get_dispatcher()
