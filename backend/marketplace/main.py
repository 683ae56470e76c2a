import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.api.v1.admin_requests import router as admin_requests_router
from marketplace.api.v1.customer_requests import router as customer_requests_router
from marketplace.api.v1.engineer_offers import router as engineer_offers_router
from marketplace.core.config import get_settings
from marketplace.services.recurring_jobs import (
    start_counter_reset_worker,
    start_expiry_sweep_worker,
    start_notification_outbox_worker,
)

settings = get_settings()
_expiry_sweep_task = None
_counter_reset_task = None
_notification_outbox_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Service Marketplace API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _expiry_sweep_task, _counter_reset_task, _notification_outbox_task
    if not settings.enable_recurring_jobs:
        return
    if _expiry_sweep_task is None:
        _expiry_sweep_task = start_expiry_sweep_worker()
    if _counter_reset_task is None and settings.engineer_service_url:
        _counter_reset_task = start_counter_reset_worker()
    if _notification_outbox_task is None and settings.enable_notification_outbox:
        _notification_outbox_task = start_notification_outbox_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _expiry_sweep_task, _counter_reset_task, _notification_outbox_task
    for task in (_expiry_sweep_task, _counter_reset_task, _notification_outbox_task):
        if task is not None:
            task.cancel()
    _expiry_sweep_task = None
    _counter_reset_task = None
    _notification_outbox_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(customer_requests_router, prefix="/api/v1", tags=["requests"])
app.include_router(engineer_offers_router, prefix="/api/v1", tags=["engineer"])
app.include_router(admin_requests_router, prefix="/api/v1", tags=["admin"])


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(ValueError)
async def _value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})
