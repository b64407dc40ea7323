import time
import uuid

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from visionstudio.core.config import Settings, get_settings
from visionstudio.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from visionstudio.core.logging import bind_request_id, configure_logging, get_logger
from visionstudio.db.init import close_db, init_db
from visionstudio.routers import actions, admin, assets, auth, chat, credits, images

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

# Paths polled by load balancers; not worth a log line each
_UNLOGGED_PATHS = {"/health"}

app = FastAPI(
    title="Vision Studio API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    structlog.contextvars.clear_contextvars()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    bind_request_id(request_id)
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    if request.url.path not in _UNLOGGED_PATHS:
        emit = log.warning if response.status_code >= 500 else log.info
        emit(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(auth.router, prefix="/v1/auth", tags=["auth"])
app.include_router(actions.router, prefix="/v1/actions", tags=["actions"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])
app.include_router(chat.router, prefix="/v1/chat", tags=["chat"])
app.include_router(images.router, prefix="/v1/images", tags=["images"])
app.include_router(assets.router, prefix="/v1/assets", tags=["assets"])
app.include_router(admin.router, prefix="/v1/admin", tags=["admin"])


def _init_sentry(cfg: Settings) -> None:
    if not cfg.sentry_dsn:
        return
    sentry_sdk.init(dsn=cfg.sentry_dsn, environment=cfg.env, traces_sample_rate=0.1, send_default_pii=False)
    log.info("sentry_enabled", environment=cfg.env)


@app.on_event("startup")
async def startup():
    _init_sentry(settings)
    await init_db()
    log.info("startup", store_backend=settings.store_backend, storage_backend=settings.storage_backend)


@app.on_event("shutdown")
async def shutdown():
    await close_db()
    log.info("shutdown")


@app.get("/health")
async def health():
    """Liveness plus the persistence mode in use."""
    return {"status": "ok", "store_backend": settings.store_backend}
