import logging
import time
import traceback
import uuid
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv

# Load .env from the project root wherever uvicorn is started from
_PROJ_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(_PROJ_ROOT / ".env")

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlmodel import Session
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from reconciler.api.admin import router as admin_router
from reconciler.api.payments import router as payments_router
from reconciler.core.config import get_forwarded_allow_ips, get_webhook_api_keys, settings
from reconciler.core.database import engine, init_db, ping_db
from reconciler.core.rate_limit import limiter
from reconciler.logging import request_id_var, setup_logging
from reconciler.models import ErrorLog, SecurityLog

setup_logging(level=logging.INFO)
log = logging.getLogger("reconciler")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info("Webhook API keys configured: %s", len(get_webhook_api_keys()) or "NONE (set WEBHOOK_API_KEYS)")
    yield


app = FastAPI(
    title="Bank Transfer Reconciler",
    description="Gateway webhook ingestion and payment order reconciliation",
    lifespan=lifespan,
)
app.state.limiter = limiter


def _error_response(request: Request, status_code: int, detail: str, headers: dict | None = None) -> JSONResponse:
    rid = getattr(request.state, "request_id", None)
    body = {"error": detail, "status_code": status_code}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    try:
        ip = request.client.host if request.client else None
        with Session(engine) as db:
            db.add(SecurityLog(event="rate_limit", ip=ip, endpoint=request.url.path, detail=str(exc.detail)))
            db.commit()
    except Exception as e:
        log.warning("SecurityLog rate_limit write failed: %s", e)
    return _error_response(request, 429, "Too many requests")


app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)


def jsonable_errors(errs) -> list[dict]:
    return [{"loc": list(e.get("loc") or []), "msg": e.get("msg"), "type": e.get("type")} for e in errs]


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errs = exc.errors()
    log.warning("Request validation error (422): path=%s method=%s detail=%s", request.url.path, request.method, errs)
    rid = getattr(request.state, "request_id", None)
    body = {"error": "Invalid request", "status_code": 422, "detail": jsonable_errors(errs)}
    if rid:
        body["request_id"] = rid
    return JSONResponse(status_code=422, content=body)


@app.exception_handler(HTTPException)
def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(request, exc.status_code, detail, headers=getattr(exc, "headers", None))


@app.exception_handler(Exception)
def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.exception("Unhandled exception: path=%s %s", request.url.path, exc, exc_info=exc)
    try:
        with Session(engine) as db:
            db.add(ErrorLog(
                endpoint=request.url.path,
                method=request.method,
                error_message=str(exc)[:2000],
                stack_trace="".join(traceback.format_exception(type(exc), exc, exc.__traceback__))[:10000],
            ))
            db.commit()
    except Exception as e:
        log.warning("ErrorLog write failed: %s", e)
    return JSONResponse(status_code=500, content={"error": "Unexpected server error"})


@app.middleware("http")
async def request_id_and_latency(request: Request, call_next):
    request.state.request_id = str(uuid.uuid4())
    token = request_id_var.set(request.state.request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    latency_ms = (time.perf_counter() - start) * 1000
    response.headers["X-Request-ID"] = request.state.request_id
    log.info(
        "request_id=%s method=%s path=%s status=%s latency_ms=%.2f",
        request.state.request_id,
        request.method,
        request.url.path,
        response.status_code,
        latency_ms,
    )
    return response


class TrustedProxyHeadersMiddleware:
    """uvicorn's ProxyHeadersMiddleware with FORWARDED_ALLOW_IPS read from settings on each request."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        proxy = ProxyHeadersMiddleware(self.app, trusted_hosts=get_forwarded_allow_ips())
        await proxy(scope, receive, send)


# Outermost: rewrites request.client from X-Forwarded-For, but only when the peer is a trusted proxy
app.add_middleware(TrustedProxyHeadersMiddleware)

app.include_router(payments_router)
app.include_router(admin_router)


@app.get("/health")
def health():
    return {"status": "ok", "database": "ok" if ping_db() else "error", "environment": settings.environment}
