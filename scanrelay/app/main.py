import time
import uuid
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import close_pools, get_conn
from .errors import ScannerError
from .json_log import json_log
from .routers.scanner import hub as scanner_hub, router as scanner_router

app = FastAPI(title="Pharmacy Scanner Relay API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)

# Paths polled by load balancers and by the phone page; kept out of the request log.
_QUIET_PATHS = {"/health", "/scan/ping"}


def _expose_details() -> bool:
    return settings.env in {"local", "dev"}


def _request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def _probe_db() -> None:
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1 AS ok")
            cur.fetchone()


@app.exception_handler(ScannerError)
def _scanner_error(_req: Request, exc: ScannerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: RequestValidationError):
    content = {"detail": "validation failed", "code": "validation_failed"}
    if _expose_details():
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _request_id(req)
    json_log("error", "http.request.unhandled", request_id=rid, method=req.method, path=req.url.path, error=str(exc))
    content = {"detail": "internal error", "request_id": rid}
    if _expose_details():
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.monotonic()
    fields = {
        "request_id": rid,
        "method": request.method,
        "path": request.url.path,
        "client_ip": (request.client.host if request.client else None),
    }

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log("error", "http.request.error", duration_ms=int((time.monotonic() - started) * 1000), error=str(exc), **fields)
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if fields["path"] not in _QUIET_PATHS:
        json_log(
            "info",
            "http.request",
            status_code=response.status_code,
            duration_ms=int((time.monotonic() - started) * 1000),
            **fields,
        )
    return response


# The desktop POS and the phone scanner page are served from the frontend origin(s).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(scanner_router)


@app.on_event("startup")
def _startup():
    try:
        _probe_db()
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    except Exception as exc:
        # The phone page keeps retrying; a cold database must not keep the API down.
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=str(exc))


@app.on_event("shutdown")
async def _shutdown():
    await scanner_hub.close_all()
    close_pools()


@app.get("/health")
def health(req: Request):
    try:
        _probe_db()
        db_error = None
    except Exception as exc:
        db_error = str(exc)
    content = {
        "status": "ok" if db_error is None else "degraded",
        "db": "ok" if db_error is None else "down",
        "service": "scanner-relay",
        "env": settings.env,
        "version": settings.api_version,
        "scanner_sessions": len(scanner_hub),
        "request_id": _request_id(req),
    }
    if db_error is None:
        return content
    if _expose_details():
        content["error"] = db_error
    return JSONResponse(status_code=503, content=content)


@app.get("/meta")
def meta():
    return {
        "service": "scanner-relay",
        "version": settings.api_version,
        "env": settings.env,
        "started_at": STARTED_AT_UTC.isoformat(),
        "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
    }
