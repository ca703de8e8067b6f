import logging
import time
import uuid
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from averon.core.config import settings
from averon.core.errors import (
    AccessError,
    ErrorKind,
    install_request_id_logging,
    log_exception_with_context,
)
from averon.core.request_context import (
    clear_db_metrics,
    get_db_metrics,
    get_request_id,
    reset_db_metrics,
    set_request_id,
)
from averon.core.security import assert_secure_settings
from averon.db.schema_errors import DbErrorClass, classify_db_error

# --- Logging setup ---
# LogRecordFactory runs for EVERY record, globally, so request_id always
# exists even on third-party loggers the filter is not attached to.
_old_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _old_factory(*args, **kwargs)
    if not hasattr(record, "request_id"):
        record.request_id = "-"
    return record


logging.setLogRecordFactory(_record_factory)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(levelname)s %(name)s request_id=%(request_id)s %(message)s",
)
install_request_id_logging()

logger = logging.getLogger("averon")

assert_secure_settings(settings)

enable_docs = settings.enable_docs
logger.info("Startup: environment=%s enable_docs=%s", settings.environment, enable_docs)

# Backend type only (sqlite, postgresql, ...), never credentials
db_backend = (settings.database_url or "").split(":", 1)[0] or "unknown"
logger.info("DB backend detected: %s", db_backend)

SLOW_HTTP_MS = float(settings.slow_http_ms)

_KIND_BY_STATUS = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHENTICATED,
    403: ErrorKind.FORBIDDEN,
    409: ErrorKind.CONFLICT,
}


def _get_request_id(request: Request) -> str:
    """
    Use an incoming request id if present (common in proxies),
    otherwise generate one.
    """
    incoming = request.headers.get("x-request-id") or request.headers.get("x-correlation-id")
    if incoming and incoming.strip():
        return incoming.strip()[:128]
    return uuid.uuid4().hex


def _client_ip(request: Request) -> str:
    xff = request.headers.get("x-forwarded-for")
    if xff:
        first = xff.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _rid_from_request(request: Request) -> str:
    # request.state (set by middleware), then request_context, then generate.
    rid = getattr(request.state, "request_id", None)
    if isinstance(rid, str) and rid.strip():
        return rid
    rid2 = get_request_id()
    if rid2 and rid2 != "-":
        return rid2
    return uuid.uuid4().hex


def _error_payload(
    code: str,
    kind: str,
    message: str,
    request_id: str,
    detail_extra: Optional[dict] = None,
) -> dict:
    """
    Error contract: code/kind/message/request_id at the top level, the same
    fields repeated under `detail` together with any structured extras.
    """
    detail: dict[str, Any] = {"code": code, "kind": kind, "message": message}
    if detail_extra:
        detail.update(detail_extra)
    return {
        "code": code,
        "kind": kind,
        "message": message,
        "request_id": request_id,
        "detail": detail,
    }


def _json_error(status_code: int, payload: dict, request_id: str, headers: Optional[dict] = None) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=payload, headers=headers)
    resp.headers["X-Request-ID"] = request_id
    return resp


# --- Exception handlers (standardized error contract) ---

async def access_error_handler(request: Request, exc: AccessError):
    request_id = _rid_from_request(request)
    detail = exc.to_detail()
    extra = {k: v for k, v in detail.items() if k not in ("code", "kind", "message")}
    payload = _error_payload(exc.code, exc.kind.value, exc.message, request_id, extra)

    if exc.status_code >= 500:
        logger.warning("request failed code=%s kind=%s path=%s", exc.code, exc.kind.value, request.url.path)

    headers = {"WWW-Authenticate": "Bearer"} if exc.kind is ErrorKind.UNAUTHENTICATED else None
    return _json_error(exc.status_code, payload, request_id, headers)


async def http_exception_handler(request: Request, exc: HTTPException):
    """
    A dict detail is preserved and merged into payload["detail"]; a string
    detail becomes the message.
    """
    request_id = _rid_from_request(request)
    kind = _KIND_BY_STATUS.get(exc.status_code)
    kind_value = kind.value if kind else "http_error"
    code = f"HTTP_{exc.status_code}"

    if isinstance(exc.detail, dict):
        msg = exc.detail.get("message")
        if not isinstance(msg, str) or not msg.strip():
            msg = "Request failed."
        code = str(exc.detail.get("code") or code)
        extra = {k: v for k, v in exc.detail.items() if k not in ("code", "kind", "message")}
        payload = _error_payload(code, kind_value, msg, request_id, extra)
    else:
        msg = exc.detail if isinstance(exc.detail, str) else "Request failed."
        payload = _error_payload(code, kind_value, msg, request_id)

    return _json_error(exc.status_code, payload, request_id, getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = _rid_from_request(request)
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    payload = _error_payload(
        "VALIDATION_ERROR",
        ErrorKind.VALIDATION.value,
        "Validation error. Check request body/query parameters.",
        request_id,
        {"errors": errors},
    )
    return _json_error(400, payload, request_id)


async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    """
    Uncaught data-store errors. Driver messages and SQL stay in the log.
    """
    request_id = _rid_from_request(request)
    log_exception_with_context(
        "Unhandled database error",
        request_id=request_id,
        extra={"path": request.url.path, "error": type(exc).__name__},
    )

    if classify_db_error(exc) is DbErrorClass.TIMEOUT:
        payload = _error_payload(
            "DB_TIMEOUT",
            ErrorKind.INTERNAL.value,
            "The database did not respond in time. Please retry.",
            request_id,
            {"retryable": True},
        )
    else:
        payload = _error_payload(
            "DATABASE_ERROR",
            ErrorKind.FATAL.value,
            "Internal Server Error",
            request_id,
        )
    return _json_error(500, payload, request_id)


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AccessError, access_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SQLAlchemyError, sqlalchemy_error_handler)


# --- Observability middleware: request id + timing + structured logs ---

async def request_observability(request: Request, call_next):
    request_id = _get_request_id(request)
    request.state.request_id = request_id
    set_request_id(request_id)
    reset_db_metrics()

    start = time.perf_counter()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = getattr(response, "status_code", 200) or 200
        response.headers["X-Request-ID"] = request_id
        return response

    except Exception:
        # Handled errors never reach here; this is the last-resort 500.
        log_exception_with_context(
            "Unhandled error",
            request_id=request_id,
            extra={"method": request.method, "path": request.url.path},
        )
        payload = _error_payload(
            "INTERNAL_ERROR",
            ErrorKind.FATAL.value,
            "Internal Server Error",
            request_id,
        )
        status_code = 500
        return _json_error(500, payload, request_id)

    finally:
        duration_ms = (time.perf_counter() - start) * 1000.0

        m = get_db_metrics()
        slow_db_total_ms = float(settings.slow_db_total_ms)

        # key=value so it stays grep-friendly
        log_fn = logger.warning if duration_ms >= SLOW_HTTP_MS else logger.info
        log_fn(
            "req request_id=%s method=%s path=%s status=%s duration_ms=%.2f db_total_ms=%.2f db_q=%s db_slowest_ms=%.2f ip=%s",
            request_id,
            request.method,
            request.url.path,
            status_code,
            duration_ms,
            m.total_ms,
            m.query_count,
            m.slowest_ms,
            _client_ip(request),
        )

        if m.total_ms >= slow_db_total_ms:
            logger.warning(
                "slow_db_total request_id=%s method=%s path=%s db_total_ms=%.2f db_q=%s db_slowest_ms=%.2f",
                request_id,
                request.method,
                request.url.path,
                m.total_ms,
                m.query_count,
                m.slowest_ms,
            )

        clear_db_metrics()
        set_request_id(None)


# --- App setup ---
app = FastAPI(
    title="Averon Access API",
    openapi_url="/openapi.json" if enable_docs else None,
    docs_url="/docs" if enable_docs else None,
    redoc_url="/redoc" if enable_docs else None,
)

install_exception_handlers(app)
app.middleware("http")(request_observability)

allowed = settings.origins_list()
logger.info("CORS allow_origins=%s", allowed)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- Include routers (after app creation) ---
from averon.api.v1 import health, invitations, organizations  # noqa: E402

app.include_router(health.router)
app.include_router(invitations.router)
app.include_router(organizations.router)


@app.get("/", include_in_schema=False)
def root():
    return {"status": "Averon access API is running. See /health."}
