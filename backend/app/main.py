import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.extraction import router as extraction_router
from app.api.v1.signups import router as signups_router
from app.core.config import get_settings
from app.services.recurring_jobs import start_extraction_worker, start_stuck_job_sweeper
from app.utils.alerting import alert_tracker
from app.utils.rate_limit import allow_api_request, get_client_ip

settings = get_settings()
_extraction_worker_task = None
_stuck_job_sweeper_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Bet Slip Sign-ups API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _extraction_worker_task, _stuck_job_sweeper_task
    if not (settings.enable_recurring_jobs and settings.enable_extraction_worker):
        return
    if _extraction_worker_task is None:
        _extraction_worker_task = start_extraction_worker()
    if _stuck_job_sweeper_task is None:
        _stuck_job_sweeper_task = start_stuck_job_sweeper()
    logger.info("Extraction worker and stuck-job sweeper started")


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _extraction_worker_task, _stuck_job_sweeper_task
    if _extraction_worker_task is not None:
        _extraction_worker_task.cancel()
        _extraction_worker_task = None
    if _stuck_job_sweeper_task is not None:
        _stuck_job_sweeper_task.cancel()
        _stuck_job_sweeper_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

# Extraction routes first: their static segments must win over /signups/{signup_id}.
app.include_router(extraction_router, prefix="/api/v1", tags=["extraction"])
app.include_router(signups_router, prefix="/api/v1", tags=["signups"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal server error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg", ""), "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"detail": {"code": "validation_error", "message": "Invalid request", "details": {"errors": errors}}},
    )


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.middleware("http")
async def api_rate_limit_middleware(request: Request, call_next):
    if request.method == "OPTIONS":
        return await call_next(request)
    if not request.url.path.startswith("/api/v1"):
        return await call_next(request)

    if not get_settings().rate_limit_api_enabled:
        return await call_next(request)

    if not allow_api_request(get_client_ip(request) or "unknown"):
        alert_tracker.record("RATE_LIMIT_BLOCKED", {"path": request.url.path})
        return JSONResponse(status_code=429, content={"detail": "Too Many Requests"})

    return await call_next(request)


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    headers.setdefault("X-Content-Type-Options", "nosniff")
    headers.setdefault("X-Frame-Options", "DENY")
    headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'; base-uri 'none'")
    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
