"""Middleware configuration for FastAPI application"""
import logging
import uuid
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sadqa.core.config import settings
from sadqa.core.logging import request_id_var
from sadqa.core.security import log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

# Probes are only access-logged when they fail
QUIET_PATHS = ("/health", "/metrics")
LOCAL_ORIGINS = ("http://localhost:3000", "http://127.0.0.1:3000")


def get_allowed_origins():
    """Frontend origin, plus the local dev server outside production"""
    origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        origins.extend(origin for origin in LOCAL_ORIGINS if origin not in origins)
    return origins


def setup_cors_middleware(app):
    """Allow the donation frontend to call the API with its session cookie"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


async def access_log_middleware(request: Request, call_next):
    """Tag every response with a correlation id and log API access"""
    status_code = 500
    error = None
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    token = request_id_var.set(request_id)

    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-ID"] = request_id
        return response
    except Exception as e:
        error = str(e)
        security_logger.error(f"Request failed before a response was produced: {error}", exc_info=True)
        raise
    finally:
        if request.url.path not in QUIET_PATHS or status_code >= 400:
            log_api_access(request, status_code, error)
        request_id_var.reset(token)


async def global_exception_handler(request: Request, exc: Exception):
    """Last-resort handler: log with the correlation id and hide internals from the caller"""
    request_id = request.headers.get("X-Request-ID") or request_id_var.get()
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "requestId": request_id}
    )
