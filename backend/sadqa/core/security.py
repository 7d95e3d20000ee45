"""Caller identity dependencies and API access logging"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from fastapi import Depends, HTTPException, Request
from sadqa.core.logging import request_id_var
from sadqa.db import redis as redis_store

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class CallerIdentity:
    """Opaque identity of the authenticated caller"""
    user_id: str
    role: str = "donor"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @property
    def actor(self) -> str:
        """Actor string recorded in audit entries"""
        return f"{self.role}:{self.user_id}"


def require_identity(request: Request) -> CallerIdentity:
    """Dependency: Require an authenticated caller"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    session = redis_store.get_session(session_id)
    if not session:
        raise HTTPException(401, "Session expired. Please log in again.")

    return CallerIdentity(user_id=session["user_id"], role=session["role"])


def require_admin(request: Request, identity: CallerIdentity = Depends(require_identity)) -> CallerIdentity:
    """Dependency: Require an authenticated admin caller"""
    if not identity.is_admin:
        security_logger.warning(
            f"Admin access denied - User: {identity.user_id}, "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Admin access required")
    return identity


def log_api_access(
    request: Request,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"

    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "correlation_id": request_id_var.get(),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")


def optional_identity(request: Request) -> Optional[CallerIdentity]:
    """Dependency: Caller identity when a valid session is present, else None (guest)"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return None
    session = redis_store.get_session(session_id)
    if not session:
        return None
    return CallerIdentity(user_id=session["user_id"], role=session["role"])
