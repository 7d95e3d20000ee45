"""Monitoring API routes for health checks and metrics"""
import logging
from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sadqa.core.metrics import update_subscription_status_gauge
from sadqa.db import redis as redis_store
from sadqa.db.session import get_db

router = APIRouter(tags=["monitoring"])
logger = logging.getLogger(__name__)


@router.get("/metrics")
def metrics_endpoint(db: Session = Depends(get_db)):
    """Prometheus metrics endpoint - refreshes the subscription gauge before export"""
    update_subscription_status_gauge(db)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check: database and session store must both answer"""
    checks = {"database": "ok", "redis": "ok"}
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check: database unavailable: {e}")
        checks["database"] = "unavailable"
    try:
        redis_store.ping()
    except RedisError as e:
        logger.error(f"Health check: redis unavailable: {e}")
        checks["redis"] = "unavailable"

    if all(value == "ok" for value in checks.values()):
        return {"status": "healthy", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "degraded", "checks": checks})
