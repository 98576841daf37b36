"""Liveness and readiness checks.

``/health/ready`` touches the database and the Celery broker; the other
two endpoints never leave the process.
"""

import time
from typing import Any, Callable, Dict

import redis
from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from safee import __version__
from safee.api.deps import get_db
from safee.core.config import get_settings
from safee.db.base import utcnow

router = APIRouter(tags=["health"])

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


def _timed(run: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    started = time.monotonic()
    try:
        result = {"status": HEALTHY, **run()}
    except Exception as e:
        result = {"status": UNHEALTHY, "error": str(e)}
    result["latency_ms"] = round((time.monotonic() - started) * 1000, 1)
    return result


def check_database(db: Session) -> Dict[str, Any]:
    def ping():
        db.execute(text("SELECT 1")).scalar()
        return {"dialect": db.get_bind().dialect.name}

    return _timed(ping)


def check_redis() -> Dict[str, Any]:
    """Ping the broker and report its server version."""
    def ping():
        client = redis.from_url(get_settings().redis_url, socket_connect_timeout=2, socket_timeout=2)
        try:
            client.ping()
            return {"version": client.info("server").get("redis_version", "unknown")}
        finally:
            client.close()

    return _timed(ping)


@router.get("/health")
def health_check():
    return {"status": HEALTHY, "version": __version__, "timestamp": utcnow().isoformat()}


@router.get("/health/live")
def liveness():
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@router.get("/health/ready")
def readiness(db: Session = Depends(get_db)):
    """503 with the failing dependency names when any check is unhealthy."""
    checks = {"database": check_database(db), "redis": check_redis()}
    failed = [name for name, check in checks.items() if check["status"] != HEALTHY]
    body = {
        "status": "not_ready" if failed else "ready",
        "checks": checks,
        "timestamp": utcnow().isoformat(),
    }
    if failed:
        body["failed"] = failed
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body
