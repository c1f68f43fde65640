import redis
from fastapi import APIRouter, Depends, Response
from sqlalchemy import text
from sqlalchemy.orm import Session

from cardshop.core.config import settings
from cardshop.db.session import get_db
from cardshop.services.circuit_breaker import get_circuit_breaker
from cardshop.services.gateway.client import GATEWAY_BREAKER


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness probe."""
    return {"status": "ok"}


@router.get("/ready")
def readiness(response: Response, db: Session = Depends(get_db)) -> dict:
    """
    Readiness: the ledger store and Redis must answer. An open gateway breaker
    is reported but does not fail the probe; notify and admin routes still work.
    """
    try:
        db.execute(text("SELECT 1"))
        redis.Redis.from_url(settings.redis_url, socket_timeout=2).ping()
    except Exception as e:
        response.status_code = 503
        return {"status": "not_ready", "error": str(e)}

    gateway = get_circuit_breaker(GATEWAY_BREAKER)
    try:
        gateway_state = gateway.current_state
    except redis.RedisError:
        gateway_state = "unknown"
    return {"status": "ready", "gateway": gateway_state}
