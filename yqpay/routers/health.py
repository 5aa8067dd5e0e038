# yqpay/routers/health.py
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import text
from sqlalchemy.orm import Session

from yqpay.core.redis import health_check_redis
from yqpay.database.database import get_db
from yqpay.services.pos_bus import pos_bus
from yqpay.services.print_dispatcher import print_dispatcher

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health(db: Session = Depends(get_db)):
    """Liveness plus a cheap database round trip."""
    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Database error: {str(e)}") from e
    return {
        "ok": True,
        "redis": (await health_check_redis())["status"],
        "posTheaters": len(pos_bus.subscribers),
        "printAgents": len(print_dispatcher.sessions),
    }


@router.get("/redis")
async def redis_health():
    result = await health_check_redis()
    if result["status"] == "error":
        raise HTTPException(status_code=503, detail=f"Redis error: {result['detail']}")
    return {"ok": True, **result}
