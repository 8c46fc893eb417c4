from fastapi import APIRouter
from app.core.config import settings
from app.core.database import check_db_connection
from app.core.redis import check_redis_connection
from app.services import stripe_service

router = APIRouter()


@router.get("/health")
@router.get("/api/health")
async def health_check():
    """ヘルスチェック (DB / Redis / Stripeゲートウェイ初期化)"""
    db_ok = check_db_connection()
    redis_ok = await check_redis_connection()
    gateway_ok = stripe_service.is_configured()

    status = "ok" if (db_ok and redis_ok and gateway_ok) else "degraded"

    return {
        "status": status,
        "db": "connected" if db_ok else "disconnected",
        "redis": "connected" if redis_ok else "disconnected",
        "stripe": "configured" if gateway_ok else "not_configured",
        "plan_cache": settings.PLAN_CACHE_BACKEND,
    }
