"""レート制限設定（slowapi使用）"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from starlette.requests import Request
from starlette.responses import JSONResponse

from app.core.config import settings


def get_client_ip(request: Request) -> str:
    """
    クライアントIPアドレスを取得
    プロキシ経由の場合はX-Forwarded-Forヘッダーを参照
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    default_limits=["100/minute"],
    storage_uri="memory://",
    enabled=settings.ENV != "test",
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """レート制限超過時のエラーレスポンス"""
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": "rate_limited",
            "message": "Too many requests. Please wait and try again.",
            "retryable": True,
            "retry_after": exc.detail,
        },
    )


# エンドポイント別のレート制限
BILLING_MUTATION_RATE_LIMIT = "10/minute"   # プラン変更・解約・再開・チェックアウト
SYNC_RATE_LIMIT = "5/minute"                # プロバイダからの同期
