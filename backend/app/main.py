from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from app.core.config import settings
from app.core.errors import BillingError
from app.core.logging import setup_logging, get_logger
from app.core.rate_limit import limiter, rate_limit_exceeded_handler
from app.routers import admin_subscriptions, billing, health, plans, webhooks_stripe
from app.services.stripe_service import configure_gateway

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションライフサイクル管理"""
    setup_logging(debug=settings.DEBUG)
    # 設定不足は初回リクエストではなく起動時に失敗させる
    configure_gateway()
    logger.info("アプリケーション起動")
    yield
    logger.info("アプリケーション終了")


app = FastAPI(
    title=settings.SITE_NAME,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

# レート制限設定
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """課金エラー → {success, error, message, retryable}"""
    if exc.status_code >= 500:
        logger.error(f"課金処理エラー: {request.method} {request.url.path} - {exc.code}: {exc.message}")
    else:
        logger.info(f"課金処理エラー: {request.method} {request.url.path} - {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _describe_validation_error(err: dict) -> str:
    loc = err.get("loc", [])
    field = str(loc[-1]) if loc else ""
    return f"{field}: {err.get('msg', 'invalid value')}"


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    messages = [_describe_validation_error(e) for e in exc.errors()]
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "validation_error", "message": "; ".join(messages), "retryable": False},
    )


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ルーター登録
app.include_router(health.router)
app.include_router(plans.router)
app.include_router(billing.router)
app.include_router(webhooks_stripe.router)
app.include_router(admin_subscriptions.router)
