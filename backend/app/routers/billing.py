"""課金ルーター: Checkout, プラン変更, 解約予約/再開, 同期, Billing Portal

Stripe 呼び出しはブロッキングのため、エンドポイントは同期関数
(スレッドプール実行) で定義する。
"""
import urllib.parse

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.rate_limit import BILLING_MUTATION_RATE_LIMIT, SYNC_RATE_LIMIT, limiter
from app.routers.deps import CurrentUser, require_billing_admin
from app.schemas.subscription import (
    BillingPortalRequest,
    ChangePlanRequest,
    CheckoutRequest,
    HistoryEntryInfo,
    SubscriptionInfo,
    SubscriptionResult,
)
from app.services import billing_service, subscription_service, sync_service
from app.services.stripe_service import StripeGateway, get_gateway

router = APIRouter(prefix="/api/billing", tags=["billing"])


def _validate_redirect_url(url: str) -> str:
    """リダイレクトURLの安全性を検証 (同一オリジンのみ許可)"""
    if not url:
        return url
    parsed = urllib.parse.urlparse(url)
    site_parsed = urllib.parse.urlparse(settings.SITE_URL)
    if parsed.netloc and parsed.netloc != site_parsed.netloc:
        raise HTTPException(status_code=400, detail="Invalid redirect URL")
    return url


def _result(sub, message: str) -> SubscriptionResult:
    return SubscriptionResult(
        success=True,
        message=message,
        subscription=SubscriptionInfo.model_validate(sub) if sub else None,
    )


@router.post("/checkout")
@limiter.limit(BILLING_MUTATION_RATE_LIMIT)
def checkout(
    request: Request,
    req: CheckoutRequest,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Stripe Checkout Session 作成"""
    result = billing_service.create_checkout(
        db, gateway,
        organization_id=user.organization_id,
        plan_id=req.plan_id,
        interval=req.interval,
        success_url=_validate_redirect_url(req.success_url),
        cancel_url=_validate_redirect_url(req.cancel_url),
        email=user.email,
    )
    return {"success": True, **result}


@router.post("/change-plan", response_model=SubscriptionResult)
@limiter.limit(BILLING_MUTATION_RATE_LIMIT)
def change_plan(
    request: Request,
    req: ChangePlanRequest,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """プラン変更 (日割り)"""
    sub = billing_service.change_plan(
        db, gateway, user.organization_id, req.plan_id, req.interval, user.actor,
    )
    return _result(sub, "Plan changed")


@router.post("/cancel", response_model=SubscriptionResult)
@limiter.limit(BILLING_MUTATION_RATE_LIMIT)
def cancel(
    request: Request,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """期間終了時の解約を予約"""
    sub = billing_service.cancel_subscription(db, gateway, user.organization_id, user.actor)
    return _result(sub, "Subscription will be canceled at the end of the billing period")


@router.post("/reactivate", response_model=SubscriptionResult)
@limiter.limit(BILLING_MUTATION_RATE_LIMIT)
def reactivate(
    request: Request,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """解約予約の取り消し"""
    sub = billing_service.reactivate_subscription(db, gateway, user.organization_id, user.actor)
    return _result(sub, "Subscription reactivated")


@router.post("/sync", response_model=SubscriptionResult)
@limiter.limit(SYNC_RATE_LIMIT)
def sync(
    request: Request,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Stripe から購読状態を再取得"""
    result = sync_service.sync_subscription(db, gateway, user.organization_id, user.actor)
    response = _result(result.subscription, result.message)
    response.success = result.synced
    return response


@router.post("/portal")
@limiter.limit(BILLING_MUTATION_RATE_LIMIT)
def billing_portal(
    request: Request,
    req: BillingPortalRequest,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """Stripe Billing Portal"""
    url = billing_service.create_portal_session(
        db, gateway, user.organization_id, _validate_redirect_url(req.return_url),
    )
    return {"success": True, "url": url}


@router.get("/subscription")
def get_subscription(
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
):
    """有効プラン・上限 (キャッシュ経由)"""
    return subscription_service.get_effective_plan(db, user.organization_id)


@router.get("/history", response_model=list[HistoryEntryInfo])
def get_history(
    limit: int = 50,
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
):
    """購読履歴 (新しい順)"""
    limit = max(1, min(limit, 200))
    return subscription_service.get_history(db, user.organization_id, limit=limit)


@router.get("/invoices")
def get_invoices(
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """請求書一覧"""
    invoices = billing_service.list_invoices(db, gateway, user.organization_id)
    return {"invoices": [i.model_dump() for i in invoices]}


@router.get("/payment-method")
def get_payment_method(
    user: CurrentUser = Depends(require_billing_admin),
    db: Session = Depends(get_db),
    gateway: StripeGateway = Depends(get_gateway),
):
    """既定の支払い方法"""
    pm = billing_service.get_payment_method(db, gateway, user.organization_id)
    return {"payment_method": pm.model_dump() if pm else None}
