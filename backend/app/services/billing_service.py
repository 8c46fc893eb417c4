"""ユーザー操作による課金変更 (Checkout / プラン変更 / 解約予約 / 再開)

価格・ステータスの判断は常に Stripe を正とし、Stripe 側の更新が成功した
場合にのみローカル行へ反映する。
"""
from typing import Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ConfigurationError, NoOpError, NotFoundError
from app.core.logging import get_logger
from app.models.subscription import TenantSubscription
from app.schemas.stripe import InvoiceSummary, PaymentMethodSummary
from app.services import subscription_service
from app.services.plan_catalog import get_purchasable_plan, plan_for_price, plan_rank, price_for
from app.services.stripe_service import StripeGateway
from app.services.subscription_service import Actor, commit_transition, record_history, tenant_lock

logger = get_logger(__name__)


def _require_purchasable(db: Session, plan_id: str, interval: str):
    plan = get_purchasable_plan(db, plan_id)
    if not plan:
        raise NotFoundError("Plan not found or not available", code="plan_not_found")
    price_id = price_for(plan, interval)
    if not price_id:
        logger.error(f"Price未設定: plan={plan_id}, interval={interval}")
        raise ConfigurationError(f"Plan {plan_id} has no {interval} price")
    return plan, price_id


def _checkout_required() -> NotFoundError:
    return NotFoundError("No active subscription. Use checkout first.", code="checkout_required")


def _require_provider_subscription(db: Session, organization_id: str) -> TenantSubscription:
    sub = subscription_service.get_subscription(db, organization_id)
    if not sub or not sub.stripe_subscription_id:
        raise _checkout_required()
    return sub


# =========================================================
# Checkout
# =========================================================

def get_or_create_customer(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    email: Optional[str] = None,
    name: Optional[str] = None,
) -> str:
    """ローカル行 → Stripe検索 (metadata.organizationId) → 新規作成 の順で解決"""
    sub = subscription_service.get_subscription(db, organization_id)
    if sub and sub.stripe_customer_id:
        return sub.stripe_customer_id

    customer_id = gateway.find_customer_by_organization(organization_id)
    if customer_id:
        return customer_id
    return gateway.create_customer(organization_id, email, name)


def create_checkout(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    plan_id: str,
    interval: str = "monthly",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    email: Optional[str] = None,
) -> dict:
    """Checkout Session を作成

    ローカル行は変更しない (checkout.session.completed webhook か Sync が反映する)。
    """
    plan, price_id = _require_purchasable(db, plan_id, interval)

    sub = subscription_service.get_subscription(db, organization_id)
    if sub and sub.stripe_subscription_id and sub.status != "canceled":
        raise NoOpError(
            "Organization already has a subscription. Use change plan or the billing portal.",
            code="already_subscribed",
        )

    customer_id = get_or_create_customer(db, gateway, organization_id, email=email)

    # トライアルは初回購読のみ
    trial_days = plan.trial_days if (sub is None or sub.plan_id is None) else None

    session_id, url = gateway.create_checkout_session(
        organization_id=organization_id,
        customer_id=customer_id,
        price_id=price_id,
        interval=interval,
        success_url=success_url or f"{settings.SITE_URL}/billing?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{settings.SITE_URL}/billing?checkout=canceled",
        trial_days=trial_days,
    )
    logger.info(f"Checkout開始: org={organization_id}, plan={plan_id}, interval={interval}")
    return {"session_id": session_id, "url": url}


# =========================================================
# プラン変更
# =========================================================

def change_plan(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    plan_id: str,
    interval: str,
    actor: Actor,
) -> TenantSubscription:
    """プラン変更 (日割りは Stripe に計算させる)"""
    plan, target_price_id = _require_purchasable(db, plan_id, interval)
    sub = _require_provider_subscription(db, organization_id)

    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if not sub.stripe_subscription_id:
            raise _checkout_required()
        # ローカル行ではなく Stripe 上の現在値と比較する
        live = gateway.retrieve_subscription(sub.stripe_subscription_id)
        if live.status == "canceled" or not live.item_id:
            raise _checkout_required()
        if live.price_id == target_price_id:
            raise NoOpError("Already on this plan. Try Sync to refresh your subscription.", code="already_on_plan")

        current = plan_for_price(db, live.price_id)
        from_plan_id = current.plan.plan_id if current else sub.plan_id
        from_status = sub.status

        updated = gateway.update_subscription_price(live.subscription_id, live.item_id, target_price_id)

        if plan_rank(plan.plan_id) > plan_rank(from_plan_id):
            event_type, verb = "upgraded", "Upgraded"
        elif plan_rank(plan.plan_id) < plan_rank(from_plan_id):
            event_type, verb = "downgraded", "Downgraded"
        else:
            # 同一プランで請求間隔のみ変更
            event_type, verb = "plan_changed", "Billing interval changed"

        sub.plan_id = plan.plan_id
        subscription_service.apply_snapshot(sub, updated)
        record_history(
            db, sub, event_type, actor,
            reason=f"{verb} to {plan.name} ({interval})",
            from_plan_id=from_plan_id,
            to_plan_id=plan.plan_id,
            from_status=from_status,
            to_status=sub.status,
            metadata={
                "stripeSubscriptionId": updated.subscription_id,
                "fromPriceId": live.price_id,
                "toPriceId": target_price_id,
                "interval": interval,
                "prorated": True,
            },
        )
        commit_transition(db, organization_id, f"{event_type} {from_plan_id} -> {plan.plan_id}")
    return sub


# =========================================================
# 解約予約 / 再開
# =========================================================

def _require_live_subscription(gateway: StripeGateway, sub: TenantSubscription):
    live = gateway.retrieve_subscription(sub.stripe_subscription_id)
    if live.status == "canceled":
        raise _checkout_required()
    return live


def cancel_subscription(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    actor: Actor,
) -> TenantSubscription:
    """期間終了時の解約を予約 (即時解約はしない)"""
    sub = _require_provider_subscription(db, organization_id)

    with tenant_lock(organization_id):
        # 判断はロック取得後の行と Stripe 上の現在値で行う
        subscription_service.reload(db, sub)
        if not sub.stripe_subscription_id:
            raise _checkout_required()
        if sub.cancel_at_period_end:
            raise NoOpError("Subscription is already scheduled for cancellation.", code="already_scheduled")
        live = _require_live_subscription(gateway, sub)
        if live.cancel_at_period_end:
            raise NoOpError(
                "Subscription is already scheduled for cancellation. Try Sync to refresh your subscription.",
                code="already_scheduled",
            )

        previous_status = sub.status
        updated = gateway.set_cancel_at_period_end(sub.stripe_subscription_id, True)
        subscription_service.apply_snapshot(sub, updated)
        if sub.cancel_at is None and sub.cancel_at_period_end:
            sub.cancel_at = updated.current_period_end

        cancel_at = sub.cancel_at.isoformat() if sub.cancel_at else None
        record_history(
            db, sub, "cancellation_scheduled", actor,
            reason=f"Cancellation scheduled for {cancel_at or 'period end'}",
            from_plan_id=sub.plan_id,
            to_plan_id=sub.plan_id,
            from_status=previous_status,
            to_status=sub.status,
            metadata={"stripeSubscriptionId": sub.stripe_subscription_id, "cancelAt": cancel_at},
        )
        commit_transition(db, organization_id, f"cancellation_scheduled cancel_at={cancel_at}")
    return sub


def reactivate_subscription(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    actor: Actor,
) -> TenantSubscription:
    """解約予約を取り消す"""
    sub = _require_provider_subscription(db, organization_id)

    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if not sub.stripe_subscription_id:
            raise _checkout_required()
        if not sub.cancel_at_period_end:
            raise NoOpError("Subscription is not currently scheduled for cancellation.", code="not_scheduled")
        live = _require_live_subscription(gateway, sub)
        if not live.cancel_at_period_end:
            raise NoOpError("Subscription is not currently scheduled for cancellation.", code="not_scheduled")

        previous_status = sub.status
        updated = gateway.set_cancel_at_period_end(sub.stripe_subscription_id, False)
        subscription_service.apply_snapshot(sub, updated)
        sub.cancel_at_period_end = False
        sub.cancel_at = None

        record_history(
            db, sub, "reactivated", actor,
            reason="Scheduled cancellation removed",
            from_plan_id=sub.plan_id,
            to_plan_id=sub.plan_id,
            from_status=previous_status,
            to_status=sub.status,
            metadata={"stripeSubscriptionId": sub.stripe_subscription_id},
        )
        commit_transition(db, organization_id, "reactivated")
    return sub


# =========================================================
# 参照系 (Billing Portal / 請求書 / 支払い方法)
# =========================================================

def create_portal_session(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    return_url: Optional[str] = None,
) -> str:
    sub = subscription_service.get_subscription(db, organization_id)
    if not sub or not sub.stripe_customer_id:
        raise NotFoundError("No billing account found for this organization", code="no_customer")
    return gateway.create_billing_portal_session(
        sub.stripe_customer_id, return_url or f"{settings.SITE_URL}/billing"
    )


def list_invoices(db: Session, gateway: StripeGateway, organization_id: str, limit: int = 12) -> list[InvoiceSummary]:
    sub = subscription_service.get_subscription(db, organization_id)
    if not sub or not sub.stripe_customer_id:
        return []
    return gateway.list_invoices(sub.stripe_customer_id, limit=limit)


def get_payment_method(db: Session, gateway: StripeGateway, organization_id: str) -> Optional[PaymentMethodSummary]:
    """購読の既定支払い方法 (未設定なら None)"""
    sub = subscription_service.get_subscription(db, organization_id)
    if not sub or not sub.stripe_subscription_id:
        return None
    live = gateway.retrieve_subscription(sub.stripe_subscription_id)
    if not live.default_payment_method:
        return None
    return gateway.retrieve_payment_method(live.default_payment_method)
