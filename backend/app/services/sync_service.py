"""Stripe からの購読同期 (Webhook に依存しない状態修復)

Checkout 直後のリダイレクト時と、手動のずれ修復で使う。
Stripe 側に変化がなければ何度呼んでも結果は同じ。
"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import ConfigurationError
from app.core.logging import get_logger
from app.models.subscription import TenantSubscription
from app.services import subscription_service
from app.services.plan_catalog import plan_for_price
from app.services.stripe_service import StripeGateway
from app.services.subscription_service import Actor, commit_transition, record_history, tenant_lock

logger = get_logger(__name__)

# 同期対象の優先順
SYNC_STATUS_PRIORITY = ("active", "trialing")


@dataclass
class SyncResult:
    synced: bool
    message: str
    subscription: Optional[TenantSubscription] = None


def sync_subscription(
    db: Session,
    gateway: StripeGateway,
    organization_id: str,
    actor: Actor,
) -> SyncResult:
    sub = subscription_service.get_subscription(db, organization_id)
    customer_id = sub.stripe_customer_id if sub else None
    if not customer_id:
        customer_id = gateway.find_customer_by_organization(organization_id)
    if not customer_id:
        logger.info(f"同期対象なし (Customer未作成): org={organization_id}")
        return SyncResult(False, "No billing customer found. Nothing to sync.", sub)

    snapshot = None
    for status in SYNC_STATUS_PRIORITY:
        found = gateway.list_subscriptions(customer_id, status, limit=1)
        if found:
            snapshot = found[0]
            break

    if snapshot is None:
        logger.info(f"同期対象なし (有効な購読なし): org={organization_id}, customer={customer_id}")
        return SyncResult(False, "No active subscription found. Nothing to sync.", sub)

    match = plan_for_price(db, snapshot.price_id)
    if not match:
        logger.error(f"同期失敗: 不明なprice_id={snapshot.price_id} org={organization_id}")
        raise ConfigurationError(f"Unknown price ID: {snapshot.price_id}")
    plan = match.plan

    with tenant_lock(organization_id):
        sub, previous_plan_id, previous_status = subscription_service.upsert_from_snapshot(
            db, organization_id, snapshot, plan, customer_id=customer_id,
        )
        if previous_plan_id != plan.plan_id:
            record_history(
                db, sub, "plan_changed", actor,
                reason=f"Synced from billing provider: {plan.name} ({match.interval})",
                from_plan_id=previous_plan_id,
                to_plan_id=plan.plan_id,
                from_status=previous_status,
                to_status=sub.status,
                metadata={
                    "stripeSubscriptionId": snapshot.subscription_id,
                    "priceId": snapshot.price_id,
                    "source": "sync",
                },
            )
        commit_transition(db, organization_id, f"sync plan={plan.plan_id} status={sub.status}")

    return SyncResult(True, f"Subscription synced: {plan.name} ({sub.status})", sub)
