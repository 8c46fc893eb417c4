"""Stripe Webhook イベントルーター

Webhook は署名検証直後に応答済み (Stripe からは再送されない) のため、
ここでの失敗は呼び出し元へ伝播させず、ERROR 以上で記録する。
各ハンドラは「イベント自身のペイロード」から行を導出する (差分適用しない)。
"""
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import database
from app.core.errors import BillingError, ConfigurationError, PersistenceError
from app.core.logging import get_logger
from app.models.processed_stripe_event import ProcessedStripeEvent
from app.models.subscription import TenantSubscription
from app.models.subscription_history import SubscriptionHistory
from app.schemas.stripe import (
    CheckoutCompletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    TrialWillEndEvent,
    parse_event,
)
from app.services import notification_service, subscription_service
from app.services.plan_catalog import plan_for_price
from app.services.stripe_service import StripeGateway
from app.services.subscription_service import WEBHOOK_ACTOR, commit_transition, record_history, tenant_lock

logger = get_logger(__name__)


# =========================================================
# エントリポイント (バックグラウンドタスク)
# =========================================================

def process_event(gateway: StripeGateway, event: dict) -> None:
    """応答送信後に実行される。独自のDBセッションとエラー境界を持つ"""
    event_id = event.get("id")
    event_type = event.get("type")
    context = {"event_id": event_id, "event_type": event_type}
    db = database.SessionLocal()
    try:
        dispatch_event(db, gateway, event)
    except PersistenceError:
        # subscription_service 側で ERROR / CRITICAL 記録済み
        pass
    except ConfigurationError as e:
        logger.error(f"Stripe webhook設定エラー (要運用対応): {event_type} ({event_id}) - {e.message}", extra=context)
    except BillingError as e:
        logger.error(f"Stripe webhook処理失敗: {event_type} ({event_id}) - {e.code}: {e.message}", extra=context)
    except Exception:
        logger.exception(f"Stripe webhook処理で予期しないエラー: {event_type} ({event_id})", extra=context)
    finally:
        db.close()


def dispatch_event(db: Session, gateway: StripeGateway, event: dict) -> bool:
    """イベント種別ごとのハンドラへ振り分け

    Returns:
        True: 処理した / False: 重複・未対応・不正ペイロードでスキップ
    """
    event_id = event.get("id")
    event_type = event.get("type")

    if event_id and _is_event_processed(db, event_id):
        logger.info(f"Stripe webhook重複スキップ: {event_id} ({event_type})")
        return False

    try:
        parsed = parse_event(event)
    except ValidationError as e:
        logger.warning(f"Stripe webhookペイロード不正: {event_type} ({event_id}) - {e.error_count()}件のエラー")
        return False

    if parsed is None:
        logger.info(f"未処理のStripeイベント: {event_type}")
        return False

    logger.info(f"Stripe webhook処理開始: {event_type} ({event_id})", extra={"event_id": event_id, "event_type": event_type})

    if isinstance(parsed, CheckoutCompletedEvent):
        organization_id = handle_checkout_completed(db, gateway, parsed)
    elif isinstance(parsed, SubscriptionChangedEvent):
        organization_id = handle_subscription_changed(db, parsed)
    elif isinstance(parsed, SubscriptionDeletedEvent):
        organization_id = handle_subscription_deleted(db, parsed)
    elif isinstance(parsed, InvoicePaidEvent):
        organization_id = handle_invoice_paid(db, parsed)
    elif isinstance(parsed, InvoicePaymentFailedEvent):
        organization_id = handle_invoice_payment_failed(db, parsed)
    else:
        organization_id = handle_trial_will_end(db, parsed)

    if event_id:
        _record_processed_event(db, event_id, event_type, organization_id, parsed.created)
    return True


# =========================================================
# 冪等性ヘルパー
# =========================================================

def _is_event_processed(db: Session, event_id: str) -> bool:
    return db.query(ProcessedStripeEvent).filter(
        ProcessedStripeEvent.event_id == event_id
    ).first() is not None


def _record_processed_event(
    db: Session,
    event_id: str,
    event_type: str,
    organization_id: Optional[str],
    event_created_at: Optional[datetime],
):
    db.add(ProcessedStripeEvent(
        event_id=event_id,
        event_type=event_type,
        organization_id=organization_id,
        event_created_at=event_created_at,
    ))
    try:
        db.commit()
    except SQLAlchemyError as e:
        # 同一イベントの並行配信。状態遷移自体はコミット済み
        db.rollback()
        logger.info(f"処理済みイベント記録スキップ: {event_id} - {e.__class__.__name__}")


def _latest_history(db: Session, sub: TenantSubscription, event_type: str) -> Optional[SubscriptionHistory]:
    return db.query(SubscriptionHistory).filter(
        SubscriptionHistory.subscription_id == sub.id,
        SubscriptionHistory.event_type == event_type,
    ).order_by(SubscriptionHistory.id.desc()).first()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =========================================================
# イベントハンドラ
# =========================================================

def handle_checkout_completed(db: Session, gateway: StripeGateway, event: CheckoutCompletedEvent) -> Optional[str]:
    """checkout.session.completed: 作成直後の購読をStripeから取得して upsert"""
    organization_id = event.organization_id
    snapshot = gateway.retrieve_subscription(event.subscription_id)

    match = plan_for_price(db, snapshot.price_id)
    if not match:
        logger.error(f"checkout.session.completed: 不明なprice_id={snapshot.price_id} org={organization_id}")
        raise ConfigurationError(f"Unknown price ID: {snapshot.price_id}")
    plan = match.plan

    with tenant_lock(organization_id):
        existing = subscription_service.get_subscription(db, organization_id)
        if existing and existing.stripe_subscription_id == snapshot.subscription_id:
            recorded = _latest_history(db, existing, "checkout_completed")
            if recorded and (recorded.event_metadata or {}).get("stripeSubscriptionId") == snapshot.subscription_id:
                logger.info(f"Checkout完了: 記録済み org={organization_id}, subscription={snapshot.subscription_id}")
                return organization_id

        sub, previous_plan_id, previous_status = subscription_service.upsert_from_snapshot(
            db, organization_id, snapshot, plan, customer_id=event.customer_id,
        )
        if event.created and (sub.last_event_at is None or event.created > sub.last_event_at):
            sub.last_event_at = event.created

        record_history(
            db, sub, "checkout_completed", WEBHOOK_ACTOR,
            reason=f"Subscribed to {plan.name} ({match.interval})",
            from_plan_id=previous_plan_id,
            to_plan_id=plan.plan_id,
            from_status=previous_status,
            to_status=sub.status,
            metadata={
                "stripeSessionId": event.session_id,
                "stripeSubscriptionId": snapshot.subscription_id,
                "priceId": snapshot.price_id,
            },
        )
        commit_transition(db, organization_id, f"checkout_completed plan={plan.plan_id} status={sub.status}")
    return organization_id


def handle_subscription_changed(db: Session, event: SubscriptionChangedEvent) -> Optional[str]:
    """customer.subscription.created / updated: 状態・期間を更新し、プラン変更を検知"""
    snapshot = event.subscription
    if snapshot.organization_id:
        sub = subscription_service.get_subscription(db, snapshot.organization_id)
    else:
        sub = subscription_service.get_by_stripe_subscription_id(db, snapshot.subscription_id)

    if not sub:
        logger.info(f"subscription.updated: 該当する購読なし stripe_sub_id={snapshot.subscription_id}")
        return None

    organization_id = sub.organization_id
    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if sub.stripe_subscription_id and sub.stripe_subscription_id != snapshot.subscription_id:
            logger.info(
                f"subscription.updated: 現在の購読ではないためスキップ org={organization_id}, "
                f"current={sub.stripe_subscription_id}, event={snapshot.subscription_id}"
            )
            return organization_id

        if event.created and sub.last_event_at and event.created < sub.last_event_at:
            logger.warning(
                f"subscription.updated: 古いイベントを破棄 org={organization_id}, "
                f"event_at={event.created}, last_applied={sub.last_event_at}"
            )
            return organization_id

        match = plan_for_price(db, snapshot.price_id)
        if not match:
            logger.warning(f"subscription.updated: 不明なprice_id={snapshot.price_id} (プランは据え置き)")

        previous_plan_id = sub.plan_id
        previous_status = sub.status
        new_plan_id = match.plan.plan_id if match else previous_plan_id

        if not sub.stripe_subscription_id:
            sub.stripe_subscription_id = snapshot.subscription_id
        if snapshot.customer_id:
            sub.stripe_customer_id = snapshot.customer_id
        sub.plan_id = new_plan_id
        subscription_service.apply_snapshot(sub, snapshot)
        if event.created:
            sub.last_event_at = event.created

        if new_plan_id != previous_plan_id:
            record_history(
                db, sub, "plan_changed", WEBHOOK_ACTOR,
                reason=f"Plan changed to {match.plan.name}",
                from_plan_id=previous_plan_id,
                to_plan_id=new_plan_id,
                from_status=previous_status,
                to_status=sub.status,
                metadata={
                    "stripeSubscriptionId": snapshot.subscription_id,
                    "priceId": snapshot.price_id,
                },
            )
        commit_transition(db, organization_id, f"subscription.updated plan={new_plan_id} status={sub.status}")
    return organization_id


def handle_subscription_deleted(db: Session, event: SubscriptionDeletedEvent) -> Optional[str]:
    """customer.subscription.deleted: 購読終了 (Customer ID は再購読用に保持)"""
    snapshot = event.subscription
    sub = subscription_service.get_by_stripe_subscription_id(db, snapshot.subscription_id)
    if not sub:
        logger.info(f"subscription.deleted: 該当する購読なし stripe_sub_id={snapshot.subscription_id}")
        return None

    organization_id = sub.organization_id
    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if sub.stripe_subscription_id != snapshot.subscription_id:
            logger.info(f"subscription.deleted: 処理済み org={organization_id}, stripe_sub_id={snapshot.subscription_id}")
            return organization_id

        previous_plan_id = sub.plan_id
        previous_status = sub.status

        sub.status = "canceled"
        sub.canceled_at = snapshot.canceled_at or _utcnow()
        sub.stripe_subscription_id = None
        sub.stripe_price_id = None
        sub.cancel_at_period_end = False
        if event.created:
            sub.last_event_at = event.created

        record_history(
            db, sub, "canceled", WEBHOOK_ACTOR,
            reason="Subscription canceled",
            from_plan_id=previous_plan_id,
            from_status=previous_status,
            to_status="canceled",
            metadata={"stripeSubscriptionId": snapshot.subscription_id},
        )
        commit_transition(db, organization_id, "subscription.deleted")
    return organization_id


def handle_invoice_paid(db: Session, event: InvoicePaidEvent) -> Optional[str]:
    """invoice.paid: past_due → active への復帰のみ"""
    if not event.subscription_id:
        # 単発請求
        return None

    sub = subscription_service.get_by_stripe_subscription_id(db, event.subscription_id)
    if not sub:
        return None

    organization_id = sub.organization_id
    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if sub.status != "past_due":
            logger.info(f"請求成功: 状態変更なし org={organization_id}, status={sub.status}")
            return organization_id

        sub.status = "active"
        record_history(
            db, sub, "payment_succeeded", WEBHOOK_ACTOR,
            reason="Payment successful - subscription reactivated",
            from_plan_id=sub.plan_id,
            to_plan_id=sub.plan_id,
            from_status="past_due",
            to_status="active",
            metadata={"invoiceId": event.invoice_id, "amountPaid": event.amount_paid},
        )
        commit_transition(db, organization_id, "invoice.paid past_due -> active")
    return organization_id


def handle_invoice_payment_failed(db: Session, event: InvoicePaymentFailedEvent) -> Optional[str]:
    """invoice.payment_failed: past_due へ遷移 + 通知"""
    if not event.subscription_id:
        return None

    sub = subscription_service.get_by_stripe_subscription_id(db, event.subscription_id)
    if not sub:
        return None

    organization_id = sub.organization_id
    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        if sub.status == "past_due":
            last = _latest_history(db, sub, "payment_failed")
            meta = (last.event_metadata or {}) if last else {}
            if meta.get("invoiceId") == event.invoice_id and meta.get("attemptCount") == event.attempt_count:
                logger.info(f"決済失敗: 記録済み org={organization_id}, invoice={event.invoice_id}")
                return organization_id

        previous_status = sub.status
        sub.status = "past_due"
        record_history(
            db, sub, "payment_failed", WEBHOOK_ACTOR,
            reason=f"Payment failed: {event.failure_message}",
            from_plan_id=sub.plan_id,
            to_plan_id=sub.plan_id,
            from_status=previous_status,
            to_status="past_due",
            metadata={
                "invoiceId": event.invoice_id,
                "attemptCount": event.attempt_count,
                "nextPaymentAttempt": event.next_payment_attempt.isoformat() if event.next_payment_attempt else None,
            },
        )
        commit_transition(db, organization_id, "invoice.payment_failed -> past_due")

    logger.warning(f"決済失敗: org={organization_id}, subscription={event.subscription_id}")
    notification_service.notify_tenant(
        organization_id, "payment_failed",
        {"invoice_id": event.invoice_id, "reason": event.failure_message},
    )
    return organization_id


def handle_trial_will_end(db: Session, event: TrialWillEndEvent) -> Optional[str]:
    """customer.subscription.trial_will_end: 履歴のみ (状態は変えない) + 通知"""
    snapshot = event.subscription
    sub = subscription_service.get_by_stripe_subscription_id(db, snapshot.subscription_id)
    if not sub:
        return None

    organization_id = sub.organization_id
    trial_end = snapshot.trial_end.isoformat() if snapshot.trial_end else None
    with tenant_lock(organization_id):
        subscription_service.reload(db, sub)
        last = _latest_history(db, sub, "trial_ending")
        if last and (last.event_metadata or {}).get("trialEnd") == trial_end:
            logger.info(f"トライアル終了予告: 記録済み org={organization_id}")
            return organization_id

        record_history(
            db, sub, "trial_ending", WEBHOOK_ACTOR,
            reason="Trial period ending soon",
            metadata={"stripeSubscriptionId": snapshot.subscription_id, "trialEnd": trial_end},
        )
        commit_transition(db, organization_id, "trial_will_end")

    notification_service.notify_tenant(organization_id, "trial_ending", {"trial_end": trial_end})
    return organization_id
