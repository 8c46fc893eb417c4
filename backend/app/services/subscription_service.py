"""購読ストア + 履歴ログ

ローカルの購読行は Stripe の状態を写した派生ビュー。変更は必ず
履歴エントリと同じトランザクションでコミットし、コミット後に
プランキャッシュを無効化してから呼び出し元へ戻る。
"""
import threading
import zlib
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import NoOpError, NotFoundError, PersistenceError
from app.core.logging import get_logger
from app.models.plan import Plan
from app.models.subscription import TenantSubscription
from app.models.subscription_history import HISTORY_EVENT_TYPES, SubscriptionHistory
from app.schemas.stripe import SubscriptionSnapshot
from app.services import plan_cache
from app.services.plan_catalog import effective_features, effective_limits

logger = get_logger(__name__)

USABLE_STATUSES = ("trialing", "active", "past_due")


@dataclass(frozen=True)
class Actor:
    """変更者 (ユーザー or システム)"""

    user_id: str
    role: str


WEBHOOK_ACTOR = Actor(user_id="stripe_webhook", role="system")


# =========================================================
# 組織単位のロック
# =========================================================

# 組織数に関係なく固定数のロックを使い回す (同じストライプの組織同士は直列化される)
LOCK_STRIPES = 64
_locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))


def _lock_for(organization_id: str) -> threading.Lock:
    return _locks[zlib.crc32(organization_id.encode("utf-8")) % LOCK_STRIPES]


@contextmanager
def tenant_lock(organization_id: str):
    """同一組織の read-modify-write を直列化 (プロセス内)

    ロック取得前に読んだ行は古い可能性があるため、判断は reload() 後の値で行う。
    """
    with _lock_for(organization_id):
        yield


def reload(db: Session, sub: TenantSubscription) -> TenantSubscription:
    """ロック取得後に行を読み直す (他リクエストのコミットを反映)"""
    db.refresh(sub)
    return sub


# =========================================================
# 参照
# =========================================================

def get_subscription(db: Session, organization_id: str) -> Optional[TenantSubscription]:
    return db.query(TenantSubscription).filter(
        TenantSubscription.organization_id == organization_id
    ).first()


def get_by_stripe_subscription_id(db: Session, stripe_subscription_id: Optional[str]) -> Optional[TenantSubscription]:
    if not stripe_subscription_id:
        return None
    return db.query(TenantSubscription).filter(
        TenantSubscription.stripe_subscription_id == stripe_subscription_id
    ).first()


def get_history(db: Session, organization_id: str, limit: int = 50) -> list[SubscriptionHistory]:
    """履歴 (新しい順)"""
    sub = get_subscription(db, organization_id)
    if not sub:
        return []
    return db.query(SubscriptionHistory).filter(
        SubscriptionHistory.subscription_id == sub.id
    ).order_by(
        SubscriptionHistory.created_at.desc(),
        SubscriptionHistory.id.desc(),
    ).limit(limit).all()


def build_plan_view(organization_id: str, sub: Optional[TenantSubscription]) -> dict:
    """有効プラン + 上限 + 機能 (上書き適用済み)"""
    view = {
        "organization_id": organization_id,
        "plan_id": None,
        "plan_name": None,
        "status": "none",
        "is_usable": False,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "current_period_end": None,
        "limits": None,
        "features": [],
    }
    if sub is None:
        return view

    usable = sub.status in USABLE_STATUSES
    plan = sub.plan
    view.update({
        "plan_id": sub.plan_id,
        "plan_name": plan.name if plan else None,
        "status": sub.status,
        "is_usable": usable,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "cancel_at": sub.cancel_at.isoformat() if sub.cancel_at else None,
        "current_period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
        "limits": effective_limits(plan, sub.custom_limits) if usable else None,
        "features": effective_features(plan, sub.custom_features) if (usable and plan) else [],
    })
    return view


def get_effective_plan(db: Session, organization_id: str) -> dict:
    """有効プラン + 上限 (キャッシュ経由)"""
    cached = plan_cache.plan_cache.get(organization_id)
    if cached is not None:
        return cached

    # DB を読む前の世代。読み込み中に無効化されたらキャッシュへ書かない
    generation = plan_cache.plan_cache.generation(organization_id)
    sub = db.query(TenantSubscription).filter(
        TenantSubscription.organization_id == organization_id
    ).populate_existing().first()
    view = build_plan_view(organization_id, sub)

    if not plan_cache.plan_cache.set(organization_id, view, generation=generation):
        logger.debug(f"プランキャッシュ書き込みスキップ (読み込み中に無効化): org={organization_id}")
    return view


# =========================================================
# 変更
# =========================================================

def _persistence_failure(db: Session, organization_id: str, description: str, error: Exception) -> PersistenceError:
    db.rollback()
    logger.error(
        f"購読の書き込みに失敗 (Syncで修復): org={organization_id}, {description} - {error}",
        extra={"organization_id": organization_id},
    )
    return PersistenceError()


def flush_changes(db: Session, organization_id: str, description: str) -> None:
    """コミット前の flush。制約違反などは PersistenceError に変換"""
    try:
        db.flush()
    except SQLAlchemyError as e:
        raise _persistence_failure(db, organization_id, description, e) from e


def apply_snapshot(sub: TenantSubscription, snapshot: SubscriptionSnapshot) -> None:
    """Stripe 側の状態・期間・解約予約を行へ反映 (プランは呼び出し側で決める)"""
    sub.status = snapshot.status
    sub.stripe_price_id = snapshot.price_id
    if snapshot.product_id:
        sub.stripe_product_id = snapshot.product_id
    sub.current_period_start = snapshot.current_period_start
    sub.current_period_end = snapshot.current_period_end
    sub.cancel_at = snapshot.cancel_at
    # 解約予約は「未適用の遷移」なので canceled とは両立しない
    sub.cancel_at_period_end = snapshot.cancel_at_period_end and snapshot.status != "canceled"


def _link_snapshot(
    sub: TenantSubscription,
    snapshot: SubscriptionSnapshot,
    plan: Plan,
    customer_id: Optional[str],
) -> None:
    sub.stripe_customer_id = snapshot.customer_id or customer_id or sub.stripe_customer_id
    sub.stripe_subscription_id = snapshot.subscription_id
    sub.plan_id = plan.plan_id
    sub.canceled_at = None
    apply_snapshot(sub, snapshot)


def upsert_from_snapshot(
    db: Session,
    organization_id: str,
    snapshot: SubscriptionSnapshot,
    plan: Plan,
    customer_id: Optional[str] = None,
) -> tuple[TenantSubscription, Optional[str], Optional[str]]:
    """組織IDをキーに購読行を作成または更新

    別ワーカーが同じ組織の行を先に作成していた場合は、その行を読み直して更新する。

    Returns:
        (購読行, 変更前プランID, 変更前ステータス)
    """
    sub = get_subscription(db, organization_id)
    created = sub is None
    if created:
        sub = TenantSubscription(organization_id=organization_id, status="none", cancel_at_period_end=False)
        db.add(sub)
        previous_plan_id, previous_status = None, None
    else:
        previous_plan_id, previous_status = sub.plan_id, sub.status

    _link_snapshot(sub, snapshot, plan, customer_id)
    try:
        db.flush()
    except IntegrityError as e:
        db.rollback()
        existing = get_subscription(db, organization_id) if created else None
        if existing is None:
            logger.error(
                f"購読行の保存に失敗 (一意制約): org={organization_id}, "
                f"subscription={snapshot.subscription_id} - {e.orig}",
                extra={"organization_id": organization_id},
            )
            raise PersistenceError() from e
        logger.warning(
            f"購読行の同時作成を検知、既存行を更新: org={organization_id}",
            extra={"organization_id": organization_id},
        )
        sub = existing
        previous_plan_id, previous_status = sub.plan_id, sub.status
        _link_snapshot(sub, snapshot, plan, customer_id)
        flush_changes(db, organization_id, f"upsert subscription={snapshot.subscription_id}")
    except SQLAlchemyError as e:
        raise _persistence_failure(db, organization_id, f"upsert subscription={snapshot.subscription_id}", e) from e
    return sub, previous_plan_id, previous_status


def record_history(
    db: Session,
    sub: TenantSubscription,
    event_type: str,
    actor: Actor,
    reason: str,
    from_plan_id: Optional[str] = None,
    to_plan_id: Optional[str] = None,
    from_status: Optional[str] = None,
    to_status: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> SubscriptionHistory:
    """履歴エントリを追加 (コミットは commit_transition で行う)"""
    if event_type not in HISTORY_EVENT_TYPES:
        raise ValueError(f"Unknown history event type: {event_type}")
    if sub.id is None:
        flush_changes(db, sub.organization_id, f"history {event_type}")
    entry = SubscriptionHistory(
        subscription_id=sub.id,
        event_type=event_type,
        from_plan_id=from_plan_id,
        to_plan_id=to_plan_id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        changed_by=actor.user_id,
        changed_by_role=actor.role,
        event_metadata=metadata or {},
    )
    db.add(entry)
    return entry


def commit_transition(db: Session, organization_id: str, description: str) -> None:
    """購読変更 + 履歴を1トランザクションでコミットし、キャッシュを無効化"""
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.critical(
            f"購読の保存に失敗 (Stripe側と不整合の可能性、Syncで修復): org={organization_id}, {description} - {e}",
            extra={"organization_id": organization_id},
        )
        raise PersistenceError() from e
    plan_cache.invalidate(organization_id)
    logger.info(f"購読更新: org={organization_id}, {description}", extra={"organization_id": organization_id})


# =========================================================
# 組織ごとの上書き (運用者向け)
# =========================================================

def _set_override(
    db: Session,
    organization_id: str,
    field: str,
    value,
    actor: Actor,
    reason: str,
) -> TenantSubscription:
    sub = get_subscription(db, organization_id)
    if not sub:
        raise NotFoundError("No subscription found for this organization", code="subscription_not_found")

    with tenant_lock(organization_id):
        reload(db, sub)
        previous = getattr(sub, field)
        if (previous or None) == (value or None):
            raise NoOpError("No changes to apply.", code="no_change")

        setattr(sub, field, value or None)
        record_history(
            db, sub, "overrides_updated", actor,
            reason=reason,
            from_plan_id=sub.plan_id,
            to_plan_id=sub.plan_id,
            from_status=sub.status,
            to_status=sub.status,
            metadata={"field": field, "from": previous, "to": value or None},
        )
        commit_transition(db, organization_id, f"{field} updated")
    return sub


def set_custom_limits(db: Session, organization_id: str, limits: Optional[dict], actor: Actor) -> TenantSubscription:
    """組織ごとの上限を設定 (空なら解除)。プランの上限より優先"""
    return _set_override(db, organization_id, "custom_limits", limits, actor, "Updated custom resource limits")


def set_custom_features(db: Session, organization_id: str, features: Optional[list], actor: Actor) -> TenantSubscription:
    """組織ごとの機能付与 / "!key" で取り消し (空なら解除)"""
    return _set_override(db, organization_id, "custom_features", features, actor, "Updated custom features")
