"""運用者向け: 組織ごとの上限・機能の上書き"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.errors import NotFoundError
from app.routers.deps import CurrentUser, require_platform_admin
from app.schemas.subscription import CustomFeaturesRequest, CustomLimitsRequest, SubscriptionOverridesInfo
from app.services import subscription_service

router = APIRouter(prefix="/api/admin/subscriptions", tags=["admin-subscriptions"])


def _overrides(db: Session, organization_id: str) -> SubscriptionOverridesInfo:
    sub = subscription_service.get_subscription(db, organization_id)
    if not sub:
        raise NotFoundError("No subscription found for this organization", code="subscription_not_found")
    return SubscriptionOverridesInfo(
        organization_id=organization_id,
        custom_limits=sub.custom_limits,
        custom_features=sub.custom_features,
        effective=subscription_service.get_effective_plan(db, organization_id),
    )


@router.get("/{organization_id}", response_model=SubscriptionOverridesInfo)
def get_overrides(
    organization_id: str,
    db: Session = Depends(get_db),
    _: CurrentUser = Depends(require_platform_admin),
):
    """上書き設定と適用後の有効プラン"""
    return _overrides(db, organization_id)


@router.put("/{organization_id}/custom-limits", response_model=SubscriptionOverridesInfo)
def update_custom_limits(
    organization_id: str,
    req: CustomLimitsRequest,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_platform_admin),
):
    """組織ごとの上限を設定 (空で解除)"""
    subscription_service.set_custom_limits(db, organization_id, req.limits, admin.actor)
    return _overrides(db, organization_id)


@router.put("/{organization_id}/custom-features", response_model=SubscriptionOverridesInfo)
def update_custom_features(
    organization_id: str,
    req: CustomFeaturesRequest,
    db: Session = Depends(get_db),
    admin: CurrentUser = Depends(require_platform_admin),
):
    """機能の付与 / "!key" で取り消し (空で解除)"""
    subscription_service.set_custom_features(db, organization_id, req.features, admin.actor)
    return _overrides(db, organization_id)
