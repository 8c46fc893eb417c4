"""プランカタログ: 内部プランID ⇔ Stripe Price ID、リソース上限の既定値"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models.plan import Plan

PLAN_ORDER = ("essential", "professional", "enterprise")

# コード側の既定上限 (-1 = 無制限)。DB の resource_limits がキー単位で優先
DEFAULT_LIMITS = {
    "essential": {
        "maxProjects": 5,
        "maxParticipants": 100,
        "maxSubOrganizations": 1,
        "maxInstructors": 3,
        "maxCourses": 15,
        "maxCurriculums": 5,
        "maxStorageGB": 5,
        "maxProjectsPerMonth": 5,
        "maxEmailsPerMonth": 100,
        "maxAiSummarizationsPerMonth": 10,
    },
    "professional": {
        "maxProjects": 50,
        "maxParticipants": 500,
        "maxSubOrganizations": 10,
        "maxInstructors": 20,
        "maxCourses": 100,
        "maxCurriculums": 25,
        "maxStorageGB": 50,
        "maxProjectsPerMonth": 50,
        "maxCustomRoles": 10,
        "maxEmailsPerMonth": 1000,
        "maxAiSummarizationsPerMonth": 100,
    },
    "enterprise": {
        "maxProjects": -1,
        "maxParticipants": -1,
        "maxSubOrganizations": -1,
        "maxInstructors": -1,
        "maxCourses": -1,
        "maxCurriculums": -1,
        "maxStorageGB": 500,
        "maxProjectsPerMonth": -1,
        "maxCustomRoles": -1,
        "maxEmailsPerMonth": -1,
        "maxAiSummarizationsPerMonth": -1,
    },
}

# リソース種別 → 上限キー
RESOURCE_LIMIT_KEYS = {
    "projects": "maxProjects",
    "participants": "maxParticipants",
    "sub_organizations": "maxSubOrganizations",
    "instructors": "maxInstructors",
    "courses": "maxCourses",
    "curriculums": "maxCurriculums",
    "storage": "maxStorageGB",
    "projects_per_month": "maxProjectsPerMonth",
    "custom_roles": "maxCustomRoles",
    "emails_per_month": "maxEmailsPerMonth",
    "ai_summarizations_per_month": "maxAiSummarizationsPerMonth",
}

LIMIT_KEYS = frozenset(RESOURCE_LIMIT_KEYS.values())


@dataclass
class PriceMatch:
    plan: Plan
    interval: str


def plan_rank(plan_id: Optional[str]) -> int:
    """essential < professional < enterprise。不明なプランは最下位"""
    try:
        return PLAN_ORDER.index(plan_id)
    except ValueError:
        return -1


def get_purchasable_plan(db: Session, plan_id: str) -> Optional[Plan]:
    """有効かつ公開中のプランのみ"""
    return db.query(Plan).filter(
        Plan.plan_id == plan_id,
        Plan.is_active == True,
        Plan.is_public == True,
    ).first()


def list_public_plans(db: Session) -> list[Plan]:
    return db.query(Plan).filter(
        Plan.is_active == True,
        Plan.is_public == True,
    ).order_by(Plan.display_order, Plan.id).all()


def price_for(plan: Plan, interval: str = "monthly") -> Optional[str]:
    return plan.stripe_annual_price_id if interval == "annual" else plan.stripe_price_id


def plan_for_price(db: Session, price_id: Optional[str]) -> Optional[PriceMatch]:
    """Price ID → プラン (月額/年額どちらのPriceでも可)"""
    if not price_id:
        return None
    plan = db.query(Plan).filter(
        or_(Plan.stripe_price_id == price_id, Plan.stripe_annual_price_id == price_id)
    ).first()
    if not plan:
        return None
    interval = "annual" if plan.stripe_annual_price_id == price_id else "monthly"
    return PriceMatch(plan=plan, interval=interval)


def effective_limits(plan: Optional[Plan], custom_limits: Optional[dict] = None) -> dict:
    """上限の優先順: 組織ごとの custom_limits > DB の resource_limits > コード既定値"""
    if plan is None:
        return {}
    limits = dict(DEFAULT_LIMITS.get(plan.plan_id, {}))
    limits.update(plan.resource_limits or {})
    limits.update(custom_limits or {})
    return limits


def effective_features(plan: Optional[Plan], custom_features: Optional[list] = None) -> list[str]:
    """プランの機能に組織ごとの上書きを適用

    custom_features の "key" は付与、"!key" は取り消し。
    """
    features = list(plan.features or []) if plan else []
    for entry in custom_features or []:
        if entry.startswith("!"):
            revoked = entry[1:]
            features = [f for f in features if f != revoked]
        elif entry not in features:
            features.append(entry)
    return features


def has_resource_capacity(
    limits: Optional[dict],
    resource: str,
    current_usage: int,
    requested_amount: int = 1,
) -> dict:
    """リソース追加可否。limits が None なら購読なし扱い"""
    if limits is None:
        return {
            "has_capacity": False,
            "current": current_usage,
            "limit": 0,
            "available": 0,
            "reason": "no_subscription",
        }

    limit_key = RESOURCE_LIMIT_KEYS.get(resource)
    if not limit_key:
        return {
            "has_capacity": False,
            "current": current_usage,
            "limit": 0,
            "available": 0,
            "reason": "invalid_resource",
        }

    limit = limits.get(limit_key, 0)
    if limit == -1:
        return {
            "has_capacity": True,
            "current": current_usage,
            "limit": -1,
            "available": -1,
            "reason": "unlimited",
        }

    available = limit - current_usage
    has_capacity = available >= requested_amount
    return {
        "has_capacity": has_capacity,
        "current": current_usage,
        "limit": limit,
        "available": available,
        "reason": "within_limit" if has_capacity else "limit_exceeded",
    }
