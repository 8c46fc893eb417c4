"""公開プランAPI"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.subscription import PlanInfo
from app.services import plan_catalog

router = APIRouter(prefix="/api/plans", tags=["plans"])


def _plan_info(plan) -> PlanInfo:
    return PlanInfo(
        plan_id=plan.plan_id,
        name=plan.name,
        description=plan.description,
        trial_days=plan.trial_days or 0,
        has_monthly_price=bool(plan.stripe_price_id),
        has_annual_price=bool(plan.stripe_annual_price_id),
        limits=plan_catalog.effective_limits(plan),
        features=plan.features or [],
    )


@router.get("", response_model=list[PlanInfo])
async def list_public_plans(db: Session = Depends(get_db)):
    """公開プラン一覧 (アクティブのみ)"""
    return [_plan_info(p) for p in plan_catalog.list_public_plans(db)]


@router.get("/{plan_id}", response_model=PlanInfo)
async def get_plan_detail(plan_id: str, db: Session = Depends(get_db)):
    """プラン詳細"""
    plan = plan_catalog.get_purchasable_plan(db, plan_id)
    if not plan:
        raise HTTPException(status_code=404, detail="Plan not found")
    return _plan_info(plan)
