from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.services.plan_catalog import LIMIT_KEYS

BillingInterval = Literal["monthly", "annual"]


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    interval: BillingInterval = "monthly"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class ChangePlanRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    interval: BillingInterval = "monthly"


class BillingPortalRequest(BaseModel):
    return_url: Optional[str] = None


class SubscriptionInfo(BaseModel):
    organization_id: str
    plan_id: Optional[str] = None
    status: str
    stripe_price_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SubscriptionResult(BaseModel):
    success: bool = True
    message: Optional[str] = None
    subscription: Optional[SubscriptionInfo] = None


class HistoryEntryInfo(BaseModel):
    id: int
    event_type: str
    from_plan_id: Optional[str] = None
    to_plan_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None
    changed_by: str
    changed_by_role: Optional[str] = None
    # ORM 側の属性名は event_metadata (列名は metadata)
    metadata: Optional[dict[str, Any]] = Field(default=None, validation_alias="event_metadata")
    created_at: datetime

    model_config = {"from_attributes": True}


class PlanInfo(BaseModel):
    plan_id: str
    name: str
    description: Optional[str] = None
    trial_days: int = 0
    has_monthly_price: bool = False
    has_annual_price: bool = False
    limits: dict[str, Any] = Field(default_factory=dict)
    features: list[str] = Field(default_factory=list)


class CustomLimitsRequest(BaseModel):
    """組織ごとの上限 (-1 = 無制限)。空の dict で解除"""

    limits: dict[str, int] = Field(default_factory=dict)

    @field_validator("limits")
    @classmethod
    def validate_limits(cls, v: dict[str, int]) -> dict[str, int]:
        unknown = sorted(set(v) - LIMIT_KEYS)
        if unknown:
            raise ValueError(f"Unknown limit keys: {', '.join(unknown)}")
        if any(value < -1 for value in v.values()):
            raise ValueError("Limits must be -1 (unlimited) or greater")
        return v


class CustomFeaturesRequest(BaseModel):
    """機能キーの付与 / "!key" で取り消し。空のリストで解除"""

    features: list[str] = Field(default_factory=list)

    @field_validator("features")
    @classmethod
    def validate_features(cls, v: list[str]) -> list[str]:
        cleaned = [f.strip() for f in v]
        if any(not f or f == "!" for f in cleaned):
            raise ValueError("Feature keys must not be empty")
        return list(dict.fromkeys(cleaned))


class SubscriptionOverridesInfo(BaseModel):
    organization_id: str
    custom_limits: Optional[dict[str, int]] = None
    custom_features: Optional[list[str]] = None
    effective: dict[str, Any]
