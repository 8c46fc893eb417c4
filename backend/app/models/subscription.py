from sqlalchemy import Column, Integer, String, Boolean, DateTime, JSON, Enum as SAEnum, ForeignKey, func
from sqlalchemy.orm import relationship
from app.core.database import Base

SUBSCRIPTION_STATUSES = ("none", "trialing", "active", "past_due", "canceled")


class TenantSubscription(Base):
    """組織ごとの購読 (Stripe 側状態の派生ビュー)"""

    __tablename__ = "tenant_subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(String(255), nullable=False, unique=True, index=True)
    plan_id = Column(String(50), ForeignKey("subscription_plans.plan_id", ondelete="SET NULL"), nullable=True)
    status = Column(
        SAEnum(*SUBSCRIPTION_STATUSES, name="tenant_subscription_status"),
        nullable=False,
        default="none",
    )

    # Stripe識別子
    stripe_customer_id = Column(String(255), nullable=True, index=True)
    stripe_subscription_id = Column(String(255), nullable=True, unique=True)
    stripe_price_id = Column(String(255), nullable=True)
    stripe_product_id = Column(String(255), nullable=True)

    current_period_start = Column(DateTime, nullable=True)
    current_period_end = Column(DateTime, nullable=True)
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancel_at = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True)

    last_event_at = Column(DateTime, nullable=True, comment="最後に適用した購読イベントの発生日時")

    # 組織ごとの上書き (運用者が設定)。custom_features の "!key" は機能の取り消し
    custom_limits = Column(JSON, nullable=True)
    custom_features = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())

    plan = relationship("Plan", lazy="joined")
