from sqlalchemy import Column, Integer, String, Text, DateTime, JSON, ForeignKey, func
from app.core.database import Base

HISTORY_EVENT_TYPES = (
    "checkout_completed",
    "plan_changed",
    "upgraded",
    "downgraded",
    "canceled",
    "cancellation_scheduled",
    "reactivated",
    "payment_succeeded",
    "payment_failed",
    "trial_ending",
    "overrides_updated",
)


class SubscriptionHistory(Base):
    """購読状態遷移の監査ログ (追記のみ、更新・削除しない)"""

    __tablename__ = "subscription_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subscription_id = Column(Integer, ForeignKey("tenant_subscriptions.id", ondelete="CASCADE"), nullable=False, index=True)
    event_type = Column(String(40), nullable=False)
    from_plan_id = Column(String(50), nullable=True)
    to_plan_id = Column(String(50), nullable=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    reason = Column(Text, nullable=True)
    changed_by = Column(String(255), nullable=False, comment="ユーザーID または stripe_webhook / system")
    changed_by_role = Column(String(50), nullable=False)
    event_metadata = Column("metadata", JSON, nullable=True, comment="Stripe識別子 (price/invoice/session)")
    created_at = Column(DateTime, nullable=False, server_default=func.now(), index=True)
