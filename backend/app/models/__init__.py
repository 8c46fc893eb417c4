# 全モデルをインポート (Alembic autogenerate用)
from app.models.plan import Plan
from app.models.subscription import TenantSubscription
from app.models.subscription_history import SubscriptionHistory
from app.models.processed_stripe_event import ProcessedStripeEvent

__all__ = [
    "Plan",
    "TenantSubscription",
    "SubscriptionHistory",
    "ProcessedStripeEvent",
]
