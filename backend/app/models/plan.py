from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, JSON, func
from app.core.database import Base


class Plan(Base):
    __tablename__ = "subscription_plans"

    id = Column(Integer, primary_key=True, autoincrement=True)
    plan_id = Column(String(50), nullable=False, unique=True, comment="内部プランID (essential/professional/enterprise)")
    name = Column(String(255), nullable=False, comment="プラン名")
    description = Column(Text, nullable=True, comment="プラン説明")
    is_active = Column(Boolean, nullable=False, default=True)
    is_public = Column(Boolean, nullable=False, default=True, comment="料金ページに表示するか")
    trial_days = Column(Integer, nullable=False, default=0)

    # Stripe連携
    stripe_product_id = Column(String(255), nullable=True)
    stripe_price_id = Column(String(255), nullable=True, unique=True, comment="月額Price ID")
    stripe_annual_price_id = Column(String(255), nullable=True, unique=True, comment="年額Price ID")

    # 上限・機能 (NULLならコード既定値)
    resource_limits = Column(JSON, nullable=True, comment="リソース上限 (-1=無制限)")
    features = Column(JSON, nullable=True, comment="機能キー一覧")

    # 並び順
    display_order = Column(Integer, nullable=False, default=0, comment="表示順（小さいほど上）")

    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now(), onupdate=func.now())
