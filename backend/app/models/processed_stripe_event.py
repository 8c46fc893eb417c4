from sqlalchemy import Column, Integer, String, DateTime, func
from app.core.database import Base


class ProcessedStripeEvent(Base):
    """ハンドラが成功したWebhookイベント (配信レベルの重複排除)

    失敗したイベントは記録しないため、Stripe ダッシュボードからの再送で再処理できる。
    """

    __tablename__ = "processed_stripe_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    organization_id = Column(String(255), nullable=True, index=True, comment="対象組織 (特定できた場合)")
    event_created_at = Column(DateTime, nullable=True, comment="Stripe側のイベント発生日時")
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
