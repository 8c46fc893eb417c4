"""課金イベント通知 (外部の通知サービスへの出口)

通知の失敗が課金状態の遷移を妨げてはならない。
"""
from typing import Optional, Protocol

from app.core.logging import get_logger

logger = get_logger(__name__)


class BillingNotifier(Protocol):
    def notify_billing_event(self, organization_id: str, event_type: str, details: dict) -> None:
        ...


class LoggingNotifier:
    """既定実装: 送信はせずログのみ"""

    def notify_billing_event(self, organization_id: str, event_type: str, details: dict) -> None:
        logger.info(f"課金イベント通知: org={organization_id}, event={event_type}, details={details}")


_notifier: BillingNotifier = LoggingNotifier()


def set_notifier(notifier: BillingNotifier) -> None:
    global _notifier
    _notifier = notifier


def notify_tenant(organization_id: str, event_type: str, details: Optional[dict] = None) -> None:
    """fire-and-forget。例外は記録して握りつぶす"""
    try:
        _notifier.notify_billing_event(organization_id, event_type, details or {})
    except Exception as e:
        logger.error(f"課金イベント通知失敗: org={organization_id}, event={event_type} - {e}")
