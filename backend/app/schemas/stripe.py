"""Stripe ペイロードの境界変換

Stripe の語彙 (price, product, current_period_start, cancel_at ...) はここで
内部フィールド名へ 1:1 に写像する。サービス層は Stripe の dict を直接触らない。
"""
from datetime import datetime, timezone
from typing import Any, Literal, Mapping, Optional, Union

from pydantic import BaseModel, Field

# Stripe のステータス → ローカル語彙
STATUS_MAP = {
    "trialing": "trialing",
    "active": "active",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "past_due",
    "paused": "past_due",
    "incomplete": "none",
    "incomplete_expired": "canceled",
}


def to_datetime(value: Optional[int]) -> Optional[datetime]:
    """UNIX秒 → naive UTC datetime"""
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def map_status(provider_status: Optional[str]) -> str:
    return STATUS_MAP.get(provider_status or "", "none")


def _get(obj: Any, key: str, default=None):
    if obj is None:
        return default
    try:
        value = obj.get(key, default)
    except AttributeError:
        return default
    return default if value is None else value


def _expandable_id(value: Any) -> Optional[str]:
    """展開済みオブジェクト / ID文字列 のどちらでもIDを返す"""
    if value is None or isinstance(value, str):
        return value
    return _get(value, "id")


class SubscriptionSnapshot(BaseModel):
    """Stripe Subscription の内部表現"""

    subscription_id: str
    customer_id: Optional[str] = None
    status: str
    provider_status: Optional[str] = None
    item_id: Optional[str] = None
    price_id: Optional[str] = None
    product_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    organization_id: Optional[str] = None
    default_payment_method: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping) -> "SubscriptionSnapshot":
        items = _get(_get(obj, "items"), "data", [])
        first_item = items[0] if items else None
        price = _get(first_item, "price")
        metadata = _get(obj, "metadata", {})

        # 新しいAPIバージョンでは期間が item 側にある
        period_start = _get(obj, "current_period_start") or _get(first_item, "current_period_start")
        period_end = _get(obj, "current_period_end") or _get(first_item, "current_period_end")

        return cls(
            subscription_id=_get(obj, "id"),
            customer_id=_expandable_id(_get(obj, "customer")),
            status=map_status(_get(obj, "status")),
            provider_status=_get(obj, "status"),
            item_id=_get(first_item, "id"),
            price_id=_get(price, "id"),
            product_id=_expandable_id(_get(price, "product")),
            current_period_start=to_datetime(period_start),
            current_period_end=to_datetime(period_end),
            cancel_at_period_end=bool(_get(obj, "cancel_at_period_end", False)),
            cancel_at=to_datetime(_get(obj, "cancel_at")),
            canceled_at=to_datetime(_get(obj, "canceled_at")),
            trial_end=to_datetime(_get(obj, "trial_end")),
            organization_id=_get(metadata, "organizationId"),
            default_payment_method=_expandable_id(_get(obj, "default_payment_method")),
        )


class InvoiceSummary(BaseModel):
    invoice_id: str
    number: Optional[str] = None
    status: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: Optional[str] = None
    created: Optional[datetime] = None
    hosted_invoice_url: Optional[str] = None
    invoice_pdf: Optional[str] = None

    @classmethod
    def from_stripe(cls, obj: Mapping) -> "InvoiceSummary":
        return cls(
            invoice_id=_get(obj, "id"),
            number=_get(obj, "number"),
            status=_get(obj, "status"),
            amount_due=_get(obj, "amount_due", 0),
            amount_paid=_get(obj, "amount_paid", 0),
            currency=_get(obj, "currency"),
            created=to_datetime(_get(obj, "created")),
            hosted_invoice_url=_get(obj, "hosted_invoice_url"),
            invoice_pdf=_get(obj, "invoice_pdf"),
        )


class PaymentMethodSummary(BaseModel):
    payment_method_id: str
    type: Optional[str] = None
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None

    @classmethod
    def from_stripe(cls, obj: Mapping) -> "PaymentMethodSummary":
        card = _get(obj, "card", {})
        return cls(
            payment_method_id=_get(obj, "id"),
            type=_get(obj, "type"),
            brand=_get(card, "brand"),
            last4=_get(card, "last4"),
            exp_month=_get(card, "exp_month"),
            exp_year=_get(card, "exp_year"),
        )


# =========================================================
# Webhook イベント (型付きバリアント)
# =========================================================

class _EventBase(BaseModel):
    event_id: str
    created: Optional[datetime] = None


class CheckoutCompletedEvent(_EventBase):
    type: Literal["checkout_completed"] = "checkout_completed"
    session_id: str
    organization_id: str = Field(min_length=1)
    subscription_id: str = Field(min_length=1)
    customer_id: Optional[str] = None


class SubscriptionChangedEvent(_EventBase):
    type: Literal["subscription_changed"] = "subscription_changed"
    subscription: SubscriptionSnapshot


class SubscriptionDeletedEvent(_EventBase):
    type: Literal["subscription_deleted"] = "subscription_deleted"
    subscription: SubscriptionSnapshot


class InvoicePaidEvent(_EventBase):
    type: Literal["invoice_paid"] = "invoice_paid"
    invoice_id: str
    subscription_id: Optional[str] = None
    amount_paid: int = 0


class InvoicePaymentFailedEvent(_EventBase):
    type: Literal["invoice_payment_failed"] = "invoice_payment_failed"
    invoice_id: str
    subscription_id: Optional[str] = None
    failure_message: str = "Unknown error"
    attempt_count: Optional[int] = None
    next_payment_attempt: Optional[datetime] = None


class TrialWillEndEvent(_EventBase):
    type: Literal["trial_will_end"] = "trial_will_end"
    subscription: SubscriptionSnapshot


ProviderEvent = Union[
    CheckoutCompletedEvent,
    SubscriptionChangedEvent,
    SubscriptionDeletedEvent,
    InvoicePaidEvent,
    InvoicePaymentFailedEvent,
    TrialWillEndEvent,
]


def _invoice_subscription_id(invoice: Mapping) -> Optional[str]:
    subscription = _expandable_id(_get(invoice, "subscription"))
    if subscription:
        return subscription
    # 新しいAPIバージョン: parent.subscription_details.subscription
    details = _get(_get(invoice, "parent"), "subscription_details")
    return _expandable_id(_get(details, "subscription"))


def _invoice_failure_message(invoice: Mapping) -> str:
    for key in ("last_payment_error", "last_finalization_error"):
        message = _get(_get(invoice, key), "message")
        if message:
            return message
    return "Unknown error"


def parse_event(event: Mapping) -> Optional[ProviderEvent]:
    """検証済み Stripe Event を型付きバリアントに変換

    未対応のイベント種別は None。必須フィールド欠落は pydantic.ValidationError。
    """
    event_type = _get(event, "type")
    obj = _get(_get(event, "data"), "object", {})
    base = {"event_id": _get(event, "id"), "created": to_datetime(_get(event, "created"))}

    if event_type == "checkout.session.completed":
        metadata = _get(obj, "metadata", {})
        return CheckoutCompletedEvent(
            **base,
            session_id=_get(obj, "id"),
            organization_id=_get(metadata, "organizationId"),
            subscription_id=_expandable_id(_get(obj, "subscription")),
            customer_id=_expandable_id(_get(obj, "customer")),
        )
    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionChangedEvent(**base, subscription=SubscriptionSnapshot.from_stripe(obj))
    if event_type == "customer.subscription.deleted":
        return SubscriptionDeletedEvent(**base, subscription=SubscriptionSnapshot.from_stripe(obj))
    if event_type == "invoice.paid":
        return InvoicePaidEvent(
            **base,
            invoice_id=_get(obj, "id"),
            subscription_id=_invoice_subscription_id(obj),
            amount_paid=_get(obj, "amount_paid", 0),
        )
    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailedEvent(
            **base,
            invoice_id=_get(obj, "id"),
            subscription_id=_invoice_subscription_id(obj),
            failure_message=_invoice_failure_message(obj),
            attempt_count=_get(obj, "attempt_count"),
            next_payment_attempt=to_datetime(_get(obj, "next_payment_attempt")),
        )
    if event_type == "customer.subscription.trial_will_end":
        return TrialWillEndEvent(**base, subscription=SubscriptionSnapshot.from_stripe(obj))
    return None
