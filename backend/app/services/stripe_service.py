"""Stripe API ゲートウェイ

プロセスごとに1回だけ生成し、依存性注入で使い回す。
ビジネスロジックは持たない。stripe の例外は app.core.errors の型に変換する。
"""
from contextlib import contextmanager
from typing import Optional

import stripe

from app.core.config import settings
from app.core.errors import (
    ConfigurationError,
    PaymentDeclinedError,
    ProviderRejectedError,
    ProviderUnavailableError,
)
from app.core.logging import get_logger
from app.schemas.stripe import InvoiceSummary, PaymentMethodSummary, SubscriptionSnapshot

logger = get_logger(__name__)


def _plain(obj):
    """StripeObject → dict"""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


@contextmanager
def _translate_errors(operation: str):
    """stripe 例外 → 課金エラー分類"""
    try:
        yield
    except stripe.CardError as e:
        logger.warning(f"Stripeカード拒否: {operation} - {e.user_message or e}")
        raise PaymentDeclinedError() from e
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.error(f"Stripe接続失敗: {operation} - {e}")
        raise ProviderUnavailableError() from e
    except stripe.StripeError as e:
        logger.error(f"Stripeリクエスト拒否: {operation} - {e}")
        raise ProviderRejectedError(e.user_message or str(e)) from e


class StripeGateway:
    """Stripe への薄いクライアント"""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        timeout: int = 20,
        max_network_retries: int = 2,
    ):
        if not secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        if not webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        self._api_key = secret_key
        self._webhook_secret = webhook_secret
        # タイムアウト付きHTTPクライアント + ネットワークエラー時の自動リトライ
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)
        stripe.max_network_retries = max_network_retries

    # ---------------------------------------------------------
    # Subscription
    # ---------------------------------------------------------

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        with _translate_errors("subscription.retrieve"):
            sub = stripe.Subscription.retrieve(subscription_id, api_key=self._api_key)
        return SubscriptionSnapshot.from_stripe(_plain(sub))

    def update_subscription_price(self, subscription_id: str, item_id: str, price_id: str) -> SubscriptionSnapshot:
        """単一の請求アイテムを新しい Price に置き換え (日割りはStripeが計算)"""
        with _translate_errors("subscription.update_price"):
            sub = stripe.Subscription.modify(
                subscription_id,
                api_key=self._api_key,
                items=[{"id": item_id, "price": price_id}],
                proration_behavior="create_prorations",
            )
        logger.info(f"Stripe購読Price更新: subscription={subscription_id}, price={price_id}")
        return SubscriptionSnapshot.from_stripe(_plain(sub))

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> SubscriptionSnapshot:
        with _translate_errors("subscription.cancel_at_period_end"):
            sub = stripe.Subscription.modify(
                subscription_id,
                api_key=self._api_key,
                cancel_at_period_end=cancel,
            )
        logger.info(f"Stripe解約予約更新: subscription={subscription_id}, cancel_at_period_end={cancel}")
        return SubscriptionSnapshot.from_stripe(_plain(sub))

    def list_subscriptions(self, customer_id: str, status: str, limit: int = 1) -> list[SubscriptionSnapshot]:
        with _translate_errors("subscription.list"):
            result = stripe.Subscription.list(
                api_key=self._api_key,
                customer=customer_id,
                status=status,
                limit=limit,
            )
        data = _plain(result).get("data", [])
        return [SubscriptionSnapshot.from_stripe(s) for s in data]

    # ---------------------------------------------------------
    # Customer
    # ---------------------------------------------------------

    def find_customer_by_organization(self, organization_id: str) -> Optional[str]:
        """metadata.organizationId で Customer を検索"""
        with _translate_errors("customer.search"):
            result = stripe.Customer.search(
                api_key=self._api_key,
                query=f"metadata['organizationId']:'{organization_id}'",
            )
        data = _plain(result).get("data", [])
        return data[0]["id"] if data else None

    def create_customer(self, organization_id: str, email: Optional[str], name: Optional[str]) -> str:
        with _translate_errors("customer.create"):
            customer = stripe.Customer.create(
                api_key=self._api_key,
                email=email,
                name=name,
                metadata={"organizationId": organization_id},
            )
        logger.info(f"Stripe Customer作成: customer={customer['id']}, org={organization_id}")
        return customer["id"]

    # ---------------------------------------------------------
    # Checkout / Billing Portal
    # ---------------------------------------------------------

    def create_checkout_session(
        self,
        organization_id: str,
        customer_id: str,
        price_id: str,
        interval: str,
        success_url: str,
        cancel_url: str,
        trial_days: Optional[int] = None,
    ) -> tuple[str, str]:
        """Checkout Session を作成し (session_id, url) を返す"""
        metadata = {"organizationId": organization_id, "interval": interval}
        subscription_data = {"metadata": metadata}
        if trial_days and trial_days > 0:
            subscription_data["trial_period_days"] = trial_days

        with _translate_errors("checkout.create"):
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="subscription",
                customer=customer_id,
                line_items=[{"price": price_id, "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                subscription_data=subscription_data,
                metadata=metadata,
                allow_promotion_codes=True,
                billing_address_collection="required",
            )
        logger.info(f"Checkout Session作成: session={session['id']}, org={organization_id}")
        return session["id"], session["url"]

    def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        with _translate_errors("billing_portal.create"):
            session = stripe.billing_portal.Session.create(
                api_key=self._api_key,
                customer=customer_id,
                return_url=return_url,
            )
        return session["url"]

    # ---------------------------------------------------------
    # Invoice / PaymentMethod
    # ---------------------------------------------------------

    def list_invoices(self, customer_id: str, limit: int = 12) -> list[InvoiceSummary]:
        with _translate_errors("invoice.list"):
            result = stripe.Invoice.list(api_key=self._api_key, customer=customer_id, limit=limit)
        return [InvoiceSummary.from_stripe(i) for i in _plain(result).get("data", [])]

    def retrieve_payment_method(self, payment_method_id: str) -> PaymentMethodSummary:
        with _translate_errors("payment_method.retrieve"):
            pm = stripe.PaymentMethod.retrieve(payment_method_id, api_key=self._api_key)
        return PaymentMethodSummary.from_stripe(_plain(pm))

    # ---------------------------------------------------------
    # Webhook
    # ---------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> dict:
        """Webhook 署名を検証してイベントを返す

        署名不正は stripe.SignatureVerificationError、本文不正は ValueError。
        """
        event = stripe.Webhook.construct_event(payload, sig_header, self._webhook_secret)
        return _plain(event)


_gateway: Optional[StripeGateway] = None


def configure_gateway() -> StripeGateway:
    """起動時に1回だけ呼ぶ。設定不足はここで ConfigurationError"""
    global _gateway
    _gateway = StripeGateway(
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        timeout=settings.STRIPE_TIMEOUT_SECONDS,
        max_network_retries=settings.STRIPE_MAX_NETWORK_RETRIES,
    )
    logger.info("Stripeゲートウェイ初期化")
    return _gateway


def is_configured() -> bool:
    return _gateway is not None


def get_gateway() -> StripeGateway:
    """FastAPI依存関数: 初期化済みゲートウェイ"""
    if _gateway is None:
        raise ConfigurationError("Stripe gateway is not initialized")
    return _gateway
