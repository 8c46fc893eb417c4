"""Shared fixtures for the billing sync tests."""

import hashlib
import hmac
import os
import time
from itertools import count

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["DEBUG"] = "false"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["PLAN_CACHE_BACKEND"] = "memory"

import pytest
from fastapi.testclient import TestClient

from app.core.database import Base, SessionLocal, engine
from app.core.errors import ProviderRejectedError
from app.main import app
from app.models.plan import Plan
from app.models.subscription import TenantSubscription
from app.routers.deps import CurrentUser, get_current_user
from app.schemas.stripe import InvoiceSummary, PaymentMethodSummary, SubscriptionSnapshot, to_datetime
from app.services import notification_service, plan_cache
from app.services.stripe_service import StripeGateway, get_gateway

WEBHOOK_SECRET = "whsec_test_secret"
ORG_ID = "org_1"
PERIOD_START = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z

PRICES = {
    "essential": ("price_essential_monthly", "price_essential_annual"),
    "professional": ("price_professional_monthly", "price_professional_annual"),
    "enterprise": ("price_enterprise_monthly", None),
}

_event_ids = count(1)


# =========================================================
# Stripe-shaped payload builders
# =========================================================

def build_subscription(
    sub_id="sub_1",
    price_id=PRICES["professional"][0],
    status="active",
    customer_id="cus_1",
    organization_id=ORG_ID,
    cancel_at_period_end=False,
    cancel_at=None,
    period_start=PERIOD_START,
    period_end=PERIOD_END,
    trial_end=None,
    default_payment_method="pm_1",
):
    """Build a subscription object the way the Stripe API returns it.

    Args:
        sub_id: Stripe subscription id.
        price_id: Price of the single subscription item.
        status: Stripe subscription status.
        customer_id: Stripe customer id.
        organization_id: Value of metadata.organizationId (None to omit).
        cancel_at_period_end: Scheduled cancellation flag.
        cancel_at: Scheduled cancellation unix timestamp.
        period_start: Current period start (unix seconds).
        period_end: Current period end (unix seconds).
        trial_end: Trial end (unix seconds).
        default_payment_method: Payment method id.

    Returns:
        dict: Subscription payload.
    """
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "canceled_at": None,
        "trial_end": trial_end,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "default_payment_method": default_payment_method,
        "metadata": {"organizationId": organization_id} if organization_id else {},
        "items": {
            "object": "list",
            "data": [
                {
                    "id": f"si_{sub_id}",
                    "object": "subscription_item",
                    "price": {"id": price_id, "object": "price", "product": f"prod_{price_id}"},
                }
            ],
        },
    }


def build_invoice(invoice_id="in_1", subscription_id="sub_1", amount_paid=14900, attempt_count=1, message=None):
    """Build an invoice payload."""
    invoice = {
        "id": invoice_id,
        "object": "invoice",
        "subscription": subscription_id,
        "amount_paid": amount_paid,
        "attempt_count": attempt_count,
        "next_payment_attempt": PERIOD_START + 3 * 86400,
    }
    if message:
        invoice["last_payment_error"] = {"message": message}
    return invoice


def build_checkout_session(session_id="cs_1", subscription_id="sub_1", customer_id="cus_1", organization_id=ORG_ID):
    return {
        "id": session_id,
        "object": "checkout.session",
        "mode": "subscription",
        "subscription": subscription_id,
        "customer": customer_id,
        "metadata": {"organizationId": organization_id, "interval": "monthly"} if organization_id else {},
    }


def build_event(event_type, obj, event_id=None, created=None):
    """Wrap a payload in an Event envelope."""
    return {
        "id": event_id or f"evt_{next(_event_ids)}",
        "object": "event",
        "type": event_type,
        "created": created or int(time.time()),
        "data": {"object": obj},
    }


def sign_payload(payload: bytes, secret=WEBHOOK_SECRET, timestamp=None) -> str:
    """Compute a Stripe-Signature header for a raw body."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


# =========================================================
# Fake gateway
# =========================================================

class FakeGateway(StripeGateway):
    """In-memory Stripe stand-in. Webhook signature checks stay real."""

    def __init__(self):
        super().__init__(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)
        self.subscriptions = {}
        self.customers = {}
        self.invoices = []
        self.payment_methods = {}
        self.calls = []
        self.fail_with = None
        self.checkout_sessions = []

    def add_subscription(self, raw):
        self.subscriptions[raw["id"]] = raw
        return raw

    def _raise_if_failing(self):
        if self.fail_with is not None:
            raise self.fail_with

    def retrieve_subscription(self, subscription_id):
        self.calls.append(("retrieve_subscription", subscription_id))
        raw = self.subscriptions.get(subscription_id)
        if raw is None:
            raise ProviderRejectedError(f"No such subscription: '{subscription_id}'")
        return SubscriptionSnapshot.from_stripe(raw)

    def update_subscription_price(self, subscription_id, item_id, price_id):
        self.calls.append(("update_subscription_price", subscription_id, item_id, price_id))
        self._raise_if_failing()
        raw = self.subscriptions[subscription_id]
        raw["items"]["data"][0]["price"] = {"id": price_id, "object": "price", "product": f"prod_{price_id}"}
        return SubscriptionSnapshot.from_stripe(raw)

    def set_cancel_at_period_end(self, subscription_id, cancel):
        self.calls.append(("set_cancel_at_period_end", subscription_id, cancel))
        self._raise_if_failing()
        raw = self.subscriptions[subscription_id]
        raw["cancel_at_period_end"] = cancel
        raw["cancel_at"] = raw["current_period_end"] if cancel else None
        return SubscriptionSnapshot.from_stripe(raw)

    def list_subscriptions(self, customer_id, status, limit=1):
        self.calls.append(("list_subscriptions", customer_id, status))
        found = [
            SubscriptionSnapshot.from_stripe(raw)
            for raw in self.subscriptions.values()
            if raw["customer"] == customer_id and raw["status"] == status
        ]
        return found[:limit]

    def find_customer_by_organization(self, organization_id):
        self.calls.append(("find_customer_by_organization", organization_id))
        return self.customers.get(organization_id)

    def create_customer(self, organization_id, email, name):
        self.calls.append(("create_customer", organization_id, email))
        customer_id = f"cus_new_{organization_id}"
        self.customers[organization_id] = customer_id
        return customer_id

    def create_checkout_session(self, **kwargs):
        self.calls.append(("create_checkout_session", kwargs["price_id"]))
        self._raise_if_failing()
        self.checkout_sessions.append(kwargs)
        session_id = f"cs_test_{len(self.checkout_sessions)}"
        return session_id, f"https://checkout.stripe.test/{session_id}"

    def create_billing_portal_session(self, customer_id, return_url):
        self.calls.append(("create_billing_portal_session", customer_id))
        return f"https://billing.stripe.test/{customer_id}"

    def list_invoices(self, customer_id, limit=12):
        return [InvoiceSummary.from_stripe(i) for i in self.invoices][:limit]

    def retrieve_payment_method(self, payment_method_id):
        return PaymentMethodSummary.from_stripe(self.payment_methods[payment_method_id])


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify_billing_event(self, organization_id, event_type, details):
        self.sent.append((organization_id, event_type, details))


# =========================================================
# Fixtures
# =========================================================

@pytest.fixture
def db():
    """Fresh in-memory schema per test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        plan_cache.plan_cache.clear()


@pytest.fixture
def plans(db):
    """Seed essential / professional / enterprise with monthly and annual prices."""
    created = {}
    for order, (plan_id, (monthly, annual)) in enumerate(PRICES.items(), start=1):
        plan = Plan(
            plan_id=plan_id,
            name=plan_id.capitalize(),
            description=f"{plan_id} plan",
            is_active=True,
            is_public=True,
            trial_days=14 if plan_id != "enterprise" else 30,
            stripe_product_id=f"prod_{plan_id}",
            stripe_price_id=monthly,
            stripe_annual_price_id=annual,
            features=[f"{plan_id}_feature"],
            display_order=order,
        )
        db.add(plan)
        created[plan_id] = plan
    db.commit()
    return created


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    recorder = RecordingNotifier()
    notification_service.set_notifier(recorder)
    yield recorder
    notification_service.set_notifier(notification_service.LoggingNotifier())


@pytest.fixture
def subscribed(db, plans, gateway):
    """Organization on professional/monthly, active, linked to sub_1 at the provider."""
    gateway.add_subscription(build_subscription("sub_1", PRICES["professional"][0]))
    gateway.customers[ORG_ID] = "cus_1"
    sub = TenantSubscription(
        organization_id=ORG_ID,
        plan_id="professional",
        status="active",
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        stripe_price_id=PRICES["professional"][0],
        current_period_start=to_datetime(PERIOD_START),
        current_period_end=to_datetime(PERIOD_END),
        cancel_at_period_end=False,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


@pytest.fixture
def owner():
    return CurrentUser(user_id="user_1", role="owner", organization_id=ORG_ID, email="owner@example.com")


@pytest.fixture
def client(db, gateway):
    """Unauthenticated client with the fake gateway injected."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_current_user] = lambda: None
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def authenticated_client(client, owner):
    """Client acting as the organization owner."""
    app.dependency_overrides[get_current_user] = lambda: owner
    return client
