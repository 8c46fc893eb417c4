"""Tests for the HTTP surface: webhook endpoint, billing routes, plans, health."""

import json

from conftest import (
    ORG_ID,
    PRICES,
    build_checkout_session,
    build_event,
    build_subscription,
    sign_payload,
)
from app.core.errors import PaymentDeclinedError
from app.main import app
from app.models.subscription import TenantSubscription
from app.models.subscription_history import SubscriptionHistory
from app.routers import health
from app.routers.deps import CurrentUser, get_current_user


def _post_webhook(client, event, secret=None):
    payload = json.dumps(event).encode("utf-8")
    headers = {"stripe-signature": sign_payload(payload, secret) if secret else sign_payload(payload)}
    return client.post("/api/webhooks/stripe", content=payload, headers=headers)


class TestWebhookEndpoint:
    """Signature verification and acknowledgment."""

    def test_missing_signature_returns_400(self, client):
        response = client.post("/api/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    def test_invalid_signature_returns_400(self, client, plans):
        event = build_event("checkout.session.completed", build_checkout_session())

        response = _post_webhook(client, event, secret="whsec_wrong")

        assert response.status_code == 400

    def test_unknown_event_is_acknowledged(self, client):
        response = _post_webhook(client, build_event("product.created", {"id": "prod_1", "object": "product"}))

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_checkout_event_is_processed_after_ack(self, client, db, plans, gateway):
        """The background task applies the event once the response is sent."""
        gateway.add_subscription(build_subscription("sub_1", PRICES["professional"][0]))

        response = _post_webhook(client, build_event("checkout.session.completed", build_checkout_session()))

        assert response.status_code == 200
        db.expire_all()
        sub = db.query(TenantSubscription).filter(TenantSubscription.organization_id == ORG_ID).first()
        assert sub.status == "active"
        assert sub.plan_id == "professional"
        assert db.query(SubscriptionHistory).count() == 1

    def test_handler_failure_still_acknowledged(self, client, db, plans, gateway):
        """Processing errors after acknowledgment never reach the provider."""
        gateway.add_subscription(build_subscription("sub_1", "price_unknown"))

        response = _post_webhook(client, build_event("checkout.session.completed", build_checkout_session()))

        assert response.status_code == 200
        db.expire_all()
        assert db.query(TenantSubscription).count() == 0


class TestBillingAuth:
    """Session and role requirements."""

    def test_unauthenticated_returns_401(self, client):
        response = client.get("/api/billing/subscription")
        assert response.status_code == 401

    def test_member_role_returns_403(self, client):
        member = CurrentUser(user_id="user_2", role="member", organization_id=ORG_ID)
        app.dependency_overrides[get_current_user] = lambda: member

        response = client.post("/api/billing/cancel")

        assert response.status_code == 403


class TestBillingRoutes:
    """Billing operations through the API."""

    def test_change_plan_noop_returns_409(self, authenticated_client, subscribed):
        response = authenticated_client.post(
            "/api/billing/change-plan", json={"plan_id": "professional", "interval": "monthly"},
        )

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "already_on_plan"
        assert body["retryable"] is False

    def test_change_plan_card_decline_returns_402(self, authenticated_client, subscribed, gateway):
        gateway.fail_with = PaymentDeclinedError()

        response = authenticated_client.post(
            "/api/billing/change-plan", json={"plan_id": "enterprise", "interval": "monthly"},
        )

        assert response.status_code == 402
        assert response.json()["message"] == "Payment failed. Please update your payment method."

    def test_change_plan_success(self, authenticated_client, subscribed):
        response = authenticated_client.post(
            "/api/billing/change-plan", json={"plan_id": "essential", "interval": "annual"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["subscription"]["plan_id"] == "essential"
        assert body["subscription"]["stripe_price_id"] == PRICES["essential"][1]

    def test_invalid_interval_is_rejected(self, authenticated_client, subscribed):
        response = authenticated_client.post(
            "/api/billing/change-plan", json={"plan_id": "essential", "interval": "weekly"},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_cancel_and_history(self, authenticated_client, subscribed):
        response = authenticated_client.post("/api/billing/cancel")
        assert response.status_code == 200
        assert response.json()["subscription"]["cancel_at_period_end"] is True

        response = authenticated_client.post("/api/billing/reactivate")
        assert response.status_code == 200

        history = authenticated_client.get("/api/billing/history").json()
        assert [h["event_type"] for h in history] == ["reactivated", "cancellation_scheduled"]
        assert history[1]["changed_by"] == "user_1"
        assert "stripeSubscriptionId" in history[1]["metadata"]

    def test_reactivate_without_schedule_returns_409(self, authenticated_client, subscribed):
        response = authenticated_client.post("/api/billing/reactivate")

        assert response.status_code == 409
        assert response.json()["message"] == "Subscription is not currently scheduled for cancellation."

    def test_effective_subscription_view(self, authenticated_client, subscribed):
        body = authenticated_client.get("/api/billing/subscription").json()

        assert body["plan_id"] == "professional"
        assert body["is_usable"] is True
        assert body["limits"]["maxProjects"] == 50
        assert body["features"] == ["professional_feature"]

    def test_checkout_returns_url(self, authenticated_client, plans, gateway):
        response = authenticated_client.post(
            "/api/billing/checkout", json={"plan_id": "essential", "interval": "monthly"},
        )

        assert response.status_code == 200
        assert response.json()["url"].startswith("https://checkout.stripe.test/")

    def test_checkout_rejects_foreign_redirect(self, authenticated_client, plans):
        response = authenticated_client.post(
            "/api/billing/checkout",
            json={"plan_id": "essential", "success_url": "https://evil.example.com/done"},
        )

        assert response.status_code == 400

    def test_sync_nothing_to_sync(self, authenticated_client, plans):
        response = authenticated_client.post("/api/billing/sync")

        assert response.status_code == 200
        assert response.json()["success"] is False

    def test_portal(self, authenticated_client, subscribed):
        response = authenticated_client.post("/api/billing/portal", json={})

        assert response.status_code == 200
        assert response.json()["url"] == "https://billing.stripe.test/cus_1"


class TestPublicRoutes:
    """Plans and health."""

    def test_plans_are_listed_in_display_order(self, client, plans):
        body = client.get("/api/plans").json()

        assert [p["plan_id"] for p in body] == ["essential", "professional", "enterprise"]
        assert body[2]["has_annual_price"] is False
        assert body[2]["limits"]["maxProjects"] == -1

    def test_hidden_plan_not_found(self, client, db, plans):
        plans["enterprise"].is_public = False
        db.commit()

        assert client.get("/api/plans/enterprise").status_code == 404

    def test_health_reports_dependencies(self, client, db, monkeypatch):
        async def redis_down():
            return False

        monkeypatch.setattr(health, "check_redis_connection", redis_down)

        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["db"] == "connected"
        assert body["redis"] == "disconnected"


class TestAdminOverrides:
    """Operator-only override endpoints."""

    def _as(self, role):
        user = CurrentUser(user_id="ops_1", role=role, organization_id="org_ops")
        app.dependency_overrides[get_current_user] = lambda: user

    def test_org_owner_is_forbidden(self, client, subscribed):
        self._as("owner")

        response = client.put(f"/api/admin/subscriptions/{ORG_ID}/custom-limits", json={"limits": {"maxProjects": 5}})

        assert response.status_code == 403

    def test_set_limits_and_features(self, client, subscribed):
        self._as("platform_admin")

        response = client.put(f"/api/admin/subscriptions/{ORG_ID}/custom-limits", json={"limits": {"maxProjects": 80}})
        assert response.status_code == 200
        assert response.json()["effective"]["limits"]["maxProjects"] == 80

        response = client.put(f"/api/admin/subscriptions/{ORG_ID}/custom-features", json={"features": ["beta"]})
        body = response.json()
        assert body["custom_features"] == ["beta"]
        assert body["effective"]["features"] == ["professional_feature", "beta"]

    def test_unknown_limit_key_is_rejected(self, client, subscribed):
        self._as("platform_admin")

        response = client.put(f"/api/admin/subscriptions/{ORG_ID}/custom-limits", json={"limits": {"maxRockets": 1}})

        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

    def test_unknown_organization(self, client, plans):
        self._as("platform_admin")

        response = client.get("/api/admin/subscriptions/org_missing")

        assert response.status_code == 404
        assert response.json()["error"] == "subscription_not_found"
