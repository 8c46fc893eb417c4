"""Tests for pulling subscription state from the provider."""

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import ORG_ID, PERIOD_END, PERIOD_START, PRICES, build_subscription
from app.core.database import SessionLocal
from app.core.errors import BillingError, ConfigurationError, PersistenceError
from app.models.subscription import TenantSubscription
from app.models.subscription_history import SubscriptionHistory
from app.schemas.stripe import to_datetime
from app.services import sync_service
from app.services.subscription_service import Actor

ACTOR = Actor(user_id="user_1", role="owner")


def _history(db):
    return db.query(SubscriptionHistory).order_by(SubscriptionHistory.id).all()


class TestSyncConvergence:
    """The local row converges on the provider subscription."""

    def test_missing_row_is_created(self, db, plans, gateway):
        """No local row: customer is found by metadata search and the row is built."""
        gateway.customers[ORG_ID] = "cus_1"
        gateway.add_subscription(build_subscription("sub_1", PRICES["professional"][0]))

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.synced is True
        sub = result.subscription
        assert sub.plan_id == "professional"
        assert sub.status == "active"
        assert sub.current_period_start == to_datetime(PERIOD_START)
        assert sub.current_period_end == to_datetime(PERIOD_END)
        assert sub.stripe_customer_id == "cus_1"

        entries = _history(db)
        assert len(entries) == 1
        assert entries[0].event_type == "plan_changed"
        assert entries[0].from_plan_id is None
        assert entries[0].to_plan_id == "professional"

    def test_stale_row_is_repaired(self, db, subscribed, gateway):
        """Drifted plan and period are overwritten from the provider."""
        later_end = PERIOD_END + 30 * 86400
        gateway.add_subscription(build_subscription("sub_1", PRICES["enterprise"][0], period_end=later_end))

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.subscription.plan_id == "enterprise"
        assert result.subscription.current_period_end == to_datetime(later_end)
        entries = _history(db)
        assert len(entries) == 1
        assert entries[0].from_plan_id == "professional"
        assert entries[0].event_metadata["source"] == "sync"

    def test_repeated_sync_is_idempotent(self, db, subscribed, gateway):
        """No provider-side change means no new history."""
        sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)
        sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert _history(db) == []
        assert db.query(TenantSubscription).count() == 1

    def test_trialing_subscription_is_used_when_no_active(self, db, plans, gateway):
        gateway.customers[ORG_ID] = "cus_1"
        gateway.add_subscription(build_subscription("sub_t", PRICES["essential"][0], status="trialing"))

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.subscription.status == "trialing"
        assert [c[2] for c in gateway.calls if c[0] == "list_subscriptions"] == ["active", "trialing"]

    def test_recovers_from_missed_deletion(self, db, subscribed, gateway):
        """A re-subscription under a new provider id replaces the stale link."""
        gateway.subscriptions.clear()
        gateway.add_subscription(build_subscription("sub_2", PRICES["professional"][0]))

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.subscription.stripe_subscription_id == "sub_2"
        assert _history(db) == []


class TestSyncNothingToDo:
    """Cases where sync reports nothing to sync."""

    def test_no_customer(self, db, plans, gateway):
        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.synced is False
        assert db.query(TenantSubscription).count() == 0

    def test_no_live_subscription(self, db, plans, gateway):
        gateway.customers[ORG_ID] = "cus_1"
        gateway.add_subscription(build_subscription("sub_1", PRICES["essential"][0], status="canceled"))

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.synced is False
        assert "Nothing to sync" in result.message
        assert db.query(TenantSubscription).count() == 0

    def test_unknown_price_is_configuration_error(self, db, plans, gateway):
        gateway.customers[ORG_ID] = "cus_1"
        gateway.add_subscription(build_subscription("sub_1", "price_legacy"))

        with pytest.raises(ConfigurationError):
            sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)
        assert db.query(TenantSubscription).count() == 0


class TestSyncWriteFailures:
    """Database failures while writing the synced row."""

    def test_constraint_violation_is_a_typed_error(self, db, subscribed, gateway, monkeypatch):
        """A unique-constraint failure on flush surfaces as PersistenceError, not IntegrityError."""

        def failing_flush(*args, **kwargs):
            raise IntegrityError("UPDATE tenant_subscriptions", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(db, "flush", failing_flush)

        with pytest.raises(PersistenceError) as exc:
            sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert isinstance(exc.value, BillingError)
        assert exc.value.status_code == 500
        assert exc.value.to_dict()["error"] == "persistence_error"

    def test_lost_insert_race_updates_existing_row(self, db, plans, gateway, monkeypatch):
        """Another worker creates the row between our read and our insert: we update theirs."""
        gateway.customers[ORG_ID] = "cus_1"
        gateway.add_subscription(build_subscription("sub_1", PRICES["professional"][0]))
        real_flush = db.flush
        raced = []

        def racing_flush(*args, **kwargs):
            if not raced:
                raced.append(True)
                other = SessionLocal()
                other.add(TenantSubscription(
                    organization_id=ORG_ID,
                    plan_id="professional",
                    status="active",
                    stripe_customer_id="cus_1",
                    stripe_subscription_id="sub_1",
                    cancel_at_period_end=False,
                ))
                other.commit()
                other.close()
                raise IntegrityError("INSERT INTO tenant_subscriptions", {}, Exception("UNIQUE constraint failed"))
            return real_flush(*args, **kwargs)

        monkeypatch.setattr(db, "flush", racing_flush)

        result = sync_service.sync_subscription(db, gateway, ORG_ID, ACTOR)

        assert result.synced is True
        assert db.query(TenantSubscription).count() == 1
        assert result.subscription.current_period_end == to_datetime(PERIOD_END)
        # the other writer already recorded professional, so no plan change here
        assert _history(db) == []
