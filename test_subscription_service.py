#!/usr/bin/env python3
"""
Tests for the subscription gate and Stripe webhook event handling.
"""

from datetime import datetime, timedelta

from database.models import Organization, Subscription
from api.services.subscription_service import (
    organization_is_active, has_active_subscription, get_subscription_status, handle_stripe_event
)


def _subscription_event(event_type, organization_id, user_id, status="active"):
    period_end = int((datetime.utcnow() + timedelta(days=30)).timestamp())
    return {
        "type": event_type,
        "data": {"object": {
            "id": "sub_123",
            "customer": "cus_123",
            "status": status,
            "cancel_at_period_end": False,
            "current_period_end": period_end,
            "items": {"data": [{"price": {"id": "price_pro"}, "quantity": 3}]},
            "metadata": {"organization_id": organization_id, "user_id": user_id}
        }}
    }


def test_organization_is_active_rules():
    now = datetime.utcnow()
    assert organization_is_active(Organization(subscription_status="active")) is True
    assert organization_is_active(Organization(subscription_status="trial", trial_ends_at=now + timedelta(days=3))) is True
    assert organization_is_active(Organization(subscription_status="trial", trial_ends_at=now - timedelta(days=1))) is False
    assert organization_is_active(Organization(subscription_status="past_due")) is False
    assert organization_is_active(None) is False


def test_new_owner_is_on_trial(db, owner):
    status = get_subscription_status(owner["user_id"], db)
    print(f"Status: {status}")
    assert status["has_active_subscription"] is True
    assert status["organization_status"] == "trial"
    assert status["trial_days_remaining"] is not None
    assert status["subscription"] is None


def test_expired_trial_blocks_access(db, owner):
    org = db.query(Organization).filter(Organization.id == owner["organization_id"]).one()
    org.trial_ends_at = datetime.utcnow() - timedelta(days=1)
    db.commit()
    assert has_active_subscription(owner["user_id"], db) is False


def test_subscription_created_event_activates_organization(db, owner):
    result = handle_stripe_event(
        _subscription_event("customer.subscription.created", owner["organization_id"], owner["user_id"]), db
    )
    assert result == {"handled": True, "event": "customer.subscription.created"}

    subscription = db.query(Subscription).filter(Subscription.id == "sub_123").one()
    assert subscription.status == "active"
    assert subscription.price_id == "price_pro"
    assert subscription.quantity == 3
    assert subscription.current_period_end is not None

    org = db.query(Organization).filter(Organization.id == owner["organization_id"]).one()
    assert org.subscription_status == "active"
    assert has_active_subscription(owner["user_id"], db) is True


def test_subscription_deleted_event_cancels(db, owner):
    handle_stripe_event(
        _subscription_event("customer.subscription.created", owner["organization_id"], owner["user_id"]), db
    )
    handle_stripe_event(
        _subscription_event("customer.subscription.deleted", owner["organization_id"], owner["user_id"]), db
    )

    db.expire_all()
    subscription = db.query(Subscription).filter(Subscription.id == "sub_123").one()
    org = db.query(Organization).filter(Organization.id == owner["organization_id"]).one()
    assert subscription.status == "canceled"
    assert org.subscription_status == "canceled"
    assert has_active_subscription(owner["user_id"], db) is False


def test_checkout_completed_links_customer(db, owner):
    result = handle_stripe_event({
        "type": "checkout.session.completed",
        "data": {"object": {"customer": "cus_999", "client_reference_id": owner["organization_id"]}}
    }, db)
    assert result["handled"] is True
    org = db.query(Organization).filter(Organization.id == owner["organization_id"]).one()
    assert org.stripe_customer_id == "cus_999"


def test_unknown_event_is_ignored(db):
    result = handle_stripe_event({"type": "invoice.finalized", "data": {"object": {}}}, db)
    assert result == {"handled": False, "event": "invoice.finalized"}
