"""
Subscription Service
Stripe billing: customers, checkout sessions, subscription webhooks and the
active-subscription gate used by paid features.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import stripe
from fastapi import Depends, HTTPException, status
from sqlalchemy import and_
from sqlalchemy.orm import Session

from config import AppConfig
from database.models import Subscription, Organization, OrganizationMember, User
from database.simple_connection import get_db
from api.routes.auth_routes import get_current_user

logger = logging.getLogger(__name__)

stripe.api_key = AppConfig.STRIPE_SECRET_KEY

ACTIVE_SUBSCRIPTION_STATUSES = ("trialing", "active")
ORGANIZATION_STATUS_MAP = {
    "active": "active",
    "trialing": "active",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "canceled",
}


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(value) if value else None


def _primary_organization(user_id: str, db: Session) -> Optional[Organization]:
    member = db.query(OrganizationMember).filter(
        and_(OrganizationMember.user_id == user_id, OrganizationMember.status == "active")
    ).order_by(OrganizationMember.created_at.asc()).first()
    if not member:
        return None
    return db.query(Organization).filter(Organization.id == member.organization_id).first()


def organization_is_active(organization: Optional[Organization], now: Optional[datetime] = None) -> bool:
    if not organization:
        return False
    now = now or datetime.utcnow()
    if organization.subscription_status == "active":
        return True
    return organization.subscription_status == "trial" and bool(
        organization.trial_ends_at and organization.trial_ends_at > now
    )


def has_active_subscription(user_id: str, db: Session) -> bool:
    subscription = db.query(Subscription).filter(
        and_(Subscription.user_id == user_id, Subscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES))
    ).first()
    if subscription:
        return True
    return organization_is_active(_primary_organization(user_id, db))


def get_subscription_status(user_id: str, db: Session) -> Dict[str, Any]:
    subscription = db.query(Subscription).filter(
        Subscription.user_id == user_id
    ).order_by(Subscription.created_at.desc()).first()
    organization = _primary_organization(user_id, db)

    trial_days_remaining = None
    if organization and organization.subscription_status == "trial" and organization.trial_ends_at:
        trial_days_remaining = max(0, (organization.trial_ends_at - datetime.utcnow()).days)

    return {
        "has_active_subscription": has_active_subscription(user_id, db),
        "organization_status": organization.subscription_status if organization else None,
        "trial_ends_at": organization.trial_ends_at.isoformat() if organization and organization.trial_ends_at else None,
        "trial_days_remaining": trial_days_remaining,
        "subscription": {
            "id": subscription.id,
            "status": subscription.status,
            "price_id": subscription.price_id,
            "quantity": subscription.quantity,
            "cancel_at_period_end": subscription.cancel_at_period_end,
            "current_period_end": subscription.current_period_end.isoformat() if subscription.current_period_end else None
        } if subscription else None
    }


# =======================
# STRIPE
# =======================

def create_or_retrieve_customer(organization: Organization, email: str, db: Session) -> str:
    if organization.stripe_customer_id:
        return organization.stripe_customer_id

    customers = stripe.Customer.list(email=email, limit=1)
    if customers.data:
        customer = customers.data[0]
    else:
        customer = stripe.Customer.create(
            email=email,
            name=organization.name,
            metadata={"organization_id": organization.id}
        )

    organization.stripe_customer_id = customer.id
    db.commit()
    logger.info(f"💳 Linked Stripe customer {customer.id} to organization {organization.id}")
    return customer.id


def create_checkout_session(user: User, organization: Organization, price_id: str, db: Session,
                            quantity: int = 1, metadata: Optional[Dict[str, Any]] = None):
    customer_id = create_or_retrieve_customer(organization, user.email, db)
    session_metadata = {**(metadata or {}), "user_id": user.id, "organization_id": organization.id}
    base_url = AppConfig.BASE_URL.rstrip("/")

    return stripe.checkout.Session.create(
        mode="subscription",
        customer=customer_id,
        client_reference_id=organization.id,
        line_items=[{"price": price_id, "quantity": quantity}],
        allow_promotion_codes=True,
        billing_address_collection="required",
        subscription_data={"metadata": session_metadata},
        metadata=session_metadata,
        success_url=f"{base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/billing/cancel"
    )


def _organization_for(obj: Dict[str, Any], db: Session) -> Optional[Organization]:
    metadata = obj.get("metadata") or {}
    organization_id = metadata.get("organization_id") or obj.get("client_reference_id")
    if organization_id:
        organization = db.query(Organization).filter(Organization.id == organization_id).first()
        if organization:
            return organization
    customer_id = obj.get("customer")
    if customer_id:
        return db.query(Organization).filter(Organization.stripe_customer_id == customer_id).first()
    return None


def upsert_subscription(obj: Dict[str, Any], db: Session) -> Subscription:
    items = (obj.get("items") or {}).get("data") or []
    first_item = items[0] if items else {}
    metadata = obj.get("metadata") or {}
    organization = _organization_for(obj, db)

    subscription = db.query(Subscription).filter(Subscription.id == obj["id"]).first()
    if not subscription:
        subscription = Subscription(id=obj["id"])
        db.add(subscription)

    subscription.user_id = metadata.get("user_id") or subscription.user_id
    subscription.organization_id = organization.id if organization else subscription.organization_id
    subscription.status = obj.get("status")
    subscription.price_id = (first_item.get("price") or {}).get("id") or subscription.price_id
    subscription.quantity = first_item.get("quantity") or obj.get("quantity") or 1
    subscription.cancel_at_period_end = bool(obj.get("cancel_at_period_end", False))
    subscription.current_period_start = _timestamp(obj.get("current_period_start") or first_item.get("current_period_start"))
    subscription.current_period_end = _timestamp(obj.get("current_period_end") or first_item.get("current_period_end"))
    subscription.trial_start = _timestamp(obj.get("trial_start"))
    subscription.trial_end = _timestamp(obj.get("trial_end"))
    subscription.meta_data = dict(metadata)

    mapped = ORGANIZATION_STATUS_MAP.get(obj.get("status"))
    if organization and mapped:
        organization.subscription_status = mapped
    return subscription


def handle_stripe_event(event: Dict[str, Any], db: Session) -> Dict[str, Any]:
    event_type = event["type"]
    obj = event["data"]["object"]

    if event_type == "checkout.session.completed":
        organization = _organization_for(obj, db)
        if organization and obj.get("customer"):
            organization.stripe_customer_id = obj["customer"]
            db.commit()
            logger.info(f"✅ Checkout completed for organization {organization.id}")
        return {"handled": True, "event": event_type}

    if event_type in ("customer.subscription.created", "customer.subscription.updated",
                      "customer.subscription.deleted"):
        if event_type == "customer.subscription.deleted":
            obj = {**obj, "status": "canceled"}
        subscription = upsert_subscription(obj, db)
        db.commit()
        logger.info(f"🔄 Subscription {subscription.id} is now {subscription.status}")
        return {"handled": True, "event": event_type}

    logger.info(f"Ignoring Stripe event {event_type}")
    return {"handled": False, "event": event_type}


async def require_active_subscription(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
) -> User:
    if not has_active_subscription(current_user.id, db):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail="An active subscription is required"
        )
    return current_user
