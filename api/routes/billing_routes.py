"""
Billing Routes
Stripe checkout, subscription status and the Stripe webhook
"""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session
from typing import Optional, Dict, Any
import json
import logging

import stripe

from config import AppConfig
from database.simple_connection import get_db
from database.models import User, Organization
from api.routes.auth_routes import get_current_user, get_current_organization
from api.services.organization_service import OrganizationContext
from api.services.subscription_service import get_subscription_status, create_checkout_session, handle_stripe_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["Billing"])


class CheckoutPrice(BaseModel):
    id: str

class CheckoutRequest(BaseModel):
    price_id: Optional[str] = None
    price: Optional[CheckoutPrice] = None
    quantity: int = 1
    metadata: Dict[str, Any] = {}


@router.get("/subscription")
async def subscription_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    return get_subscription_status(current_user.id, db)

@router.post("/checkout")
async def checkout(
    checkout_request: CheckoutRequest,
    current_user: User = Depends(get_current_user),
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    price_id = checkout_request.price_id or (checkout_request.price.id if checkout_request.price else None)
    price_id = price_id or AppConfig.STRIPE_PRICE_ID
    if not price_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="A price id is required")

    organization = db.query(Organization).filter(Organization.id == ctx.organization_id).first()
    try:
        session = create_checkout_session(
            current_user, organization, price_id, db,
            quantity=checkout_request.quantity,
            metadata=checkout_request.metadata
        )
        return {"url": session.url, "session_id": session.id}
    except stripe.StripeError as e:
        logger.error(f"❌ Stripe checkout error for {ctx.organization_id}: {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Payment provider error")

@router.post("/webhook")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        stripe.Webhook.construct_event(payload, sig_header, AppConfig.STRIPE_WEBHOOK_SECRET)
    except Exception as e:
        logger.warning(f"⚠️ Stripe webhook rejected: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe signature")

    event = json.loads(payload)
    try:
        return handle_stripe_event(event, db)
    except Exception as e:
        logger.error(f"Stripe webhook processing error: {str(e)}")
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )
