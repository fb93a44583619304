# api/routes/webhook_routes.py

import logging
import json
import time
from typing import Dict, Any, Optional

from fastapi import APIRouter, Request, HTTPException, Depends
from fastapi.responses import PlainTextResponse
from sqlalchemy import and_
from sqlalchemy.orm import Session

from config import AppConfig
from database.simple_connection import get_db
from database.models import Integration, IncomingMessage, Product, SalesTransaction, SyncLog
from api.services.contact_sync import map_ghl_contact, upsert_contact, mark_contact_deleted, verify_ghl_signature, parse_ghl_datetime
from api.services.sales_service import upsert_invoice_from_ghl, upsert_estimate_from_ghl
from api.services.commission_calculator import process_payment_commissions
from api.services.receipt_processor import (
    find_team_member_by_phone, is_receipt_attachment, process_receipt_message, handle_receipt_response
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhooks", tags=["GHL Webhooks"])

PAYMENT_EVENTS = {"PaymentSuccess", "payment.success", "SubscriptionCreated", "SubscriptionRenewed"}
REFUND_EVENTS = {"RefundProcessed", "refund.processed"}
LOGGED_PAYMENT_EVENTS = {"PaymentFailed", "SubscriptionCancelled"}
MAX_REPLY_LENGTH = 10


def integration_for_location(location_id: Optional[str], db: Session) -> Optional[Integration]:
    if not location_id:
        return None
    return db.query(Integration).filter(
        and_(Integration.location_id == location_id, Integration.is_active == True)
    ).first()


def normalize_payment_amount(amount: Any) -> float:
    """GHL sometimes reports cents; integers above 1000 are treated as cents"""
    if amount is None:
        return 0.0
    if isinstance(amount, int) and not isinstance(amount, bool) and amount > 1000:
        return amount / 100
    return float(amount)


async def _verified_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not verify_ghl_signature(body, request.headers.get("x-ghl-signature"), AppConfig.GHL_WEBHOOK_SECRET):
        logger.error(f"❌ Invalid GHL webhook signature from IP: {request.client.host if request.client else 'unknown'}")
        raise HTTPException(status_code=401, detail="Invalid signature")
    try:
        return json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")


# ============================================================================
# CONTACTS
# ============================================================================

@router.post("/ghl/contacts")
async def handle_contact_webhook(request: Request, db: Session = Depends(get_db)):
    """contact.create / contact.update upsert the local copy, contact.delete marks it deleted"""
    payload = await _verified_json(request)
    event_type = payload.get("type")
    location_id = payload.get("locationId")
    logger.info(f"📥 GHL contact webhook: {event_type} for location {location_id}")

    integration = integration_for_location(location_id, db)
    if not integration:
        logger.error(f"❌ No active integration found for location: {location_id}")
        raise HTTPException(status_code=404, detail="Integration not found")

    try:
        if event_type in ("contact.create", "contact.update"):
            contact = payload.get("contact") or {}
            if contact.get("id") or payload.get("contactId"):
                contact = {"id": payload.get("contactId"), **contact}
                upsert_contact(db, map_ghl_contact(contact, integration.organization_id, integration.id, location_id))
        elif event_type == "contact.delete":
            mark_contact_deleted(db, location_id, payload.get("contactId"))
        else:
            logger.warning(f"⚠️ Unknown contact event type: {event_type}")

        db.add(SyncLog(
            organization_id=integration.organization_id,
            integration_id=integration.id,
            sync_type="webhook",
            event_type=event_type,
            status="success",
            records_processed=1,
            details={"contact_id": payload.get("contactId") or (payload.get("contact") or {}).get("id")}
        ))
        db.commit()
        return {"success": True}

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Contact webhook error: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")


# ============================================================================
# MESSAGES (receipts texted in by team members)
# ============================================================================

@router.get("/ghl/messages")
async def verify_message_webhook(challenge: Optional[str] = None):
    if challenge:
        return PlainTextResponse(challenge)
    return {"status": "ok"}


@router.post("/ghl/messages")
async def handle_message_webhook(request: Request, db: Session = Depends(get_db)):
    start_time = time.time()
    payload = await _verified_json(request)
    message = payload.get("message") or payload
    contact = payload.get("contact") or {}

    if (message.get("direction") or "inbound") != "inbound":
        return {"success": True, "message": "Outbound message ignored"}

    location_id = payload.get("locationId") or message.get("locationId")
    integration = integration_for_location(location_id, db)
    if not integration:
        logger.warning(f"⚠️ Message webhook for unknown location: {location_id}")
        return {"success": True, "message": "Unknown location"}

    organization_id = integration.organization_id
    phone = contact.get("phone") or (message.get("meta") or {}).get("phoneNumber") or payload.get("phone")
    contact_id = payload.get("contactId") or message.get("contactId") or contact.get("id")
    body = message.get("body") or ""
    attachments = message.get("attachments") or []

    try:
        incoming = IncomingMessage(
            organization_id=organization_id,
            integration_id=integration.id,
            message_id=payload.get("messageId") or message.get("id"),
            conversation_id=payload.get("conversationId") or message.get("conversationId"),
            contact_id=contact_id,
            phone=phone,
            body=body,
            attachments=attachments,
            direction="inbound"
        )
        db.add(incoming)
        db.commit()

        member = find_team_member_by_phone(organization_id, phone, db) if phone else None
        if not member:
            logger.info(f"Message from non-team member phone: {phone}")
            return {"success": True, "processed": 0}

        processed = 0
        if any(is_receipt_attachment(a) for a in attachments):
            receipts = process_receipt_message(
                organization_id, incoming.message_id, phone, attachments, db,
                body=body, contact_id=contact_id, integration=integration
            )
            processed = len(receipts)
            if receipts:
                incoming.receipt_id = receipts[0].id
        elif body and len(body.strip()) <= MAX_REPLY_LENGTH:
            receipt = handle_receipt_response(organization_id, phone, body, db)
            if receipt:
                processed = 1
                incoming.receipt_id = receipt.id

        incoming.processed = processed > 0
        db.commit()

        logger.info(f"📨 Message webhook handled in {time.time() - start_time:.2f}s, {processed} receipt(s)")
        return {"success": True, "processed": processed}

    except Exception as e:
        logger.error(f"Message webhook error: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")


# ============================================================================
# PAYMENTS
# ============================================================================

def _local_product_id(organization_id: str, ghl_product_id: Optional[str], db: Session) -> Optional[str]:
    """Map a GHL product id onto the local products.id"""
    if not ghl_product_id:
        return None
    product = db.query(Product).filter(
        and_(Product.organization_id == organization_id, Product.ghl_product_id == ghl_product_id)
    ).first()
    if not product:
        logger.warning(f"⚠️ No local product for GHL product {ghl_product_id}")
        return None
    return product.id


def _transaction_type(event_type: str, data: Dict[str, Any]) -> str:
    if event_type == "SubscriptionCreated":
        return "subscription_initial"
    if event_type == "SubscriptionRenewed" or data.get("subscriptionId"):
        return "subscription_renewal"
    return "sale"


def _record_payment(integration: Integration, event_type: str, data: Dict[str, Any], db: Session) -> SalesTransaction:
    transaction_type = _transaction_type(event_type, data)

    # SubscriptionCreated carries the subscription itself; the charge sits under initialPayment
    payment = data
    subscription_id = data.get("subscriptionId")
    payment_id = data.get("id") or data.get("transactionId")
    if transaction_type == "subscription_initial":
        subscription_id = data.get("subscriptionId") or data.get("id")
        if isinstance(data.get("initialPayment"), dict):
            payment = data["initialPayment"]
            payment_id = payment.get("id") or payment.get("transactionId")
        else:
            payment_id = data.get("paymentId") or data.get("transactionId")

    transaction = SalesTransaction(
        organization_id=integration.organization_id,
        integration_id=integration.id,
        opportunity_id=payment.get("opportunityId") or data.get("opportunityId"),
        contact_id=payment.get("contactId") or data.get("contactId"),
        product_id=_local_product_id(integration.organization_id, payment.get("productId") or data.get("productId"), db),
        ghl_payment_id=payment_id,
        ghl_subscription_id=subscription_id,
        amount=normalize_payment_amount(payment.get("amount")),
        currency=payment.get("currency") or data.get("currency") or "USD",
        transaction_type=transaction_type,
        payment_method=payment.get("paymentMethod") or data.get("paymentMethod"),
        payment_status="completed",
        payment_date=parse_ghl_datetime(payment.get("createdAt") or data.get("createdAt")),
        raw_data=data
    )
    db.add(transaction)
    db.commit()
    db.refresh(transaction)
    return transaction


def _record_refund(integration: Integration, data: Dict[str, Any], db: Session):
    original = None
    original_payment_id = data.get("originalPaymentId") or data.get("paymentId")
    if original_payment_id:
        original = db.query(SalesTransaction).filter(
            and_(
                SalesTransaction.organization_id == integration.organization_id,
                SalesTransaction.ghl_payment_id == original_payment_id
            )
        ).first()

    refund = SalesTransaction(
        organization_id=integration.organization_id,
        integration_id=integration.id,
        opportunity_id=data.get("opportunityId") or (original.opportunity_id if original else None),
        contact_id=data.get("contactId") or (original.contact_id if original else None),
        ghl_payment_id=data.get("id"),
        amount=-abs(normalize_payment_amount(data.get("amount"))),
        currency=data.get("currency") or "USD",
        transaction_type="refund",
        payment_status="refunded",
        payment_date=parse_ghl_datetime(data.get("createdAt")),
        raw_data=data
    )
    db.add(refund)
    db.commit()
    db.refresh(refund)
    return refund, original


@router.post("/ghl/payments")
async def handle_payment_webhook(request: Request, db: Session = Depends(get_db)):
    payload = await _verified_json(request)
    event_type = payload.get("type")
    data = payload.get("data")
    if not event_type or not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook format")

    integration = integration_for_location(payload.get("locationId"), db)
    if not integration:
        logger.error(f"❌ Integration not found for location: {payload.get('locationId')}")
        raise HTTPException(status_code=404, detail="Integration not found")

    try:
        if event_type in PAYMENT_EVENTS:
            transaction = _record_payment(integration, event_type, data, db)
            logger.info(f"💰 {event_type}: recorded {transaction.amount:.2f} for opportunity {transaction.opportunity_id}")
            summary = process_payment_commissions(transaction, db)
            return {"success": True, "transaction_id": transaction.id, "commissions": summary}

        if event_type in REFUND_EVENTS:
            refund, original = _record_refund(integration, data, db)
            summary = process_payment_commissions(refund, db, original_transaction_id=original.id if original else None)
            return {"success": True, "transaction_id": refund.id, "commissions": summary}

        if event_type in LOGGED_PAYMENT_EVENTS:
            logger.warning(f"⚠️ {event_type} for contact {data.get('contactId')}: {data.get('id')}")
        else:
            logger.info(f"Unhandled payment webhook type: {event_type}")
        return {"success": True}

    except Exception as e:
        logger.error(f"Payment webhook error: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")


# ============================================================================
# INVOICES & ESTIMATES
# ============================================================================

async def _upsert_document(request: Request, db: Session, upsert, label: str):
    payload = await _verified_json(request)
    data = payload.get("data") or payload.get(label)
    if not payload.get("type") or not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook format")

    integration = integration_for_location(payload.get("locationId"), db)
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")

    try:
        document = upsert(db, integration.organization_id, integration.id, data)
        db.commit()
        if not document:
            return {"success": False, "message": f"No {label} id in payload"}
        logger.info(f"📄 GHL {label} {payload['type']} stored as {document.id}")
        return {"success": True, "id": document.id}
    except Exception as e:
        logger.error(f"{label.title()} webhook error: {str(e)}")
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/ghl/invoices")
async def handle_invoice_webhook(request: Request, db: Session = Depends(get_db)):
    return await _upsert_document(request, db, upsert_invoice_from_ghl, "invoice")


@router.post("/ghl/estimates")
async def handle_estimate_webhook(request: Request, db: Session = Depends(get_db)):
    return await _upsert_document(request, db, upsert_estimate_from_ghl, "estimate")
