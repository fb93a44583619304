"""
Sales Service
Invoices, estimates, payments and the GHL sync of sales records.

Money is held as floats and rounded to cents whenever a total is derived.
"""

import time
import uuid
import random
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from database.models import (
    Estimate, Invoice, SalesTransaction, Product, OpportunityCache, Integration, SyncLog
)
from api.services.ghl_api import create_ghl_client, GHLAuthError
from api.services.contact_sync import parse_ghl_datetime
from api.services.commission_calculator import cancel_pending_for_transaction

logger = logging.getLogger(__name__)

PAID_TOLERANCE = 0.005


def _round(value: float) -> float:
    return round(float(value or 0) + 1e-9, 2)


def _now_ms() -> int:
    return int(time.time() * 1000)


def line_item_total(item: Dict[str, Any]) -> float:
    if item.get("total") is not None:
        return float(item["total"])
    return float(item.get("quantity") or 0) * float(item.get("unit_price") or item.get("unitPrice") or 0)


def calculate_totals(line_items: List[Dict[str, Any]], tax_rate: float = 0.0) -> Dict[str, float]:
    """tax_rate is a fraction: 0.08 means 8%"""
    subtotal = _round(sum(line_item_total(item) for item in line_items or []))
    tax_amount = _round(subtotal * float(tax_rate or 0))
    return {"subtotal": subtotal, "tax_amount": tax_amount, "total": _round(subtotal + tax_amount)}


def _validate_document(name: Optional[str], contact_id: Optional[str], line_items: Optional[List[Dict]]) -> None:
    if not name:
        raise ValueError("name is required")
    if not contact_id:
        raise ValueError("contact_id is required")
    if not line_items:
        raise ValueError("At least one line item is required")


def _document_metadata(totals: Dict[str, float], tax_rate: float, created_via: str,
                       created_by: Optional[str]) -> Dict[str, Any]:
    return {
        "subtotal": totals["subtotal"],
        "tax_amount": totals["tax_amount"],
        "tax_rate": round(float(tax_rate or 0) * 100, 4),
        "created_via": created_via,
        "created_by": created_by
    }


# =======================
# INVOICES & ESTIMATES
# =======================

def create_invoice(db: Session, organization_id: str, name: str, contact_id: str, line_items: List[Dict],
                   tax_rate: float = 0.0, opportunity_id: Optional[str] = None, property_id: Optional[str] = None,
                   description: Optional[str] = None, due_date: Optional[datetime] = None,
                   payment_terms: Optional[str] = None, status: Optional[str] = None,
                   ghl_invoice_id: Optional[str] = None, invoice_number: Optional[str] = None,
                   estimate_id: Optional[str] = None, created_by: Optional[str] = None,
                   created_via: str = "api", integration_id: Optional[str] = None) -> Invoice:
    _validate_document(name, contact_id, line_items)
    totals = calculate_totals(line_items, tax_rate)
    stamp = _now_ms()

    invoice = Invoice(
        organization_id=organization_id,
        integration_id=integration_id,
        ghl_invoice_id=ghl_invoice_id or f"inv_{stamp}_{random.randint(1000, 9999)}",
        invoice_number=invoice_number or f"INV-{stamp}",
        opportunity_id=opportunity_id,
        estimate_id=estimate_id,
        contact_id=contact_id,
        property_id=property_id,
        name=name,
        description=description,
        amount=totals["total"],
        amount_paid=0.0,
        status=status or "draft",
        line_items=line_items,
        payment_terms=payment_terms or "Net 30",
        payment_history=[],
        applied_tax_rate=float(tax_rate or 0),
        meta_data=_document_metadata(totals, tax_rate, created_via, created_by),
        due_date=due_date
    )
    db.add(invoice)
    db.flush()

    if estimate_id:
        estimate = db.query(Estimate).filter(Estimate.id == estimate_id).first()
        if estimate:
            estimate.converted_to_invoice = True
            estimate.converted_invoice_id = invoice.id
            estimate.status = "accepted"

    db.commit()
    db.refresh(invoice)
    logger.info(f"🧾 Created invoice {invoice.invoice_number} for {invoice.amount:.2f}")
    return invoice


def create_estimate(db: Session, organization_id: str, name: str, contact_id: str, line_items: List[Dict],
                    tax_rate: float = 0.0, opportunity_id: Optional[str] = None, property_id: Optional[str] = None,
                    description: Optional[str] = None, expiry_date: Optional[datetime] = None,
                    ghl_estimate_id: Optional[str] = None, estimate_number: Optional[str] = None,
                    created_by: Optional[str] = None, created_via: str = "api",
                    integration_id: Optional[str] = None) -> Estimate:
    _validate_document(name, contact_id, line_items)
    totals = calculate_totals(line_items, tax_rate)
    stamp = _now_ms()

    estimate = Estimate(
        organization_id=organization_id,
        integration_id=integration_id,
        ghl_estimate_id=ghl_estimate_id or f"est_{stamp}_{random.randint(1000, 9999)}",
        estimate_number=estimate_number or f"EST-{stamp}",
        opportunity_id=opportunity_id,
        contact_id=contact_id,
        property_id=property_id,
        name=name,
        description=description,
        amount=totals["total"],
        status="draft",
        line_items=line_items,
        applied_tax_rate=float(tax_rate or 0),
        meta_data=_document_metadata(totals, tax_rate, created_via, created_by),
        expiry_date=expiry_date
    )
    db.add(estimate)
    db.commit()
    db.refresh(estimate)
    logger.info(f"📝 Created estimate {estimate.estimate_number} for {estimate.amount:.2f}")
    return estimate


def update_estimate(db: Session, estimate: Estimate, updates: Dict[str, Any]) -> Estimate:
    if estimate.converted_to_invoice:
        raise ValueError("Estimate has already been converted to an invoice")

    for field in ("name", "description", "status", "expiry_date", "contact_id", "opportunity_id", "property_id"):
        if updates.get(field) is not None:
            setattr(estimate, field, updates[field])

    if updates.get("line_items") is not None or updates.get("tax_rate") is not None:
        line_items = updates.get("line_items") if updates.get("line_items") is not None else estimate.line_items
        tax_rate = updates.get("tax_rate") if updates.get("tax_rate") is not None else estimate.applied_tax_rate
        if not line_items:
            raise ValueError("At least one line item is required")
        totals = calculate_totals(line_items, tax_rate)
        estimate.line_items = line_items
        estimate.applied_tax_rate = float(tax_rate or 0)
        estimate.amount = totals["total"]
        meta = dict(estimate.meta_data or {})
        meta.update({"subtotal": totals["subtotal"], "tax_amount": totals["tax_amount"],
                     "tax_rate": round(float(tax_rate or 0) * 100, 4)})
        estimate.meta_data = meta

    db.commit()
    db.refresh(estimate)
    return estimate


def convert_estimate_to_invoice(db: Session, estimate: Estimate, due_date: Optional[datetime] = None,
                                payment_terms: Optional[str] = None, created_by: Optional[str] = None) -> Invoice:
    if estimate.converted_to_invoice:
        raise ValueError("Estimate has already been converted to an invoice")

    return create_invoice(
        db,
        organization_id=estimate.organization_id,
        name=estimate.name,
        contact_id=estimate.contact_id,
        line_items=list(estimate.line_items or []),
        tax_rate=estimate.applied_tax_rate or 0.0,
        opportunity_id=estimate.opportunity_id,
        property_id=estimate.property_id,
        description=estimate.description,
        due_date=due_date,
        payment_terms=payment_terms,
        estimate_id=estimate.id,
        created_by=created_by,
        created_via="estimate_conversion",
        integration_id=estimate.integration_id
    )


# =======================
# PAYMENTS
# =======================

def remaining_balance(invoice: Invoice) -> float:
    return _round((invoice.amount or 0) - (invoice.amount_paid or 0))


def _refresh_payment_status(invoice: Invoice) -> None:
    if (invoice.amount or 0) - (invoice.amount_paid or 0) <= PAID_TOLERANCE:
        invoice.status = "paid"
        invoice.paid_date = invoice.paid_date or datetime.utcnow()
    elif (invoice.amount_paid or 0) > PAID_TOLERANCE:
        invoice.status = "partially_paid"
        invoice.paid_date = None
    else:
        invoice.status = "sent"
        invoice.paid_date = None


def record_payment(db: Session, invoice: Invoice, amount: float, payment_method: str,
                   payment_date: Optional[datetime] = None, transaction_id: Optional[str] = None,
                   notes: Optional[str] = None, recorded_by: Optional[str] = None) -> Dict[str, Any]:
    amount = float(amount or 0)
    if amount <= 0:
        raise ValueError("Payment amount must be greater than zero")
    balance = remaining_balance(invoice)
    if amount > balance + PAID_TOLERANCE:
        raise ValueError(f"Payment amount {amount:.2f} exceeds remaining balance {balance:.2f}")

    payment_date = payment_date or datetime.utcnow()
    payment = {
        "id": str(uuid.uuid4()),
        "amount": _round(amount),
        "payment_method": payment_method,
        "payment_date": payment_date.isoformat(),
        "transaction_id": transaction_id,
        "notes": notes,
        "recorded_at": datetime.utcnow().isoformat(),
        "recorded_by": recorded_by,
        "voided": False
    }

    # Reassign so the JSON column is flagged dirty
    invoice.payment_history = list(invoice.payment_history or []) + [payment]
    invoice.amount_paid = _round((invoice.amount_paid or 0) + amount)
    _refresh_payment_status(invoice)

    db.add(SalesTransaction(
        organization_id=invoice.organization_id,
        integration_id=invoice.integration_id,
        opportunity_id=invoice.opportunity_id,
        contact_id=invoice.contact_id,
        invoice_id=invoice.id,
        ghl_payment_id=transaction_id,
        amount=_round(amount),
        currency=invoice.currency or "USD",
        transaction_type="sale",
        payment_method=payment_method,
        payment_status="completed",
        payment_date=payment_date,
        raw_data={"invoice_payment_id": payment["id"], "notes": notes}
    ))
    db.commit()
    db.refresh(invoice)

    logger.info(f"💰 Recorded payment of {amount:.2f} on invoice {invoice.invoice_number} ({invoice.status})")
    return payment


def void_payment(db: Session, invoice: Invoice, payment_id: str, reason: Optional[str] = None) -> Dict[str, Any]:
    history = [dict(entry) for entry in invoice.payment_history or []]
    target = next((entry for entry in history if entry.get("id") == payment_id), None)
    if not target:
        raise LookupError("Payment not found")
    if target.get("voided"):
        raise ValueError("Payment has already been voided")

    target["voided"] = True
    target["voided_at"] = datetime.utcnow().isoformat()
    target["void_reason"] = reason

    invoice.payment_history = history
    invoice.amount_paid = max(0.0, _round((invoice.amount_paid or 0) - float(target.get("amount") or 0)))
    _refresh_payment_status(invoice)

    transaction = _payment_transaction(db, invoice, payment_id)
    if transaction:
        transaction.payment_status = "voided"
    db.commit()
    db.refresh(invoice)

    if transaction:
        cancelled = cancel_pending_for_transaction(db, invoice.organization_id, transaction.id)
        if cancelled:
            logger.info(f"↩️ Cancelled {cancelled} pending commission(s) for voided payment {payment_id}")

    logger.info(f"🚫 Voided payment {payment_id} on invoice {invoice.invoice_number}")
    return target


def _payment_transaction(db: Session, invoice: Invoice, payment_id: str) -> Optional[SalesTransaction]:
    """The SalesTransaction written by record_payment for this invoice payment"""
    transactions = db.query(SalesTransaction).filter(
        and_(SalesTransaction.invoice_id == invoice.id, SalesTransaction.payment_status == "completed")
    ).all()
    return next(
        (t for t in transactions if (t.raw_data or {}).get("invoice_payment_id") == payment_id), None
    )


def payment_summary(invoice: Invoice) -> Dict[str, Any]:
    payments = invoice.payment_history or []
    return {
        "invoice_id": invoice.id,
        "payments": payments,
        "payment_count": len([p for p in payments if not p.get("voided")]),
        "total_amount_paid": _round(invoice.amount_paid),
        "invoice_amount": _round(invoice.amount),
        "remaining_balance": remaining_balance(invoice),
        "status": invoice.status
    }


def opportunity_cash_collected(opportunity_id: str, organization_id: str, db: Session) -> Dict[str, Any]:
    invoices = db.query(Invoice).filter(
        and_(
            Invoice.organization_id == organization_id,
            Invoice.opportunity_id == opportunity_id,
            Invoice.status != "void"
        )
    ).all()
    collected = _round(sum(inv.amount_paid or 0 for inv in invoices))
    invoiced = _round(sum(inv.amount or 0 for inv in invoices))
    return {
        "opportunity_id": opportunity_id,
        "cash_collected": collected,
        "total_invoiced": invoiced,
        "outstanding": _round(invoiced - collected),
        "invoice_count": len(invoices)
    }


# =======================
# GHL SYNC
# =======================

def _ghl_id(payload: Dict[str, Any]) -> Optional[str]:
    return payload.get("_id") or payload.get("id")


def _ghl_line_items(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = []
    for item in payload.get("invoiceItems") or payload.get("items") or []:
        quantity = float(item.get("qty") or item.get("quantity") or 1)
        unit_price = float(item.get("amount") or item.get("unit_price") or 0)
        items.append({
            "name": item.get("name"),
            "description": item.get("description"),
            "quantity": quantity,
            "unit_price": unit_price,
            "total": _round(quantity * unit_price)
        })
    return items


def _contact_ref(payload: Dict[str, Any]) -> Optional[str]:
    details = payload.get("contactDetails") or {}
    return details.get("id") or payload.get("contactId")


def _opportunity_ref(payload: Dict[str, Any]) -> Optional[str]:
    details = payload.get("opportunityDetails") or {}
    return details.get("opportunityId") or payload.get("opportunityId")


def upsert_invoice_from_ghl(db: Session, organization_id: str, integration_id: Optional[str],
                            payload: Dict[str, Any]) -> Optional[Invoice]:
    ghl_id = _ghl_id(payload)
    if not ghl_id:
        return None

    invoice = db.query(Invoice).filter(
        and_(Invoice.organization_id == organization_id, Invoice.ghl_invoice_id == ghl_id)
    ).first()
    if not invoice:
        invoice = Invoice(organization_id=organization_id, ghl_invoice_id=ghl_id, payment_history=[])
        db.add(invoice)

    invoice.integration_id = integration_id
    invoice.invoice_number = payload.get("invoiceNumber") or invoice.invoice_number
    invoice.name = payload.get("name") or payload.get("title") or invoice.name or "Invoice"
    invoice.contact_id = _contact_ref(payload) or invoice.contact_id
    invoice.opportunity_id = _opportunity_ref(payload) or invoice.opportunity_id
    invoice.amount = _round(payload.get("total") or payload.get("amount") or 0)
    invoice.amount_paid = _round(payload.get("amountPaid") or invoice.amount_paid or 0)
    invoice.currency = payload.get("currency") or "USD"
    invoice.status = payload.get("status") or invoice.status or "draft"
    invoice.line_items = _ghl_line_items(payload) or invoice.line_items or []
    invoice.due_date = parse_ghl_datetime(payload.get("dueDate")) or invoice.due_date
    invoice.sent_date = parse_ghl_datetime(payload.get("sentAt")) or invoice.sent_date
    db.flush()
    return invoice


def upsert_estimate_from_ghl(db: Session, organization_id: str, integration_id: Optional[str],
                             payload: Dict[str, Any]) -> Optional[Estimate]:
    ghl_id = _ghl_id(payload)
    if not ghl_id:
        return None

    estimate = db.query(Estimate).filter(
        and_(Estimate.organization_id == organization_id, Estimate.ghl_estimate_id == ghl_id)
    ).first()
    if not estimate:
        estimate = Estimate(organization_id=organization_id, ghl_estimate_id=ghl_id)
        db.add(estimate)

    estimate.integration_id = integration_id
    estimate.estimate_number = str(payload.get("estimateNumber") or estimate.estimate_number or "")
    estimate.name = payload.get("name") or payload.get("title") or estimate.name or "Estimate"
    estimate.contact_id = _contact_ref(payload) or estimate.contact_id
    estimate.opportunity_id = _opportunity_ref(payload) or estimate.opportunity_id
    estimate.amount = _round(payload.get("total") or payload.get("amount") or 0)
    estimate.currency = payload.get("currency") or "USD"
    estimate.status = payload.get("estimateStatus") or payload.get("status") or estimate.status or "draft"
    estimate.line_items = _ghl_line_items(payload) or estimate.line_items or []
    estimate.expiry_date = parse_ghl_datetime(payload.get("expiryDate")) or estimate.expiry_date
    db.flush()
    return estimate


def _collect_offset_pages(fetch, page_size: int = 100, max_pages: int = 100) -> List[Dict]:
    items: List[Dict] = []
    for page in range(max_pages):
        batch = fetch(limit=page_size, offset=page * page_size)
        items.extend(batch)
        if len(batch) < page_size:
            break
    return items


def _log_sync(db: Session, integration: Integration, resource: str, processed: int,
              error: Optional[str] = None) -> None:
    db.add(SyncLog(
        organization_id=integration.organization_id,
        integration_id=integration.id,
        sync_type="full_sync",
        event_type=resource,
        status="partial" if error else "success",
        records_processed=processed,
        error_message=error
    ))


def _client_for(integration: Integration, db: Session):
    client = create_ghl_client(integration, db)
    if not client:
        raise GHLAuthError("Integration has no access token")
    return client


def sync_invoices(integration: Integration, db: Session) -> Dict[str, Any]:
    client = _client_for(integration, db)
    payloads = _collect_offset_pages(client.get_invoices)
    processed = 0
    for payload in payloads:
        if upsert_invoice_from_ghl(db, integration.organization_id, integration.id, payload):
            processed += 1
    _log_sync(db, integration, "invoices", processed)
    db.commit()
    logger.info(f"🔄 Synced {processed} invoices for location {integration.location_id}")
    return {"resource": "invoices", "processed": processed}


def sync_estimates(integration: Integration, db: Session) -> Dict[str, Any]:
    client = _client_for(integration, db)
    payloads = _collect_offset_pages(client.get_estimates)
    processed = 0
    for payload in payloads:
        if upsert_estimate_from_ghl(db, integration.organization_id, integration.id, payload):
            processed += 1
    _log_sync(db, integration, "estimates", processed)
    db.commit()
    logger.info(f"🔄 Synced {processed} estimates for location {integration.location_id}")
    return {"resource": "estimates", "processed": processed}


def sync_products(integration: Integration, db: Session) -> Dict[str, Any]:
    client = _client_for(integration, db)
    processed = 0
    for payload in _collect_offset_pages(client.get_products):
        ghl_id = _ghl_id(payload)
        if not ghl_id:
            continue
        product = db.query(Product).filter(
            and_(Product.organization_id == integration.organization_id, Product.ghl_product_id == ghl_id)
        ).first()
        if not product:
            product = Product(organization_id=integration.organization_id, ghl_product_id=ghl_id)
            db.add(product)

        prices = payload.get("prices") or []
        first_price = prices[0] if prices else {}
        product.integration_id = integration.id
        product.name = payload.get("name") or product.name or "Product"
        product.description = payload.get("description")
        product.price = float(first_price.get("amount") or payload.get("price") or product.price or 0)
        product.price_type = "recurring" if first_price.get("type") == "recurring" else "one_time"
        product.recurring_interval = (first_price.get("recurring") or {}).get("interval")
        product.currency = first_price.get("currency") or "USD"
        processed += 1

    _log_sync(db, integration, "products", processed)
    db.commit()
    logger.info(f"🔄 Synced {processed} products for location {integration.location_id}")
    return {"resource": "products", "processed": processed}


def sync_opportunities(integration: Integration, db: Session) -> Dict[str, Any]:
    """Expense fields are tracked locally and are left untouched"""
    client = _client_for(integration, db)
    result = client.get_all_opportunities()
    processed = 0

    for payload in result.items:
        opportunity_id = payload.get("id")
        if not opportunity_id:
            continue
        cached = db.query(OpportunityCache).filter(
            and_(
                OpportunityCache.organization_id == integration.organization_id,
                OpportunityCache.opportunity_id == opportunity_id
            )
        ).first()
        if not cached:
            cached = OpportunityCache(organization_id=integration.organization_id, opportunity_id=opportunity_id)
            db.add(cached)

        contact = payload.get("contact") or {}
        cached.integration_id = integration.id
        cached.title = payload.get("name")
        cached.contact_id = payload.get("contactId") or contact.get("id")
        cached.contact_name = contact.get("name")
        cached.pipeline_id = payload.get("pipelineId")
        cached.pipeline_stage_id = payload.get("pipelineStageId")
        cached.status = payload.get("status") or "open"
        cached.monetary_value = float(payload.get("monetaryValue") or 0)
        cached.assigned_to = payload.get("assignedTo")
        cached.synced_at = datetime.utcnow()
        processed += 1

    _log_sync(db, integration, "opportunities", processed, result.error)
    db.commit()
    logger.info(f"🔄 Synced {processed} opportunities for location {integration.location_id}")
    return {"resource": "opportunities", "processed": processed, "error": result.error}
