"""
Sales Routes
Invoices, payments, estimates, opportunities, products and GHL sync triggers
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
from datetime import datetime
import logging

from database.simple_connection import get_db
from database.models import Invoice, Estimate, OpportunityCache, Product, SalesTransaction
from api.routes.auth_routes import get_current_organization
from api.routes.integration_routes import get_active_integration
from api.services.organization_service import OrganizationContext
from api.services import sales_service
from api.services.contact_sync import sync_all_contacts
from api.services.ghl_api import GHLAuthError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/sales", tags=["Sales"])


# Pydantic models
class LineItem(BaseModel):
    name: str
    description: Optional[str] = None
    quantity: float = 1
    unit_price: float = 0
    total: Optional[float] = None

class InvoiceCreate(BaseModel):
    name: str
    contact_id: str
    line_items: List[LineItem]
    tax_rate: float = 0.0
    opportunity_id: Optional[str] = None
    property_id: Optional[str] = None
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    payment_terms: Optional[str] = None
    status: Optional[str] = None

class EstimateCreate(BaseModel):
    name: str
    contact_id: str
    line_items: List[LineItem]
    tax_rate: float = 0.0
    opportunity_id: Optional[str] = None
    property_id: Optional[str] = None
    description: Optional[str] = None
    expiry_date: Optional[datetime] = None

class EstimateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    line_items: Optional[List[LineItem]] = None
    tax_rate: Optional[float] = None
    expiry_date: Optional[datetime] = None

class EstimateConvert(BaseModel):
    due_date: Optional[datetime] = None
    payment_terms: Optional[str] = None

class PaymentCreate(BaseModel):
    amount: float
    payment_method: str
    payment_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None

class PaymentVoid(BaseModel):
    reason: Optional[str] = None

class ExpenseUpdate(BaseModel):
    revenue: Optional[float] = None
    material_expenses: Optional[float] = None
    labor_expenses: Optional[float] = None
    other_expenses: Optional[float] = None

class ProductCreate(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = 0.0
    price_type: str = "one_time"
    recurring_interval: Optional[str] = None


# Serializers
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    return {
        "id": invoice.id,
        "ghl_invoice_id": invoice.ghl_invoice_id,
        "invoice_number": invoice.invoice_number,
        "name": invoice.name,
        "description": invoice.description,
        "contact_id": invoice.contact_id,
        "opportunity_id": invoice.opportunity_id,
        "property_id": invoice.property_id,
        "estimate_id": invoice.estimate_id,
        "amount": invoice.amount,
        "amount_paid": invoice.amount_paid,
        "remaining_balance": sales_service.remaining_balance(invoice),
        "currency": invoice.currency,
        "status": invoice.status,
        "line_items": invoice.line_items or [],
        "payment_terms": invoice.payment_terms,
        "metadata": invoice.meta_data or {},
        "due_date": _iso(invoice.due_date),
        "paid_date": _iso(invoice.paid_date),
        "created_at": _iso(invoice.created_at)
    }

def estimate_to_dict(estimate: Estimate) -> Dict[str, Any]:
    return {
        "id": estimate.id,
        "ghl_estimate_id": estimate.ghl_estimate_id,
        "estimate_number": estimate.estimate_number,
        "name": estimate.name,
        "description": estimate.description,
        "contact_id": estimate.contact_id,
        "opportunity_id": estimate.opportunity_id,
        "property_id": estimate.property_id,
        "amount": estimate.amount,
        "status": estimate.status,
        "line_items": estimate.line_items or [],
        "metadata": estimate.meta_data or {},
        "converted_to_invoice": bool(estimate.converted_to_invoice),
        "converted_invoice_id": estimate.converted_invoice_id,
        "expiry_date": _iso(estimate.expiry_date),
        "created_at": _iso(estimate.created_at)
    }

def opportunity_to_dict(opportunity: OpportunityCache) -> Dict[str, Any]:
    return {
        "opportunity_id": opportunity.opportunity_id,
        "title": opportunity.title,
        "contact_id": opportunity.contact_id,
        "contact_name": opportunity.contact_name,
        "pipeline_id": opportunity.pipeline_id,
        "pipeline_stage_id": opportunity.pipeline_stage_id,
        "stage_name": opportunity.stage_name,
        "status": opportunity.status,
        "monetary_value": opportunity.monetary_value,
        "assigned_to": opportunity.assigned_to,
        "revenue": opportunity.revenue,
        "material_expenses": opportunity.material_expenses,
        "labor_expenses": opportunity.labor_expenses,
        "other_expenses": opportunity.other_expenses,
        "total_expenses": opportunity.total_expenses
    }


def _line_items(items: List[LineItem]) -> List[Dict[str, Any]]:
    return [item.model_dump(exclude_none=True) for item in items]

def _get_invoice(invoice_id: str, organization_id: str, db: Session) -> Invoice:
    invoice = db.query(Invoice).filter(
        and_(Invoice.id == invoice_id, Invoice.organization_id == organization_id)
    ).first()
    if not invoice:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Invoice not found")
    return invoice

def _get_estimate(estimate_id: str, organization_id: str, db: Session) -> Estimate:
    estimate = db.query(Estimate).filter(
        and_(Estimate.id == estimate_id, Estimate.organization_id == organization_id)
    ).first()
    if not estimate:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Estimate not found")
    return estimate


# =======================
# INVOICES
# =======================

@router.get("/invoices")
async def list_invoices(
    status_filter: Optional[str] = Query(None, alias="status"),
    contact_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Invoice).filter(Invoice.organization_id == ctx.organization_id)
    if status_filter:
        query = query.filter(Invoice.status == status_filter)
    if contact_id:
        query = query.filter(Invoice.contact_id == contact_id)
    if opportunity_id:
        query = query.filter(Invoice.opportunity_id == opportunity_id)
    invoices = query.order_by(Invoice.created_at.desc()).all()
    return {"invoices": [invoice_to_dict(i) for i in invoices], "total": len(invoices)}

@router.post("/invoices", status_code=status.HTTP_201_CREATED)
async def create_invoice(
    invoice_data: InvoiceCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    try:
        invoice = sales_service.create_invoice(
            db,
            organization_id=ctx.organization_id,
            name=invoice_data.name,
            contact_id=invoice_data.contact_id,
            line_items=_line_items(invoice_data.line_items),
            tax_rate=invoice_data.tax_rate,
            opportunity_id=invoice_data.opportunity_id,
            property_id=invoice_data.property_id,
            description=invoice_data.description,
            due_date=invoice_data.due_date,
            payment_terms=invoice_data.payment_terms,
            status=invoice_data.status,
            created_by=ctx.user_id
        )
        return invoice_to_dict(invoice)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/invoices/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return invoice_to_dict(_get_invoice(invoice_id, ctx.organization_id, db))

@router.post("/invoices/{invoice_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    invoice_id: str,
    payment: PaymentCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    invoice = _get_invoice(invoice_id, ctx.organization_id, db)
    try:
        entry = sales_service.record_payment(
            db, invoice,
            amount=payment.amount,
            payment_method=payment.payment_method,
            payment_date=payment.payment_date,
            transaction_id=payment.transaction_id,
            notes=payment.notes,
            recorded_by=ctx.user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"payment": entry, "invoice": invoice_to_dict(invoice)}

@router.get("/invoices/{invoice_id}/payments")
async def list_payments(
    invoice_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return sales_service.payment_summary(_get_invoice(invoice_id, ctx.organization_id, db))

@router.post("/invoices/{invoice_id}/payments/{payment_id}/void")
async def void_payment(
    invoice_id: str,
    payment_id: str,
    void_data: PaymentVoid,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    invoice = _get_invoice(invoice_id, ctx.organization_id, db)
    try:
        entry = sales_service.void_payment(db, invoice, payment_id, void_data.reason)
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return {"payment": entry, "invoice": invoice_to_dict(invoice)}


# =======================
# ESTIMATES
# =======================

@router.get("/estimates")
async def list_estimates(
    status_filter: Optional[str] = Query(None, alias="status"),
    contact_id: Optional[str] = None,
    opportunity_id: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Estimate).filter(Estimate.organization_id == ctx.organization_id)
    if status_filter:
        query = query.filter(Estimate.status == status_filter)
    if contact_id:
        query = query.filter(Estimate.contact_id == contact_id)
    if opportunity_id:
        query = query.filter(Estimate.opportunity_id == opportunity_id)
    estimates = query.order_by(Estimate.created_at.desc()).all()
    return {"estimates": [estimate_to_dict(e) for e in estimates], "total": len(estimates)}

@router.post("/estimates", status_code=status.HTTP_201_CREATED)
async def create_estimate(
    estimate_data: EstimateCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    try:
        estimate = sales_service.create_estimate(
            db,
            organization_id=ctx.organization_id,
            name=estimate_data.name,
            contact_id=estimate_data.contact_id,
            line_items=_line_items(estimate_data.line_items),
            tax_rate=estimate_data.tax_rate,
            opportunity_id=estimate_data.opportunity_id,
            property_id=estimate_data.property_id,
            description=estimate_data.description,
            expiry_date=estimate_data.expiry_date,
            created_by=ctx.user_id
        )
        return estimate_to_dict(estimate)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.put("/estimates/{estimate_id}")
async def update_estimate(
    estimate_id: str,
    update: EstimateUpdate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    estimate = _get_estimate(estimate_id, ctx.organization_id, db)
    updates = update.model_dump(exclude_none=True)
    if update.line_items is not None:
        updates["line_items"] = _line_items(update.line_items)
    try:
        return estimate_to_dict(sales_service.update_estimate(db, estimate, updates))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.post("/estimates/{estimate_id}/convert", status_code=status.HTTP_201_CREATED)
async def convert_estimate(
    estimate_id: str,
    convert: EstimateConvert,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    estimate = _get_estimate(estimate_id, ctx.organization_id, db)
    try:
        invoice = sales_service.convert_estimate_to_invoice(
            db, estimate, due_date=convert.due_date, payment_terms=convert.payment_terms, created_by=ctx.user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return invoice_to_dict(invoice)


# =======================
# OPPORTUNITIES
# =======================

@router.get("/opportunities")
async def search_opportunities(
    query: Optional[str] = None,
    pipeline_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    assigned_to: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    q = db.query(OpportunityCache).filter(OpportunityCache.organization_id == ctx.organization_id)
    if query:
        term = f"%{query}%"
        q = q.filter(or_(OpportunityCache.title.ilike(term), OpportunityCache.contact_name.ilike(term)))
    if pipeline_id:
        q = q.filter(OpportunityCache.pipeline_id == pipeline_id)
    if status_filter:
        q = q.filter(OpportunityCache.status == status_filter)
    if assigned_to:
        q = q.filter(OpportunityCache.assigned_to == assigned_to)
    opportunities = q.order_by(OpportunityCache.synced_at.desc()).all()
    return {"opportunities": [opportunity_to_dict(o) for o in opportunities], "total": len(opportunities)}

@router.get("/opportunities/{opportunity_id}/cash-collected")
async def cash_collected(
    opportunity_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return sales_service.opportunity_cash_collected(opportunity_id, ctx.organization_id, db)

@router.put("/opportunities/{opportunity_id}/expenses")
async def update_expenses(
    opportunity_id: str,
    expenses: ExpenseUpdate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    opportunity = db.query(OpportunityCache).filter(
        and_(
            OpportunityCache.organization_id == ctx.organization_id,
            OpportunityCache.opportunity_id == opportunity_id
        )
    ).first()
    if not opportunity:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")

    for field, value in expenses.model_dump(exclude_none=True).items():
        setattr(opportunity, field, value)
    opportunity.total_expenses = (
        (opportunity.material_expenses or 0) + (opportunity.labor_expenses or 0) + (opportunity.other_expenses or 0)
    )
    if opportunity.revenue is None:
        opportunity.revenue = opportunity.monetary_value
    db.commit()
    db.refresh(opportunity)
    return opportunity_to_dict(opportunity)


# =======================
# PRODUCTS & TRANSACTIONS
# =======================

@router.get("/products")
async def list_products(
    search: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Product).filter(and_(Product.organization_id == ctx.organization_id, Product.is_active == True))
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    return {
        "products": [
            {
                "id": p.id,
                "ghl_product_id": p.ghl_product_id,
                "name": p.name,
                "description": p.description,
                "price": p.price,
                "price_type": p.price_type,
                "recurring_interval": p.recurring_interval
            }
            for p in query.order_by(Product.name.asc()).all()
        ]
    }

@router.post("/products", status_code=status.HTTP_201_CREATED)
async def create_product(
    product_data: ProductCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    product = Product(organization_id=ctx.organization_id, **product_data.model_dump())
    db.add(product)
    db.commit()
    db.refresh(product)
    return {"id": product.id, "name": product.name, "price": product.price, "price_type": product.price_type}

@router.get("/transactions")
async def list_transactions(
    opportunity_id: Optional[str] = None,
    transaction_type: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(SalesTransaction).filter(SalesTransaction.organization_id == ctx.organization_id)
    if opportunity_id:
        query = query.filter(SalesTransaction.opportunity_id == opportunity_id)
    if transaction_type:
        query = query.filter(SalesTransaction.transaction_type == transaction_type)
    return {
        "transactions": [
            {
                "id": t.id,
                "opportunity_id": t.opportunity_id,
                "contact_id": t.contact_id,
                "invoice_id": t.invoice_id,
                "amount": t.amount,
                "transaction_type": t.transaction_type,
                "payment_method": t.payment_method,
                "payment_status": t.payment_status,
                "payment_date": _iso(t.payment_date)
            }
            for t in query.order_by(SalesTransaction.payment_date.desc()).all()
        ]
    }


# =======================
# SYNC
# =======================

SYNC_HANDLERS = {
    "contacts": sync_all_contacts,
    "opportunities": sales_service.sync_opportunities,
    "invoices": sales_service.sync_invoices,
    "estimates": sales_service.sync_estimates,
    "products": sales_service.sync_products,
}

@router.post("/sync/{resource}")
async def sync_resource(
    resource: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    handler = SYNC_HANDLERS.get(resource)
    if not handler:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown sync resource: {resource}")

    integration = get_active_integration(ctx.organization_id, db)
    try:
        return handler(integration, db)
    except GHLAuthError as e:
        logger.error(f"❌ {resource} sync auth failure: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="GoHighLevel authorization failed, please reconnect")
    except Exception as e:
        logger.error(f"Error syncing {resource}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )
