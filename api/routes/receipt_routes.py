"""
Receipt Routes
Receipts extracted from team member texts, job assignment and company cards
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query
from pydantic import BaseModel, field_validator
from sqlalchemy import and_
from sqlalchemy.orm import Session
from typing import Optional, List, Any
import logging

from database.simple_connection import get_db
from database.models import Receipt, CompanyCreditCard, Integration
from api.routes.auth_routes import get_current_organization
from api.services.organization_service import OrganizationContext
from api.services.receipt_processor import process_receipt_message, confirm_assignment, find_team_member_by_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/receipts", tags=["Receipts"])


class ProcessMessageRequest(BaseModel):
    message_id: Optional[str] = None
    phone: str
    attachments: List[Any] = []
    body: Optional[str] = None
    contact_id: Optional[str] = None

class ConfirmAssignmentRequest(BaseModel):
    receipt_id: str
    opportunity_id: str

class CompanyCardCreate(BaseModel):
    card_name: str
    last_four: str
    card_type: Optional[str] = None

    @field_validator("last_four")
    @classmethod
    def last_four_digits(cls, value: str) -> str:
        value = value.strip()
        if len(value) != 4 or not value.isdigit():
            raise ValueError("last_four must be exactly 4 digits")
        return value


def receipt_to_dict(receipt: Receipt) -> dict:
    return {
        "id": receipt.id,
        "opportunity_id": receipt.opportunity_id,
        "vendor_name": receipt.vendor_name,
        "amount": receipt.amount,
        "receipt_date": receipt.receipt_date.isoformat() if receipt.receipt_date else None,
        "description": receipt.description,
        "receipt_number": receipt.receipt_number,
        "category": receipt.category,
        "payment_method": receipt.payment_method,
        "last_four_digits": receipt.last_four_digits,
        "is_reimbursable": bool(receipt.is_reimbursable),
        "reimbursement_status": receipt.reimbursement_status,
        "submitted_by": receipt.submitted_by,
        "submitter_phone": receipt.submitter_phone,
        "image_url": receipt.image_url,
        "ai_confidence": receipt.ai_confidence,
        "status": receipt.status,
        "suggested_matches": receipt.suggested_matches or [],
        "created_at": receipt.created_at.isoformat() if receipt.created_at else None
    }

def card_to_dict(card: CompanyCreditCard) -> dict:
    return {
        "id": card.id,
        "card_name": card.card_name,
        "last_four": card.last_four,
        "card_type": card.card_type,
        "is_active": bool(card.is_active)
    }


@router.get("/")
async def list_receipts(
    status_filter: Optional[str] = Query(None, alias="status"),
    opportunity_id: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Receipt).filter(Receipt.organization_id == ctx.organization_id)
    if status_filter:
        query = query.filter(Receipt.status == status_filter)
    if opportunity_id:
        query = query.filter(Receipt.opportunity_id == opportunity_id)
    receipts = query.order_by(Receipt.created_at.desc()).all()
    return {"receipts": [receipt_to_dict(r) for r in receipts], "total": len(receipts)}

@router.post("/process-from-message")
async def process_from_message(
    message: ProcessMessageRequest,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    if not find_team_member_by_phone(ctx.organization_id, message.phone, db):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Phone number is not a registered team member")

    integration = db.query(Integration).filter(
        and_(Integration.organization_id == ctx.organization_id, Integration.is_active == True)
    ).first()

    try:
        receipts = process_receipt_message(
            ctx.organization_id, message.message_id, message.phone, message.attachments, db,
            body=message.body, contact_id=message.contact_id, integration=integration
        )
        return {"success": True, "receipts": [receipt_to_dict(r) for r in receipts]}
    except Exception as e:
        logger.error(f"Receipt processing error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )

@router.post("/confirm-assignment")
async def confirm_receipt_assignment(
    confirmation: ConfirmAssignmentRequest,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    receipt = db.query(Receipt).filter(
        and_(Receipt.id == confirmation.receipt_id, Receipt.organization_id == ctx.organization_id)
    ).first()
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Receipt not found")
    return receipt_to_dict(confirm_assignment(receipt, confirmation.opportunity_id, db))


# Company credit cards
@router.get("/company-cards")
async def list_company_cards(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    cards = db.query(CompanyCreditCard).filter(
        and_(CompanyCreditCard.organization_id == ctx.organization_id, CompanyCreditCard.is_active == True)
    ).all()
    return {"cards": [card_to_dict(c) for c in cards]}

@router.post("/company-cards", status_code=status.HTTP_201_CREATED)
async def add_company_card(
    card_data: CompanyCardCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    card = CompanyCreditCard(organization_id=ctx.organization_id, **card_data.model_dump())
    db.add(card)
    db.commit()
    db.refresh(card)
    logger.info(f"💳 Added company card ending {card.last_four}")
    return card_to_dict(card)

@router.delete("/company-cards/{card_id}")
async def remove_company_card(
    card_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    card = db.query(CompanyCreditCard).filter(
        and_(CompanyCreditCard.id == card_id, CompanyCreditCard.organization_id == ctx.organization_id)
    ).first()
    if not card:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card not found")
    card.is_active = False
    db.commit()
    return {"success": True}
