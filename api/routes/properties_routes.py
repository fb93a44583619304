"""
Properties Routes
Service addresses linked to contacts, used on invoices and estimates
"""

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database.simple_connection import get_db
from database.models import Property, PropertyContact
from api.routes.auth_routes import get_current_organization
from api.services.organization_service import OrganizationContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/properties", tags=["Properties"])


class PropertyCreate(BaseModel):
    address1: str
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "USA"
    nickname: Optional[str] = None
    property_type: str = "residential"
    tax_exempt: bool = False
    tax_exempt_reason: Optional[str] = None
    custom_tax_rate: Optional[float] = None
    square_footage: Optional[int] = None
    year_built: Optional[int] = None
    notes: Optional[str] = None
    contact_id: Optional[str] = None
    relationship_type: str = "owner"

class PropertyUpdate(BaseModel):
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    nickname: Optional[str] = None
    property_type: Optional[str] = None
    tax_exempt: Optional[bool] = None
    tax_exempt_reason: Optional[str] = None
    custom_tax_rate: Optional[float] = None
    square_footage: Optional[int] = None
    year_built: Optional[int] = None
    notes: Optional[str] = None


def build_full_address(prop) -> str:
    """'1 Main St, Apt 2, Tampa, FL 33601' with empty parts dropped"""
    region = " ".join(part for part in [prop.state, prop.postal_code] if part)
    parts = [prop.address1, prop.address2, prop.city, region]
    return ", ".join(part for part in parts if part)

def property_to_dict(prop: Property) -> dict:
    return {
        "id": prop.id,
        "nickname": prop.nickname,
        "property_type": prop.property_type,
        "address1": prop.address1,
        "address2": prop.address2,
        "city": prop.city,
        "state": prop.state,
        "postal_code": prop.postal_code,
        "country": prop.country,
        "full_address": prop.full_address,
        "tax_exempt": bool(prop.tax_exempt),
        "tax_exempt_reason": prop.tax_exempt_reason,
        "custom_tax_rate": prop.custom_tax_rate,
        "square_footage": prop.square_footage,
        "year_built": prop.year_built,
        "notes": prop.notes,
        "contacts": [
            {"contact_id": link.contact_id, "relationship_type": link.relationship_type, "is_primary": link.is_primary}
            for link in prop.contacts
        ]
    }

def _get_property(property_id: str, organization_id: str, db: Session) -> Property:
    prop = db.query(Property).filter(
        and_(Property.id == property_id, Property.organization_id == organization_id, Property.is_active == True)
    ).first()
    if not prop:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Property not found")
    return prop


@router.get("/")
async def list_properties(
    search: Optional[str] = None,
    contact_id: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Property).filter(
        and_(Property.organization_id == ctx.organization_id, Property.is_active == True)
    )
    if search:
        term = f"%{search}%"
        query = query.filter(or_(Property.nickname.ilike(term), Property.full_address.ilike(term)))
    if contact_id:
        query = query.join(PropertyContact, PropertyContact.property_id == Property.id).filter(
            PropertyContact.contact_id == contact_id
        )
    return {"properties": [property_to_dict(p) for p in query.order_by(Property.created_at.desc()).all()]}

@router.post("/", status_code=status.HTTP_201_CREATED)
async def create_property(
    property_data: PropertyCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    fields = property_data.model_dump(exclude={"contact_id", "relationship_type"})
    prop = Property(organization_id=ctx.organization_id, created_by=ctx.user_id, **fields)
    prop.full_address = build_full_address(prop)
    db.add(prop)
    db.flush()

    if property_data.contact_id:
        db.add(PropertyContact(
            property_id=prop.id,
            contact_id=property_data.contact_id,
            relationship_type=property_data.relationship_type,
            is_primary=True
        ))

    db.commit()
    db.refresh(prop)
    logger.info(f"🏠 Created property {prop.full_address}")
    return property_to_dict(prop)

@router.get("/{property_id}")
async def get_property(
    property_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return property_to_dict(_get_property(property_id, ctx.organization_id, db))

@router.put("/{property_id}")
async def update_property(
    property_id: str,
    update: PropertyUpdate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    prop = _get_property(property_id, ctx.organization_id, db)
    for field, value in update.model_dump(exclude_none=True).items():
        setattr(prop, field, value)
    prop.full_address = build_full_address(prop)
    db.commit()
    db.refresh(prop)
    return property_to_dict(prop)

@router.delete("/{property_id}")
async def delete_property(
    property_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    prop = _get_property(property_id, ctx.organization_id, db)
    prop.is_active = False
    db.commit()
    return {"success": True}
