"""
Contacts Routes
Local copies of GHL contacts and the full sync trigger
"""

from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database.simple_connection import get_db
from database.models import Contact
from api.routes.auth_routes import get_current_organization
from api.routes.integration_routes import get_active_integration
from api.services.organization_service import OrganizationContext
from api.services.contact_sync import sync_all_contacts
from api.services.ghl_api import GHLAuthError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/contacts", tags=["Contacts"])


def contact_to_dict(contact: Contact) -> dict:
    return {
        "id": contact.id,
        "contact_id": contact.contact_id,
        "location_id": contact.location_id,
        "full_name": contact.full_name,
        "first_name": contact.first_name,
        "last_name": contact.last_name,
        "email": contact.email,
        "phone": contact.phone,
        "company_name": contact.company_name,
        "address1": contact.address1,
        "city": contact.city,
        "state": contact.state,
        "postal_code": contact.postal_code,
        "tags": contact.tags or [],
        "assigned_to": contact.assigned_to,
        "source": contact.source,
        "sync_status": contact.sync_status,
        "last_synced_at": contact.last_synced_at.isoformat() if contact.last_synced_at else None
    }


@router.get("/")
async def list_contacts(
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(Contact).filter(
        and_(Contact.organization_id == ctx.organization_id, Contact.sync_status != "deleted")
    )
    if search:
        term = f"%{search}%"
        query = query.filter(or_(
            Contact.full_name.ilike(term),
            Contact.email.ilike(term),
            Contact.phone.ilike(term),
            Contact.company_name.ilike(term)
        ))

    total = query.count()
    contacts = query.order_by(Contact.full_name.asc()).offset(offset).limit(limit).all()
    return {"contacts": [contact_to_dict(c) for c in contacts], "total": total, "limit": limit, "offset": offset}

@router.get("/{contact_id}")
async def get_contact(
    contact_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    contact = db.query(Contact).filter(
        and_(
            Contact.organization_id == ctx.organization_id,
            or_(Contact.id == contact_id, Contact.contact_id == contact_id)
        )
    ).first()
    if not contact:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
    return contact_to_dict(contact)

@router.post("/sync")
async def sync_contacts(
    max_results: int = Query(10000, ge=1, le=10000),
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)
    try:
        return sync_all_contacts(integration, db, max_results=max_results)
    except GHLAuthError as e:
        logger.error(f"❌ Contact sync auth failure for {ctx.organization_id}: {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="GoHighLevel authorization failed, please reconnect")
    except Exception as e:
        logger.error(f"Contact sync error: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error"
        )
