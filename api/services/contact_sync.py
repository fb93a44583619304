# api/services/contact_sync.py

import hmac
import hashlib
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from database.models import Contact, Integration, SyncLog
from api.services.ghl_api import create_ghl_client, GHLAuthError

logger = logging.getLogger(__name__)

# GHL field -> Contact column
GHL_CONTACT_FIELDS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "companyName": "company_name",
    "address1": "address1",
    "city": "city",
    "state": "state",
    "postalCode": "postal_code",
    "country": "country",
    "timezone": "timezone",
    "website": "website",
    "type": "contact_type",
    "source": "source",
    "assignedTo": "assigned_to",
}


def parse_ghl_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        logger.warning(f"⚠️ Unparseable GHL timestamp: {value}")
        return None


def map_ghl_contact(contact: Dict[str, Any], organization_id: str, integration_id: Optional[str],
                    location_id: str) -> Dict[str, Any]:
    """Convert a GHL contact payload into Contact column values"""
    data = {
        "organization_id": organization_id,
        "integration_id": integration_id,
        "location_id": contact.get("locationId") or location_id,
        "contact_id": contact.get("id") or contact.get("contactId"),
    }
    for ghl_field, column in GHL_CONTACT_FIELDS.items():
        data[column] = contact.get(ghl_field)

    data["full_name"] = " ".join(
        part for part in [contact.get("firstName"), contact.get("lastName")] if part
    ) or contact.get("contactName") or contact.get("name")
    data["dnd"] = bool(contact.get("dnd", False))
    data["tags"] = contact.get("tags") or []
    data["custom_fields"] = contact.get("customFields") or contact.get("customField") or []
    data["ghl_created_at"] = parse_ghl_datetime(contact.get("dateAdded"))
    data["ghl_updated_at"] = parse_ghl_datetime(contact.get("dateUpdated"))
    return data


def upsert_contact(db: Session, data: Dict[str, Any]) -> Contact:
    contact = db.query(Contact).filter(
        and_(Contact.location_id == data["location_id"], Contact.contact_id == data["contact_id"])
    ).first()

    if contact:
        for key, value in data.items():
            setattr(contact, key, value)
    else:
        contact = Contact(**data)
        db.add(contact)

    contact.sync_status = "synced"
    contact.last_synced_at = datetime.utcnow()
    db.flush()
    return contact


def mark_contact_deleted(db: Session, location_id: str, contact_id: str) -> bool:
    contact = db.query(Contact).filter(
        and_(Contact.location_id == location_id, Contact.contact_id == contact_id)
    ).first()
    if not contact:
        return False
    contact.sync_status = "deleted"
    contact.last_synced_at = datetime.utcnow()
    db.flush()
    return True


def sync_all_contacts(integration: Integration, db: Session, max_results: int = 10000) -> Dict[str, Any]:
    """
    Pull every contact for the integration's location and upsert it locally.
    A failure part-way through keeps what was fetched and records a partial sync.
    """
    client = create_ghl_client(integration, db)
    if not client:
        raise GHLAuthError("Integration has no access token")

    started = datetime.utcnow()
    result = client.get_all_contacts(max_results=max_results)

    processed = 0
    for ghl_contact in result.items:
        if not (ghl_contact.get("id") or ghl_contact.get("contactId")):
            continue
        upsert_contact(db, map_ghl_contact(
            ghl_contact, integration.organization_id, integration.id, integration.location_id
        ))
        processed += 1

    status = "partial" if result.error else "success"
    db.add(SyncLog(
        organization_id=integration.organization_id,
        integration_id=integration.id,
        sync_type="full_sync",
        event_type="contacts",
        status=status,
        records_processed=processed,
        error_message=result.error,
        details={"requests_made": result.requests_made, "duration_seconds": (datetime.utcnow() - started).total_seconds()}
    ))
    integration.last_sync_at = datetime.utcnow()
    db.commit()

    logger.info(f"🔄 Contact sync for location {integration.location_id}: {processed} contacts ({status})")
    return {"status": status, "processed": processed, "requests_made": result.requests_made, "error": result.error}


def verify_ghl_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        logger.warning("⚠️ GHL_WEBHOOK_SECRET not configured, webhook signatures are not enforced")
        return True
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())
