"""
Receipt Processor
Turns receipt photos texted in by team members into Receipt rows matched to jobs.

Flow: inbound SMS with an attachment -> AI extraction -> job matching -> SMS
reply asking the sender to confirm -> confirmation books the expense against
the opportunity.
"""

import re
import logging
from datetime import datetime, date
from typing import Any, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from database.models import (
    Receipt, ReceiptProcessingLog, CompanyCreditCard, TeamMember, OpportunityCache, Integration
)
from api.services.ai_service import AIService, RECEIPT_CATEGORIES, clamp_confidence, ai_service as default_ai_service
from api.services.ghl_api import create_ghl_client
from api.services.ghl_mcp_client import create_mcp_client
from utils.text_matching import best_similarity, normalize_phone, format_currency

logger = logging.getLogger(__name__)

RECEIPT_KEYWORDS = [
    "receipt", "invoice", "bill", "expense", "purchase", "paid", "cost", "spent", "bought",
    "materials", "supplies", "gas", "fuel", "tool", "equipment", "hardware", "depot", "lowes", "store"
]

PAYMENT_METHODS = ("credit_card", "cash", "check", "debit_card", "other")
EXPENSE_BUCKETS = {"Labor": "labor_expenses", "Materials": "material_expenses"}
CONFIRM_REPLY = re.compile(r"^\s*(yes|y)\s*[.!]?\s*$", re.IGNORECASE)
SELECTION_REPLY = re.compile(r"^\s*([1-3])\s*$")
SINGLE_MATCH_CONFIDENCE = 70


# =======================
# DETECTION
# =======================

def _attachment_fields(attachment: Any) -> Dict[str, str]:
    if isinstance(attachment, str):
        return {"url": attachment, "content_type": "", "filename": attachment.rsplit("/", 1)[-1]}
    return {
        "url": attachment.get("url") or "",
        "content_type": attachment.get("contentType") or attachment.get("content_type") or attachment.get("type") or "",
        "filename": attachment.get("fileName") or attachment.get("filename") or attachment.get("name") or ""
    }


def is_receipt_attachment(attachment: Any) -> bool:
    fields = _attachment_fields(attachment)
    content_type = fields["content_type"].lower()
    filename = fields["filename"].lower()
    url = fields["url"].lower().split("?", 1)[0]

    if content_type.startswith("image/") or content_type == "application/pdf":
        return True
    if "receipt" in filename:
        return True
    if filename.endswith(".pdf") or url.endswith(".pdf"):
        return True
    if not content_type and re.search(r"\.(jpe?g|png|gif|webp|heic)$", url):
        return True
    return False


def is_receipt_message(text: Optional[str]) -> bool:
    lower = (text or "").lower()
    return any(keyword in lower for keyword in RECEIPT_KEYWORDS)


def find_team_member_by_phone(organization_id: str, phone: Optional[str], db: Session) -> Optional[TeamMember]:
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    members = db.query(TeamMember).filter(
        and_(TeamMember.organization_id == organization_id, TeamMember.is_active == True)
    ).all()
    for member in members:
        if member.phone and normalize_phone(member.phone) == normalized:
            return member
    return None


def is_company_card(organization_id: str, last_four: Optional[str], db: Session) -> bool:
    if not last_four:
        return False
    return db.query(CompanyCreditCard).filter(
        and_(
            CompanyCreditCard.organization_id == organization_id,
            CompanyCreditCard.last_four == str(last_four)[-4:],
            CompanyCreditCard.is_active == True
        )
    ).first() is not None


# =======================
# EXTRACTION
# =======================

def normalize_receipt_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    try:
        amount = float(str(raw.get("amount") or 0).replace("$", "").replace(",", ""))
    except ValueError:
        amount = 0.0

    category = raw.get("category") if raw.get("category") in RECEIPT_CATEGORIES else "Other"
    payment_method = raw.get("payment_method") if raw.get("payment_method") in PAYMENT_METHODS else "other"
    last_four = raw.get("last_four_digits")
    last_four = re.sub(r"\D", "", str(last_four))[-4:] if last_four else None

    return {
        "vendor_name": raw.get("vendor_name") or "Unknown Vendor",
        "amount": amount,
        "receipt_date": raw.get("receipt_date") or date.today().isoformat(),
        "description": raw.get("description"),
        "receipt_number": raw.get("receipt_number"),
        "category": category,
        "payment_method": payment_method,
        "last_four_digits": last_four or None,
        "confidence": int(clamp_confidence(raw.get("confidence", 0)))
    }


def extract_receipt_data(image_url: Optional[str] = None, image_bytes: Optional[bytes] = None,
                         media_type: str = "image/jpeg", ai: Optional[AIService] = None) -> Optional[Dict[str, Any]]:
    ai = ai if ai is not None else default_ai_service
    raw = ai.extract_receipt_data(image_url=image_url, image_bytes=image_bytes, media_type=media_type)
    if raw is None:
        return None
    return normalize_receipt_data(raw)


# =======================
# JOB MATCHING
# =======================

def _completion_stages(integration: Optional[Integration]) -> Dict[str, List[str]]:
    return (integration.pipeline_completion_stages or {}) if integration else {}


def _is_completed(opportunity: OpportunityCache, stages: Dict[str, List[str]]) -> bool:
    return opportunity.pipeline_stage_id in stages.get(opportunity.pipeline_id, []) or opportunity.status == "won"


def find_matching_jobs(receipt_data: Dict[str, Any], organization_id: str, db: Session,
                       ai: Optional[AIService] = None, integration: Optional[Integration] = None) -> List[Dict[str, Any]]:
    """
    Rank candidate opportunities for a receipt. Active jobs are preferred; when
    there are none, completed jobs are offered and flagged as such.
    """
    ai = ai if ai is not None else default_ai_service
    stages = _completion_stages(integration)

    opportunities = db.query(OpportunityCache).filter(
        and_(OpportunityCache.organization_id == organization_id, OpportunityCache.status.in_(["open", "won"]))
    ).all()
    active = [o for o in opportunities if o.status == "open" and not _is_completed(o, stages)]
    candidates = active or [o for o in opportunities if _is_completed(o, stages)]
    if not candidates:
        return []

    by_id = {o.opportunity_id: o for o in candidates}

    def as_match(opportunity: OpportunityCache, confidence: float, reason: str) -> Dict[str, Any]:
        return {
            "opportunity_id": opportunity.opportunity_id,
            "name": opportunity.title or opportunity.contact_name or opportunity.opportunity_id,
            "contact_name": opportunity.contact_name,
            "confidence": round(confidence),
            "reason": reason,
            "is_completed": _is_completed(opportunity, stages)
        }

    ranked = ai.rank_job_matches(receipt_data, [
        {"opportunity_id": o.opportunity_id, "title": o.title, "contact_name": o.contact_name}
        for o in candidates
    ]) if ai and ai.enabled else None

    if ranked is not None:
        matches = [
            as_match(by_id[m["opportunity_id"]], m["confidence"], m.get("reason", ""))
            for m in ranked if m["opportunity_id"] in by_id
        ]
        return sorted(matches, key=lambda m: m["confidence"], reverse=True)[:5]

    needles = [receipt_data.get("vendor_name"), receipt_data.get("description")]
    matches = []
    for opportunity in candidates:
        score = best_similarity(needles, [opportunity.title, opportunity.contact_name])
        if score > 0.3:
            matches.append(as_match(opportunity, 50 + score * 30, "Name similarity"))
    return sorted(matches, key=lambda m: m["confidence"], reverse=True)[:5]


def build_sms_reply(receipt_data: Dict[str, Any], matches: List[Dict[str, Any]]) -> str:
    summary = (f"Receipt processed! Found {format_currency(receipt_data.get('amount'))} from "
               f"{receipt_data.get('vendor_name')} on {receipt_data.get('receipt_date')}.")

    if not matches:
        return (f"{summary}\n\nNo matching jobs found. Which job should this expense be logged to? "
                "Please reply with the job name.")

    if len(matches) == 1 and matches[0]["confidence"] > SINGLE_MATCH_CONFIDENCE:
        match = matches[0]
        completed = " (COMPLETED JOB)" if match.get("is_completed") else ""
        return (f"{summary}\n\nIs this for \"{match['name']}\"{completed}? "
                "Reply YES to confirm or specify the correct job.")

    all_completed = all(m.get("is_completed") for m in matches)
    lines = [f"{summary}\n\nFound {len(matches)}{' completed' if all_completed else ''} possible jobs:"]
    for i, match in enumerate(matches[:3], start=1):
        completed = " (COMPLETED)" if match.get("is_completed") else ""
        lines.append(f"{i}. {match['name']}{completed} - {match['confidence']}% match")
    return "\n".join(lines) + "\n\nReply with the number or job name to confirm."


# =======================
# PROCESSING
# =======================

def send_reply(integration: Optional[Integration], contact_id: Optional[str], message: str, db: Session) -> bool:
    if not integration or not contact_id:
        logger.warning("⚠️ No integration or contact to send receipt reply to")
        return False

    mcp = create_mcp_client(integration)
    if mcp:
        try:
            mcp.send_message(contact_id, message)
            return True
        except Exception as e:
            logger.warning(f"⚠️ MCP send failed, falling back to REST: {e}")

    client = create_ghl_client(integration, db)
    if not client:
        return False
    return client.send_sms(contact_id, message)


def _parse_receipt_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def process_receipt_message(organization_id: str, message_id: Optional[str], phone: str,
                            attachments: List[Any], db: Session, body: Optional[str] = None,
                            contact_id: Optional[str] = None, integration: Optional[Integration] = None,
                            ai: Optional[AIService] = None, send_sms: bool = True) -> List[Receipt]:
    member = find_team_member_by_phone(organization_id, phone, db)
    receipts = []

    for attachment in attachments or []:
        if not is_receipt_attachment(attachment):
            continue
        fields = _attachment_fields(attachment)
        log = ReceiptProcessingLog(
            organization_id=organization_id,
            message_id=message_id,
            phone=phone,
            attachment_url=fields["url"],
            status="processing"
        )
        db.add(log)
        db.commit()

        media_type = "application/pdf" if fields["content_type"] == "application/pdf" or \
            fields["url"].lower().split("?", 1)[0].endswith(".pdf") else (fields["content_type"] or "image/jpeg")
        data = extract_receipt_data(image_url=fields["url"], media_type=media_type, ai=ai)
        if data is None:
            log.status = "failed"
            log.error_message = "Could not extract receipt data"
            db.commit()
            logger.warning(f"⚠️ Receipt extraction failed for message {message_id}")
            continue

        matches = find_matching_jobs(data, organization_id, db, ai=ai, integration=integration)
        receipt = Receipt(
            organization_id=organization_id,
            integration_id=integration.id if integration else None,
            vendor_name=data["vendor_name"],
            amount=data["amount"],
            receipt_date=_parse_receipt_date(data["receipt_date"]),
            description=data["description"] or body,
            receipt_number=data["receipt_number"],
            category=data["category"],
            payment_method=data["payment_method"],
            last_four_digits=data["last_four_digits"],
            is_reimbursable=not is_company_card(organization_id, data["last_four_digits"], db),
            submitted_by=member.id if member else None,
            submitter_phone=normalize_phone(phone),
            message_id=message_id,
            image_url=fields["url"],
            ai_confidence=data["confidence"],
            status="pending_match",
            suggested_matches=matches
        )
        db.add(receipt)
        db.flush()

        log.status = "extracted"
        log.ai_response = data
        log.receipt_id = receipt.id
        db.commit()
        db.refresh(receipt)
        receipts.append(receipt)

        logger.info(f"🧾 Receipt {receipt.id}: {format_currency(receipt.amount)} from {receipt.vendor_name}, "
                    f"{len(matches)} match(es)")

        if send_sms:
            send_reply(integration, contact_id, build_sms_reply(data, matches), db)

    return receipts


def confirm_assignment(receipt: Receipt, opportunity_id: str, db: Session) -> Receipt:
    receipt.opportunity_id = opportunity_id
    receipt.status = "matched"
    receipt.is_reimbursable = not is_company_card(receipt.organization_id, receipt.last_four_digits, db)
    receipt.reimbursement_status = "pending" if receipt.is_reimbursable else "not_applicable"

    opportunity = db.query(OpportunityCache).filter(
        and_(
            OpportunityCache.organization_id == receipt.organization_id,
            OpportunityCache.opportunity_id == opportunity_id
        )
    ).first()
    if opportunity:
        bucket = EXPENSE_BUCKETS.get(receipt.category, "other_expenses")
        setattr(opportunity, bucket, (getattr(opportunity, bucket) or 0) + (receipt.amount or 0))
        opportunity.total_expenses = (
            (opportunity.material_expenses or 0) + (opportunity.labor_expenses or 0) + (opportunity.other_expenses or 0)
        )
    else:
        logger.warning(f"⚠️ Opportunity {opportunity_id} not cached, expense not rolled up")

    db.commit()
    db.refresh(receipt)
    logger.info(f"✅ Receipt {receipt.id} assigned to opportunity {opportunity_id}")
    return receipt


def handle_receipt_response(organization_id: str, phone: str, text: str, db: Session) -> Optional[Receipt]:
    receipt = db.query(Receipt).filter(
        and_(
            Receipt.organization_id == organization_id,
            Receipt.submitter_phone == normalize_phone(phone),
            Receipt.status == "pending_match"
        )
    ).order_by(Receipt.created_at.desc()).first()
    if not receipt:
        return None

    matches = receipt.suggested_matches or []
    if not matches:
        return None

    if CONFIRM_REPLY.match(text or ""):
        # YES only names a job when exactly one was offered
        if len(matches) != 1:
            logger.info(f"Receipt {receipt.id} has {len(matches)} suggested jobs, waiting for a numbered reply")
            return None
        return confirm_assignment(receipt, matches[0]["opportunity_id"], db)

    selection = SELECTION_REPLY.match(text or "")
    if selection:
        index = int(selection.group(1)) - 1
        if index < len(matches):
            return confirm_assignment(receipt, matches[index]["opportunity_id"], db)
    return None
