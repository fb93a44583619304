"""
Commission assignment management
Payment structures, who earns on which opportunity, eligibility and payouts.
"""

import logging
from datetime import datetime, date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from database.models import (
    PaymentStructure, PaymentAssignment, CommissionAssignment, CommissionRecord, CommissionPayout,
    PayoutLineItem, OpportunityCache, Integration, TeamMember, SalesTransaction, Product
)

logger = logging.getLogger(__name__)

PAYMENT_TYPES = ("hourly", "salary", "commission_gross", "commission_profit", "hybrid")

REQUIRED_STRUCTURE_FIELDS = {
    "hourly": ["hourly_rate"],
    "salary": ["annual_salary"],
    "commission_gross": ["commission_percentage"],
    "commission_profit": ["commission_percentage"],
    "hybrid": ["base_salary", "commission_percentage"],
}


class DuplicateAssignmentError(Exception):
    pass


# =======================
# PAYMENT STRUCTURES
# =======================

def validate_payment_structure(data: Dict[str, Any]) -> None:
    payment_type = data.get("payment_type")
    if not payment_type:
        raise ValueError("payment_type is required")
    if payment_type not in REQUIRED_STRUCTURE_FIELDS:
        raise ValueError(f"Invalid payment_type: {payment_type}")
    if not data.get("effective_date"):
        raise ValueError("effective_date is required")
    for field_name in REQUIRED_STRUCTURE_FIELDS[payment_type]:
        if data.get(field_name) is None:
            raise ValueError(f"{field_name} is required for {payment_type} payment structures")


def create_payment_structure(db: Session, organization_id: str, user_id: str, data: Dict[str, Any],
                             created_by: Optional[str] = None) -> PaymentStructure:
    validate_payment_structure(data)

    previous = db.query(PaymentStructure).filter(
        and_(
            PaymentStructure.organization_id == organization_id,
            PaymentStructure.user_id == user_id,
            PaymentStructure.is_active == True
        )
    ).all()
    today = datetime.combine(date.today(), datetime.min.time())
    for structure in previous:
        structure.is_active = False
        structure.end_date = today

    structure = PaymentStructure(
        organization_id=organization_id,
        user_id=user_id,
        payment_type=data["payment_type"],
        hourly_rate=data.get("hourly_rate"),
        annual_salary=data.get("annual_salary"),
        commission_percentage=data.get("commission_percentage"),
        base_salary=data.get("base_salary"),
        overtime_rate=data.get("overtime_rate"),
        notes=data.get("notes"),
        effective_date=data["effective_date"],
        is_active=True,
        created_by=created_by
    )
    db.add(structure)
    db.commit()
    db.refresh(structure)
    logger.info(f"💼 Created {structure.payment_type} payment structure for user {user_id}"
                f" (deactivated {len(previous)} previous)")
    return structure


def list_payment_structures(db: Session, organization_id: str, user_id: Optional[str] = None,
                            active_only: bool = False) -> List[PaymentStructure]:
    query = db.query(PaymentStructure).filter(PaymentStructure.organization_id == organization_id)
    if user_id:
        query = query.filter(PaymentStructure.user_id == user_id)
    if active_only:
        query = query.filter(PaymentStructure.is_active == True)
    return query.order_by(PaymentStructure.effective_date.desc()).all()


def update_payment_structure(db: Session, structure: PaymentStructure, updates: Dict[str, Any]) -> PaymentStructure:
    merged = {
        "payment_type": structure.payment_type,
        "effective_date": structure.effective_date,
        "hourly_rate": structure.hourly_rate,
        "annual_salary": structure.annual_salary,
        "commission_percentage": structure.commission_percentage,
        "base_salary": structure.base_salary,
    }
    merged.update({key: value for key, value in updates.items() if value is not None})
    validate_payment_structure(merged)

    for key, value in updates.items():
        if value is not None and hasattr(structure, key):
            setattr(structure, key, value)
    db.commit()
    db.refresh(structure)
    return structure


def assign_payment_structure(db: Session, organization_id: str, ghl_user_id: str,
                             structure_id: str) -> PaymentAssignment:
    structure = db.query(PaymentStructure).filter(
        and_(PaymentStructure.id == structure_id, PaymentStructure.organization_id == organization_id)
    ).first()
    if not structure:
        raise LookupError("Payment structure not found")

    db.query(PaymentAssignment).filter(
        and_(
            PaymentAssignment.organization_id == organization_id,
            PaymentAssignment.ghl_user_id == ghl_user_id,
            PaymentAssignment.is_active == True
        )
    ).update({"is_active": False}, synchronize_session=False)

    assignment = PaymentAssignment(
        organization_id=organization_id,
        ghl_user_id=ghl_user_id,
        payment_structure_id=structure.id,
        is_active=True
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    return assignment


def active_payment_structure(db: Session, organization_id: str, ghl_user_id: str) -> Optional[PaymentStructure]:
    assignment = db.query(PaymentAssignment).filter(
        and_(
            PaymentAssignment.organization_id == organization_id,
            PaymentAssignment.ghl_user_id == ghl_user_id,
            PaymentAssignment.is_active == True
        )
    ).first()
    return assignment.payment_structure if assignment else None


# =======================
# OPPORTUNITY ASSIGNMENTS
# =======================

def _validate_percentage(value: Optional[float]) -> None:
    if value is not None and not 0 <= float(value) <= 100:
        raise ValueError("commission_percentage must be between 0 and 100")


def create_assignment(db: Session, organization_id: str, data: Dict[str, Any],
                      created_by: Optional[str] = None) -> CommissionAssignment:
    if not data.get("ghl_user_id"):
        raise ValueError("ghl_user_id is required")
    commission_type = data.get("commission_type") or "gross"
    rate = data.get("commission_percentage", data.get("base_rate"))
    _validate_percentage(rate)

    assignment_type = data.get("assignment_type") or "opportunity"
    opportunity_id = data.get("opportunity_id")
    if assignment_type == "opportunity":
        if not opportunity_id:
            raise ValueError("opportunity_id is required for opportunity assignments")
        existing = db.query(CommissionAssignment).filter(
            and_(
                CommissionAssignment.organization_id == organization_id,
                CommissionAssignment.opportunity_id == opportunity_id,
                CommissionAssignment.ghl_user_id == data["ghl_user_id"],
                CommissionAssignment.is_active == True
            )
        ).first()
        if existing:
            raise DuplicateAssignmentError(
                f"User {data['ghl_user_id']} already has an active assignment on opportunity {opportunity_id}"
            )

    assignment = CommissionAssignment(
        organization_id=organization_id,
        assignment_type=assignment_type,
        opportunity_id=opportunity_id,
        ghl_user_id=data["ghl_user_id"],
        user_name=data.get("user_name"),
        user_email=data.get("user_email"),
        commission_type=commission_type,
        base_rate=float(rate or 0),
        commission_tiers=data.get("commission_tiers") or [],
        flat_amount=data.get("flat_amount"),
        base_commission=data.get("base_commission"),
        is_active=True,
        is_disabled=bool(data.get("is_disabled", False)),
        notes=data.get("notes"),
        created_by=created_by
    )
    db.add(assignment)
    db.commit()
    db.refresh(assignment)
    logger.info(f"🤝 Assigned {assignment.ghl_user_id} to opportunity {opportunity_id} ({commission_type})")
    return assignment


def update_assignment(db: Session, assignment: CommissionAssignment, updates: Dict[str, Any]) -> CommissionAssignment:
    if "commission_percentage" in updates:
        updates = dict(updates)
        updates["base_rate"] = updates.pop("commission_percentage")
    _validate_percentage(updates.get("base_rate"))

    for key in ("commission_type", "base_rate", "commission_tiers", "flat_amount", "base_commission",
                "is_active", "is_disabled", "notes", "user_name", "user_email"):
        if key in updates and updates[key] is not None:
            setattr(assignment, key, updates[key])
    db.commit()
    db.refresh(assignment)
    return assignment


def delete_assignment(db: Session, assignment: CommissionAssignment) -> None:
    assignment.is_active = False
    db.commit()


def list_assignments(db: Session, organization_id: str, opportunity_id: Optional[str] = None,
                     ghl_user_id: Optional[str] = None, include_inactive: bool = False) -> List[CommissionAssignment]:
    query = db.query(CommissionAssignment).filter(CommissionAssignment.organization_id == organization_id)
    if opportunity_id:
        query = query.filter(CommissionAssignment.opportunity_id == opportunity_id)
    if ghl_user_id:
        query = query.filter(CommissionAssignment.ghl_user_id == ghl_user_id)
    if not include_inactive:
        query = query.filter(CommissionAssignment.is_active == True)
    return query.order_by(CommissionAssignment.created_at.desc()).all()


# =======================
# RECONCILIATION & DUPLICATES
# =======================

def reconcile_assignments(organization_id: str, db: Session, created_by: Optional[str] = None,
                          dry_run: bool = False) -> Dict[str, Any]:
    """
    Every cached opportunity with an assignee should carry an active commission
    assignment for that assignee. Missing ones are created from the assignee's
    active payment structure.
    """
    result = {"created": 0, "skipped": 0, "no_payment_structure": 0, "details": []}

    opportunities = db.query(OpportunityCache).filter(
        and_(OpportunityCache.organization_id == organization_id, OpportunityCache.assigned_to.isnot(None))
    ).all()

    for opportunity in opportunities:
        existing = db.query(CommissionAssignment).filter(
            and_(
                CommissionAssignment.organization_id == organization_id,
                CommissionAssignment.opportunity_id == opportunity.opportunity_id,
                CommissionAssignment.assignment_type == "opportunity",
                CommissionAssignment.is_active == True
            )
        ).first()
        if existing:
            result["skipped"] += 1
            continue

        structure = active_payment_structure(db, organization_id, opportunity.assigned_to)
        if not structure or structure.commission_percentage is None:
            result["no_payment_structure"] += 1
            continue

        commission_type = "profit" if structure.payment_type == "commission_profit" else "gross"
        result["details"].append({
            "opportunity_id": opportunity.opportunity_id,
            "ghl_user_id": opportunity.assigned_to,
            "commission_type": commission_type,
            "rate": structure.commission_percentage
        })
        if not dry_run:
            db.add(CommissionAssignment(
                organization_id=organization_id,
                assignment_type="opportunity",
                opportunity_id=opportunity.opportunity_id,
                ghl_user_id=opportunity.assigned_to,
                commission_type=commission_type,
                base_rate=structure.commission_percentage,
                is_active=True,
                notes=f"Auto-created from {structure.payment_type} payment structure during reconciliation",
                created_by=created_by
            ))
        result["created"] += 1

    if not dry_run:
        db.commit()
    logger.info(f"🔁 Reconciled assignments for {organization_id}: {result['created']} created, "
                f"{result['skipped']} skipped, {result['no_payment_structure']} without payment structure")
    return result


def _keep_rank(assignment: CommissionAssignment):
    return (
        1 if assignment.is_active else 0,
        1 if not assignment.is_disabled else 0,
        assignment.created_at or datetime.min
    )


def find_duplicate_assignments(db: Session, organization_id: Optional[str] = None) -> List[Dict[str, Any]]:
    query = db.query(
        CommissionAssignment.organization_id,
        CommissionAssignment.opportunity_id,
        CommissionAssignment.ghl_user_id
    ).filter(CommissionAssignment.opportunity_id.isnot(None))
    if organization_id:
        query = query.filter(CommissionAssignment.organization_id == organization_id)
    groups = query.group_by(
        CommissionAssignment.organization_id,
        CommissionAssignment.opportunity_id,
        CommissionAssignment.ghl_user_id
    ).having(func.count(CommissionAssignment.id) > 1).all()

    duplicates = []
    for org_id, opportunity_id, ghl_user_id in groups:
        rows = db.query(CommissionAssignment).filter(
            and_(
                CommissionAssignment.organization_id == org_id,
                CommissionAssignment.opportunity_id == opportunity_id,
                CommissionAssignment.ghl_user_id == ghl_user_id
            )
        ).all()
        rows.sort(key=_keep_rank, reverse=True)
        duplicates.append({
            "organization_id": org_id,
            "opportunity_id": opportunity_id,
            "ghl_user_id": ghl_user_id,
            "keep": rows[0],
            "remove": rows[1:]
        })
    return duplicates


def deactivate_duplicates(db: Session, organization_id: Optional[str] = None) -> int:
    deactivated = 0
    for group in find_duplicate_assignments(db, organization_id):
        for row in group["remove"]:
            if row.is_active:
                row.is_active = False
                deactivated += 1
    db.commit()
    logger.info(f"🧹 Deactivated {deactivated} duplicate commission assignment(s)")
    return deactivated


# =======================
# ELIGIBILITY
# =======================

def check_eligibility(opportunity_id: str, integration: Integration, db: Session) -> Dict[str, Any]:
    opportunity = db.query(OpportunityCache).filter(
        and_(
            OpportunityCache.organization_id == integration.organization_id,
            OpportunityCache.opportunity_id == opportunity_id
        )
    ).first()

    stages_by_pipeline = integration.pipeline_completion_stages or {}
    completion_stages = stages_by_pipeline.get(opportunity.pipeline_id, []) if opportunity else []
    is_complete = bool(opportunity and opportunity.pipeline_stage_id in completion_stages)

    assignments = db.query(CommissionAssignment).filter(
        and_(
            CommissionAssignment.organization_id == integration.organization_id,
            CommissionAssignment.opportunity_id == opportunity_id,
            CommissionAssignment.is_active == True
        )
    ).all()

    commissions = []
    total_eligible = 0.0
    for assignment in assignments:
        assignment.is_eligible_for_payout = is_complete and not assignment.is_disabled
        amount = db.query(func.coalesce(func.sum(CommissionRecord.commission_amount), 0.0)).filter(
            and_(
                CommissionRecord.assignment_id == assignment.id,
                CommissionRecord.status.in_(["pending", "approved"])
            )
        ).scalar() or 0.0
        if assignment.is_eligible_for_payout:
            total_eligible += float(amount)
        commissions.append({
            "assignment_id": assignment.id,
            "ghl_user_id": assignment.ghl_user_id,
            "user_name": assignment.user_name,
            "commission_type": assignment.commission_type,
            "commission_amount": round(float(amount), 2),
            "is_eligible_for_payout": assignment.is_eligible_for_payout
        })
    db.commit()

    eligible_count = len([c for c in commissions if c["is_eligible_for_payout"]])
    return {
        "opportunity_id": opportunity_id,
        "stage_id": opportunity.pipeline_stage_id if opportunity else None,
        "commissions": commissions,
        "eligibleCount": eligible_count,
        "totalEligibleAmount": round(total_eligible, 2),
        "completionStages": completion_stages,
        "hasEligibleCommissions": eligible_count > 0
    }


# =======================
# PAYOUTS
# =======================

def next_payout_number(db: Session, organization_id: str, on: Optional[datetime] = None) -> str:
    on = on or datetime.utcnow()
    prefix = f"PO-{on.strftime('%Y%m%d')}-"
    count = db.query(func.count(CommissionPayout.id)).filter(
        and_(CommissionPayout.organization_id == organization_id, CommissionPayout.payout_number.like(f"{prefix}%"))
    ).scalar() or 0
    return f"{prefix}{count + 1:04d}"


def period_end_filter(column, end: datetime):
    """A date-only end (midnight) covers the whole of that day"""
    if (end.hour, end.minute, end.second, end.microsecond) == (0, 0, 0, 0):
        return column < end + timedelta(days=1)
    return column <= end


def generate_payout(db: Session, organization_id: str, ghl_user_id: str, start: datetime, end: datetime,
                    payment_method: str = "direct_deposit", generated_by: Optional[str] = None) -> CommissionPayout:
    member = db.query(TeamMember).filter(
        and_(TeamMember.organization_id == organization_id, TeamMember.external_id == ghl_user_id)
    ).first()
    if not member:
        raise LookupError("Team member not found")

    records = db.query(CommissionRecord).filter(
        and_(
            CommissionRecord.organization_id == organization_id,
            CommissionRecord.ghl_user_id == ghl_user_id,
            CommissionRecord.status == "approved",
            CommissionRecord.payout_id.is_(None),
            CommissionRecord.created_at >= start,
            period_end_filter(CommissionRecord.created_at, end)
        )
    ).all()
    if not records:
        raise LookupError("No approved commissions found for this period")

    payout = CommissionPayout(
        organization_id=organization_id,
        team_member_id=member.id,
        payout_number=next_payout_number(db, organization_id),
        payout_period_start=start,
        payout_period_end=end,
        total_amount=round(sum(r.commission_amount or 0 for r in records), 2),
        commission_count=len(records),
        payment_method=payment_method,
        payment_status="pending",
        generated_by=generated_by
    )
    db.add(payout)
    db.flush()

    total_sales = 0.0
    for record in records:
        transaction = None
        if record.transaction_id:
            transaction = db.query(SalesTransaction).filter(SalesTransaction.id == record.transaction_id).first()
        product = None
        if transaction and transaction.product_id:
            product = db.query(Product).filter(Product.id == transaction.product_id).first()
        sale_amount = transaction.amount if transaction else (record.revenue_amount or record.base_amount or 0)
        total_sales += sale_amount or 0

        db.add(PayoutLineItem(
            payout_id=payout.id,
            commission_id=record.id,
            transaction_id=record.transaction_id,
            opportunity_id=record.opportunity_id,
            contact_id=transaction.contact_id if transaction else None,
            product_name=product.name if product else None,
            sale_date=transaction.payment_date if transaction else record.created_at,
            sale_amount=sale_amount,
            commission_percentage=record.commission_rate,
            commission_amount=record.commission_amount,
            transaction_type=transaction.transaction_type if transaction else None
        ))
        record.status = "paid"
        record.payout_id = payout.id

    payout.total_sales_amount = round(total_sales, 2)
    db.commit()
    db.refresh(payout)
    logger.info(f"💸 Generated payout {payout.payout_number} for {member.full_name}: {payout.total_amount:.2f}")
    return payout


def list_payouts(db: Session, organization_id: str, team_member_id: Optional[str] = None,
                 payment_status: Optional[str] = None) -> List[CommissionPayout]:
    query = db.query(CommissionPayout).filter(CommissionPayout.organization_id == organization_id)
    if team_member_id:
        query = query.filter(CommissionPayout.team_member_id == team_member_id)
    if payment_status:
        query = query.filter(CommissionPayout.payment_status == payment_status)
    return query.order_by(CommissionPayout.payout_date.desc()).all()


def payout_statement(payout: CommissionPayout) -> Dict[str, Any]:
    """Shape a payout for the emailed statement template"""
    return {
        "payout_number": payout.payout_number,
        "period_start": payout.payout_period_start.strftime("%Y-%m-%d") if payout.payout_period_start else "",
        "period_end": payout.payout_period_end.strftime("%Y-%m-%d") if payout.payout_period_end else "",
        "total_amount": payout.total_amount,
        "commission_count": payout.commission_count,
        "payment_method": payout.payment_method,
        "line_items": [
            {
                "sale_date": item.sale_date.strftime("%Y-%m-%d") if item.sale_date else "",
                "product_name": item.product_name or "",
                "opportunity_id": item.opportunity_id or "",
                "sale_amount": item.sale_amount or 0,
                "commission_percentage": item.commission_percentage or 0,
                "commission_amount": item.commission_amount or 0
            }
            for item in payout.line_items
        ]
    }
