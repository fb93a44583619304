"""
Commission Routes
Calculation, validation and approval of commissions, assignments, payment structures and payouts
"""

from fastapi import APIRouter, Depends, HTTPException, status, Request, Query
from pydantic import BaseModel
from sqlalchemy import and_
from sqlalchemy.orm import Session
from typing import Optional, List, Dict, Any
from datetime import datetime
import logging

from database.simple_connection import get_db
from database.models import (
    CommissionRecord, CommissionAssignment, CommissionProductRule, PaymentStructure, SalesTransaction, TeamMember
)
from api.routes.auth_routes import get_current_organization, require_permission, get_client_ip
from api.routes.integration_routes import get_active_integration
from api.services.organization_service import OrganizationContext
from api.services.auth_service import auth_service
from api.services.commission_calculator import calculate_for_transaction
from api.services.commission_validator import commission_validator
from api.services import commission_assignments as assignments_service
from api.services.commission_assignments import DuplicateAssignmentError
from api.services.ghl_api import create_ghl_client, GHLAuthError
from api.services.email_service import email_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/commissions", tags=["Commissions"])


# Pydantic models
class CommissionTier(BaseModel):
    threshold: float
    percentage: float

class AssignmentInput(BaseModel):
    id: Optional[str] = None
    ghl_user_id: str
    commission_type: str = "gross"
    commission_percentage: Optional[float] = None
    base_rate: Optional[float] = None
    commission_tiers: List[CommissionTier] = []
    flat_amount: Optional[float] = None
    base_commission: Optional[float] = None

class CalculateRequest(BaseModel):
    transaction_id: str
    commission_assignments: List[AssignmentInput]

class ApprovalRequest(BaseModel):
    notes: Optional[str] = None

class OverrideRequest(BaseModel):
    reason: str

class AssignmentCreate(BaseModel):
    ghl_user_id: str
    opportunity_id: Optional[str] = None
    assignment_type: str = "opportunity"
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    commission_type: str = "gross"
    commission_percentage: Optional[float] = None
    commission_tiers: List[CommissionTier] = []
    flat_amount: Optional[float] = None
    base_commission: Optional[float] = None
    notes: Optional[str] = None

class AssignmentUpdate(BaseModel):
    commission_type: Optional[str] = None
    commission_percentage: Optional[float] = None
    commission_tiers: Optional[List[CommissionTier]] = None
    flat_amount: Optional[float] = None
    base_commission: Optional[float] = None
    is_disabled: Optional[bool] = None
    notes: Optional[str] = None

class EligibilityRequest(BaseModel):
    opportunity_id: str

class ProductRuleCreate(BaseModel):
    product_id: str
    priority: int = 0
    requires_manager_approval: bool = False
    approval_threshold: Optional[float] = None
    estimated_margin_percentage: Optional[float] = None
    max_commission_of_margin: Optional[float] = None
    min_sale_amount: Optional[float] = None
    max_commission_amount: Optional[float] = None

class PaymentStructureCreate(BaseModel):
    user_id: str
    payment_type: str
    effective_date: Optional[datetime] = None
    hourly_rate: Optional[float] = None
    annual_salary: Optional[float] = None
    commission_percentage: Optional[float] = None
    base_salary: Optional[float] = None
    overtime_rate: Optional[float] = None
    notes: Optional[str] = None

class PaymentStructureUpdate(BaseModel):
    payment_type: Optional[str] = None
    effective_date: Optional[datetime] = None
    hourly_rate: Optional[float] = None
    annual_salary: Optional[float] = None
    commission_percentage: Optional[float] = None
    base_salary: Optional[float] = None
    overtime_rate: Optional[float] = None
    notes: Optional[str] = None

class PaymentAssignmentCreate(BaseModel):
    ghl_user_id: str
    payment_structure_id: str

class PayoutRequest(BaseModel):
    ghl_user_id: str
    start_date: datetime
    end_date: datetime
    payment_method: str = "direct_deposit"


# Serializers
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None

def record_to_dict(record: CommissionRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "transaction_id": record.transaction_id,
        "assignment_id": record.assignment_id,
        "opportunity_id": record.opportunity_id,
        "ghl_user_id": record.ghl_user_id,
        "commission_type": record.commission_type,
        "commission_rate": record.commission_rate,
        "base_amount": record.base_amount,
        "commission_amount": record.commission_amount,
        "revenue_amount": record.revenue_amount,
        "expense_amount": record.expense_amount,
        "profit_amount": record.profit_amount,
        "status": record.status,
        "requires_payment_verification": bool(record.requires_payment_verification),
        "payout_id": record.payout_id,
        "approved_by": record.approved_by,
        "approved_at": _iso(record.approved_at),
        "created_at": _iso(record.created_at)
    }

def assignment_to_dict(assignment: CommissionAssignment) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "assignment_type": assignment.assignment_type,
        "opportunity_id": assignment.opportunity_id,
        "ghl_user_id": assignment.ghl_user_id,
        "user_name": assignment.user_name,
        "user_email": assignment.user_email,
        "commission_type": assignment.commission_type,
        "commission_percentage": assignment.base_rate,
        "commission_tiers": assignment.commission_tiers or [],
        "flat_amount": assignment.flat_amount,
        "base_commission": assignment.base_commission,
        "is_active": bool(assignment.is_active),
        "is_disabled": bool(assignment.is_disabled),
        "is_eligible_for_payout": bool(assignment.is_eligible_for_payout),
        "notes": assignment.notes
    }

def structure_to_dict(structure: PaymentStructure) -> Dict[str, Any]:
    return {
        "id": structure.id,
        "user_id": structure.user_id,
        "payment_type": structure.payment_type,
        "hourly_rate": structure.hourly_rate,
        "annual_salary": structure.annual_salary,
        "commission_percentage": structure.commission_percentage,
        "base_salary": structure.base_salary,
        "overtime_rate": structure.overtime_rate,
        "notes": structure.notes,
        "effective_date": _iso(structure.effective_date),
        "end_date": _iso(structure.end_date),
        "is_active": bool(structure.is_active)
    }

def payout_to_dict(payout) -> Dict[str, Any]:
    return {
        "id": payout.id,
        "payout_number": payout.payout_number,
        "team_member_id": payout.team_member_id,
        "payout_date": _iso(payout.payout_date),
        "payout_period_start": _iso(payout.payout_period_start),
        "payout_period_end": _iso(payout.payout_period_end),
        "total_amount": payout.total_amount,
        "total_sales_amount": payout.total_sales_amount,
        "commission_count": payout.commission_count,
        "payment_method": payout.payment_method,
        "payment_status": payout.payment_status
    }

def _get_record(record_id: str, organization_id: str, db: Session) -> CommissionRecord:
    record = db.query(CommissionRecord).filter(
        and_(CommissionRecord.id == record_id, CommissionRecord.organization_id == organization_id)
    ).first()
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission record not found")
    return record

def _get_assignment(assignment_id: str, organization_id: str, db: Session) -> CommissionAssignment:
    assignment = db.query(CommissionAssignment).filter(
        and_(CommissionAssignment.id == assignment_id, CommissionAssignment.organization_id == organization_id)
    ).first()
    if not assignment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission assignment not found")
    return assignment


# =======================
# COMMISSION RECORDS
# =======================

@router.post("/calculate")
async def calculate_commissions(
    calc_request: CalculateRequest,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    transaction = db.query(SalesTransaction).filter(
        and_(
            SalesTransaction.id == calc_request.transaction_id,
            SalesTransaction.organization_id == ctx.organization_id
        )
    ).first()
    if not transaction:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transaction not found")

    try:
        assignments = [a.model_dump() for a in calc_request.commission_assignments]
        records, summary = calculate_for_transaction(transaction, assignments, db)
        return {"commissions": [record_to_dict(r) for r in records], "summary": summary}
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

@router.get("/")
async def list_commissions(
    opportunity_id: Optional[str] = None,
    ghl_user_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    query = db.query(CommissionRecord).filter(CommissionRecord.organization_id == ctx.organization_id)
    if opportunity_id:
        query = query.filter(CommissionRecord.opportunity_id == opportunity_id)
    if ghl_user_id:
        query = query.filter(CommissionRecord.ghl_user_id == ghl_user_id)
    if status_filter:
        query = query.filter(CommissionRecord.status == status_filter)
    if start_date:
        query = query.filter(CommissionRecord.created_at >= start_date)
    if end_date:
        query = query.filter(assignments_service.period_end_filter(CommissionRecord.created_at, end_date))
    records = query.order_by(CommissionRecord.created_at.desc()).all()
    return {
        "commissions": [record_to_dict(r) for r in records],
        "total": len(records),
        "total_amount": round(sum(r.commission_amount or 0 for r in records), 2)
    }

@router.post("/{record_id}/validate")
async def validate_commission(
    record_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    return commission_validator.validate_commission(record_id, ctx.organization_id, db).to_dict()

@router.post("/{record_id}/approve")
async def approve_commission(
    record_id: str,
    approval: ApprovalRequest,
    ctx: OrganizationContext = Depends(require_permission("approve_commissions")),
    db: Session = Depends(get_db)
):
    record = commission_validator.approve_commission(record_id, ctx.organization_id, ctx.user_id, approval.notes, db)
    if not record:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission record not found")
    return record_to_dict(record)

@router.post("/{record_id}/override")
async def override_commission(
    record_id: str,
    override: OverrideRequest,
    request: Request,
    ctx: OrganizationContext = Depends(require_permission("approve_commissions")),
    db: Session = Depends(get_db)
):
    audit = commission_validator.override_validation(record_id, ctx.organization_id, ctx.user_id, override.reason, db)
    if not audit:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Commission record not found")

    auth_service.log_security_event(
        organization_id=ctx.organization_id,
        user_id=ctx.user_id,
        action="commission_validation_override",
        ip_address=get_client_ip(request),
        user_agent=request.headers.get("user-agent", ""),
        details={"commission_record_id": record_id, "reason": override.reason},
        db=db,
        resource="commission"
    )
    return {"success": True, "validation_status": audit.validation_status, "override_reason": audit.override_reason}


# =======================
# ASSIGNMENTS
# =======================

@router.get("/assignments")
async def list_assignments(
    opportunity_id: Optional[str] = None,
    ghl_user_id: Optional[str] = None,
    include_inactive: bool = False,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    rows = assignments_service.list_assignments(db, ctx.organization_id, opportunity_id, ghl_user_id, include_inactive)
    return {"assignments": [assignment_to_dict(a) for a in rows]}

@router.post("/assignments", status_code=status.HTTP_201_CREATED)
async def create_assignment(
    assignment_data: AssignmentCreate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    try:
        assignment = assignments_service.create_assignment(
            db, ctx.organization_id, assignment_data.model_dump(), created_by=ctx.user_id
        )
    except DuplicateAssignmentError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return assignment_to_dict(assignment)

@router.put("/assignments/{assignment_id}")
async def update_assignment(
    assignment_id: str,
    update: AssignmentUpdate,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    assignment = _get_assignment(assignment_id, ctx.organization_id, db)
    try:
        updated = assignments_service.update_assignment(db, assignment, update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return assignment_to_dict(updated)

@router.delete("/assignments/{assignment_id}")
async def delete_assignment(
    assignment_id: str,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    assignments_service.delete_assignment(db, _get_assignment(assignment_id, ctx.organization_id, db))
    return {"success": True}

@router.post("/check-eligibility")
async def check_eligibility(
    eligibility: EligibilityRequest,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)
    return assignments_service.check_eligibility(eligibility.opportunity_id, integration, db)

@router.post("/reconcile")
async def reconcile(
    dry_run: bool = False,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    return assignments_service.reconcile_assignments(ctx.organization_id, db, created_by=ctx.user_id, dry_run=dry_run)

@router.get("/duplicates")
async def list_duplicates(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    groups = assignments_service.find_duplicate_assignments(db, ctx.organization_id)
    return {
        "duplicates": [
            {
                "opportunity_id": g["opportunity_id"],
                "ghl_user_id": g["ghl_user_id"],
                "keep": assignment_to_dict(g["keep"]),
                "remove": [assignment_to_dict(a) for a in g["remove"]]
            }
            for g in groups
        ],
        "total_groups": len(groups)
    }


# =======================
# PRODUCT RULES
# =======================

@router.get("/product-rules")
async def list_product_rules(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    rules = db.query(CommissionProductRule).filter(
        CommissionProductRule.organization_id == ctx.organization_id
    ).order_by(CommissionProductRule.priority.desc()).all()
    return {
        "rules": [
            {
                "id": r.id,
                "product_id": r.product_id,
                "priority": r.priority,
                "is_active": r.is_active,
                "requires_manager_approval": r.requires_manager_approval,
                "approval_threshold": r.approval_threshold,
                "estimated_margin_percentage": r.estimated_margin_percentage,
                "max_commission_of_margin": r.max_commission_of_margin,
                "min_sale_amount": r.min_sale_amount,
                "max_commission_amount": r.max_commission_amount
            }
            for r in rules
        ]
    }

@router.post("/product-rules", status_code=status.HTTP_201_CREATED)
async def create_product_rule(
    rule_data: ProductRuleCreate,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    rule = CommissionProductRule(organization_id=ctx.organization_id, **rule_data.model_dump())
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return {"id": rule.id, "product_id": rule.product_id, "priority": rule.priority}


# =======================
# PAYMENT STRUCTURES
# =======================

@router.get("/payment-structures")
async def list_payment_structures(
    user_id: Optional[str] = None,
    active_only: bool = False,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    rows = assignments_service.list_payment_structures(db, ctx.organization_id, user_id, active_only)
    return {"payment_structures": [structure_to_dict(s) for s in rows]}

@router.post("/payment-structures", status_code=status.HTTP_201_CREATED)
async def create_payment_structure(
    structure_data: PaymentStructureCreate,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    data = structure_data.model_dump(exclude={"user_id"})
    try:
        structure = assignments_service.create_payment_structure(
            db, ctx.organization_id, structure_data.user_id, data, created_by=ctx.user_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return structure_to_dict(structure)

@router.put("/payment-structures/{structure_id}")
async def update_payment_structure(
    structure_id: str,
    update: PaymentStructureUpdate,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    structure = db.query(PaymentStructure).filter(
        and_(PaymentStructure.id == structure_id, PaymentStructure.organization_id == ctx.organization_id)
    ).first()
    if not structure:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment structure not found")
    try:
        updated = assignments_service.update_payment_structure(db, structure, update.model_dump(exclude_none=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return structure_to_dict(updated)

@router.post("/payment-assignments", status_code=status.HTTP_201_CREATED)
async def assign_payment_structure(
    assignment_data: PaymentAssignmentCreate,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    try:
        assignment = assignments_service.assign_payment_structure(
            db, ctx.organization_id, assignment_data.ghl_user_id, assignment_data.payment_structure_id
        )
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return {
        "id": assignment.id,
        "ghl_user_id": assignment.ghl_user_id,
        "payment_structure_id": assignment.payment_structure_id,
        "is_active": assignment.is_active
    }


# =======================
# PAYOUTS
# =======================

@router.post("/payouts/generate", status_code=status.HTTP_201_CREATED)
async def generate_payout(
    payout_request: PayoutRequest,
    ctx: OrganizationContext = Depends(require_permission("manage_commissions")),
    db: Session = Depends(get_db)
):
    try:
        payout = assignments_service.generate_payout(
            db, ctx.organization_id,
            ghl_user_id=payout_request.ghl_user_id,
            start=payout_request.start_date,
            end=payout_request.end_date,
            payment_method=payout_request.payment_method,
            generated_by=ctx.user_id
        )
    except LookupError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    member = db.query(TeamMember).filter(TeamMember.id == payout.team_member_id).first()
    statement_sent = False
    if member and member.email:
        statement_sent = await email_service.send_payout_statement(
            member.email, member.full_name or member.email, assignments_service.payout_statement(payout)
        )

    return {**payout_to_dict(payout), "statement_sent": statement_sent}

@router.get("/payouts")
async def list_payouts(
    team_member_id: Optional[str] = None,
    payment_status: Optional[str] = None,
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    payouts = assignments_service.list_payouts(db, ctx.organization_id, team_member_id, payment_status)
    return {"payouts": [payout_to_dict(p) for p in payouts]}


# =======================
# TEAM MEMBERS
# =======================

@router.get("/team-members")
async def list_team_members(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    members = db.query(TeamMember).filter(TeamMember.organization_id == ctx.organization_id).all()
    return {
        "team_members": [
            {
                "id": m.id,
                "ghl_user_id": m.external_id,
                "full_name": m.full_name,
                "email": m.email,
                "phone": m.phone,
                "is_active": m.is_active
            }
            for m in members
        ]
    }

@router.post("/team-members/sync")
async def sync_team_members(
    ctx: OrganizationContext = Depends(get_current_organization),
    db: Session = Depends(get_db)
):
    integration = get_active_integration(ctx.organization_id, db)
    client = create_ghl_client(integration, db)
    if not client:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="GoHighLevel is not authorized")

    try:
        users = client.get_users()
    except GHLAuthError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="GoHighLevel authorization failed, please reconnect")

    created = updated = 0
    for ghl_user in users:
        ghl_user_id = ghl_user.get("id")
        if not ghl_user_id:
            continue
        member = db.query(TeamMember).filter(
            and_(TeamMember.organization_id == ctx.organization_id, TeamMember.external_id == ghl_user_id)
        ).first()
        if member:
            updated += 1
        else:
            member = TeamMember(organization_id=ctx.organization_id, external_id=ghl_user_id)
            db.add(member)
            created += 1
        member.full_name = ghl_user.get("name") or " ".join(
            part for part in [ghl_user.get("firstName"), ghl_user.get("lastName")] if part
        )
        member.email = ghl_user.get("email")
        member.phone = ghl_user.get("phone")
        member.is_active = not ghl_user.get("deleted", False)
    db.commit()

    logger.info(f"👥 Synced GHL users for {ctx.organization_id}: {created} created, {updated} updated")
    return {"created": created, "updated": updated, "total": created + updated}
