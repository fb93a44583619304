"""
Commission Calculator
Turns a sales transaction and its commission assignments into CommissionRecords.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from database.models import CommissionAssignment, CommissionRecord, OpportunityCache, SalesTransaction, TeamMember

logger = logging.getLogger(__name__)

COMMISSION_TYPES = ("gross", "profit", "tiered", "flat", "hybrid")
DIRECT_SALE_OPPORTUNITY = "direct-sale"


@dataclass
class CommissionCalculation:
    base_amount: float
    commission_amount: float
    profit_amount: Optional[float] = None
    expense_amount: Optional[float] = None


def _value(source: Any, key: str, default: Any = None) -> Any:
    # Assignments and opportunities arrive either as ORM rows or as plain dicts
    if source is None:
        return default
    if isinstance(source, dict):
        return source.get(key, default)
    return getattr(source, key, default)


def _rate(assignment: Any) -> float:
    rate = _value(assignment, "base_rate")
    if rate is None:
        rate = _value(assignment, "commission_percentage", 0)
    return float(rate or 0)


def calculate_commission(assignment: Any, transaction_amount: float, opportunity: Any = None,
                         month_to_date_sales: float = 0.0) -> CommissionCalculation:
    commission_type = _value(assignment, "commission_type")
    amount = float(transaction_amount or 0)
    rate = _rate(assignment)

    if commission_type == "gross":
        return CommissionCalculation(base_amount=amount, commission_amount=amount * rate / 100)

    if commission_type == "profit":
        if opportunity is None:
            return CommissionCalculation(base_amount=amount, commission_amount=amount * rate / 100)
        expense = float(_value(opportunity, "total_expenses") or 0)
        revenue = _value(opportunity, "revenue")
        revenue = amount if revenue is None else float(revenue)
        profit = revenue - expense
        return CommissionCalculation(
            base_amount=profit,
            commission_amount=profit * rate / 100,
            profit_amount=profit,
            expense_amount=expense
        )

    if commission_type == "tiered":
        tiers = sorted(_value(assignment, "commission_tiers") or [], key=lambda t: float(t.get("threshold", 0)))
        if not tiers:
            return CommissionCalculation(base_amount=amount, commission_amount=0.0)
        running_total = float(month_to_date_sales or 0) + amount
        current = tiers[0]
        for tier in tiers:
            if running_total >= float(tier.get("threshold", 0)):
                current = tier
        return CommissionCalculation(
            base_amount=amount,
            commission_amount=amount * float(current.get("percentage", 0)) / 100
        )

    if commission_type == "flat":
        return CommissionCalculation(base_amount=amount, commission_amount=float(_value(assignment, "flat_amount") or 0))

    if commission_type == "hybrid":
        base_commission = float(_value(assignment, "base_commission") or 0)
        return CommissionCalculation(base_amount=amount, commission_amount=base_commission + amount * rate / 100)

    raise ValueError(f"Unknown commission type: {commission_type}")


def month_to_date_sales(db: Session, organization_id: str, ghl_user_id: str,
                        now: Optional[datetime] = None) -> float:
    now = now or datetime.utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

    transaction_ids = db.query(CommissionRecord.transaction_id).filter(
        and_(
            CommissionRecord.organization_id == organization_id,
            CommissionRecord.ghl_user_id == ghl_user_id
        )
    ).distinct()

    total = db.query(func.coalesce(func.sum(SalesTransaction.amount), 0.0)).filter(
        and_(
            SalesTransaction.organization_id == organization_id,
            SalesTransaction.payment_status == "completed",
            SalesTransaction.payment_date >= month_start,
            SalesTransaction.id.in_(transaction_ids)
        )
    ).scalar()
    return float(total or 0)


def _team_member_id(db: Session, organization_id: str, ghl_user_id: Optional[str]) -> Optional[str]:
    if not ghl_user_id:
        return None
    member = db.query(TeamMember).filter(
        and_(TeamMember.organization_id == organization_id, TeamMember.external_id == ghl_user_id)
    ).first()
    return member.id if member else None


def calculate_for_transaction(transaction: SalesTransaction, assignments: List[Any],
                              db: Session) -> Tuple[List[CommissionRecord], Dict[str, Any]]:
    opportunity = None
    if transaction.opportunity_id and transaction.opportunity_id != DIRECT_SALE_OPPORTUNITY:
        opportunity = db.query(OpportunityCache).filter(
            and_(
                OpportunityCache.organization_id == transaction.organization_id,
                OpportunityCache.opportunity_id == transaction.opportunity_id
            )
        ).first()

    requires_verification = "subscription" in (transaction.transaction_type or "")
    records = []

    for assignment in assignments:
        ghl_user_id = _value(assignment, "ghl_user_id")
        mtd = month_to_date_sales(db, transaction.organization_id, ghl_user_id) if ghl_user_id else 0.0
        calc = calculate_commission(assignment, transaction.amount, opportunity, mtd)

        record = CommissionRecord(
            organization_id=transaction.organization_id,
            transaction_id=transaction.id,
            assignment_id=_value(assignment, "id"),
            opportunity_id=transaction.opportunity_id,
            team_member_id=_team_member_id(db, transaction.organization_id, ghl_user_id),
            ghl_user_id=ghl_user_id,
            commission_type=_value(assignment, "commission_type"),
            commission_rate=_rate(assignment),
            base_amount=round(calc.base_amount, 2),
            commission_amount=round(calc.commission_amount, 2),
            revenue_amount=transaction.amount,
            expense_amount=calc.expense_amount,
            profit_amount=calc.profit_amount,
            status="pending",
            requires_payment_verification=requires_verification
        )
        db.add(record)
        records.append(record)

    db.commit()
    for record in records:
        db.refresh(record)

    summary = {
        "transactionAmount": transaction.amount,
        "totalCommissions": round(sum(r.commission_amount or 0 for r in records), 2),
        "count": len(records)
    }
    logger.info(f"💵 Calculated {len(records)} commission(s) totalling {summary['totalCommissions']:.2f} "
                f"for transaction {transaction.id}")
    return records, summary


def cancel_pending_for_transaction(db: Session, organization_id: str, transaction_id: str) -> int:
    records = db.query(CommissionRecord).filter(
        and_(
            CommissionRecord.organization_id == organization_id,
            CommissionRecord.transaction_id == transaction_id,
            CommissionRecord.status == "pending"
        )
    ).all()
    for record in records:
        record.status = "cancelled"
    db.commit()
    return len(records)


def process_payment_commissions(transaction: SalesTransaction, db: Session,
                                original_transaction_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Calculate commissions for a completed payment. A refund instead cancels the
    pending commissions of the transaction it refunds.
    """
    if transaction.transaction_type == "refund":
        if not original_transaction_id:
            logger.warning(f"⚠️ Refund {transaction.id} has no original transaction to cancel against")
            return {"cancelled": 0}
        cancelled = cancel_pending_for_transaction(db, transaction.organization_id, original_transaction_id)
        logger.info(f"↩️ Cancelled {cancelled} pending commission(s) for refunded transaction {original_transaction_id}")
        return {"cancelled": cancelled}

    if not transaction.opportunity_id:
        return {"transactionAmount": transaction.amount, "totalCommissions": 0.0, "count": 0}

    assignments = db.query(CommissionAssignment).filter(
        and_(
            CommissionAssignment.organization_id == transaction.organization_id,
            CommissionAssignment.opportunity_id == transaction.opportunity_id,
            CommissionAssignment.assignment_type == "opportunity",
            CommissionAssignment.is_active == True,
            CommissionAssignment.is_disabled == False
        )
    ).all()

    if not assignments:
        logger.info(f"No commission assignments for opportunity {transaction.opportunity_id}")
        return {"transactionAmount": transaction.amount, "totalCommissions": 0.0, "count": 0}

    _, summary = calculate_for_transaction(transaction, assignments, db)
    return summary
