#!/usr/bin/env python3
"""
Tests for commission validation against product rules, plus approval and override.
"""

from datetime import datetime, timedelta

from database.models import (
    Organization, Product, SalesTransaction, CommissionRecord, CommissionProductRule, CommissionValidationAudit
)
from api.services.commission_validator import commission_validator


def _setup(db, commission_amount=100.0, commission_rate=10.0, amount=1000.0, rule_kwargs=None):
    org = Organization(name="Validator Co", slug="validator-co", subscription_status="active")
    db.add(org)
    db.flush()
    product = Product(organization_id=org.id, name="Hull Cleaning", price=amount, is_active=True,
                      created_at=datetime.utcnow() - timedelta(days=30))
    db.add(product)
    db.flush()
    transaction = SalesTransaction(organization_id=org.id, product_id=product.id, amount=amount,
                                   transaction_type="sale", payment_status="completed",
                                   payment_date=datetime.utcnow())
    db.add(transaction)
    db.flush()
    if rule_kwargs is not None:
        db.add(CommissionProductRule(organization_id=org.id, product_id=product.id, is_active=True, **rule_kwargs))
    record = CommissionRecord(organization_id=org.id, transaction_id=transaction.id, ghl_user_id="rep-1",
                              commission_type="gross", commission_rate=commission_rate, base_amount=amount,
                              revenue_amount=amount, commission_amount=commission_amount, status="pending")
    db.add(record)
    db.commit()
    return org, record


def test_record_without_rules_passes(db):
    org, record = _setup(db)
    result = commission_validator.validate_commission(record.id, org.id, db)
    checks = {c.check_type: c.status for c in result.checks}
    print(f"Checks: {checks}")
    assert result.status == "passed"
    assert result.can_proceed is True
    assert checks["product_rules"] == "info"
    assert checks["territory_check"] == "passed"
    assert db.query(CommissionValidationAudit).count() == 1


def test_missing_record_fails_validation(db):
    org, _ = _setup(db)
    result = commission_validator.validate_commission("does-not-exist", org.id, db)
    assert result.status == "failed"
    assert result.can_proceed is False
    assert result.checks[0].check_type == "commission_exists"


def test_margin_and_cap_warnings(db):
    org, record = _setup(db, commission_amount=300.0, commission_rate=30.0, rule_kwargs={
        "estimated_margin_percentage": 40.0,
        "max_commission_of_margin": 50.0,
        "max_commission_amount": 250.0
    })
    result = commission_validator.validate_commission(record.id, org.id, db)
    checks = {c.check_type: c.status for c in result.checks}
    assert checks["margin_check"] == "warning"
    assert checks["max_commission"] == "warning"
    assert result.status == "warning"
    assert result.can_proceed is True
    assert result.suggested_actions


def test_below_minimum_sale_fails(db):
    org, record = _setup(db, amount=200.0, rule_kwargs={"min_sale_amount": 500.0})
    result = commission_validator.validate_commission(record.id, org.id, db)
    assert result.status == "failed"
    assert result.can_proceed is False


def test_approval_threshold_requires_approval_then_approve(db):
    org, record = _setup(db, commission_amount=600.0, rule_kwargs={"approval_threshold": 500.0})
    result = commission_validator.validate_commission(record.id, org.id, db)
    assert result.requires_approval is True

    approved = commission_validator.approve_commission(record.id, org.id, "manager-1", "Looks right", db)
    assert approved.status == "approved"
    assert approved.approved_by == "manager-1"

    audit = db.query(CommissionValidationAudit).filter(
        CommissionValidationAudit.commission_record_id == record.id
    ).first()
    assert audit.approval_status == "approved"


def test_override_marks_latest_audit(db):
    org, record = _setup(db, amount=200.0, rule_kwargs={"min_sale_amount": 500.0})
    commission_validator.validate_commission(record.id, org.id, db)

    audit = commission_validator.override_validation(record.id, org.id, "owner-1", "Promotional sale", db)
    assert audit.validation_status == "override"
    assert audit.override_reason == "Promotional sale"
    assert commission_validator.override_validation("missing", org.id, "owner-1", "x", db) is None
