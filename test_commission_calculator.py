#!/usr/bin/env python3
"""
Tests for commission calculation across the gross, profit, tiered, flat and hybrid types.
"""

from datetime import datetime

import pytest

from database.models import (
    Organization, SalesTransaction, CommissionAssignment, CommissionRecord, OpportunityCache, TeamMember
)
from api.services.commission_calculator import (
    calculate_commission, calculate_for_transaction, process_payment_commissions, cancel_pending_for_transaction
)


def _organization(db):
    org = Organization(name="Harbor Services", slug="harbor-services", subscription_status="active")
    db.add(org)
    db.commit()
    return org


def test_gross_commission_is_rate_of_amount():
    calc = calculate_commission({"commission_type": "gross", "commission_percentage": 10}, 1500)
    assert calc.base_amount == 1500
    assert calc.commission_amount == pytest.approx(150.0)


def test_base_rate_takes_precedence_over_percentage():
    calc = calculate_commission({"commission_type": "gross", "base_rate": 5, "commission_percentage": 50}, 1000)
    assert calc.commission_amount == pytest.approx(50.0)


def test_profit_commission_subtracts_opportunity_expenses():
    opportunity = {"revenue": 5000, "total_expenses": 2000}
    calc = calculate_commission({"commission_type": "profit", "commission_percentage": 20}, 5000, opportunity)
    print(f"Profit calc: {calc}")
    assert calc.profit_amount == pytest.approx(3000)
    assert calc.expense_amount == pytest.approx(2000)
    assert calc.commission_amount == pytest.approx(600)


def test_profit_commission_without_opportunity_falls_back_to_gross():
    calc = calculate_commission({"commission_type": "profit", "commission_percentage": 20}, 1000)
    assert calc.commission_amount == pytest.approx(200)


def test_tiered_commission_uses_month_to_date_total():
    tiers = [
        {"threshold": 0, "percentage": 5},
        {"threshold": 10000, "percentage": 8},
        {"threshold": 25000, "percentage": 12},
    ]
    assignment = {"commission_type": "tiered", "commission_tiers": tiers}

    low = calculate_commission(assignment, 2000, month_to_date_sales=1000)
    mid = calculate_commission(assignment, 2000, month_to_date_sales=9000)
    high = calculate_commission(assignment, 2000, month_to_date_sales=30000)

    assert low.commission_amount == pytest.approx(100)
    assert mid.commission_amount == pytest.approx(160)
    assert high.commission_amount == pytest.approx(240)


def test_tiered_without_tiers_pays_nothing():
    calc = calculate_commission({"commission_type": "tiered", "commission_tiers": []}, 5000)
    assert calc.commission_amount == 0


def test_flat_and_hybrid_commissions():
    flat = calculate_commission({"commission_type": "flat", "flat_amount": 250}, 9999)
    hybrid = calculate_commission({"commission_type": "hybrid", "base_commission": 100, "commission_percentage": 2}, 5000)
    assert flat.commission_amount == 250
    assert hybrid.commission_amount == pytest.approx(200)


def test_unknown_commission_type_raises():
    with pytest.raises(ValueError):
        calculate_commission({"commission_type": "mystery"}, 100)


def test_calculate_for_transaction_creates_pending_records(db):
    org = _organization(db)
    db.add(TeamMember(organization_id=org.id, external_id="ghl-user-1", full_name="Sam Seller"))
    transaction = SalesTransaction(
        organization_id=org.id, opportunity_id="opp-1", amount=2000.0,
        transaction_type="sale", payment_status="completed", payment_date=datetime.utcnow()
    )
    db.add(transaction)
    db.commit()

    records, summary = calculate_for_transaction(transaction, [
        {"ghl_user_id": "ghl-user-1", "commission_type": "gross", "commission_percentage": 10},
        {"ghl_user_id": "ghl-user-2", "commission_type": "flat", "flat_amount": 75},
    ], db)

    assert summary["count"] == 2
    assert summary["totalCommissions"] == pytest.approx(275)
    assert all(r.status == "pending" for r in records)
    assert records[0].team_member_id is not None
    assert records[1].team_member_id is None
    assert records[0].requires_payment_verification is False


def test_subscription_transactions_require_payment_verification(db):
    org = _organization(db)
    transaction = SalesTransaction(
        organization_id=org.id, opportunity_id="opp-sub", amount=99.0,
        transaction_type="subscription_renewal", payment_status="completed"
    )
    db.add(transaction)
    db.commit()

    records, _ = calculate_for_transaction(
        transaction, [{"ghl_user_id": "u1", "commission_type": "gross", "commission_percentage": 10}], db
    )
    assert records[0].requires_payment_verification is True


def test_process_payment_commissions_uses_active_opportunity_assignments(db):
    org = _organization(db)
    db.add(OpportunityCache(organization_id=org.id, opportunity_id="opp-9", revenue=4000, total_expenses=1000))
    db.add(CommissionAssignment(
        organization_id=org.id, assignment_type="opportunity", opportunity_id="opp-9",
        ghl_user_id="rep-1", commission_type="profit", base_rate=10, is_active=True, is_disabled=False
    ))
    db.add(CommissionAssignment(
        organization_id=org.id, assignment_type="opportunity", opportunity_id="opp-9",
        ghl_user_id="rep-2", commission_type="gross", base_rate=10, is_active=True, is_disabled=True
    ))
    transaction = SalesTransaction(
        organization_id=org.id, opportunity_id="opp-9", amount=4000.0,
        transaction_type="sale", payment_status="completed"
    )
    db.add(transaction)
    db.commit()

    summary = process_payment_commissions(transaction, db)
    assert summary["count"] == 1
    assert summary["totalCommissions"] == pytest.approx(300)


def test_refund_cancels_pending_records(db):
    org = _organization(db)
    sale = SalesTransaction(organization_id=org.id, opportunity_id="opp-r", amount=1000.0,
                            transaction_type="sale", payment_status="completed")
    db.add(sale)
    db.commit()
    calculate_for_transaction(sale, [{"ghl_user_id": "u1", "commission_type": "gross", "commission_percentage": 10}], db)

    refund = SalesTransaction(organization_id=org.id, opportunity_id="opp-r", amount=-1000.0,
                              transaction_type="refund", payment_status="refunded")
    db.add(refund)
    db.commit()

    result = process_payment_commissions(refund, db, original_transaction_id=sale.id)
    assert result == {"cancelled": 1}
    statuses = [r.status for r in db.query(CommissionRecord).filter(CommissionRecord.transaction_id == sale.id)]
    assert statuses == ["cancelled"]
    assert cancel_pending_for_transaction(db, org.id, sale.id) == 0
