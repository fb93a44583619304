#!/usr/bin/env python3
"""
Tests for the SMS receipt flow: detection, extraction normalization, job matching,
the SMS reply text and reply-driven confirmation.
"""

import pytest

from database.models import (
    Organization, TeamMember, CompanyCreditCard, OpportunityCache, Receipt, ReceiptProcessingLog
)
from api.services.receipt_processor import (
    is_receipt_attachment, is_receipt_message, normalize_receipt_data, find_team_member_by_phone,
    is_company_card, build_sms_reply, process_receipt_message, handle_receipt_response, confirm_assignment
)


class FakeAI:
    """Extraction stub; ranking disabled so matching falls back to name similarity"""
    enabled = False

    def __init__(self, extracted=None):
        self.extracted = extracted

    def extract_receipt_data(self, image_url=None, image_bytes=None, media_type="image/jpeg"):
        return self.extracted


def _org(db):
    org = Organization(name="Dockside Crew", slug="dockside-crew", subscription_status="active")
    db.add(org)
    db.commit()
    return org


def _member(db, org, phone="555-123-4567"):
    member = TeamMember(organization_id=org.id, external_id="ghl-u1", full_name="Terry Tech", phone=phone)
    db.add(member)
    db.commit()
    return member


def test_receipt_attachment_detection():
    assert is_receipt_attachment({"url": "https://files.example.net/a", "contentType": "image/jpeg"})
    assert is_receipt_attachment({"url": "https://files.example.net/doc", "contentType": "application/pdf"})
    assert is_receipt_attachment("https://files.example.net/scan.PNG?sig=abc")
    assert is_receipt_attachment({"url": "https://files.example.net/x", "fileName": "receipt-march.txt"})
    assert not is_receipt_attachment({"url": "https://files.example.net/clip", "contentType": "video/mp4"})


def test_receipt_keyword_detection():
    assert is_receipt_message("Here's the Home Depot receipt")
    assert is_receipt_message("bought SUPPLIES for the Smith job")
    assert not is_receipt_message("On my way")
    assert not is_receipt_message(None)


def test_normalize_receipt_data_cleans_fields():
    data = normalize_receipt_data({
        "vendor_name": "",
        "amount": "$1,234.50",
        "category": "Snacks",
        "payment_method": "bitcoin",
        "last_four_digits": "**** 4242",
        "confidence": 150
    })
    print(f"Normalized: {data}")
    assert data["vendor_name"] == "Unknown Vendor"
    assert data["amount"] == pytest.approx(1234.50)
    assert data["category"] == "Other"
    assert data["payment_method"] == "other"
    assert data["last_four_digits"] == "4242"
    assert data["confidence"] == 100
    assert data["receipt_date"]

    assert normalize_receipt_data({"amount": "n/a"})["amount"] == 0.0


def test_team_member_lookup_ignores_phone_formatting(db):
    org = _org(db)
    member = _member(db, org)
    assert find_team_member_by_phone(org.id, "+1 (555) 123-4567", db).id == member.id
    assert find_team_member_by_phone(org.id, "555-000-0000", db) is None
    assert find_team_member_by_phone(org.id, "", db) is None


def test_company_card_lookup(db):
    org = _org(db)
    db.add(CompanyCreditCard(organization_id=org.id, card_name="Fleet Amex", last_four="4242"))
    db.add(CompanyCreditCard(organization_id=org.id, card_name="Old Visa", last_four="1111", is_active=False))
    db.commit()
    assert is_company_card(org.id, "4242", db) is True
    assert is_company_card(org.id, "1111", db) is False
    assert is_company_card(org.id, None, db) is False


def test_sms_reply_variants():
    data = {"amount": 84.2, "vendor_name": "West Marine", "receipt_date": "2026-03-14"}

    none = build_sms_reply(data, [])
    assert "$84.20" in none
    assert "No matching jobs found" in none

    single = build_sms_reply(data, [{"name": "Smith Dock", "confidence": 85, "is_completed": True}])
    assert 'Is this for "Smith Dock" (COMPLETED JOB)?' in single
    assert "Reply YES" in single

    several = build_sms_reply(data, [
        {"name": "Smith Dock", "confidence": 60, "is_completed": False},
        {"name": "Jones Lift", "confidence": 55, "is_completed": False},
    ])
    assert "Found 2 possible jobs:" in several
    assert "1. Smith Dock - 60% match" in several
    assert "2. Jones Lift - 55% match" in several


def test_process_receipt_message_creates_matched_receipt(db):
    org = _org(db)
    member = _member(db, org)
    db.add(CompanyCreditCard(organization_id=org.id, card_name="Fleet Amex", last_four="4242"))
    db.add(OpportunityCache(organization_id=org.id, opportunity_id="opp-smith", title="Dock Repair for Smith",
                            status="open"))
    db.add(OpportunityCache(organization_id=org.id, opportunity_id="opp-lost", title="Dock Repair for Smith",
                            status="lost"))
    db.commit()

    ai = FakeAI({
        "vendor_name": "West Marine",
        "amount": 84.2,
        "receipt_date": "2026-03-14",
        "description": "Dock repair for Smith",
        "category": "Materials",
        "payment_method": "credit_card",
        "last_four_digits": "4242",
        "confidence": 90
    })

    receipts = process_receipt_message(
        org.id, "msg-1", "+15551234567",
        [{"url": "https://files.example.net/r.jpg", "contentType": "image/jpeg"},
         {"url": "https://files.example.net/clip", "contentType": "video/mp4"}],
        db, ai=ai, send_sms=False
    )

    assert len(receipts) == 1
    receipt = receipts[0]
    assert receipt.submitted_by == member.id
    assert receipt.submitter_phone == "5551234567"
    assert receipt.is_reimbursable is False
    assert receipt.status == "pending_match"
    assert receipt.suggested_matches[0]["opportunity_id"] == "opp-smith"
    assert receipt.suggested_matches[0]["confidence"] == 80
    assert all(m["opportunity_id"] != "opp-lost" for m in receipt.suggested_matches)

    log = db.query(ReceiptProcessingLog).one()
    assert log.status == "extracted"
    assert log.receipt_id == receipt.id


def test_failed_extraction_is_logged(db):
    org = _org(db)
    receipts = process_receipt_message(org.id, "msg-2", "5551234567",
                                       ["https://files.example.net/r.jpg"], db, ai=FakeAI(None), send_sms=False)
    assert receipts == []
    log = db.query(ReceiptProcessingLog).one()
    assert log.status == "failed"
    assert log.error_message


def _pending_receipt(db, org, matches, amount=120.0, category="Materials"):
    receipt = Receipt(organization_id=org.id, vendor_name="West Marine", amount=amount, category=category,
                      submitter_phone="5551234567", status="pending_match", suggested_matches=matches)
    db.add(receipt)
    db.commit()
    return receipt


def test_yes_reply_confirms_top_match_and_rolls_up_expense(db):
    org = _org(db)
    db.add(OpportunityCache(organization_id=org.id, opportunity_id="opp-1", title="Smith", status="open",
                            labor_expenses=50.0))
    db.commit()
    _pending_receipt(db, org, [{"opportunity_id": "opp-1", "confidence": 85}])

    receipt = handle_receipt_response(org.id, "(555) 123-4567", "Yes!", db)
    assert receipt is not None
    assert receipt.status == "matched"
    assert receipt.opportunity_id == "opp-1"
    assert receipt.is_reimbursable is True
    assert receipt.reimbursement_status == "pending"

    opportunity = db.query(OpportunityCache).filter(OpportunityCache.opportunity_id == "opp-1").one()
    assert opportunity.material_expenses == pytest.approx(120.0)
    assert opportunity.total_expenses == pytest.approx(170.0)


def test_numeric_reply_selects_match(db):
    org = _org(db)
    _pending_receipt(db, org, [{"opportunity_id": "opp-1"}, {"opportunity_id": "opp-2"}], category="Travel")

    assert handle_receipt_response(org.id, "5551234567", "3", db) is None
    receipt = handle_receipt_response(org.id, "5551234567", " 2 ", db)
    assert receipt.opportunity_id == "opp-2"
    assert handle_receipt_response(org.id, "5551234567", "yes", db) is None


def test_yes_reply_with_several_matches_waits_for_a_number(db):
    org = _org(db)
    _pending_receipt(db, org, [{"opportunity_id": "opp-1"}, {"opportunity_id": "opp-2"}])

    assert handle_receipt_response(org.id, "5551234567", "YES", db) is None
    receipt = db.query(Receipt).one()
    assert receipt.status == "pending_match"
    assert receipt.opportunity_id is None

    receipt = handle_receipt_response(org.id, "5551234567", "1", db)
    assert receipt.opportunity_id == "opp-1"


def test_confirm_assignment_on_company_card_is_not_reimbursable(db):
    org = _org(db)
    db.add(CompanyCreditCard(organization_id=org.id, card_name="Fleet Amex", last_four="4242"))
    db.commit()
    receipt = _pending_receipt(db, org, [])
    receipt.last_four_digits = "4242"
    db.commit()

    confirmed = confirm_assignment(receipt, "opp-uncached", db)
    assert confirmed.is_reimbursable is False
    assert confirmed.reimbursement_status == "not_applicable"
