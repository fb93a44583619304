#!/usr/bin/env python3
"""
Tests for the inbound GHL webhooks: contacts, messages, payments, invoices and estimates.
"""

import pytest

from database.models import (
    Contact, SyncLog, IncomingMessage, SalesTransaction, CommissionAssignment, CommissionRecord,
    Invoice, Estimate, TeamMember, Receipt, Product, CommissionProductRule
)
from api.routes.webhook_routes import normalize_payment_amount
from api.services.commission_validator import commission_validator


def test_normalize_payment_amount():
    assert normalize_payment_amount(150000) == 1500
    assert normalize_payment_amount(999) == 999.0
    assert normalize_payment_amount(1500.0) == 1500.0
    assert normalize_payment_amount("25.5") == 25.5
    assert normalize_payment_amount(None) == 0.0


def test_contact_create_update_and_delete(client, db, integration):
    create = client.post("/api/v1/webhooks/ghl/contacts", json={
        "type": "contact.create",
        "locationId": "loc-123",
        "contact": {"id": "ghl-c1", "firstName": "Pat", "lastName": "Boater", "phone": "+15550001111",
                    "tags": ["lead"], "dateAdded": "2026-03-01T12:00:00Z"}
    })
    assert create.status_code == 200, create.text
    assert create.json() == {"success": True}

    contact = db.query(Contact).filter(Contact.contact_id == "ghl-c1").one()
    assert contact.full_name == "Pat Boater"
    assert contact.organization_id == integration.organization_id
    assert contact.tags == ["lead"]

    client.post("/api/v1/webhooks/ghl/contacts", json={
        "type": "contact.update", "locationId": "loc-123", "contactId": "ghl-c1",
        "contact": {"firstName": "Patricia", "lastName": "Boater"}
    })
    db.expire_all()
    contact = db.query(Contact).filter(Contact.contact_id == "ghl-c1").one()
    assert contact.full_name == "Patricia Boater"

    deleted = client.post("/api/v1/webhooks/ghl/contacts", json={
        "type": "contact.delete", "locationId": "loc-123", "contactId": "ghl-c1"
    })
    assert deleted.status_code == 200
    db.expire_all()
    assert db.query(Contact).filter(Contact.contact_id == "ghl-c1").one().sync_status == "deleted"
    assert db.query(SyncLog).filter(SyncLog.sync_type == "webhook").count() == 3


def test_contact_webhook_unknown_location(client):
    response = client.post("/api/v1/webhooks/ghl/contacts", json={"type": "contact.create", "locationId": "nope"})
    assert response.status_code == 404


def test_message_webhook_challenge_and_outbound(client):
    challenge = client.get("/api/v1/webhooks/ghl/messages", params={"challenge": "abc123"})
    assert challenge.status_code == 200
    assert challenge.text == "abc123"

    outbound = client.post("/api/v1/webhooks/ghl/messages", json={
        "locationId": "loc-123", "message": {"direction": "outbound", "body": "hello"}
    })
    assert outbound.json() == {"success": True, "message": "Outbound message ignored"}

    unknown = client.post("/api/v1/webhooks/ghl/messages", json={"locationId": "nowhere", "body": "hi"})
    assert unknown.json() == {"success": True, "message": "Unknown location"}


def test_message_from_non_member_is_stored_only(client, db, integration):
    response = client.post("/api/v1/webhooks/ghl/messages", json={
        "locationId": "loc-123", "messageId": "m-1", "contactId": "c-9",
        "contact": {"phone": "+15559998888"}, "message": {"body": "receipt attached"}
    })
    assert response.json() == {"success": True, "processed": 0}
    stored = db.query(IncomingMessage).one()
    assert stored.message_id == "m-1"
    assert stored.processed is False


def test_yes_reply_from_team_member_confirms_receipt(client, db, integration):
    db.add(TeamMember(organization_id=integration.organization_id, full_name="Terry Tech", phone="555-123-4567"))
    db.add(Receipt(organization_id=integration.organization_id, vendor_name="West Marine", amount=42.0,
                   submitter_phone="5551234567", status="pending_match",
                   suggested_matches=[{"opportunity_id": "opp-7", "confidence": 90}]))
    db.commit()

    response = client.post("/api/v1/webhooks/ghl/messages", json={
        "locationId": "loc-123", "messageId": "m-2",
        "contact": {"phone": "+1 555 123 4567"}, "message": {"body": "YES"}
    })
    assert response.json() == {"success": True, "processed": 1}

    db.expire_all()
    receipt = db.query(Receipt).one()
    assert receipt.status == "matched"
    assert receipt.opportunity_id == "opp-7"
    assert db.query(IncomingMessage).one().receipt_id == receipt.id


def test_payment_webhook_records_sale_and_commissions(client, db, integration):
    db.add(CommissionAssignment(
        organization_id=integration.organization_id, assignment_type="opportunity", opportunity_id="opp-55",
        ghl_user_id="rep-1", commission_type="gross", base_rate=10, is_active=True
    ))
    db.commit()

    response = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "PaymentSuccess",
        "locationId": "loc-123",
        "data": {"id": "pay-1", "amount": 150000, "opportunityId": "opp-55", "contactId": "c-1",
                 "createdAt": "2026-03-10T15:00:00Z"}
    })
    assert response.status_code == 200, response.text
    body = response.json()
    print(f"Payment webhook: {body}")
    assert body["commissions"]["count"] == 1
    assert body["commissions"]["totalCommissions"] == pytest.approx(150)

    transaction = db.query(SalesTransaction).one()
    assert transaction.amount == pytest.approx(1500)
    assert transaction.transaction_type == "sale"

    refund = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "RefundProcessed",
        "locationId": "loc-123",
        "data": {"id": "ref-1", "amount": 1500.0, "originalPaymentId": "pay-1"}
    })
    assert refund.status_code == 200
    assert refund.json()["commissions"] == {"cancelled": 1}

    refund_row = db.query(SalesTransaction).filter(SalesTransaction.transaction_type == "refund").one()
    assert refund_row.amount == pytest.approx(-1500)
    assert refund_row.opportunity_id == "opp-55"
    db.expire_all()
    assert db.query(CommissionRecord).one().status == "cancelled"


def test_payment_webhook_maps_ghl_product_to_local_rules(client, db, integration):
    product = Product(organization_id=integration.organization_id, ghl_product_id="gp-1", name="Boat Lift")
    db.add(product)
    db.commit()
    db.add(CommissionProductRule(organization_id=integration.organization_id, product_id=product.id,
                                 is_active=True, requires_manager_approval=True))
    db.add(CommissionAssignment(
        organization_id=integration.organization_id, assignment_type="opportunity", opportunity_id="opp-77",
        ghl_user_id="rep-1", commission_type="gross", base_rate=10, is_active=True
    ))
    db.commit()

    response = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "PaymentSuccess",
        "locationId": "loc-123",
        "data": {"id": "pay-77", "amount": 500.0, "opportunityId": "opp-77", "productId": "gp-1"}
    })
    assert response.status_code == 200, response.text

    transaction = db.query(SalesTransaction).one()
    assert transaction.product_id == product.id

    record = db.query(CommissionRecord).one()
    result = commission_validator.validate_commission(record.id, integration.organization_id, db)
    assert result.requires_approval is True


def test_payment_webhook_unknown_product_is_left_unlinked(client, db, integration):
    response = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "PaymentSuccess",
        "locationId": "loc-123",
        "data": {"id": "pay-78", "amount": 50.0, "productId": "gp-missing"}
    })
    assert response.status_code == 200, response.text
    assert db.query(SalesTransaction).one().product_id is None


def test_subscription_webhooks_record_initial_and_renewal(client, db, integration):
    db.add(CommissionAssignment(
        organization_id=integration.organization_id, assignment_type="opportunity", opportunity_id="opp-sub",
        ghl_user_id="rep-1", commission_type="gross", base_rate=10, is_active=True
    ))
    db.commit()

    created = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "SubscriptionCreated",
        "locationId": "loc-123",
        "data": {"id": "sub-1", "opportunityId": "opp-sub", "contactId": "c-9",
                 "initialPayment": {"id": "pay-s1", "amount": 99.0}}
    })
    assert created.status_code == 200, created.text

    initial = db.query(SalesTransaction).one()
    assert initial.transaction_type == "subscription_initial"
    assert initial.ghl_subscription_id == "sub-1"
    assert initial.ghl_payment_id == "pay-s1"
    assert initial.amount == pytest.approx(99)
    assert db.query(CommissionRecord).one().requires_payment_verification is True

    renewed = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "SubscriptionRenewed",
        "locationId": "loc-123",
        "data": {"id": "pay-s2", "subscriptionId": "sub-1", "opportunityId": "opp-sub", "amount": 99.0}
    })
    assert renewed.status_code == 200, renewed.text

    renewal = db.query(SalesTransaction).filter(SalesTransaction.ghl_payment_id == "pay-s2").one()
    assert renewal.transaction_type == "subscription_renewal"
    assert renewal.ghl_subscription_id == "sub-1"
    records = db.query(CommissionRecord).filter(CommissionRecord.transaction_id == renewal.id).all()
    assert len(records) == 1
    assert records[0].requires_payment_verification is True


def test_payment_webhook_validation(client, integration):
    assert client.post("/api/v1/webhooks/ghl/payments", json={"type": "PaymentSuccess"}).status_code == 400
    missing = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "PaymentSuccess", "locationId": "elsewhere", "data": {"amount": 10}
    })
    assert missing.status_code == 404
    failed = client.post("/api/v1/webhooks/ghl/payments", json={
        "type": "PaymentFailed", "locationId": "loc-123", "data": {"id": "pay-x"}
    })
    assert failed.json() == {"success": True}


def test_invoice_and_estimate_webhooks_upsert(client, db, integration):
    payload = {
        "type": "InvoiceSent",
        "locationId": "loc-123",
        "invoice": {"_id": "inv-1", "name": "Hull cleaning", "total": 450, "status": "sent",
                    "contactDetails": {"id": "c-1"}, "invoiceNumber": "INV-0001"}
    }
    first = client.post("/api/v1/webhooks/ghl/invoices", json=payload)
    assert first.status_code == 200, first.text
    assert first.json()["success"] is True

    payload["invoice"]["status"] = "paid"
    client.post("/api/v1/webhooks/ghl/invoices", json=payload)

    invoice = db.query(Invoice).one()
    assert invoice.status == "paid"
    assert invoice.amount == pytest.approx(450)
    assert invoice.contact_id == "c-1"

    estimate = client.post("/api/v1/webhooks/ghl/estimates", json={
        "type": "EstimateCreated", "locationId": "loc-123", "data": {"id": "est-1", "name": "Lift repair", "total": 900}
    })
    assert estimate.json()["success"] is True
    assert db.query(Estimate).filter(Estimate.ghl_estimate_id == "est-1").count() == 1

    no_id = client.post("/api/v1/webhooks/ghl/estimates", json={
        "type": "EstimateCreated", "locationId": "loc-123", "data": {"name": "Missing id"}
    })
    assert no_id.json()["success"] is False

    bad = client.post("/api/v1/webhooks/ghl/invoices", json={"locationId": "loc-123"})
    assert bad.status_code == 400
