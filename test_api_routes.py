#!/usr/bin/env python3
"""
End-to-end tests for the HTTP API: auth, organization, properties, sales,
commissions, chatbot, receipts and billing.
"""

from datetime import datetime, timedelta

import pytest
import stripe

from conftest import register
from database.models import (
    OrganizationMember, TeamMember, SalesTransaction, CommissionRecord
)
from api.services.auth_service import auth_service
from api.routes import billing_routes


def _sales_member_headers(client, db, organization_id, email="seller@acme-marine.com"):
    user = auth_service.create_user(email, "Sell3rPass!", "Sam Seller", db)
    db.add(OrganizationMember(organization_id=organization_id, user_id=user.id, role="sales", permissions=[]))
    db.commit()
    login = client.post("/api/v1/auth/login", json={"email": email, "password": "Sell3rPass!"})
    assert login.status_code == 200, login.text
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


# =======================
# HEALTH & AUTH
# =======================

def test_health_reports_database_stats(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database"]["database_healthy"] is True
    assert "engine_cache" in data


def test_register_login_me_and_refresh(client, owner):
    me = client.get("/api/v1/auth/me", headers=owner["headers"])
    assert me.status_code == 200
    body = me.json()
    print(f"Me: {body}")
    assert body["user"]["email"] == "owner@acme-marine.com"
    assert body["user"]["role"] == "owner"
    assert body["organization"]["subscription_status"] == "trial"

    login = client.post("/api/v1/auth/login", json={"email": "OWNER@acme-marine.com", "password": "Sup3rSecret!"})
    assert login.status_code == 200
    assert login.json()["user"]["organization_id"] == owner["organization_id"]

    refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": owner["refresh_token"]})
    assert refreshed.status_code == 200
    assert refreshed.json()["token_type"] == "bearer"

    # An access token is not accepted as a refresh token
    rejected = client.post("/api/v1/auth/refresh", json={"refresh_token": owner["access_token"]})
    assert rejected.status_code == 401


def test_auth_failures(client, owner):
    wrong = client.post("/api/v1/auth/login", json={"email": "owner@acme-marine.com", "password": "nope"})
    assert wrong.status_code == 401

    duplicate = client.post("/api/v1/auth/register", json={
        "email": "owner@acme-marine.com", "password": "x", "full_name": "Dup", "organization_name": "Dup Co"
    })
    assert duplicate.status_code == 409

    assert client.get("/api/v1/auth/me").status_code in (401, 403)
    assert client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


# =======================
# ORGANIZATION
# =======================

def test_organization_details_update_and_invite(client, owner):
    details = client.get("/api/v1/organization/", headers=owner["headers"])
    assert details.status_code == 200
    assert details.json()["subscription"]["is_active"] is True

    updated = client.put("/api/v1/organization/", headers=owner["headers"],
                         json={"name": "Acme Marine Services", "settings": {"timezone": "America/New_York"}})
    assert updated.json()["name"] == "Acme Marine Services"
    assert updated.json()["settings"]["timezone"] == "America/New_York"

    invite = client.post("/api/v1/organization/members", headers=owner["headers"],
                         json={"email": "tech@acme-marine.com", "role": "manager"})
    assert invite.status_code == 201, invite.text
    assert invite.json()["invitation_sent"] is False

    again = client.post("/api/v1/organization/members", headers=owner["headers"],
                        json={"email": "tech@acme-marine.com", "role": "manager"})
    assert again.status_code == 409

    bad_role = client.post("/api/v1/organization/members", headers=owner["headers"],
                           json={"email": "other@acme-marine.com", "role": "owner"})
    assert bad_role.status_code == 400

    members = client.get("/api/v1/organization/members", headers=owner["headers"]).json()["members"]
    assert {m["role"] for m in members} == {"owner", "manager"}


def test_sales_role_cannot_manage_team(client, db, owner):
    headers = _sales_member_headers(client, db, owner["organization_id"])
    response = client.post("/api/v1/organization/members", headers=headers,
                           json={"email": "x@acme-marine.com", "role": "member"})
    assert response.status_code == 403
    assert client.post("/api/v1/commissions/reconcile", headers=headers).status_code == 403


# =======================
# PROPERTIES
# =======================

def test_property_lifecycle(client, owner):
    created = client.post("/api/v1/properties/", headers=owner["headers"], json={
        "address1": "12 Harbor Way", "city": "Tampa", "state": "FL", "postal_code": "33601",
        "nickname": "Bayfront", "contact_id": "ghl-c1"
    })
    assert created.status_code == 201, created.text
    prop = created.json()
    assert prop["full_address"] == "12 Harbor Way, Tampa, FL 33601"
    assert prop["contacts"][0]["contact_id"] == "ghl-c1"

    by_contact = client.get("/api/v1/properties/", headers=owner["headers"], params={"contact_id": "ghl-c1"})
    assert len(by_contact.json()["properties"]) == 1

    updated = client.put(f"/api/v1/properties/{prop['id']}", headers=owner["headers"], json={"city": "Clearwater"})
    assert updated.json()["full_address"] == "12 Harbor Way, Clearwater, FL 33601"

    assert client.delete(f"/api/v1/properties/{prop['id']}", headers=owner["headers"]).json() == {"success": True}
    assert client.get(f"/api/v1/properties/{prop['id']}", headers=owner["headers"]).status_code == 404


# =======================
# SALES
# =======================

def test_invoice_payments_and_void(client, owner, db):
    created = client.post("/api/v1/sales/invoices", headers=owner["headers"], json={
        "name": "Dock repair", "contact_id": "ghl-c1", "opportunity_id": "opp-1", "tax_rate": 0.08,
        "line_items": [{"name": "Labor", "quantity": 2, "unit_price": 100}]
    })
    assert created.status_code == 201, created.text
    invoice = created.json()
    assert invoice["amount"] == pytest.approx(216.0)
    assert invoice["metadata"]["tax_amount"] == pytest.approx(16.0)

    paid = client.post(f"/api/v1/sales/invoices/{invoice['id']}/payments", headers=owner["headers"],
                       json={"amount": 100, "payment_method": "check"})
    assert paid.status_code == 201
    assert paid.json()["invoice"]["status"] == "partially_paid"
    payment_id = paid.json()["payment"]["id"]

    too_much = client.post(f"/api/v1/sales/invoices/{invoice['id']}/payments", headers=owner["headers"],
                           json={"amount": 500, "payment_method": "check"})
    assert too_much.status_code == 400

    cash = client.get("/api/v1/sales/opportunities/opp-1/cash-collected", headers=owner["headers"]).json()
    assert cash["cash_collected"] == pytest.approx(100)
    assert cash["outstanding"] == pytest.approx(116)

    voided = client.post(f"/api/v1/sales/invoices/{invoice['id']}/payments/{payment_id}/void",
                         headers=owner["headers"], json={"reason": "Bounced"})
    assert voided.status_code == 200
    assert voided.json()["invoice"]["amount_paid"] == 0
    assert voided.json()["invoice"]["status"] == "sent"

    db.expire_all()
    transaction = db.query(SalesTransaction).filter(SalesTransaction.invoice_id == invoice["id"]).one()
    assert transaction.payment_status == "voided"

    twice = client.post(f"/api/v1/sales/invoices/{invoice['id']}/payments/{payment_id}/void",
                        headers=owner["headers"], json={})
    assert twice.status_code == 400
    missing = client.post(f"/api/v1/sales/invoices/{invoice['id']}/payments/unknown/void",
                          headers=owner["headers"], json={})
    assert missing.status_code == 404

    summary = client.get(f"/api/v1/sales/invoices/{invoice['id']}/payments", headers=owner["headers"]).json()
    assert summary["payment_count"] == 0
    assert summary["remaining_balance"] == pytest.approx(216)


def test_invoice_requires_line_items(client, owner):
    response = client.post("/api/v1/sales/invoices", headers=owner["headers"],
                           json={"name": "Empty", "contact_id": "c1", "line_items": []})
    assert response.status_code == 400


def test_estimate_converts_once(client, owner):
    estimate = client.post("/api/v1/sales/estimates", headers=owner["headers"], json={
        "name": "Lift install", "contact_id": "ghl-c2",
        "line_items": [{"name": "Lift", "quantity": 1, "unit_price": 4500}]
    }).json()
    assert estimate["status"] == "draft"

    converted = client.post(f"/api/v1/sales/estimates/{estimate['id']}/convert", headers=owner["headers"], json={})
    assert converted.status_code == 201
    assert converted.json()["estimate_id"] == estimate["id"]
    assert converted.json()["amount"] == pytest.approx(4500)

    again = client.post(f"/api/v1/sales/estimates/{estimate['id']}/convert", headers=owner["headers"], json={})
    assert again.status_code == 400

    locked = client.put(f"/api/v1/sales/estimates/{estimate['id']}", headers=owner["headers"], json={"name": "x"})
    assert locked.status_code == 400


# =======================
# COMMISSIONS
# =======================

def test_commission_assignment_crud(client, owner):
    payload = {"ghl_user_id": "rep-1", "opportunity_id": "opp-1", "commission_type": "gross",
               "commission_percentage": 12.5}
    created = client.post("/api/v1/commissions/assignments", headers=owner["headers"], json=payload)
    assert created.status_code == 201, created.text
    assignment = created.json()
    assert assignment["commission_percentage"] == 12.5

    duplicate = client.post("/api/v1/commissions/assignments", headers=owner["headers"], json=payload)
    assert duplicate.status_code == 409

    invalid = client.post("/api/v1/commissions/assignments", headers=owner["headers"],
                          json={**payload, "ghl_user_id": "rep-2", "commission_percentage": 150})
    assert invalid.status_code == 400

    no_opportunity = client.post("/api/v1/commissions/assignments", headers=owner["headers"],
                                 json={"ghl_user_id": "rep-3", "commission_type": "flat", "flat_amount": 50})
    assert no_opportunity.status_code == 400

    updated = client.put(f"/api/v1/commissions/assignments/{assignment['id']}", headers=owner["headers"],
                         json={"is_disabled": True})
    assert updated.json()["is_disabled"] is True

    listed = client.get("/api/v1/commissions/assignments", headers=owner["headers"],
                        params={"opportunity_id": "opp-1"}).json()
    assert len(listed["assignments"]) == 1


def test_calculate_endpoint_and_listing(client, db, owner):
    transaction = SalesTransaction(organization_id=owner["organization_id"], opportunity_id="opp-3",
                                   amount=1000.0, transaction_type="sale", payment_status="completed")
    db.add(transaction)
    db.commit()

    calculated = client.post("/api/v1/commissions/calculate", headers=owner["headers"], json={
        "transaction_id": transaction.id,
        "commission_assignments": [{"ghl_user_id": "rep-1", "commission_type": "gross", "commission_percentage": 10}]
    })
    assert calculated.status_code == 200, calculated.text

    listing = client.get("/api/v1/commissions/", headers=owner["headers"], params={"status": "pending"}).json()
    assert listing["total"] == 1
    assert listing["total_amount"] == pytest.approx(100)

    missing = client.post("/api/v1/commissions/calculate", headers=owner["headers"], json={
        "transaction_id": "nope", "commission_assignments": []
    })
    assert missing.status_code == 404


def test_payout_generation(client, db, owner):
    org_id = owner["organization_id"]
    db.add(TeamMember(organization_id=org_id, external_id="rep-1", full_name="Riley Rep",
                      email="riley@acme-marine.com"))
    transaction = SalesTransaction(organization_id=org_id, opportunity_id="opp-1", amount=2000.0,
                                   transaction_type="sale", payment_status="completed")
    db.add(transaction)
    db.flush()
    db.add(CommissionRecord(organization_id=org_id, transaction_id=transaction.id, ghl_user_id="rep-1",
                            commission_type="gross", commission_rate=10, base_amount=2000,
                            commission_amount=200, status="approved"))
    db.add(CommissionRecord(organization_id=org_id, transaction_id=transaction.id, ghl_user_id="rep-1",
                            commission_type="gross", commission_rate=5, base_amount=2000,
                            commission_amount=100, status="pending"))
    db.commit()

    period = {
        "ghl_user_id": "rep-1",
        "start_date": (datetime.utcnow() - timedelta(days=30)).isoformat(),
        "end_date": (datetime.utcnow() + timedelta(days=1)).isoformat()
    }
    generated = client.post("/api/v1/commissions/payouts/generate", headers=owner["headers"], json=period)
    assert generated.status_code == 201, generated.text
    payout = generated.json()
    assert payout["total_amount"] == pytest.approx(200)
    assert payout["commission_count"] == 1
    assert payout["payout_number"].startswith("PO-")
    assert payout["statement_sent"] is False

    # Approved records are consumed by the first payout
    again = client.post("/api/v1/commissions/payouts/generate", headers=owner["headers"], json=period)
    assert again.status_code == 404

    unknown = client.post("/api/v1/commissions/payouts/generate", headers=owner["headers"],
                          json={**period, "ghl_user_id": "ghost"})
    assert unknown.status_code == 404

    assert len(client.get("/api/v1/commissions/payouts", headers=owner["headers"]).json()["payouts"]) == 1


def test_payout_with_date_only_end_includes_that_day(client, db, owner):
    org_id = owner["organization_id"]
    db.add(TeamMember(organization_id=org_id, external_id="rep-2", full_name="Dana Deckhand"))
    transaction = SalesTransaction(organization_id=org_id, opportunity_id="opp-2", amount=800.0,
                                   transaction_type="sale", payment_status="completed")
    db.add(transaction)
    db.flush()
    db.add(CommissionRecord(organization_id=org_id, transaction_id=transaction.id, ghl_user_id="rep-2",
                            commission_type="gross", commission_rate=10, base_amount=800,
                            commission_amount=80, status="approved"))
    db.commit()

    today = datetime.utcnow().date()
    generated = client.post("/api/v1/commissions/payouts/generate", headers=owner["headers"], json={
        "ghl_user_id": "rep-2",
        "start_date": (today - timedelta(days=30)).isoformat(),
        "end_date": today.isoformat()
    })
    assert generated.status_code == 201, generated.text
    assert generated.json()["total_amount"] == pytest.approx(80)


# =======================
# CHATBOT
# =======================

def test_workflow_validation_rejects_bad_graphs(client, owner):
    bad_type = client.post("/api/v1/chatbot/workflows", headers=owner["headers"], json={
        "name": "Broken", "nodes": [{"node_id": "start", "node_type": "teleport"}]
    })
    assert bad_type.status_code == 400

    dangling = client.post("/api/v1/chatbot/workflows", headers=owner["headers"], json={
        "name": "Dangling",
        "nodes": [{"node_id": "start", "node_type": "start"}],
        "connections": [{"source_node_id": "start", "target_node_id": "missing"}]
    })
    assert dangling.status_code == 400


def test_chat_runs_primary_workflow(client, owner):
    workflow = client.post("/api/v1/chatbot/workflows", headers=owner["headers"], json={
        "name": "Greeting",
        "nodes": [
            {"node_id": "start", "node_type": "start", "config": {"message": "Welcome aboard!"}},
            {"node_id": "bye", "node_type": "end", "config": {"message": "See you on the water."}}
        ],
        "connections": [{"source_node_id": "start", "target_node_id": "bye"}]
    })
    assert workflow.status_code == 201, workflow.text
    workflow_id = workflow.json()["id"]

    bot = client.post("/api/v1/chatbot/bots", headers=owner["headers"], json={"name": "Harbor Bot"}).json()
    linked = client.post(f"/api/v1/chatbot/bots/{bot['id']}/workflows", headers=owner["headers"],
                         json={"workflow_id": workflow_id, "is_primary": True})
    assert linked.json()["workflows"][0]["is_primary"] is True

    first = client.post(f"/api/v1/chatbot/chat/{bot['id']}", headers=owner["headers"],
                        json={"message": "hello", "contact_id": "ghl-c1"})
    assert first.status_code == 200, first.text
    assert first.json()["response"] == "Welcome aboard!"
    session_id = first.json()["session_id"]

    second = client.post(f"/api/v1/chatbot/chat/{bot['id']}", headers=owner["headers"],
                         json={"message": "thanks", "contact_id": "ghl-c1", "session_id": session_id})
    assert second.json()["response"] == "See you on the water."

    session = client.get(f"/api/v1/chatbot/sessions/{session_id}", headers=owner["headers"]).json()
    assert session["is_active"] is False
    assert sorted(m["message_type"] for m in session["messages"]) == ["assistant", "assistant", "user", "user"]

    assert client.post("/api/v1/chatbot/chat/unknown", headers=owner["headers"],
                       json={"message": "hi", "contact_id": "c"}).status_code == 404


def test_chat_requires_active_subscription(client, db, owner):
    from database.models import Organization
    org = db.query(Organization).filter(Organization.id == owner["organization_id"]).one()
    org.trial_ends_at = datetime.utcnow() - timedelta(days=1)
    db.commit()

    bot = client.post("/api/v1/chatbot/bots", headers=owner["headers"], json={"name": "Locked Bot"}).json()
    response = client.post(f"/api/v1/chatbot/chat/{bot['id']}", headers=owner["headers"],
                           json={"message": "hello", "contact_id": "c1"})
    assert response.status_code == 402


# =======================
# RECEIPTS
# =======================

def test_company_cards(client, owner):
    invalid = client.post("/api/v1/receipts/company-cards", headers=owner["headers"],
                          json={"card_name": "Fleet", "last_four": "12a4"})
    assert invalid.status_code == 422

    card = client.post("/api/v1/receipts/company-cards", headers=owner["headers"],
                       json={"card_name": "Fleet Amex", "last_four": " 4242 ", "card_type": "amex"})
    assert card.status_code == 201
    assert card.json()["last_four"] == "4242"

    assert len(client.get("/api/v1/receipts/company-cards", headers=owner["headers"]).json()["cards"]) == 1
    client.delete(f"/api/v1/receipts/company-cards/{card.json()['id']}", headers=owner["headers"])
    assert client.get("/api/v1/receipts/company-cards", headers=owner["headers"]).json()["cards"] == []


def test_receipt_endpoints_guard_inputs(client, owner):
    forbidden = client.post("/api/v1/receipts/process-from-message", headers=owner["headers"],
                            json={"phone": "+15550000000", "attachments": ["https://files.example.net/r.jpg"]})
    assert forbidden.status_code == 403

    missing = client.post("/api/v1/receipts/confirm-assignment", headers=owner["headers"],
                          json={"receipt_id": "nope", "opportunity_id": "opp-1"})
    assert missing.status_code == 404

    listing = client.get("/api/v1/receipts/", headers=owner["headers"], params={"status": "pending_match"})
    assert listing.json() == {"receipts": [], "total": 0}


# =======================
# BILLING
# =======================

def test_billing_subscription_checkout_and_webhook(client, owner):
    subscription = client.get("/api/v1/billing/subscription", headers=owner["headers"])
    assert subscription.status_code == 200
    assert subscription.json()["has_active_subscription"] is True

    no_price = client.post("/api/v1/billing/checkout", headers=owner["headers"], json={})
    assert no_price.status_code == 400

    unsigned = client.post("/api/v1/billing/webhook", content=b'{"type": "customer.subscription.created"}',
                           headers={"stripe-signature": "t=1,v1=bogus"})
    assert unsigned.status_code == 400


def test_billing_checkout_maps_stripe_errors_to_bad_gateway(client, owner, monkeypatch):
    def fail_checkout(*args, **kwargs):
        raise stripe.StripeError("card network unavailable")

    monkeypatch.setattr(billing_routes, "create_checkout_session", fail_checkout)
    response = client.post("/api/v1/billing/checkout", headers=owner["headers"], json={"price_id": "price_x"})
    assert response.status_code == 502
    assert response.json()["detail"] == "Payment provider error"


def test_second_organization_is_isolated(client, owner):
    other = register(client, email="rival@harbor-works.com", organization_name="Harbor Works")
    created = client.post("/api/v1/properties/", headers=owner["headers"], json={"address1": "1 Pier Rd"}).json()

    assert client.get(f"/api/v1/properties/{created['id']}", headers=other["headers"]).status_code == 404
    assert client.get("/api/v1/properties/", headers=other["headers"]).json()["properties"] == []
