"""
Shared pytest fixtures.

The database URL and secrets are pinned before any application module is
imported so the engine binds to a throwaway SQLite file.
"""

import os
import tempfile

_test_dir = tempfile.mkdtemp(prefix="workflow_automation_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_test_dir, 'test.db')}"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["GHL_WEBHOOK_SECRET"] = ""
os.environ["SMTP_HOST"] = ""
os.environ["STRIPE_SECRET_KEY"] = "sk_test_placeholder"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_placeholder"
os.environ["STRIPE_PRICE_ID"] = ""
os.environ["JWT_SECRET_KEY"] = "test-secret-key"

import pytest
from fastapi.testclient import TestClient

from database.simple_connection import db as simple_db_instance, SessionLocal
from database.models import Integration
from api.services import chatbot_engine
from main import app


@pytest.fixture(autouse=True)
def fresh_schema():
    simple_db_instance.drop_all()
    simple_db_instance.init_database()
    chatbot_engine._engine_cache.clear()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


def register(client, email="owner@acme-marine.com", organization_name="Acme Marine"):
    response = client.post("/api/v1/auth/register", json={
        "email": email,
        "password": "Sup3rSecret!",
        "full_name": "Olivia Owner",
        "organization_name": organization_name
    })
    assert response.status_code == 201, response.text
    data = response.json()
    return {
        "user_id": data["user"]["id"],
        "organization_id": data["user"]["organization_id"],
        "access_token": data["access_token"],
        "refresh_token": data["refresh_token"],
        "headers": {"Authorization": f"Bearer {data['access_token']}"}
    }


@pytest.fixture
def owner(client):
    return register(client)


@pytest.fixture
def integration(db, owner):
    row = Integration(
        organization_id=owner["organization_id"],
        type="gohighlevel",
        name="GoHighLevel",
        location_id="loc-123",
        company_id="comp-1",
        access_token="ghl-access",
        refresh_token="ghl-refresh",
        is_active=True,
        pipeline_completion_stages={"pipe-1": ["stage-done"]}
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
