#!/usr/bin/env python3
"""
Tests for the GHL REST client: cursor pagination, token refresh and the OAuth helpers.
"""

from datetime import datetime, timedelta

import pytest

from api.services import ghl_api
from api.services.ghl_api import (
    GoHighLevelAPI, GHLAuthError, build_authorization_url, create_ghl_client, exchange_code_for_tokens
)


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload or {}
        self.text = text

    def json(self):
        return self._payload


@pytest.fixture(autouse=True)
def no_pagination_delay(monkeypatch):
    monkeypatch.setattr(ghl_api, "PAGINATION_DELAY_SECONDS", 0)


def _contacts(start, count):
    return [{"id": f"c{i}"} for i in range(start, start + count)]


def test_paginate_follows_cursor_until_short_batch(monkeypatch):
    pages = [
        FakeResponse(payload={"contacts": _contacts(0, 2), "meta": {"startAfterId": "c1"}}),
        FakeResponse(payload={"contacts": _contacts(2, 2)}),
        FakeResponse(payload={"contacts": _contacts(4, 1)}),
    ]
    seen_params = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        seen_params.append(dict(params))
        return pages.pop(0)

    monkeypatch.setattr(ghl_api.requests, "request", fake_request)
    client = GoHighLevelAPI("token", location_id="loc-1")

    result = client.paginate("/contacts/", "contacts", {"locationId": "loc-1"}, batch_size=2)
    print(f"Fetched {result.total} in {result.requests_made} requests")

    assert result.total == 5
    assert result.requests_made == 3
    assert result.error is None
    assert "startAfterId" not in seen_params[0]
    assert seen_params[1]["startAfterId"] == "c1"
    # Without meta the last id of the batch is the cursor
    assert seen_params[2]["startAfterId"] == "c3"


def test_paginate_respects_max_results(monkeypatch):
    monkeypatch.setattr(ghl_api.requests, "request",
                        lambda *a, **k: FakeResponse(payload={"contacts": _contacts(0, k["params"]["limit"])}))
    client = GoHighLevelAPI("token", location_id="loc-1")

    result = client.paginate("/contacts/", "contacts", max_results=3, batch_size=2)
    assert result.total == 3
    assert result.requests_made == 2


def test_paginate_returns_partial_results_on_error(monkeypatch):
    pages = [
        FakeResponse(payload={"contacts": _contacts(0, 2)}),
        FakeResponse(status_code=500, text="boom"),
    ]
    monkeypatch.setattr(ghl_api.requests, "request", lambda *a, **k: pages.pop(0))
    client = GoHighLevelAPI("token", location_id="loc-1")

    result = client.paginate("/contacts/", "contacts", batch_size=2)
    assert result.total == 2
    assert "500" in result.error


def test_401_refreshes_token_and_retries(monkeypatch):
    calls = []
    refreshed = []

    def fake_request(method, url, headers=None, params=None, json=None, timeout=None):
        calls.append(headers["Authorization"])
        if headers["Authorization"] == "Bearer old-token":
            return FakeResponse(status_code=401, text="expired")
        return FakeResponse(payload={"users": [{"id": "u1"}]})

    def fake_post(url, data=None, headers=None, timeout=None):
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-1"
        return FakeResponse(payload={"access_token": "new-token", "refresh_token": "refresh-2", "expires_in": 3600})

    monkeypatch.setattr(ghl_api.requests, "request", fake_request)
    monkeypatch.setattr(ghl_api.requests, "post", fake_post)
    client = GoHighLevelAPI("old-token", refresh_token="refresh-1", location_id="loc-1",
                            on_token_refresh=refreshed.append)

    assert client.get_users() == [{"id": "u1"}]
    assert calls == ["Bearer old-token", "Bearer new-token"]
    assert client.refresh_token == "refresh-2"
    assert refreshed[0]["access_token"] == "new-token"


def test_failed_refresh_raises_auth_error(monkeypatch):
    monkeypatch.setattr(ghl_api.requests, "post", lambda *a, **k: FakeResponse(status_code=400, text="invalid_grant"))
    client = GoHighLevelAPI("token", refresh_token="stale")
    with pytest.raises(GHLAuthError):
        client.refresh_access_token()

    with pytest.raises(GHLAuthError):
        GoHighLevelAPI("token").refresh_access_token()


def test_token_needs_refresh_within_buffer():
    soon = GoHighLevelAPI("t", token_expires_at=datetime.utcnow() + timedelta(minutes=2))
    later = GoHighLevelAPI("t", token_expires_at=datetime.utcnow() + timedelta(hours=2))
    assert soon.token_needs_refresh() is True
    assert later.token_needs_refresh() is False
    assert GoHighLevelAPI("t").token_needs_refresh() is False


def test_get_list_returns_empty_on_error(monkeypatch):
    monkeypatch.setattr(ghl_api.requests, "request", lambda *a, **k: FakeResponse(status_code=403, text="nope"))
    client = GoHighLevelAPI("token", location_id="loc-1")
    assert client.get_pipelines() == []
    assert client.get_contact("c1") is None


def test_create_ghl_client_persists_refreshed_tokens(monkeypatch, db, integration):
    monkeypatch.setattr(ghl_api.requests, "post",
                        lambda *a, **k: FakeResponse(payload={"access_token": "fresh", "expires_in": 60}))
    row = db.merge(integration)
    client = create_ghl_client(row, db)
    client.refresh_access_token()

    db.refresh(row)
    assert row.access_token == "fresh"
    assert row.refresh_token == "ghl-refresh"
    assert row.token_expires_at is not None

    row.access_token = None
    assert create_ghl_client(row, db) is None


def test_authorization_url_and_code_exchange(monkeypatch):
    url = build_authorization_url("state-abc")
    assert url.startswith(ghl_api.GHL_AUTHORIZE_URL)
    assert "state=state-abc" in url
    assert "response_type=code" in url

    monkeypatch.setattr(ghl_api.requests, "post", lambda *a, **k: FakeResponse(status_code=401, text="bad code"))
    with pytest.raises(GHLAuthError):
        exchange_code_for_tokens("code-1")
