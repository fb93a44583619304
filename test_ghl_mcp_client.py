#!/usr/bin/env python3
"""
Tests for MCP response parsing: SSE streams, double-wrapped tool output and RPC errors.
"""

import json

import pytest

from api.services import ghl_mcp_client
from api.services.ghl_mcp_client import GHLMCPClient, MCPError, parse_sse_response, unwrap_tool_result


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text="", content_type="application/json"):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.headers = {"content-type": content_type}

    def json(self):
        return self._payload


def _text_content(obj):
    return {"content": [{"type": "text", "text": json.dumps(obj)}]}


def test_parse_sse_response_returns_last_result():
    body = "\n".join([
        "event: message",
        'data: {"jsonrpc": "2.0", "result": {"step": 1}}',
        "",
        'data: {"jsonrpc": "2.0", "result": {"step": 2}}',
        "data: [DONE]",
    ])
    assert parse_sse_response(body) == {"step": 2}


def test_parse_sse_response_raises_on_rpc_error():
    body = 'data: {"jsonrpc": "2.0", "error": {"code": -32000, "message": "Tool not found"}}'
    with pytest.raises(MCPError) as exc:
        parse_sse_response(body)
    assert "Tool not found" in str(exc.value)


def test_parse_sse_response_without_data_raises():
    with pytest.raises(MCPError):
        parse_sse_response("event: ping\n\n")


def test_unwrap_single_wrapped_success_payload():
    result = _text_content({"success": True, "data": {"contact": {"id": "c1"}}})
    assert unwrap_tool_result(result) == {"contact": {"id": "c1"}}


def test_unwrap_double_wrapped_contacts_list():
    inner = _text_content({"success": True, "data": {"contacts": [{"id": "c1"}, {"id": "c2"}]}})
    result = _text_content(inner)
    assert unwrap_tool_result(result) == [{"id": "c1"}, {"id": "c2"}]


def test_unwrap_passes_through_unrecognized_results():
    result = {"content": [{"type": "text", "text": "not json"}]}
    assert unwrap_tool_result(result) is result


def test_call_tool_posts_json_rpc(monkeypatch):
    captured = {}

    def fake_post(url, headers=None, json=None, timeout=None):
        captured.update(url=url, headers=headers, body=json)
        return FakeResponse(payload={"jsonrpc": "2.0", "result": _text_content(
            {"success": True, "data": {"tags": ["vip"]}}
        )})

    monkeypatch.setattr(ghl_mcp_client.requests, "post", fake_post)
    client = GHLMCPClient("pit-token", "loc-1", base_url="https://mcp.test/")

    result = client.call_tool("contacts_add-tags", {"contactId": "c1", "tags": ["vip"]})

    assert result == {"tags": ["vip"]}
    assert captured["body"]["method"] == "tools/call"
    assert captured["body"]["params"]["name"] == "contacts_add-tags"
    assert captured["headers"]["locationId"] == "loc-1"
    assert captured["headers"]["Authorization"] == "Bearer pit-token"


def test_http_error_becomes_mcp_error(monkeypatch):
    monkeypatch.setattr(ghl_mcp_client.requests, "post",
                        lambda *a, **k: FakeResponse(status_code=401, text="Unauthorized"))
    client = GHLMCPClient("bad-token", "loc-1")

    with pytest.raises(MCPError) as exc:
        client.call_tool("locations_get-location")
    assert exc.value.status_code == 401

    outcome = client.test_connection()
    assert outcome["success"] is False
    assert "401" in outcome["error"]


def test_event_stream_responses_are_parsed(monkeypatch):
    stream = 'data: {"jsonrpc": "2.0", "result": {"tools": [{"name": "contacts_get-contact"}]}}'
    monkeypatch.setattr(ghl_mcp_client.requests, "post",
                        lambda *a, **k: FakeResponse(text=stream, content_type="text/event-stream"))
    client = GHLMCPClient("pit-token", "loc-1")
    assert client.list_tools() == [{"name": "contacts_get-contact"}]
