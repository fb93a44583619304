"""
GoHighLevel MCP client.
JSON-RPC 2.0 tool calls against the GHL MCP endpoint, answered either as plain
JSON or as a server-sent event stream.
"""

import json
import time
import logging
from typing import Any, Dict, List, Optional

import requests

from config import AppConfig

logger = logging.getLogger(__name__)

OFFICIAL_TOOLS = [
    "calendars_get-calendar-events",
    "calendars_get-appointment-notes",
    "contacts_get-all-tasks",
    "contacts_add-tags",
    "contacts_remove-tags",
    "contacts_get-contact",
    "contacts_update-contact",
    "contacts_upsert-contact",
    "contacts_create-contact",
    "contacts_get-contacts",
    "conversations_search-conversation",
    "conversations_get-messages",
    "conversations_send-a-new-message",
    "locations_get-location",
    "locations_get-custom-fields",
    "opportunities_search-opportunity",
    "opportunities_get-pipelines",
    "opportunities_get-opportunity",
    "opportunities_update-opportunity",
    "payments_get-order-by-id",
    "payments_list-transactions",
]


class MCPError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    return str(error)


def parse_sse_response(body: str) -> Any:
    """Return the last JSON-RPC result carried on `data:` lines of an SSE body"""
    final = None
    for line in body.splitlines():
        if not line.startswith("data: "):
            continue
        payload = line[6:].strip()
        if not payload or payload == "[DONE]":
            continue
        try:
            parsed = json.loads(payload)
        except ValueError:
            continue
        if isinstance(parsed, dict) and parsed.get("error"):
            raise MCPError(f"MCP error: {_error_message(parsed['error'])}")
        final = parsed.get("result", parsed) if isinstance(parsed, dict) else parsed

    if final is None:
        raise MCPError("No valid JSON data found in SSE stream")
    return final


def _success_data(parsed: Any) -> Any:
    if isinstance(parsed, dict) and parsed.get("success") and parsed.get("data"):
        data = parsed["data"]
        if isinstance(data, dict) and data.get("contacts"):
            return data["contacts"]
        return data
    return None


def _text_items(obj: Any) -> List[str]:
    if not isinstance(obj, dict) or not isinstance(obj.get("content"), list):
        return []
    return [
        item["text"] for item in obj["content"]
        if isinstance(item, dict) and item.get("type") == "text" and item.get("text")
    ]


def unwrap_tool_result(result: Any) -> Any:
    """
    GHL wraps tool output as text content holding JSON, sometimes nested a second
    time. Pull out the {success, data} payload when there is one.
    """
    for text in _text_items(result):
        try:
            parsed = json.loads(text)
        except ValueError:
            continue

        for nested_text in _text_items(parsed):
            try:
                deep = json.loads(nested_text)
            except ValueError:
                continue
            found = _success_data(deep)
            if found is not None:
                return found

        found = _success_data(parsed)
        if found is not None:
            return found

    return result


class GHLMCPClient:
    def __init__(self, mcp_token: str, location_id: str, base_url: Optional[str] = None, timeout: int = 60):
        self.mcp_token = mcp_token
        self.location_id = location_id
        self.base_url = base_url or AppConfig.GHL_MCP_URL
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            "Authorization": f"Bearer {self.mcp_token}",
            "locationId": self.location_id
        }

    def _rpc(self, method: str, params: Dict[str, Any]) -> Any:
        body = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": int(time.time() * 1000)
        }

        try:
            response = requests.post(self.base_url, headers=self.headers, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            raise MCPError(f"MCP request failed: {e}") from e

        if response.status_code >= 400:
            raise MCPError(
                f"MCP request failed ({response.status_code}): {response.text}",
                status_code=response.status_code
            )

        content_type = response.headers.get("content-type", "")
        if "text/event-stream" in content_type:
            return parse_sse_response(response.text)

        data = response.json()
        if isinstance(data, dict) and data.get("error"):
            raise MCPError(f"MCP error: {_error_message(data['error'])}")
        return data.get("result", data) if isinstance(data, dict) else data

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        logger.debug(f"🚀 MCP tool call {name} for location {self.location_id}")
        result = self._rpc("tools/call", {"name": name, "arguments": arguments or {}})
        return unwrap_tool_result(result)

    def list_tools(self) -> List[Dict]:
        result = self._rpc("tools/list", {})
        if isinstance(result, dict):
            return result.get("tools", [])
        return result or []

    def test_connection(self) -> Dict[str, Any]:
        try:
            self.get_location()
            return {"success": True, "error": None}
        except MCPError as e:
            logger.warning(f"⚠️ MCP connection test failed: {e}")
            return {"success": False, "error": str(e)}

    # Contacts
    def get_contacts(self, query: Optional[str] = None, limit: int = 20) -> Any:
        args: Dict[str, Any] = {"limit": limit}
        if query:
            args["query"] = query
        return self.call_tool("contacts_get-contacts", args)

    def get_contact(self, contact_id: str) -> Any:
        return self.call_tool("contacts_get-contact", {"contactId": contact_id})

    def create_contact(self, contact_data: Dict[str, Any]) -> Any:
        return self.call_tool("contacts_create-contact", contact_data)

    def update_contact(self, contact_id: str, updates: Dict[str, Any]) -> Any:
        return self.call_tool("contacts_update-contact", {"contactId": contact_id, **updates})

    def upsert_contact(self, contact_data: Dict[str, Any]) -> Any:
        return self.call_tool("contacts_upsert-contact", contact_data)

    def add_tags(self, contact_id: str, tags: List[str]) -> Any:
        return self.call_tool("contacts_add-tags", {"contactId": contact_id, "tags": tags})

    def remove_tags(self, contact_id: str, tags: List[str]) -> Any:
        return self.call_tool("contacts_remove-tags", {"contactId": contact_id, "tags": tags})

    # Opportunities
    def search_opportunities(self, **criteria) -> Any:
        return self.call_tool("opportunities_search-opportunity", criteria)

    def get_opportunity(self, opportunity_id: str) -> Any:
        return self.call_tool("opportunities_get-opportunity", {"opportunityId": opportunity_id})

    def update_opportunity(self, opportunity_id: str, updates: Dict[str, Any]) -> Any:
        return self.call_tool("opportunities_update-opportunity", {"opportunityId": opportunity_id, **updates})

    def get_pipelines(self) -> Any:
        return self.call_tool("opportunities_get-pipelines", {})

    # Conversations
    def search_conversations(self, contact_id: Optional[str] = None, limit: int = 20) -> Any:
        args: Dict[str, Any] = {"limit": limit}
        if contact_id:
            args["contactId"] = contact_id
        return self.call_tool("conversations_search-conversation", args)

    def get_messages(self, conversation_id: str) -> Any:
        return self.call_tool("conversations_get-messages", {"conversationId": conversation_id})

    def send_message(self, contact_id: str, message: str, message_type: str = "SMS",
                     thread_id: Optional[str] = None) -> Any:
        # The MCP tool expects body_-prefixed parameter names
        args = {
            "body_type": message_type,
            "body_message": message,
            "body_contactId": contact_id,
        }
        if thread_id and thread_id != contact_id:
            args["body_threadId"] = thread_id
        return self.call_tool("conversations_send-a-new-message", args)

    # Calendars
    def get_calendar_events(self, calendar_id: Optional[str] = None, user_id: Optional[str] = None,
                            start_time: Optional[str] = None, end_time: Optional[str] = None) -> Any:
        args = {}
        if calendar_id:
            args["calendarId"] = calendar_id
        if user_id:
            args["userId"] = user_id
        if start_time:
            args["startTime"] = start_time
        if end_time:
            args["endTime"] = end_time
        return self.call_tool("calendars_get-calendar-events", args)

    def get_appointment_notes(self, appointment_id: str) -> Any:
        return self.call_tool("calendars_get-appointment-notes", {"appointmentId": appointment_id})

    # Locations
    def get_location(self, location_id: Optional[str] = None) -> Any:
        return self.call_tool("locations_get-location", {"locationId": location_id or self.location_id})

    def get_custom_fields(self, location_id: Optional[str] = None) -> Any:
        return self.call_tool("locations_get-custom-fields", {"locationId": location_id or self.location_id})

    # Payments
    def get_order(self, order_id: str) -> Any:
        return self.call_tool("payments_get-order-by-id", {"orderId": order_id})

    def list_transactions(self, **filters) -> Any:
        return self.call_tool("payments_list-transactions", filters)


def create_mcp_client(integration) -> Optional[GHLMCPClient]:
    """None unless the integration has MCP switched on with a token and location"""
    if not integration or not integration.mcp_enabled:
        return None
    if not integration.mcp_token or not integration.location_id:
        logger.info("MCP credentials not available, falling back to REST API")
        return None
    return GHLMCPClient(mcp_token=integration.mcp_token, location_id=integration.location_id)
