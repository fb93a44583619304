# api/services/ghl_api.py

import time
import requests
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime, timedelta
from urllib.parse import urlencode

from config import AppConfig

logger = logging.getLogger(__name__)

GHL_API_BASE_URL = "https://services.leadconnectorhq.com"
GHL_API_VERSION = "2021-07-28"
GHL_OAUTH_TOKEN_URL = "https://services.leadconnectorhq.com/oauth/token"
GHL_AUTHORIZE_URL = "https://marketplace.gohighlevel.com/oauth/chooselocation"
GHL_OAUTH_SCOPES = [
    "contacts.readonly", "contacts.write",
    "opportunities.readonly", "opportunities.write",
    "conversations.readonly", "conversations.write",
    "conversations/message.readonly", "conversations/message.write",
    "invoices.readonly", "invoices.write",
    "invoices/estimate.readonly", "invoices/estimate.write",
    "products.readonly", "products/prices.readonly",
    "payments/transactions.readonly", "payments/orders.readonly",
    "calendars.readonly", "calendars/events.readonly", "calendars/events.write",
    "locations.readonly", "users.readonly",
]

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
MAX_PAGINATION_REQUESTS = 100
PAGINATION_DELAY_SECONDS = 0.1


class GHLAuthError(Exception):
    """Raised when the OAuth token cannot be refreshed"""


@dataclass
class PaginatedResult:
    items: List[Dict] = field(default_factory=list)
    total: int = 0
    requests_made: int = 0
    error: Optional[str] = None


def build_authorization_url(state: str) -> str:
    params = {
        "response_type": "code",
        "redirect_uri": AppConfig.GHL_REDIRECT_URI,
        "client_id": AppConfig.GHL_CLIENT_ID,
        "scope": " ".join(GHL_OAUTH_SCOPES),
        "state": state,
    }
    return f"{GHL_AUTHORIZE_URL}?{urlencode(params)}"


def exchange_code_for_tokens(code: str) -> Dict[str, Any]:
    """Trade an authorization code for access/refresh tokens"""
    response = requests.post(
        GHL_OAUTH_TOKEN_URL,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "client_id": AppConfig.GHL_CLIENT_ID,
            "client_secret": AppConfig.GHL_CLIENT_SECRET,
            "redirect_uri": AppConfig.GHL_REDIRECT_URI,
        },
        headers={"Accept": "application/json"},
        timeout=30
    )
    if response.status_code != 200:
        logger.error(f"❌ GHL code exchange failed: {response.status_code} - {response.text}")
        raise GHLAuthError(f"Token exchange failed with status {response.status_code}")

    logger.info("🔑 GHL authorization code exchanged for tokens")
    return response.json()


class GoHighLevelAPI:
    """GHL REST client with OAuth refresh and cursor pagination"""

    def __init__(self, access_token: str, refresh_token: Optional[str] = None,
                 token_expires_at: Optional[datetime] = None, location_id: Optional[str] = None,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 on_token_refresh: Optional[Callable[[Dict[str, Any]], None]] = None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.token_expires_at = token_expires_at
        self.location_id = location_id
        self.client_id = client_id or AppConfig.GHL_CLIENT_ID
        self.client_secret = client_secret or AppConfig.GHL_CLIENT_SECRET
        self.on_token_refresh = on_token_refresh
        self.base_url = GHL_API_BASE_URL

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Version": GHL_API_VERSION
        }

    # =======================
    # TOKEN MANAGEMENT
    # =======================

    def token_needs_refresh(self) -> bool:
        if not self.token_expires_at:
            return False
        return datetime.utcnow() + TOKEN_REFRESH_BUFFER >= self.token_expires_at

    def ensure_valid_token(self) -> None:
        if self.token_needs_refresh():
            logger.info("🔄 GHL access token expiring soon, refreshing")
            self.refresh_access_token()

    def refresh_access_token(self) -> Dict[str, Any]:
        if not self.refresh_token:
            raise GHLAuthError("No refresh token available")

        try:
            response = requests.post(
                GHL_OAUTH_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": self.refresh_token,
                },
                headers={"Accept": "application/json"},
                timeout=30
            )
        except requests.RequestException as e:
            logger.error(f"❌ GHL token refresh request failed: {e}")
            raise GHLAuthError(str(e)) from e

        if response.status_code != 200:
            logger.error(f"❌ GHL token refresh failed: {response.status_code} - {response.text}")
            raise GHLAuthError(f"Token refresh failed with status {response.status_code}")

        data = response.json()
        self.access_token = data["access_token"]
        self.refresh_token = data.get("refresh_token", self.refresh_token)
        self.token_expires_at = datetime.utcnow() + timedelta(seconds=int(data.get("expires_in", 86400)))

        tokens = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_expires_at": self.token_expires_at,
        }
        if self.on_token_refresh:
            self.on_token_refresh(tokens)

        logger.info(f"✅ GHL token refreshed, expires at {self.token_expires_at.isoformat()}")
        return tokens

    # =======================
    # REQUESTS
    # =======================

    def _request(self, method: str, path: str, params: Optional[Dict] = None,
                 json: Optional[Dict] = None) -> requests.Response:
        """Issue a request, refreshing and retrying once on a 401"""
        self.ensure_valid_token()
        url = f"{self.base_url}{path}"

        response = requests.request(method, url, headers=self.headers, params=params, json=json, timeout=30)

        if response.status_code == 401 and self.refresh_token:
            logger.warning(f"🔄 GHL returned 401 for {method} {path}, refreshing token and retrying")
            self.refresh_access_token()
            response = requests.request(method, url, headers=self.headers, params=params, json=json, timeout=30)

        return response

    def paginate(self, path: str, result_key: str, params: Optional[Dict] = None,
                 max_results: int = 10000, batch_size: int = 100) -> PaginatedResult:
        """
        Walk a startAfterId-cursored listing.

        Stops on a short batch, when max_results is reached, when no cursor comes
        back, or after MAX_PAGINATION_REQUESTS requests. Errors part-way through
        return what was gathered so far alongside the error message.
        """
        result = PaginatedResult()
        cursor = None
        base_params = dict(params or {})

        while result.requests_made < MAX_PAGINATION_REQUESTS and len(result.items) < max_results:
            page_params = dict(base_params)
            page_params["limit"] = min(batch_size, max_results - len(result.items))
            if cursor:
                page_params["startAfterId"] = cursor

            try:
                response = self._request("GET", path, params=page_params)
                result.requests_made += 1

                if response.status_code != 200:
                    result.error = f"GHL API error {response.status_code}: {response.text}"
                    logger.error(f"❌ Pagination stopped on {path}: {result.error}")
                    break

                data = response.json()
                batch = data.get(result_key, []) or []
                result.items.extend(batch)

                if len(batch) < page_params["limit"]:
                    break

                meta = data.get("meta") or {}
                cursor = meta.get("startAfterId") or (batch[-1].get("id") if batch else None)
                if not cursor:
                    break

                time.sleep(PAGINATION_DELAY_SECONDS)

            except GHLAuthError:
                raise
            except Exception as e:
                result.error = str(e)
                logger.error(f"❌ Pagination error on {path}: {e}")
                break

        result.items = result.items[:max_results]
        result.total = len(result.items)
        logger.info(f"📄 Fetched {result.total} {result_key} from {path} in {result.requests_made} request(s)")
        return result

    def _get_list(self, path: str, result_key: str, params: Optional[Dict] = None) -> List[Dict]:
        try:
            response = self._request("GET", path, params=params)
            if response.status_code == 200:
                return response.json().get(result_key, []) or []
            logger.error(f"Failed to get {result_key}: {response.status_code} - {response.text}")
            return []
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error getting {result_key}: {str(e)}")
            return []

    def _get_one(self, path: str, result_key: str) -> Optional[Dict]:
        try:
            response = self._request("GET", path)
            if response.status_code == 200:
                return response.json().get(result_key, {})
            logger.error(f"Failed to get {result_key}: {response.status_code} - {response.text}")
            return None
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error getting {result_key}: {str(e)}")
            return None

    # =======================
    # CONTACTS
    # =======================

    def get_contacts(self, limit: int = 100, start_after_id: Optional[str] = None, query: str = "") -> List[Dict]:
        params = {"locationId": self.location_id, "limit": min(limit, 100)}
        if start_after_id:
            params["startAfterId"] = start_after_id
        if query:
            params["query"] = query
        return self._get_list("/contacts/", "contacts", params)

    def get_all_contacts(self, max_results: int = 10000) -> PaginatedResult:
        return self.paginate("/contacts/", "contacts", {"locationId": self.location_id}, max_results=max_results)

    def get_contact(self, contact_id: str) -> Optional[Dict]:
        return self._get_one(f"/contacts/{contact_id}", "contact")

    def create_contact(self, contact_data: Dict) -> Optional[Dict]:
        try:
            payload = {**contact_data, "locationId": self.location_id}
            response = self._request("POST", "/contacts/", json=payload)
            if response.status_code in (200, 201):
                return response.json().get("contact", {})
            logger.error(f"Failed to create contact: {response.status_code} - {response.text}")
            return None
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error creating contact: {str(e)}")
            return None

    def update_contact(self, contact_id: str, update_data: Dict) -> bool:
        try:
            # For updates, we don't include locationId in the body
            payload = update_data.copy()
            payload.pop("locationId", None)
            payload.pop("id", None)

            response = self._request("PUT", f"/contacts/{contact_id}", json=payload)
            if response.status_code == 200:
                return True
            logger.error(f"Failed to update contact: {response.status_code} - {response.text}")
            return False
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error updating contact: {str(e)}")
            return False

    def add_contact_tags(self, contact_id: str, tags: List[str]) -> bool:
        try:
            response = self._request("POST", f"/contacts/{contact_id}/tags", json={"tags": tags})
            return response.status_code in (200, 201)
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error adding tags to contact {contact_id}: {str(e)}")
            return False

    # =======================
    # OPPORTUNITIES
    # =======================

    def _opportunity_params(self, pipeline_id=None, status=None, assigned_to=None, contact_id=None) -> Dict:
        params = {"location_id": self.location_id}
        if pipeline_id:
            params["pipeline_id"] = pipeline_id
        if status:
            params["status"] = status
        if assigned_to:
            params["assigned_to"] = assigned_to
        if contact_id:
            params["contact_id"] = contact_id
        return params

    def search_opportunities(self, pipeline_id: str = None, status: str = None, assigned_to: str = None,
                             contact_id: str = None, limit: int = 100, start_after_id: str = None) -> List[Dict]:
        params = self._opportunity_params(pipeline_id, status, assigned_to, contact_id)
        params["limit"] = min(limit, 100)
        if start_after_id:
            params["startAfterId"] = start_after_id
        return self._get_list("/opportunities/search", "opportunities", params)

    def get_all_opportunities(self, pipeline_id: str = None, status: str = None,
                              max_results: int = 10000) -> PaginatedResult:
        params = self._opportunity_params(pipeline_id, status)
        return self.paginate("/opportunities/search", "opportunities", params, max_results=max_results)

    def get_opportunity(self, opportunity_id: str) -> Optional[Dict]:
        return self._get_one(f"/opportunities/{opportunity_id}", "opportunity")

    def get_pipelines(self) -> List[Dict]:
        return self._get_list("/opportunities/pipelines", "pipelines", {"locationId": self.location_id})

    # =======================
    # USERS
    # =======================

    def get_users(self) -> List[Dict]:
        return self._get_list("/users/", "users", {"locationId": self.location_id})

    # =======================
    # INVOICES, ESTIMATES, PRODUCTS, PAYMENTS
    # =======================

    def _alt_params(self, limit: int, offset: int) -> Dict:
        return {"altId": self.location_id, "altType": "location", "limit": limit, "offset": offset}

    def get_invoices(self, limit: int = 100, offset: int = 0) -> List[Dict]:
        return self._get_list("/invoices/", "invoices", self._alt_params(limit, offset))

    def get_estimates(self, limit: int = 100, offset: int = 0) -> List[Dict]:
        return self._get_list("/invoices/estimate/list", "estimates", self._alt_params(limit, offset))

    def get_products(self, limit: int = 100, offset: int = 0) -> List[Dict]:
        params = {"locationId": self.location_id, "limit": limit, "offset": offset}
        return self._get_list("/products/", "products", params)

    def get_transactions(self, limit: int = 100, offset: int = 0) -> List[Dict]:
        params = {"altId": self.location_id, "altType": "location", "limit": limit, "offset": offset}
        return self._get_list("/payments/transactions", "data", params)

    # =======================
    # CONVERSATIONS
    # =======================

    def find_conversation(self, contact_id: str) -> Optional[Dict]:
        conversations = self._get_list(
            "/conversations/search", "conversations",
            {"locationId": self.location_id, "contactId": contact_id}
        )
        return conversations[0] if conversations else None

    def create_conversation(self, contact_id: str) -> Optional[Dict]:
        try:
            response = self._request(
                "POST", "/conversations/",
                json={"locationId": self.location_id, "contactId": contact_id}
            )
            if response.status_code in (200, 201):
                return response.json().get("conversation", {})
            logger.error(f"Failed to create conversation: {response.status_code} - {response.text}")
            return None
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error creating conversation: {str(e)}")
            return None

    def send_sms(self, contact_id: str, message: str) -> bool:
        """Send SMS to contact, opening a conversation first when none exists"""
        try:
            conversation = self.find_conversation(contact_id) or self.create_conversation(contact_id)
            payload = {
                "type": "SMS",
                "contactId": contact_id,
                "message": message,
            }
            if conversation and conversation.get("id"):
                payload["conversationId"] = conversation["id"]

            response = self._request("POST", "/conversations/messages", json=payload)
            if response.status_code in (200, 201):
                logger.info(f"📱 SMS sent to contact {contact_id}")
                return True
            logger.error(f"Failed to send SMS: {response.status_code} - {response.text}")
            return False
        except GHLAuthError:
            raise
        except Exception as e:
            logger.error(f"Error sending SMS: {str(e)}")
            return False

    def test_location_access(self) -> Dict:
        """Test if the token can access the location"""
        try:
            response = self._request("GET", "/contacts/", params={"locationId": self.location_id, "limit": 1})
            return {
                "status_code": response.status_code,
                "can_access": response.status_code == 200,
                "location_id": self.location_id
            }
        except Exception as e:
            return {
                "status_code": None,
                "can_access": False,
                "error": str(e),
                "location_id": self.location_id
            }


def create_ghl_client(integration, db) -> Optional[GoHighLevelAPI]:
    """
    Build a client for an Integration row. Refreshed tokens are written back
    onto the row so the next request starts from them.
    """
    if not integration or not integration.access_token:
        return None

    def persist_tokens(tokens: Dict[str, Any]) -> None:
        integration.access_token = tokens["access_token"]
        integration.refresh_token = tokens["refresh_token"]
        integration.token_expires_at = tokens["token_expires_at"]
        db.commit()
        logger.info(f"💾 Persisted refreshed GHL tokens for integration {integration.id}")

    return GoHighLevelAPI(
        access_token=integration.access_token,
        refresh_token=integration.refresh_token,
        token_expires_at=integration.token_expires_at,
        location_id=integration.location_id,
        on_token_refresh=persist_tokens
    )
