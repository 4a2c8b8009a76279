"""
Async client for the hosted backend functions.

Every request carries ``Authorization: Bearer <token>`` from a token
provider. Relative endpoints are joined onto ``backend_base_url``;
absolute URLs pass through untouched.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Union

import httpx
import structlog

from voiceai.config import Settings
from voiceai.exceptions import AuthError, BackendError, ConfigurationError

log = structlog.get_logger(__name__)

TokenProvider = Callable[[], Union[str, None, Awaitable[Optional[str]]]]


class BackendClient:
    """Calls named backend functions with the caller's bearer token."""

    def __init__(
        self,
        settings: Settings,
        token_provider: TokenProvider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = settings.backend_base_url.rstrip("/")
        self._token_provider = token_provider
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=30.0, transport=self._transport)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def url_for(self, endpoint: str) -> str:
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        if not self.base_url:
            raise ConfigurationError("BACKEND_BASE_URL is not set")
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    async def _token(self) -> str:
        token = self._token_provider()
        if hasattr(token, "__await__"):
            token = await token
        if not token:
            raise AuthError("User not authenticated")
        return token

    async def call(
        self,
        endpoint: str,
        method: str = "POST",
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Invoke one backend function and return its decoded JSON body."""
        url = self.url_for(endpoint)
        token = await self._token()
        client = await self._client()
        resp = await client.request(
            method,
            url,
            json=json,
            params={k: v for k, v in (params or {}).items() if v is not None},
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )
        if not resp.is_success:
            text = resp.text
            log.error("backend_error", endpoint=endpoint, status=resp.status_code, body=text[:200])
            raise BackendError(text or f"Backend request failed ({resp.status_code})", status=resp.status_code, body=text)
        if not resp.content:
            return None
        return resp.json()

    # ── Dashboard data ──────────────────────────────────────────

    async def get_calls(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> Any:
        return await self.call("getCalls", method="GET", params={"limit": limit, "cursor": cursor})

    async def get_agents(self) -> Any:
        return await self.call("getAgents", method="GET")

    async def get_dashboard_overview(self) -> Any:
        return await self.call("getDashboardOverview", method="GET")

    async def get_analytics_volume(self, start_date: str, end_date: str) -> Any:
        return await self.call(
            "getAnalyticsVolume", method="GET", params={"start_date": start_date, "end_date": end_date}
        )

    async def get_analytics_sentiment(self, start_date: str, end_date: str) -> Any:
        return await self.call(
            "getAnalyticsSentiment", method="GET", params={"start_date": start_date, "end_date": end_date}
        )

    async def get_analytics_outcomes(self, start_date: str, end_date: str) -> Any:
        return await self.call(
            "getAnalyticsOutcomes", method="GET", params={"start_date": start_date, "end_date": end_date}
        )

    async def get_analytics_metrics(self, start_date: str, end_date: str) -> Any:
        return await self.call(
            "getAnalyticsMetrics", method="GET", params={"start_date": start_date, "end_date": end_date}
        )

    async def get_billing_current_cycle(self) -> Any:
        return await self.call("getBillingCurrentCycle", method="GET")

    async def get_invoices(self) -> Any:
        return await self.call("getInvoices", method="GET")

    # ── API keys ────────────────────────────────────────────────

    async def store_api_key(self, service: str, api_key: str) -> Any:
        return await self.call("storeApiKey", json={"service": service, "apiKey": api_key})

    async def disconnect_api_key(self, service: str) -> Any:
        return await self.call("disconnectApiKey", json={"service": service})

    async def get_api_key_status(self, service: str) -> Any:
        return await self.call("getApiKeyStatus", method="GET", params={"service": service})

    # ── Admin ───────────────────────────────────────────────────

    async def create_user_by_admin(
        self,
        email: str,
        password: str,
        role: str = "user",
        business_name: Optional[str] = None,
    ) -> Any:
        payload: dict[str, Any] = {"email": email, "password": password, "role": role}
        if business_name:
            payload["businessName"] = business_name
        return await self.call("createUserByAdmin", json=payload)

    async def list_users(self) -> Any:
        return await self.call("listUsers", method="GET")

    async def admin_agents(self) -> Any:
        return await self.call("adminAgents", method="GET")

    async def assign_agent(self, agent_id: str, user_id: str, agent_name: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"agentId": agent_id, "userId": user_id}
        if agent_name:
            payload["agentName"] = agent_name
        return await self.call("adminAgents", json=payload)

    async def admin_api_keys(self) -> Any:
        return await self.call("adminApiKeys", method="GET")
