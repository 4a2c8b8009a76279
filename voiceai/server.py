"""
Dashboard HTTP API.

Routes:
  Calls:     /api/calls, /api/calls/search, /api/calls/export, /api/calls/{call_id}
  Agents:    /api/agents
  Dashboard: /api/dashboard/overview
  Analytics: /api/analytics/{volume,sentiment,outcomes,metrics,agents}
  Billing:   /api/billing/current-cycle, /api/billing/invoices
  Keys:      /api/keys/validate, /api/keys/store (POST / GET / DELETE)
  Auth:      /api/auth/send-verification, /api/auth/verify-email, /api/auth/logout
  Profile:   /api/profile (GET / PATCH)

The tenant is always the subject of the bearer token. A ``userId`` sent in
a request is only accepted when it names that same tenant.

Usage:
    uvicorn voiceai.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
import structlog
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from voiceai.accounts import EmailVerifier, ProfileService
from voiceai.analytics import (
    agent_stats,
    call_metrics,
    dashboard_overview,
    date_range,
    filter_range,
    merge_agents,
    outcome_summary,
    overall_stats,
    previous_period,
    sentiment_distribution,
    sentiment_trends,
    volume_series,
)
from voiceai.api_keys import KeyValidator, KeyVault, check_service
from voiceai.auth import AuthManager, ensure_same_tenant
from voiceai.billing import BillingService
from voiceai.cache import TenantCaches
from voiceai.config import Settings, get_settings
from voiceai.encryption import ApiKeyCipher
from voiceai.exceptions import DashboardError, NotFoundError, ValidationError
from voiceai.feed import fetch_calls
from voiceai.fetcher import PageCursor, PaginatedFetcher, document_to_record
from voiceai.logging_config import bind_tenant
from voiceai.models import Agent, CallRecord, CallsPage
from voiceai.output import calls_csv_text
from voiceai.store import DocumentStore, Where
from voiceai.transcripts import search_transcript

log = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Services:
    """Collaborators shared by every request of one app instance."""

    def __init__(
        self,
        settings: Settings,
        store: DocumentStore,
        clock: Clock = _utcnow,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.store = store
        self.clock = clock
        self.caches = TenantCaches(ttl_seconds=settings.cache_ttl_seconds)
        self.auth = AuthManager(settings.jwt_secret)
        self.validator = KeyValidator(settings, transport=http_transport)
        self.profiles = ProfileService(store)
        self.verifier = EmailVerifier(store, settings, transport=http_transport)
        self.billing = BillingService(store, settings)
        self._vault: Optional[KeyVault] = None

    @property
    def vault(self) -> KeyVault:
        # Built on first use so a missing ENCRYPTION_KEY only affects key routes.
        if self._vault is None:
            cipher = ApiKeyCipher(self.settings.encryption_key, production=self.settings.is_production)
            self._vault = KeyVault(self.store, cipher)
        return self._vault

    async def calls(self, tenant_id: str, skip_cache: bool = False) -> list[CallRecord]:
        return await fetch_calls(
            self.store,
            self.caches.for_tenant(tenant_id),
            tenant_id,
            max_calls=self.settings.max_calls,
            page_size=self.settings.page_size,
            skip_cache=skip_cache,
        )


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise ValidationError("Invalid JSON") from exc
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    clock: Clock = _utcnow,
    http_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Create the FastAPI app with all routes."""
    settings = settings or get_settings()
    owns_store = store is None
    store = store or DocumentStore(settings.database_path)
    services = Services(settings, store, clock, http_transport)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not store.connected:
            await store.connect()
        log.info("server_started", db=str(settings.database_path))
        yield
        await services.validator.close()
        if owns_store:
            await store.close()
        log.info("server_stopped")

    app = FastAPI(title="VoiceAI Dashboard", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(DashboardError)
    async def dashboard_error_handler(request: Request, exc: DashboardError):
        if exc.status_code >= 500:
            log.error("request_failed", path=request.url.path, error=exc.message, kind=type(exc).__name__)
        message = exc.message
        if exc.status_code == 503:
            message = f"Service temporarily unavailable: {exc.message}"
        return JSONResponse({"error": message}, status_code=exc.status_code)

    def tenant(request: Request, requested: Optional[str] = None) -> str:
        tenant_id = services.auth.require_tenant(request)
        ensure_same_tenant(tenant_id, requested)
        bind_tenant(tenant_id)
        return tenant_id

    def resolve_range(
        range_: str,
        start_date: Optional[str],
        end_date: Optional[str],
    ) -> tuple[datetime, datetime]:
        if start_date or end_date:
            range_ = "custom"
        return date_range(range_, services.clock(), start_date, end_date)

    # ── Health check ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok", "store": "connected" if store.connected else "unavailable"}

    # ── Calls ───────────────────────────────────────────────────
    @app.get("/api/calls")
    async def list_calls(
        request: Request,
        limit: int = Query(20, ge=1, le=100),
        cursor: Optional[str] = None,
        userId: Optional[str] = None,
    ):
        tenant_id = tenant(request, userId)
        fetcher = PaginatedFetcher(store, tenant_id)
        page = await fetcher.fetch_page(PageCursor.decode(cursor) if cursor else None, limit)
        body = CallsPage(
            calls=page.records,
            next_cursor=page.next_cursor.encode() if page.next_cursor else None,
            has_more=page.has_more,
        )
        return body.model_dump(mode="json", by_alias=True)

    @app.get("/api/calls/search")
    async def search_calls(request: Request, q: str = "", call_id: str = ""):
        tenant_id = tenant(request)
        if not q or not call_id:
            raise ValidationError("q and call_id are required")
        record = await _get_call(tenant_id, call_id)
        matches = search_transcript(record.transcript_text, q)
        return {"matches": [asdict(m) for m in matches]}

    @app.get("/api/calls/export")
    async def export_calls(request: Request, include_transcript: bool = False):
        tenant_id = tenant(request)
        records = await services.calls(tenant_id)
        text = calls_csv_text(records, include_transcript=include_transcript)
        filename = f"calls_{services.clock():%Y%m%d}.csv"
        return StreamingResponse(
            iter([text]),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    async def _get_call(tenant_id: str, call_id: str) -> CallRecord:
        doc = await store.get("calls", call_id)
        # Another tenant's call is reported as missing, not forbidden.
        if doc is None or doc.data.get("userId") != tenant_id:
            raise NotFoundError("Call not found")
        return document_to_record(doc)

    @app.get("/api/calls/{call_id}")
    async def get_call(call_id: str, request: Request):
        tenant_id = tenant(request)
        record = await _get_call(tenant_id, call_id)
        return record.model_dump(mode="json", by_alias=True)

    # ── Agents ──────────────────────────────────────────────────
    @app.get("/api/agents")
    async def list_agents(request: Request):
        tenant_id = tenant(request)
        docs = await store.query("agents", [Where("userId", "==", tenant_id)])
        registered = [
            Agent(
                agent_id=d.data.get("agentId") or d.id,
                agent_name=d.data.get("agentName"),
                created_at=d.created_at,
                updated_at=str(d.data.get("updatedAt") or d.created_at),
            )
            for d in docs
        ]
        agents = merge_agents(registered, await services.calls(tenant_id))
        return {"agents": [a.model_dump(mode="json", by_alias=True) for a in agents]}

    # ── Dashboard ───────────────────────────────────────────────
    @app.get("/api/dashboard/overview")
    async def overview(request: Request):
        tenant_id = tenant(request)
        records = await services.calls(tenant_id)
        return dashboard_overview(records, services.clock(), settings.dashboard_fee_monthly).model_dump()

    # ── Analytics ───────────────────────────────────────────────
    @app.get("/api/analytics/volume")
    async def analytics_volume(
        request: Request,
        range_: str = Query("30d", alias="range"),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        tenant_id = tenant(request)
        start, end = resolve_range(range_, start_date, end_date)
        records = filter_range(await services.calls(tenant_id), start, end)
        last_day = (end - timedelta(microseconds=1)).date()
        return volume_series(records, start.date(), last_day).model_dump()

    @app.get("/api/analytics/sentiment")
    async def analytics_sentiment(
        request: Request,
        range_: str = Query("30d", alias="range"),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        tenant_id = tenant(request)
        start, end = resolve_range(range_, start_date, end_date)
        records = filter_range(await services.calls(tenant_id), start, end)
        return sentiment_distribution(records).model_dump()

    @app.get("/api/analytics/outcomes")
    async def analytics_outcomes(
        request: Request,
        range_: str = Query("30d", alias="range"),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        tenant_id = tenant(request)
        start, end = resolve_range(range_, start_date, end_date)
        records = filter_range(await services.calls(tenant_id), start, end)
        return outcome_summary(records).model_dump()

    @app.get("/api/analytics/metrics")
    async def analytics_metrics(
        request: Request,
        range_: str = Query("30d", alias="range"),
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ):
        tenant_id = tenant(request)
        start, end = resolve_range(range_, start_date, end_date)
        records = await services.calls(tenant_id)
        prev_start, prev_end = previous_period(start, end)
        metrics = call_metrics(filter_range(records, start, end), filter_range(records, prev_start, prev_end))
        return metrics.model_dump()

    @app.get("/api/analytics/agents")
    async def analytics_agents(request: Request, agent_id: Optional[str] = None):
        tenant_id = tenant(request)
        records = await services.calls(tenant_id)
        if agent_id:
            records = [r for r in records if r.agent_id == agent_id]
        return {
            "overall": overall_stats(records).model_dump(by_alias=True),
            "agents": [s.model_dump(by_alias=True) for s in agent_stats(records)],
            "sentimentTrends": [t.model_dump(by_alias=True) for t in sentiment_trends(records)],
        }

    # ── Billing ─────────────────────────────────────────────────
    @app.get("/api/billing/current-cycle")
    async def billing_current_cycle(request: Request):
        tenant_id = tenant(request)
        records = await services.calls(tenant_id)
        return services.billing.current_cycle(records, services.clock()).model_dump()

    @app.get("/api/billing/invoices")
    async def billing_invoices(request: Request):
        tenant_id = tenant(request)
        invoices = await services.billing.list_invoices(tenant_id)
        return [inv.model_dump(mode="json") for inv in invoices]

    # ── API keys ────────────────────────────────────────────────
    @app.post("/api/keys/validate")
    async def validate_keys(request: Request):
        tenant(request)
        body = await _json_body(request)
        result = await services.validator.validate(
            retell_key=body.get("retell_key"),
            openrouter_key=body.get("openrouter_key"),
        )
        return result.model_dump()

    @app.post("/api/keys/store")
    async def store_key(request: Request):
        body = await _json_body(request)
        tenant_id = tenant(request, body.get("userId"))
        service = body.get("service")
        api_key = body.get("apiKey")
        if not service or not api_key:
            raise ValidationError("service and apiKey are required")
        check_service(service)
        await services.vault.store_key(tenant_id, service, api_key, now=services.clock())
        return {"success": True, "message": f"{service} API key stored successfully"}

    @app.get("/api/keys/store")
    async def key_status(request: Request, service: str = "", userId: Optional[str] = None):
        tenant_id = tenant(request, userId)
        if not service:
            raise ValidationError("service is required")
        status = await services.vault.status(tenant_id, service)
        return status.model_dump(exclude_none=True)

    @app.delete("/api/keys/store")
    async def disconnect_key(request: Request, service: str = "", userId: Optional[str] = None):
        tenant_id = tenant(request, userId)
        if not service:
            raise ValidationError("service is required")
        await services.vault.disconnect(tenant_id, service)
        return {"success": True, "message": f"{service} API key disconnected"}

    @app.post("/api/keys/revalidate")
    async def revalidate_key(request: Request):
        body = await _json_body(request)
        tenant_id = tenant(request, body.get("userId"))
        service = body.get("service")
        if not service:
            raise ValidationError("service is required")
        vault = services.vault
        result = await vault.revalidate(tenant_id, service, services.validator, now=services.clock())
        status = await vault.status(tenant_id, service)
        return {**result.model_dump(exclude_none=True), **status.model_dump(exclude_none=True)}

    # ── Auth ────────────────────────────────────────────────────
    @app.post("/api/auth/send-verification")
    async def send_verification(request: Request):
        body = await _json_body(request)
        tenant_id = tenant(request, body.get("userId"))
        return await services.verifier.send(tenant_id, body.get("email") or "", now=services.clock())

    @app.post("/api/auth/verify-email")
    async def verify_email(request: Request):
        body = await _json_body(request)
        tenant_id = tenant(request, body.get("userId"))
        await services.verifier.verify(tenant_id, str(body.get("code") or ""), now=services.clock())
        services.caches.invalidate(tenant_id)
        return {"success": True, "message": "Email verified successfully"}

    @app.post("/api/auth/logout")
    async def logout(request: Request):
        tenant_id = tenant(request)
        services.caches.invalidate(tenant_id)
        return {"success": True}

    # ── Profile ─────────────────────────────────────────────────
    @app.get("/api/profile")
    async def get_profile(request: Request, userId: Optional[str] = None):
        tenant_id = tenant(request, userId)
        profile = await services.profiles.get(tenant_id)
        return profile.model_dump()

    @app.patch("/api/profile")
    async def update_profile(request: Request):
        body = await _json_body(request)
        tenant_id = tenant(request, body.get("userId"))
        profile = await services.profiles.update(tenant_id, body)
        return profile.model_dump()

    return app


# Create the main app
app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "voiceai.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
        log_level="info",
    )
