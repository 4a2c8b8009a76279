"""
Provider API keys: validation against the providers, encrypted storage.

Keys live in ``api_keys/{userId}_{service}``. Validation probes each
provider with a cheap authenticated request and reports a per-provider
result instead of raising, so one bad key never hides the other's status.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

import httpx
import structlog

from voiceai.config import Settings
from voiceai.encryption import ApiKeyCipher, EncryptedKey
from voiceai.exceptions import NotFoundError, ValidationError
from voiceai.formatting import mask_key
from voiceai.mapper import coerce_datetime, format_iso
from voiceai.models import KeyConnectionStatus, ProviderValidation, ValidateKeysResponse
from voiceai.store import DocumentStore

log = structlog.get_logger(__name__)

API_KEYS = "api_keys"
SERVICES = ("retell", "openrouter")
_ERROR_SNIPPET = 100


def check_service(service: str) -> str:
    if service not in SERVICES:
        raise ValidationError("Service must be 'retell' or 'openrouter'")
    return service


def key_doc_id(tenant_id: str, service: str) -> str:
    return f"{tenant_id}_{service}"


class KeyValidator:
    """Probes Retell and OpenRouter with a submitted key."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.retell_base_url = settings.retell_base_url.rstrip("/")
        self.openrouter_base_url = settings.openrouter_base_url.rstrip("/")
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=15.0, transport=self._transport)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def _probe(self, label: str, request: httpx.Request) -> ProviderValidation:
        client = await self._client()
        try:
            resp = await client.send(request)
        except httpx.HTTPError as exc:
            log.warning("api_key_probe_failed", provider=label, error=str(exc))
            return ProviderValidation(valid=False, error=str(exc) or f"Failed to validate {label} key")

        if resp.is_success:
            try:
                info = resp.json()
            except ValueError:
                info = None
            return ProviderValidation(valid=True, account_info=info)

        log.info("api_key_rejected", provider=label, status=resp.status_code)
        return ProviderValidation(
            valid=False,
            error=f"{label} API error: {resp.status_code} {resp.text[:_ERROR_SNIPPET]}",
        )

    async def validate_retell(self, key: str) -> ProviderValidation:
        request = httpx.Request(
            "POST",
            f"{self.retell_base_url}/v2/list-calls",
            headers={"Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            json={"limit": 1},
        )
        return await self._probe("Retell", request)

    async def validate_openrouter(self, key: str) -> ProviderValidation:
        request = httpx.Request(
            "GET",
            f"{self.openrouter_base_url}/auth/key",
            headers={"Authorization": f"Bearer {key}"},
        )
        return await self._probe("OpenRouter", request)

    async def validate(
        self,
        retell_key: Optional[str] = None,
        openrouter_key: Optional[str] = None,
    ) -> ValidateKeysResponse:
        """Validate whichever keys were supplied; absent keys report invalid."""
        result = ValidateKeysResponse()
        if retell_key:
            result.retell = await self.validate_retell(retell_key)
        if openrouter_key:
            result.openrouter = await self.validate_openrouter(openrouter_key)
        return result


class KeyVault:
    """Encrypted key documents for each tenant and service."""

    def __init__(self, store: DocumentStore, cipher: ApiKeyCipher):
        self.store = store
        self.cipher = cipher

    async def store_key(
        self,
        tenant_id: str,
        service: str,
        api_key: str,
        now: Optional[datetime] = None,
    ) -> KeyConnectionStatus:
        check_service(service)
        if not api_key:
            raise ValidationError("apiKey is required")
        now = now or datetime.now(timezone.utc)
        sealed = self.cipher.encrypt(api_key)
        masked = mask_key(api_key)
        await self.store.set(
            API_KEYS,
            key_doc_id(tenant_id, service),
            {
                "user_id": tenant_id,
                "service": service,
                **sealed.to_document(),
                "masked_key": masked,
                "connected_at": now,
                "last_validated_at": now,
            },
            merge=True,
        )
        log.info("api_key_stored", tenant_id=tenant_id, service=service)
        return KeyConnectionStatus(
            connected=True,
            masked_key=masked,
            connected_at=format_iso(now),
            last_validated_at=format_iso(now),
        )

    async def status(self, tenant_id: str, service: str) -> KeyConnectionStatus:
        check_service(service)
        doc = await self.store.get(API_KEYS, key_doc_id(tenant_id, service))
        if doc is None:
            return KeyConnectionStatus(connected=False)
        return KeyConnectionStatus(
            connected=True,
            masked_key=doc.data.get("masked_key"),
            connected_at=_iso_or_none(doc.data.get("connected_at")),
            last_validated_at=_iso_or_none(doc.data.get("last_validated_at")),
        )

    async def disconnect(self, tenant_id: str, service: str) -> bool:
        check_service(service)
        deleted = await self.store.delete(API_KEYS, key_doc_id(tenant_id, service))
        log.info("api_key_disconnected", tenant_id=tenant_id, service=service, existed=deleted)
        return deleted

    async def reveal(self, tenant_id: str, service: str) -> str:
        """Decrypt a stored key for outbound use."""
        check_service(service)
        doc = await self.store.get(API_KEYS, key_doc_id(tenant_id, service))
        if doc is None:
            raise NotFoundError(f"No {service} key connected")
        return self.cipher.decrypt(EncryptedKey.from_document(doc.data))

    async def revalidate(
        self,
        tenant_id: str,
        service: str,
        validator: KeyValidator,
        now: Optional[datetime] = None,
    ) -> ProviderValidation:
        """Re-probe a stored key and stamp ``last_validated_at`` on success."""
        key = await self.reveal(tenant_id, service)
        if service == "retell":
            result = await validator.validate_retell(key)
        else:
            result = await validator.validate_openrouter(key)
        if result.valid:
            await self.store.update(
                API_KEYS,
                key_doc_id(tenant_id, service),
                {"last_validated_at": now or datetime.now(timezone.utc)},
            )
        return result


def _iso_or_none(value) -> Optional[str]:
    dt = coerce_datetime(value)
    return format_iso(dt) if dt else None
