"""
User profiles and e-mail verification codes.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import httpx
import structlog

from voiceai.config import Settings
from voiceai.exceptions import BackendError, NotFoundError, ValidationError
from voiceai.mapper import coerce_datetime
from voiceai.models import UserProfile
from voiceai.store import DocumentStore

log = structlog.get_logger(__name__)

USERS = "users"
EMAIL_VERIFICATIONS = "email_verifications"
RESEND_URL = "https://api.resend.com/emails"

PROFILE_FIELDS = (
    "business_name",
    "contact_email",
    "phone_number",
    "timezone",
    "billing_email",
    "autopay_enabled",
)


class ProfileService:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def get(self, tenant_id: str) -> UserProfile:
        """Profile with defaults; unknown users get an empty profile."""
        doc = await self.store.get(USERS, tenant_id)
        if doc is None:
            return UserProfile(id=tenant_id)
        data = doc.data
        email = data.get("email") or ""
        return UserProfile(
            id=tenant_id,
            email=email,
            business_name=data.get("business_name") or "",
            contact_email=data.get("contact_email") or email,
            phone_number=data.get("phone_number") or "",
            timezone=data.get("timezone") or "America/New_York",
            billing_email=data.get("billing_email") or email,
            email_verified=bool(data.get("email_verified", False)),
            autopay_enabled=bool(data.get("autopay_enabled", False)),
            payment_customer_id=data.get("payment_customer_id"),
        )

    async def update(self, tenant_id: str, changes: dict[str, Any]) -> UserProfile:
        """Apply the editable fields present in ``changes``; others are ignored."""
        updates = {k: v for k, v in changes.items() if k in PROFILE_FIELDS and v is not None}
        if "autopay_enabled" in updates and not isinstance(updates["autopay_enabled"], bool):
            raise ValidationError("autopay_enabled must be a boolean")
        if updates:
            if await self.store.get(USERS, tenant_id) is None:
                updates.setdefault("email_verified", False)
            await self.store.set(USERS, tenant_id, updates, merge=True)
            log.info("profile_updated", tenant_id=tenant_id, fields=sorted(updates))
        return await self.get(tenant_id)


def generate_code() -> str:
    """Six digits, never starting with zero."""
    return str(100000 + secrets.randbelow(900000))


class EmailVerifier:
    """Sends and checks 6-digit e-mail verification codes."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self.ttl = timedelta(minutes=settings.verification_code_ttl_minutes)
        self._transport = transport

    async def send(self, tenant_id: str, email: str, now: Optional[datetime] = None) -> dict:
        """
        Store a fresh code and e-mail it.

        Without a Resend key the code is only logged; in development it is
        also returned so the flow can be completed locally.
        """
        if not tenant_id or not email:
            raise ValidationError("Email and userId are required")
        now = now or datetime.now(timezone.utc)
        code = generate_code()
        await self.store.set(
            EMAIL_VERIFICATIONS,
            tenant_id,
            {
                "code": code,
                "email": email,
                "userId": tenant_id,
                "expiresAt": now + self.ttl,
                "createdAt": now,
                "verified": False,
            },
        )

        result: dict[str, Any] = {"success": True, "message": "Verification code sent to your email"}
        if self.settings.resend_api_key:
            await self._deliver(email, code)
        else:
            log.info("verification_code_dev", tenant_id=tenant_id, email=email, code=code)
            if not self.settings.is_production:
                result["code"] = code
        return result

    async def _deliver(self, email: str, code: str) -> None:
        minutes = int(self.ttl.total_seconds() // 60)
        payload = {
            "from": self.settings.resend_from,
            "to": [email],
            "subject": "Verify your Voice AI Dashboard account",
            "html": f"<p>Your verification code is: <strong>{code}</strong></p>"
                    f"<p>This code expires in {minutes} minutes.</p>",
            "text": f"Your verification code is: {code}\n\nThis code expires in {minutes} minutes.",
        }
        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            try:
                resp = await client.post(
                    RESEND_URL,
                    json=payload,
                    headers={"Authorization": f"Bearer {self.settings.resend_api_key}"},
                )
            except httpx.HTTPError as exc:
                log.error("verification_email_failed", error=str(exc))
                raise BackendError("Failed to send verification email") from exc
        if not resp.is_success:
            log.error("verification_email_rejected", status=resp.status_code, body=resp.text[:200])
            raise BackendError("Failed to send verification email", status=resp.status_code, body=resp.text)
        log.info("verification_email_sent", email=email)

    async def verify(self, tenant_id: str, code: str, now: Optional[datetime] = None) -> None:
        if not tenant_id or not code:
            raise ValidationError("UserId and code are required")
        now = now or datetime.now(timezone.utc)

        doc = await self.store.get(EMAIL_VERIFICATIONS, tenant_id)
        if doc is None or doc.data.get("verified"):
            raise NotFoundError("Verification code not found or expired")

        expires_at = coerce_datetime(doc.data.get("expiresAt"))
        if expires_at is not None and expires_at < now:
            raise ValidationError("Verification code has expired")
        if not secrets.compare_digest(str(doc.data.get("code", "")), str(code)):
            raise ValidationError("Invalid verification code")

        user = await self.store.get(USERS, tenant_id)
        changes: dict[str, Any] = {"email_verified": True, "email_verified_at": now}
        if user is None or not user.data.get("email"):
            changes["email"] = doc.data.get("email", "")
        await self.store.set(USERS, tenant_id, changes, merge=True)
        await self.store.update(EMAIL_VERIFICATIONS, tenant_id, {"verified": True, "verifiedAt": now})
        log.info("email_verified", tenant_id=tenant_id)
