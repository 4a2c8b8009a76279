"""
Bearer-token authentication: HS256 JWTs whose subject is the tenant id.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from fastapi import Request
from jose import JWTError, jwt

from voiceai.exceptions import AuthError, ForbiddenError

log = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 30


class AuthManager:
    """Issues and checks tenant bearer tokens."""

    def __init__(self, jwt_secret: str, expire_days: int = JWT_EXPIRE_DAYS):
        self.jwt_secret = jwt_secret
        self.expire_days = expire_days

    def create_token(self, tenant_id: str, email: str = "", role: str = "user") -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": tenant_id,
            "email": email,
            "role": role,
            "iat": now,
            "exp": now + timedelta(days=self.expire_days),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: str) -> Optional[dict]:
        """Decoded claims, or None for a bad or expired token."""
        try:
            return jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
        except JWTError:
            return None

    @staticmethod
    def bearer_token(request: Request) -> Optional[str]:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def get_tenant_id(self, request: Request) -> Optional[str]:
        token = self.bearer_token(request)
        if not token:
            return None
        claims = self.verify_token(token)
        if not claims:
            return None
        sub = claims.get("sub")
        return sub if isinstance(sub, str) and sub else None

    def require_tenant(self, request: Request) -> str:
        """Tenant id of the caller or ``AuthError``."""
        tenant_id = self.get_tenant_id(request)
        if tenant_id is None:
            raise AuthError("Not authenticated")
        return tenant_id


def ensure_same_tenant(tenant_id: str, requested: Optional[str]) -> str:
    """Reject an explicit ``userId`` that is not the authenticated tenant."""
    if requested and requested != tenant_id:
        log.warning("cross_tenant_access_denied", tenant_id=tenant_id, requested=requested)
        raise ForbiddenError("Cannot access another user's data")
    return tenant_id
