from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

import httpx
import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import settings
from app.core.database import get_sessionmaker
from app.models.account import Account
from app.models.refresh_token import RefreshToken
from app.services.auth import (
    burn_password_check,
    create_access_token,
    create_refresh_token,
    hash_refresh_token,
    verify_password,
)
from app.utils.time import utc_now

logger = structlog.get_logger(__name__)

# GoTrue answers bad credentials with 400 ("invalid_grant"); the others cover
# unconfirmed, banned or malformed logins, all of which are plain failures here.
CREDENTIAL_FAILURE_STATUSES = {400, 401, 403, 422}


class IdentityProviderError(Exception):
    pass


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class VerifyResult:
    success: bool
    session: SessionTokens | None = None


class IdentityProvider(Protocol):
    async def verify(self, email: str, password: str) -> VerifyResult:
        ...


class GoTrueIdentityProvider:
    """Password grant against a hosted GoTrue / Supabase auth endpoint."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.GOTRUE_URL or "").rstrip("/")
        self.api_key = api_key or settings.GOTRUE_API_KEY
        self.timeout = timeout or settings.REQUEST_TIMEOUT_SEC
        self.transport = transport

    async def verify(self, email: str, password: str) -> VerifyResult:
        if not self.base_url:
            raise IdentityProviderError("GOTRUE_URL is not configured")
        if not self.api_key:
            raise IdentityProviderError("GOTRUE_API_KEY is not configured")
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/auth/v1/token",
                    params={"grant_type": "password"},
                    json={"email": email, "password": password},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.error("identity_provider_error", provider="gotrue", error=str(exc))
            raise IdentityProviderError(f"Request failed: {exc}") from exc

        if response.status_code in CREDENTIAL_FAILURE_STATUSES:
            return VerifyResult(success=False)
        if response.status_code >= 400:
            logger.error(
                "identity_provider_error",
                provider="gotrue",
                status_code=response.status_code,
            )
            raise IdentityProviderError(f"Unexpected status {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise IdentityProviderError("Invalid JSON response") from exc
        if not isinstance(data, dict):
            raise IdentityProviderError("Invalid JSON response")
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        if not access_token or not refresh_token:
            return VerifyResult(success=False)
        return VerifyResult(
            success=True,
            session=SessionTokens(access_token=access_token, refresh_token=refresh_token),
        )


class LocalIdentityProvider:
    """Accounts kept in the service's own database, bcrypt hashed."""

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession] | None) -> None:
        self._sessionmaker = sessionmaker

    async def verify(self, email: str, password: str) -> VerifyResult:
        if self._sessionmaker is None:
            raise IdentityProviderError("DATABASE_URL is not configured")
        normalized = email.strip().lower()
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(
                    select(Account).where(Account.email == normalized)
                )
                account = result.scalars().first()
                if not account or not account.is_active:
                    burn_password_check()
                    return VerifyResult(success=False)
                if not verify_password(password, account.hashed_password):
                    return VerifyResult(success=False)

                access_token = create_access_token(str(account.id), account.email)
                refresh_token = create_refresh_token()
                account.last_login_at = utc_now()
                session.add(
                    RefreshToken(
                        account_id=account.id,
                        token_hash=hash_refresh_token(refresh_token),
                        expires_at=utc_now()
                        + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("identity_provider_error", provider="local", error=str(exc))
            raise IdentityProviderError("Account lookup failed") from exc

        return VerifyResult(
            success=True,
            session=SessionTokens(access_token=access_token, refresh_token=refresh_token),
        )


def build_identity_provider() -> IdentityProvider:
    if settings.IDENTITY_PROVIDER.strip().lower() == "local":
        return LocalIdentityProvider(get_sessionmaker())
    return GoTrueIdentityProvider()
