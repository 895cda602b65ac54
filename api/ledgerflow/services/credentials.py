"""
Per-tenant access credentials for the accounting API.

The sync pipeline only ever asks for ``get_valid_credential(tenant_id)``;
it never sees or persists raw secrets. ``DatabaseCredentialProvider`` keeps
the OAuth tokens Fernet-encrypted in ``tenant_connections``, reuses a
credential until it expires and refreshes it via the token endpoint
(``grant_type=refresh_token``) under a per-tenant lock, so concurrent
callers trigger at most one refresh.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledgerflow.core.clock import Clock, as_utc, system_clock
from ledgerflow.core.config import settings
from ledgerflow.core.errors import AuthError, UpstreamUnavailable
from ledgerflow.core.security import decrypt_value, encrypt_value
from ledgerflow.models.tenant import TenantConnection

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    expires_at: datetime
    scopes: tuple[str, ...] = ()

    def is_valid(self, now: datetime, skew_seconds: int = 0) -> bool:
        return as_utc(now) + timedelta(seconds=skew_seconds) < as_utc(self.expires_at)


class CredentialProvider(Protocol):
    async def get_valid_credential(self, tenant_id: str) -> Credential:
        """Return a usable credential or raise AuthError("not_connected" | "expired")."""
        ...

    def invalidate(self, tenant_id: str) -> None:
        """Forget any cached credential so the next call reloads or refreshes it."""
        ...


class DatabaseCredentialProvider:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        *,
        clock: Clock = system_clock,
        token_url: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        refresh_skew_seconds: int | None = None,
    ):
        self._session_factory = session_factory
        self._http = http
        self._clock = clock
        self._token_url = token_url or settings.upstream_token_url
        self._client_id = client_id if client_id is not None else settings.upstream_client_id
        self._client_secret = client_secret if client_secret is not None else settings.upstream_client_secret
        self._skew = (
            settings.credential_refresh_skew_seconds if refresh_skew_seconds is None else refresh_skew_seconds
        )
        self._cache: dict[str, Credential] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def _usable(self, credential: Credential | None) -> bool:
        return credential is not None and credential.is_valid(self._clock.now(), self._skew)

    def invalidate(self, tenant_id: str) -> None:
        self._cache.pop(tenant_id, None)

    async def get_valid_credential(self, tenant_id: str) -> Credential:
        cached = self._cache.get(tenant_id)
        if self._usable(cached):
            return cached

        async with self._locks[tenant_id]:
            # Another caller may have refreshed while we waited
            cached = self._cache.get(tenant_id)
            if self._usable(cached):
                return cached

            async with self._session_factory() as db:
                conn = await db.scalar(
                    select(TenantConnection).where(
                        TenantConnection.tenant_id == tenant_id,
                        TenantConnection.is_active.is_(True),
                    )
                )
                if conn is None:
                    raise AuthError("not_connected")

                credential = Credential(
                    access_token=decrypt_value(conn.access_token_enc),
                    refresh_token=decrypt_value(conn.refresh_token_enc),
                    expires_at=as_utc(conn.expires_at),
                    scopes=tuple(conn.scopes.split()),
                )
                if not self._usable(credential):
                    credential = await self._refresh(tenant_id, credential)
                    conn.access_token_enc = encrypt_value(credential.access_token)
                    conn.refresh_token_enc = encrypt_value(credential.refresh_token)
                    conn.expires_at = credential.expires_at
                    conn.scopes = " ".join(credential.scopes)
                    await db.commit()

            self._cache[tenant_id] = credential
            return credential

    async def _refresh(self, tenant_id: str, current: Credential) -> Credential:
        logger.info("Refreshing access token for tenant %s", tenant_id)
        try:
            resp = await self._http.post(
                self._token_url,
                data={"grant_type": "refresh_token", "refresh_token": current.refresh_token},
                auth=(self._client_id, self._client_secret),
            )
        except httpx.TransportError as exc:
            logger.error("Token endpoint unreachable for tenant %s: %r", tenant_id, exc)
            raise UpstreamUnavailable("Token endpoint unreachable") from exc

        if resp.status_code in (400, 401):
            # invalid_grant: the refresh token itself is dead, re-authorization needed
            logger.warning("Refresh rejected for tenant %s: %s", tenant_id, resp.text[:200])
            raise AuthError("expired")
        if resp.status_code >= 400:
            raise UpstreamUnavailable(f"Token endpoint returned HTTP {resp.status_code}")

        body = resp.json()
        scope = body.get("scope")
        return Credential(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or current.refresh_token,
            expires_at=self._clock.now() + timedelta(seconds=int(body.get("expires_in", 1800))),
            scopes=tuple(scope.split()) if scope else current.scopes,
        )


async def save_connection(
    db: AsyncSession,
    tenant_id: str,
    *,
    access_token: str,
    refresh_token: str,
    expires_at: datetime,
    scopes: tuple[str, ...] = (),
) -> TenantConnection:
    """Create or replace a tenant's stored connection (tokens encrypted at rest)."""
    conn = await db.scalar(select(TenantConnection).where(TenantConnection.tenant_id == tenant_id))
    if conn is None:
        conn = TenantConnection(tenant_id=tenant_id)
        db.add(conn)
    conn.access_token_enc = encrypt_value(access_token)
    conn.refresh_token_enc = encrypt_value(refresh_token)
    conn.expires_at = expires_at
    conn.scopes = " ".join(scopes)
    conn.is_active = True
    await db.commit()
    return conn
