from __future__ import annotations

import asyncio
from typing import Any, Optional

import httpx

from .cache import EtagCacheManager
from .config import Settings
from .models import (
    AuthResponse,
    CurrentUser,
    HealthCheck,
    LivenessStatus,
    ReadinessStatus,
    RefreshTokenResponse,
)
from .transport import Sleep, Transport


class SignatureClient:
    """Entry point for the signature API.

    Resource services are expected to issue their calls through ``transport``;
    this class only carries the auth and health endpoints.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        cache: Optional[EtagCacheManager] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings
        self.transport = Transport(settings, transport=transport, cache=cache, sleep=sleep)

    @classmethod
    def from_env(cls, **kwargs: Any) -> "SignatureClient":
        return cls(Settings(), **kwargs)

    async def __aenter__(self) -> "SignatureClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    @property
    def cache(self) -> Optional[EtagCacheManager]:
        return self.transport.cache

    def set_access_token(self, token: str) -> None:
        self.transport.set_access_token(token)

    def set_refresh_token(self, token: str) -> None:
        """Enables automatic renewal of the access token on 401."""
        self.transport.set_refresh_token(token)

    async def login(self, email: str, password: str) -> AuthResponse:
        resp = await self.transport.post("/api/v1/auth/login", json={"email": email, "password": password})
        auth = AuthResponse.model_validate(resp.data)
        self.transport.set_access_token(auth.tokens.access_token)
        self.transport.set_refresh_token(auth.tokens.refresh_token)
        return auth

    async def refresh_token(self, refresh_token: str) -> RefreshTokenResponse:
        return await self.transport.exchange_refresh_token(refresh_token)

    async def logout(self, refresh_token: str) -> None:
        """Revoke one refresh token. The current access token stays valid until it expires."""
        await self.transport.post("/api/v1/auth/logout", json={"refreshToken": refresh_token})
        self.transport.clear_refresh_token()

    async def logout_all(self) -> None:
        await self.transport.post("/api/v1/auth/logout-all")
        self.transport.clear_refresh_token()

    async def get_current_user(self) -> CurrentUser:
        resp = await self.transport.get("/api/v1/auth/me")
        return CurrentUser.model_validate(resp.data)

    async def health_check(self) -> HealthCheck:
        resp = await self.transport.get("/api/v1/health")
        return HealthCheck.model_validate(resp.data)

    async def health_check_ready(self) -> ReadinessStatus:
        resp = await self.transport.get("/api/v1/health/ready")
        return ReadinessStatus.model_validate(resp.data)

    async def health_check_live(self) -> LivenessStatus:
        resp = await self.transport.get("/api/v1/health/live")
        return LivenessStatus.model_validate(resp.data)
