from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class CredentialState:
    """Tokens and refresh coordination for one transport.

    ``pending`` holds one future per caller that hit a 401 while a refresh was
    already in flight. They are settled in arrival order when it finishes.
    """

    access_token: Optional[str] = None
    api_key: Optional[str] = None
    refresh_token: Optional[str] = None
    is_refreshing: bool = False
    pending: list[asyncio.Future[str]] = field(default_factory=list)

    def auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        return headers

    def enqueue(self) -> asyncio.Future[str]:
        fut: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self.pending.append(fut)
        return fut

    def release(self, token: str) -> int:
        """Resolve every waiting caller with the new access token."""
        waiters, self.pending = self.pending, []
        for fut in waiters:
            if not fut.done():
                fut.set_result(token)
        return len(waiters)

    def reject(self, error: BaseException) -> int:
        waiters, self.pending = self.pending, []
        for fut in waiters:
            if not fut.done():
                fut.set_exception(error)
        return len(waiters)
