from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class RefreshTokenResponse(WireModel):
    access_token: str
    refresh_token: str
    expires_in: int = Field(..., ge=1)


class AuthTokens(RefreshTokenResponse):
    pass


class AuthUser(WireModel):
    id: str | int
    name: Optional[str] = None
    email: Optional[str] = None


class AuthResponse(WireModel):
    user: AuthUser
    tokens: AuthTokens


class CurrentUser(WireModel):
    id: str | int
    name: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[str] = None


class HealthCheck(WireModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    dependencies: dict[str, Any] = Field(default_factory=dict)
    metrics: dict[str, Any] = Field(default_factory=dict)


class ReadinessStatus(WireModel):
    ready: bool


class LivenessStatus(WireModel):
    alive: bool


@dataclass(frozen=True)
class ApiResponse:
    """Successful response plus cache metadata.

    ``from_cache`` is true when the payload was served locally after a 304.
    """

    status_code: int
    data: Any
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    from_cache: bool = False
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    request_id: Optional[str] = None
