from __future__ import annotations

import asyncio
import os
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .cache import CacheEntry, EtagCacheManager
from .config import Settings
from .credentials import CredentialState
from .errors import ApiError, decode_body
from .models import ApiResponse, RefreshTokenResponse
from .retry import MAX_RETRIES, wait_retry_after_or_fibonacci

logger = structlog.get_logger()

SDK_VERSION = "1.0.0"
REFRESH_PATH = "/api/v1/auth/refresh"
MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_MAX_AGE = re.compile(r"max-age=(\d+)")

Sleep = Callable[[float], Awaitable[None]]


def parse_max_age(cache_control: Optional[str]) -> Optional[int]:
    if not cache_control:
        return None
    m = _MAX_AGE.search(cache_control)
    return int(m.group(1)) if m else None


def parent_key(key: str) -> Optional[str]:
    """``/documents/1`` -> ``/documents``; None when there is no parent."""
    path = key.split("?", 1)[0]
    parent = path[: path.rfind("/")]
    return parent or None


def _read_once(value: Any) -> Any:
    if hasattr(value, "read"):
        return value.read()
    return value


def buffer_content(content: Any) -> Any:
    """Materialize a streamed body so every retry sends the same bytes."""
    if content is None or isinstance(content, (bytes, str)):
        return content
    if hasattr(content, "read"):
        return content.read()
    return b"".join(content)


def buffer_files(files: Any) -> Any:
    """Read file objects in an httpx ``files`` mapping/list into memory."""
    if files is None:
        return None
    items = files.items() if isinstance(files, dict) else files
    buffered = []
    for name, value in items:
        if isinstance(value, tuple):
            value = (value[0], _read_once(value[1]), *value[2:])
        elif isinstance(getattr(value, "name", None), str):
            # keep the filename httpx would have taken from the file object
            value = (os.path.basename(value.name), value.read())
        else:
            value = _read_once(value)
        buffered.append((name, value))
    return buffered


@dataclass
class RequestContext:
    """Everything needed to (re)send one logical request.

    ``attempt`` counts retries already made. ``refresh_replay`` marks requests
    replayed after a token refresh (and the refresh call itself): they are
    never retried and never trigger another refresh.
    """

    method: str
    url: str
    params: Optional[dict[str, Any]] = None
    json: Any = None
    content: Any = None
    data: Optional[dict[str, Any]] = None
    files: Any = None
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    resource_key: str = ""
    cached_entry: Optional[CacheEntry] = None
    attempt: int = 0
    max_retries: int = MAX_RETRIES
    refresh_replay: bool = False

    @property
    def request_id(self) -> Optional[str]:
        return self.headers.get("x-request-id")


RequestStep = Callable[[RequestContext, httpx.Request], None]
ResponseStep = Callable[[RequestContext, httpx.Response, ApiResponse], None]


class Transport:
    """Shared HTTP pipeline used by every API caller.

    Request steps run before each send (request id, auth, conditional
    validator). Response steps run on 2xx (cache store, cache invalidation).
    Failures go through retry with backoff, then the refresh-and-replay flow
    for 401s, and reach the caller as :class:`ApiError`.
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
        self.credentials = CredentialState(
            access_token=settings.access_token,
            api_key=settings.api_key,
            refresh_token=settings.refresh_token,
        )
        if cache is None and settings.enable_etag_cache:
            cache = EtagCacheManager(
                default_ttl_ms=settings.etag_cache_default_ttl_ms,
                max_size=settings.etag_cache_max_size,
                debug=settings.debug,
            )
        self.cache = cache
        self._debug = settings.debug
        self._sleep = sleep
        self._base_path = httpx.URL(settings.base_url_str()).path.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=settings.base_url_str(),
            timeout=httpx.Timeout(settings.timeout_s()),
            headers={"Accept": "application/json", "User-Agent": f"signature-sdk-python/{SDK_VERSION}"},
            transport=transport,
        )
        self._log = logger.bind(component="transport")

        self.request_steps: list[RequestStep] = [
            self._attach_request_id,
            self._attach_auth,
            self._attach_conditional_validator,
        ]
        self.response_steps: list[ResponseStep] = [
            self._store_validator,
            self._invalidate_mutated,
        ]

    async def __aenter__(self) -> "Transport":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # -- credentials

    def set_access_token(self, token: str) -> None:
        self.credentials.access_token = token

    def set_refresh_token(self, token: str) -> None:
        self.credentials.refresh_token = token

    def clear_refresh_token(self) -> None:
        self.credentials.refresh_token = None

    # -- public request API

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Any = None,
        content: Any = None,
        data: Optional[dict[str, Any]] = None,
        files: Any = None,
        headers: Optional[dict[str, str]] = None,
        if_match: Optional[str] = None,
    ) -> ApiResponse:
        ctx = RequestContext(
            method=method.upper(),
            url=url,
            params=params,
            json=json,
            content=buffer_content(content),
            data=data,
            files=buffer_files(files),
            headers=httpx.Headers(headers or {}),
        )
        if if_match:
            ctx.headers["If-Match"] = if_match
        try:
            return await self._dispatch(ctx)
        except ApiError as exc:
            self._log.warning(
                "request_failed",
                method=ctx.method,
                url=ctx.url,
                status=exc.status,
                message=exc.message,
                request_id=ctx.request_id,
            )
            raise

    async def get(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> ApiResponse:
        return await self.request("DELETE", url, **kwargs)

    async def exchange_refresh_token(self, refresh_token: str) -> RefreshTokenResponse:
        """POST the refresh token and store the returned token pair."""
        ctx = RequestContext(method="POST", url=REFRESH_PATH, json={"refreshToken": refresh_token}, refresh_replay=True)
        response = await self._send_with_retry(ctx)
        try:
            tokens = RefreshTokenResponse.model_validate(response.data)
        except ValidationError as e:
            raise ApiError(
                f"Malformed refresh response: {e}",
                response.status_code,
                "Invalid Response",
                code="INVALID_REFRESH_RESPONSE",
                request_id=ctx.request_id,
            ) from e
        self.set_access_token(tokens.access_token)
        self.set_refresh_token(tokens.refresh_token)
        return tokens

    def resource_key(self, url: httpx.URL) -> str:
        """Cache key: request path relative to the base URL, query dropped."""
        path = url.path
        if self._base_path and path.startswith(self._base_path):
            path = path[len(self._base_path):] or "/"
        return path

    # -- pipeline

    async def _dispatch(self, ctx: RequestContext) -> ApiResponse:
        try:
            return await self._send_with_retry(ctx)
        except ApiError as exc:
            if not exc.is_authentication_error() or ctx.refresh_replay:
                raise
            return await self._refresh_and_replay(ctx, exc)

    async def _send_with_retry(self, ctx: RequestContext) -> ApiResponse:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(ctx.max_retries + 1),
            wait=wait_retry_after_or_fibonacci(),
            retry=retry_if_exception(lambda exc: self._should_retry(ctx, exc)),
            before_sleep=lambda state: self._on_retry(ctx, state),
            sleep=self._sleep,
            reraise=True,
        )
        result: ApiResponse
        async for attempt in retrying:
            with attempt:
                result = await self._send_once(ctx)
        return result

    @staticmethod
    def _should_retry(ctx: RequestContext, exc: BaseException) -> bool:
        return isinstance(exc, ApiError) and exc.is_retryable() and not ctx.refresh_replay

    def _on_retry(self, ctx: RequestContext, state: RetryCallState) -> None:
        ctx.attempt = state.attempt_number
        if self._debug:
            error = state.outcome.exception() if state.outcome is not None else None
            self._log.debug(
                "retry_scheduled",
                method=ctx.method,
                url=ctx.url,
                attempt=ctx.attempt,
                max_retries=ctx.max_retries,
                delay_s=state.next_action.sleep if state.next_action else None,
                status=getattr(error, "status", None),
                request_id=ctx.request_id,
            )

    async def _send_once(self, ctx: RequestContext) -> ApiResponse:
        request = self._http.build_request(
            ctx.method,
            ctx.url,
            params=ctx.params,
            json=ctx.json,
            content=ctx.content,
            data=ctx.data,
            files=ctx.files,
            headers=ctx.headers,
        )
        ctx.resource_key = self.resource_key(request.url)
        for step in self.request_steps:
            step(ctx, request)

        if self._debug:
            self._log.debug(
                "request_sent", method=ctx.method, url=str(request.url), attempt=ctx.attempt, request_id=ctx.request_id
            )
        try:
            response = await self._http.send(request)
        except httpx.TransportError as e:
            raise ApiError.from_transport_error(e) from e

        if response.status_code == 304 and ctx.cached_entry is not None:
            return self._serve_cached(ctx, ctx.cached_entry, response)
        if not response.is_success:
            raise ApiError.from_response(response)

        result = ApiResponse(
            status_code=response.status_code,
            data=decode_body(response),
            headers=response.headers,
            from_cache=False,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
            request_id=ctx.request_id,
        )
        for step in self.response_steps:
            step(ctx, response, result)
        if self._debug:
            self._log.debug("response_received", status=response.status_code, url=str(request.url), request_id=ctx.request_id)
        return result

    def _serve_cached(self, ctx: RequestContext, entry: CacheEntry, response: httpx.Response) -> ApiResponse:
        if self._debug:
            self._log.debug("response_not_modified", key=ctx.resource_key, etag=entry.etag, request_id=ctx.request_id)
        return ApiResponse(
            status_code=304,
            data=entry.data,
            headers=response.headers,
            from_cache=True,
            etag=entry.etag,
            last_modified=entry.last_modified,
            request_id=ctx.request_id,
        )

    async def _refresh_and_replay(self, ctx: RequestContext, error: ApiError) -> ApiResponse:
        creds = self.credentials
        if creds.is_refreshing:
            # a refresh is already in flight: wait for it instead of starting another
            await creds.enqueue()
            ctx.refresh_replay = True
            return await self._send_with_retry(ctx)

        if not creds.refresh_token:
            raise error

        ctx.refresh_replay = True
        creds.is_refreshing = True
        try:
            tokens = await self.exchange_refresh_token(creds.refresh_token)
        except ApiError as refresh_error:
            rejected = creds.reject(refresh_error)
            creds.refresh_token = None
            self._log.warning("token_refresh_failed", status=refresh_error.status, queued=rejected)
            raise
        except asyncio.CancelledError:
            creds.reject(ApiError.authentication_error("Token refresh was cancelled"))
            raise
        finally:
            creds.is_refreshing = False

        released = creds.release(tokens.access_token)
        if self._debug:
            self._log.debug("token_refreshed", released=released, request_id=ctx.request_id)
        return await self._send_with_retry(ctx)

    # -- request steps

    def _attach_request_id(self, ctx: RequestContext, request: httpx.Request) -> None:
        if "x-request-id" not in ctx.headers:
            ctx.headers["X-Request-ID"] = uuid.uuid4().hex
        request.headers["X-Request-ID"] = ctx.headers["x-request-id"]

    def _attach_auth(self, ctx: RequestContext, request: httpx.Request) -> None:
        for name, value in self.credentials.auth_headers().items():
            if ctx.refresh_replay or name not in ctx.headers:
                request.headers[name] = value

    def _attach_conditional_validator(self, ctx: RequestContext, request: httpx.Request) -> None:
        ctx.cached_entry = None
        if self.cache is None or ctx.method != "GET":
            return
        entry = self.cache.get(ctx.resource_key)
        if entry is not None:
            request.headers["If-None-Match"] = entry.etag
            ctx.cached_entry = entry

    # -- response steps

    def _store_validator(self, ctx: RequestContext, response: httpx.Response, result: ApiResponse) -> None:
        if self.cache is None or ctx.method != "GET" or not result.etag:
            return
        self.cache.set(
            ctx.resource_key,
            result.etag,
            result.data,
            ttl_seconds=parse_max_age(response.headers.get("cache-control")),
            last_modified=result.last_modified,
        )

    def _invalidate_mutated(self, ctx: RequestContext, response: httpx.Response, result: ApiResponse) -> None:
        if self.cache is None or ctx.method not in MUTATING_METHODS:
            return
        self.cache.invalidate(ctx.resource_key)
        parent = parent_key(ctx.resource_key)
        if parent:
            self.cache.invalidate(parent)
