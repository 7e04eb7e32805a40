"""Upstream client for the Anthropic Messages API.

Thin httpx wrapper: auth headers, timeouts, and translation of non-2xx
responses and transport failures into UpstreamError. No retries here;
retry policy belongs to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from claudebridge.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_OAUTH_BETA = "oauth-2025-04-20"


class UpstreamError(Exception):
    """Non-2xx upstream response or transport failure."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Anthropic API error ({status_code}): {body[:500]}")
        self.status_code = status_code
        self.body = body


class UpstreamAuthError(UpstreamError):
    """Upstream rejected our credentials (HTTP 401)."""


def _error_for(status_code: int, body: str) -> UpstreamError:
    if status_code == 401:
        return UpstreamAuthError(status_code, body)
    return UpstreamError(status_code, body)


def build_headers(settings: Settings) -> dict[str, str]:
    """Select auth headers.

    OAT tokens (sk-ant-oat*) require Bearer auth plus the OAuth beta
    header. Regular API keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    betas = [b.strip() for b in settings.anthropic_beta.split(",") if b.strip()]

    api_key = settings.anthropic_api_key or ""
    auth_token = settings.anthropic_auth_token or ""

    if auth_token:
        headers["authorization"] = f"Bearer {auth_token}"
        if "sk-ant-oat" in auth_token:
            betas.insert(0, _OAUTH_BETA)
    elif api_key:
        if "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            betas.insert(0, _OAUTH_BETA)
        else:
            headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "upstream calls will fail"
        )

    if betas:
        headers["anthropic-beta"] = ",".join(betas)
    return headers


class UpstreamClient:
    """Owns one httpx.AsyncClient for the lifetime of the app."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(
            max_connections=50,
            max_keepalive_connections=10,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_headers(settings),
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )
        logger.info("Upstream client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")
        return self._http

    async def create_message(self, body: dict[str, Any]) -> dict[str, Any]:
        """POST /v1/messages without streaming. Returns the decoded response."""
        http = self._client()
        try:
            response = await http.post("/v1/messages", json=body)
        except httpx.HTTPError as e:
            raise UpstreamError(502, f"HTTP error: {e}") from e

        if response.status_code != 200:
            logger.error("Upstream error %d: %s", response.status_code, response.text[:500])
            raise _error_for(response.status_code, response.text)
        return response.json()

    @asynccontextmanager
    async def stream_message(self, body: dict[str, Any]) -> AsyncIterator[httpx.Response]:
        """POST /v1/messages with stream=true.

        Raises UpstreamError before yielding if the upstream refuses the
        request. Leaving the context closes the upstream response.
        """
        http = self._client()
        payload = {**body, "stream": True}
        try:
            async with http.stream(
                "POST",
                "/v1/messages",
                json=payload,
                headers={"accept": "text/event-stream"},
            ) as response:
                if response.status_code != 200:
                    error_body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error("Upstream error %d: %s", response.status_code, error_body[:500])
                    raise _error_for(response.status_code, error_body)
                yield response
        except httpx.HTTPError as e:
            raise UpstreamError(502, f"HTTP error: {e}") from e
