"""REST API for the gateway.

Endpoints:
  POST /v1/chat/completions - OpenAI-format chat, converted to/from Anthropic
  POST /v1/messages         - Native Anthropic passthrough (with truncation)
  GET  /health              - Health check
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route
from starlette.types import Receive, Scope, Send

from claudebridge.api.convert import convert_request, convert_response
from claudebridge.api.streaming import convert_stream
from claudebridge.api.truncation import TranscriptTruncator, parse_token_limit_error
from claudebridge.api.upstream import UpstreamAuthError, UpstreamClient, UpstreamError
from claudebridge.config import Settings

logger = logging.getLogger(__name__)

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}


class UpstreamStreamingResponse(StreamingResponse):
    """StreamingResponse that owns the upstream stream it relays.

    The exit stack is closed after the ASGI call, whether the body was
    sent, the client went away, or sending the headers failed.
    """

    def __init__(self, content: Any, stack: AsyncExitStack, **kwargs: Any) -> None:
        super().__init__(content, **kwargs)
        self._stack = stack

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._stack.aclose()


def create_app(
    upstream: UpstreamClient,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    truncator = TranscriptTruncator(settings)

    def check_client_key(request: Request) -> JSONResponse | None:
        if not settings.client_key_required:
            return None
        auth = request.headers.get("authorization", "")
        presented = auth.split(" ", 1)[1] if " " in auth else request.headers.get("x-api-key", "")
        if hmac.compare_digest(presented.encode(), settings.api_key.encode()):
            return None
        return JSONResponse(
            {
                "error": "Authentication required",
                "message": "API key does not match BRIDGE_API_KEY.",
            },
            status_code=401,
        )

    async def read_body(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict) or not body.get("messages"):
            return JSONResponse({"error": "Missing required field: messages"}, status_code=400)
        return body

    def maybe_truncate(payload: dict[str, Any]) -> None:
        if settings.truncation_enabled and truncator.truncate(payload):
            logger.info("Truncated transcript to %d messages", len(payload["messages"]))

    async def chat_completions(request: Request) -> Response:
        """POST /v1/chat/completions - OpenAI-format chat."""
        denied = check_client_key(request)
        if denied is not None:
            return denied
        body = await read_body(request)
        if isinstance(body, JSONResponse):
            return body

        try:
            streaming = body.get("stream") is True
            payload = convert_request(body, settings)
            payload.pop("stream", None)
            maybe_truncate(payload)
            logger.info(
                "Forwarding chat completion: model=%s stream=%s messages=%d tools=%d",
                payload.get("model"),
                streaming,
                len(payload["messages"]),
                len(payload.get("tools") or []),
            )

            if streaming:
                return await open_stream(payload, convert=True)

            data = await upstream.create_message(payload)
            return JSONResponse(convert_response(data))
        except UpstreamError as e:
            return upstream_error_response(e)
        except Exception as e:
            logger.error("Chat completion error: %s", e)
            return JSONResponse({"error": "Proxy error", "details": str(e)}, status_code=500)

    async def messages(request: Request) -> Response:
        """POST /v1/messages - Anthropic-format passthrough."""
        denied = check_client_key(request)
        if denied is not None:
            return denied
        body = await read_body(request)
        if isinstance(body, JSONResponse):
            return body

        try:
            streaming = body.pop("stream", False) is True
            maybe_truncate(body)
            if streaming:
                return await open_stream(body, convert=False)
            return JSONResponse(await upstream.create_message(body))
        except UpstreamError as e:
            return upstream_error_response(e)
        except Exception as e:
            logger.error("Messages error: %s", e)
            return JSONResponse({"error": "Proxy error", "details": str(e)}, status_code=500)

    async def open_stream(payload: dict[str, Any], convert: bool) -> StreamingResponse:
        """Open the upstream stream before responding, so refusals keep their status.

        The upstream response is released when the client response finishes,
        even if the body iterator never started.
        """
        stack = AsyncExitStack()
        response = await stack.enter_async_context(upstream.stream_message(payload))

        async def frames() -> AsyncIterator[str | bytes]:
            try:
                if convert:
                    async for frame in convert_stream(response.aiter_text()):
                        yield frame
                else:
                    async for data in response.aiter_bytes():
                        yield data
            except Exception as e:
                logger.error("Stream error: %s", e)
            finally:
                await stack.aclose()

        return UpstreamStreamingResponse(
            frames(),
            stack,
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy"})

    routes = [
        Route("/v1/chat/completions", chat_completions, methods=["POST"]),
        Route("/v1/messages", messages, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)


def upstream_error_response(error: UpstreamError) -> Response:
    """Map an upstream failure to the client-facing response."""
    if isinstance(error, UpstreamAuthError):
        return JSONResponse(
            {
                "error": "Authentication failed",
                "message": "Upstream rejected the credentials. Refresh ANTHROPIC_AUTH_TOKEN or ANTHROPIC_API_KEY.",
                "details": error.body,
            },
            status_code=401,
        )

    limit = parse_token_limit_error(error.body)
    if limit is not None:
        return JSONResponse(
            {
                "error": "Prompt too long",
                "message": (
                    f"Prompt is {limit.actual_tokens} tokens, the model accepts "
                    f"{limit.max_tokens}. Start a new conversation or remove context."
                ),
                "actual_tokens": limit.actual_tokens,
                "max_tokens": limit.max_tokens,
                "details": error.body,
            },
            status_code=error.status_code,
        )

    return Response(error.body, status_code=error.status_code, media_type="text/plain")
