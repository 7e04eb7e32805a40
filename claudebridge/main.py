"""claudebridge entry point.

Settings -> UpstreamClient -> App -> Uvicorn

Uses Starlette lifespan to open and close the upstream httpx client on
the same event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from claudebridge.api.rest import create_app
from claudebridge.api.upstream import UpstreamClient
from claudebridge.config import Settings

logger = logging.getLogger(__name__)


def build_app(settings: Settings, upstream: UpstreamClient | None = None) -> Starlette:
    """Build the Starlette app with the upstream client lifecycle attached."""
    upstream = upstream or UpstreamClient(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await upstream.start()
        app.state.upstream = upstream
        logger.info(
            "claudebridge started: token_limit=%d truncation=%s thinking=%s",
            settings.token_limit,
            "enabled" if settings.truncation_enabled else "disabled",
            "enabled" if settings.thinking_enabled else "disabled",
        )
        yield
        await upstream.close()
        logger.info("claudebridge shutdown complete.")

    return create_app(upstream, settings, lifespan=lifespan)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting claudebridge on %s:%d", settings.host, settings.port)
    logger.info("Upstream: %s", settings.api_base_url)
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "all requests will fail upstream"
        )
    if not settings.client_key_required:
        logger.warning("BRIDGE_API_KEY not set -- accepting unauthenticated clients")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
        timeout_keep_alive=75,
    )


if __name__ == "__main__":
    main()
