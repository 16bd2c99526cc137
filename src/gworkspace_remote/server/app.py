"""Starlette application assembly.

Wires the OAuth gateway routes, the request gate and the MCP streamable HTTP
transport into a single ASGI app served by uvicorn.
"""

import contextlib
import logging
from collections.abc import AsyncIterator

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from gworkspace_remote.auth.authorization import AuthorizationServer
from gworkspace_remote.auth.broker import CredentialBroker
from gworkspace_remote.auth.middleware import RequestGateMiddleware
from gworkspace_remote.auth.rate_limit import RateLimiter
from gworkspace_remote.auth.token_storage import TokenStorage
from gworkspace_remote.config import Settings, get_settings
from gworkspace_remote.server import routes
from gworkspace_remote.server.google_workspace_server import GoogleWorkspaceServer

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    broker: CredentialBroker | None = None,
    auth_server: AuthorizationServer | None = None,
    rate_limiter: RateLimiter | None = None,
) -> Starlette:
    """Build the gateway application.

    Args:
        settings: Configuration; defaults to the environment singleton.
        broker: Google credential broker; built from settings if omitted.
        auth_server: Authorization flow; built from settings if omitted.
        rate_limiter: Request counter; built from settings if omitted.

    Returns:
        Configured Starlette application.
    """
    settings = settings or get_settings()
    broker = broker or CredentialBroker(settings, TokenStorage(settings.token_store_path))
    auth_server = auth_server or AuthorizationServer.from_settings(settings)
    rate_limiter = rate_limiter or RateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )

    workspace = GoogleWorkspaceServer(broker, settings)
    session_manager = StreamableHTTPSessionManager(
        app=workspace.server,
        event_store=None,
        json_response=True,
        stateless=True,
    )

    async def handle_streamable_http(scope: Scope, receive: Receive, send: Send) -> None:
        await session_manager.handle_request(scope, receive, send)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        """Run the MCP session manager for the lifetime of the app."""
        async with session_manager.run():
            logger.info("Google Workspace MCP gateway started at %s", settings.public_base_url)
            try:
                yield
            finally:
                await workspace.close()
                await broker.close()
                logger.info("Google Workspace MCP gateway shutting down")

    app = Starlette(
        routes=[
            Route("/", endpoint=routes.index, methods=["GET"]),
            Route(
                "/.well-known/oauth-authorization-server",
                endpoint=routes.authorization_server_metadata,
                methods=["GET"],
            ),
            Route(
                "/.well-known/oauth-protected-resource",
                endpoint=routes.protected_resource_metadata,
                methods=["GET"],
            ),
            Route("/api/oauth/authorize", endpoint=routes.authorize_get, methods=["GET"]),
            Route("/api/oauth/authorize", endpoint=routes.authorize_post, methods=["POST"]),
            Route("/api/oauth/token", endpoint=routes.token_endpoint, methods=["POST"]),
            Route("/api/oauth/register", endpoint=routes.register_client, methods=["POST"]),
            Route("/auth/login", endpoint=routes.google_login, methods=["GET"]),
            Route("/auth/callback", endpoint=routes.google_callback, methods=["GET"]),
            Mount("/api/mcp", app=handle_streamable_http),
        ],
        middleware=[
            Middleware(
                RequestGateMiddleware,
                rate_limiter=rate_limiter,
                verifier=auth_server.verifier,
                issuer=auth_server.issuer,
            )
        ],
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.broker = broker
    app.state.auth_server = auth_server
    app.state.rate_limiter = rate_limiter
    app.state.workspace = workspace
    return app
