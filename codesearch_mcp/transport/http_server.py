"""HTTP server exposing the code search MCP server over SSE transport."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import logging
from typing import TYPE_CHECKING

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route

from codesearch_mcp.transport.sessions import SessionRegistry, SessionTransport

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.types import Receive, Scope, Send

    from codesearch_mcp.config import CodeSearchConfig
    from codesearch_mcp.server import CodeSearchMcpServer

logger = logging.getLogger("codesearch-mcp.http")


class _SseEndpoint:
    """Raw ASGI endpoint; the transport sends the streaming response itself."""

    def __init__(self, http_server: MCPHttpServer):
        self.http_server = http_server

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.http_server.handle_sse(scope, receive, send)


class MCPHttpServer:
    """
    HTTP server that exposes MCP over SSE transport.

    Each ``GET /sse`` connection runs its own MCP server loop on its own
    session; ``POST /messages/?session_id=...`` routes client messages to
    it through the injected registry.

    Example:
        registry = SessionRegistry()
        server = MCPHttpServer(mcp_server, config, registry)
        server.run()  # Blocks, serving HTTP/SSE
    """

    def __init__(
        self,
        mcp_server: CodeSearchMcpServer,
        config: CodeSearchConfig,
        registry: SessionRegistry,
        host: str | None = None,
        port: int | None = None,
    ):
        """
        Initialize HTTP server.

        Args:
            mcp_server: The MCP server whose loop runs on every session
            config: Server configuration
            registry: Session routing table, shared by all connections
            host: Bind address (default from config)
            port: Port number (default from config)
        """
        self.mcp_server = mcp_server
        self.config = config
        self.registry = registry
        self.host = host or config.server.host
        self.port = port or config.server.port

        self.transport = SessionTransport(
            config.sessions.endpoint,
            registry,
            keepalive_interval=config.sessions.keepalive_interval,
        )

        self.app = self._create_app()

        logger.info(f"HTTP server initialized (will bind to {self.host}:{self.port})")

    def _create_app(self) -> Starlette:
        """Create the Starlette ASGI application."""
        routes = [
            Route("/health", endpoint=self._health, methods=["GET"]),
            Route("/sse", endpoint=_SseEndpoint(self), methods=["GET"]),
            Mount(self.config.sessions.endpoint, app=self.transport.handle_post_message),
        ]
        if self.config.observability.metrics_enabled:
            routes.append(
                Route(self.config.observability.metrics_path, endpoint=self._metrics, methods=["GET"])
            )

        return Starlette(
            routes=routes,
            middleware=[
                Middleware(
                    CORSMiddleware,
                    allow_origins=["*"],
                    allow_methods=["GET", "POST"],
                    allow_headers=["*"],
                )
            ],
            lifespan=self._lifespan,
        )

    @asynccontextmanager
    async def _lifespan(self, app: Starlette) -> AsyncIterator[None]:
        logger.info("HTTP server starting up")
        try:
            yield
        finally:
            logger.info(f"HTTP server shutting down ({len(self.registry)} sessions open)")

    async def _health(self, request: Request) -> JSONResponse:
        """
        Health check endpoint, no side effects.

        Returns:
            {"status": "ok", "server": "codesearch-mcp", "repos": [...], "sessions": <count>}
        """
        return JSONResponse(
            {
                "status": "ok",
                "server": "codesearch-mcp",
                "transport": "sse",
                "repos": self.mcp_server.repos.names(),
                "sessions": len(self.registry),
            }
        )

    async def _metrics(self, request: Request) -> JSONResponse:
        stats = self.mcp_server.obs.get_stats()
        stats["sessions"] = len(self.registry)
        return JSONResponse(stats)

    async def handle_sse(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Handle an SSE connection - this is where the MCP protocol runs.

        The MCP server loop is bound to this connection's session and ends
        when the connection closes.
        """
        client = scope.get("client")
        logger.info(f"SSE connection from {client}")

        server = self.mcp_server.server
        async with self.transport.connect_sse(scope, receive, send) as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())

        logger.info(f"SSE connection closed from {client}")

    def run(self, host: str | None = None, port: int | None = None) -> None:
        """
        Run the HTTP server (blocks).

        Args:
            host: Override bind address
            port: Override port number
        """
        import uvicorn

        bind_host = host or self.host
        bind_port = port or self.port

        logger.info(f"Starting HTTP server on {bind_host}:{bind_port}")

        uvicorn.run(
            self.app,
            host=bind_host,
            port=bind_port,
            log_level=self.config.server.log_level,
        )
