"""Transport layer - SSE session multiplexing over HTTP."""

from codesearch_mcp.transport.http_server import MCPHttpServer
from codesearch_mcp.transport.sessions import Session, SessionRegistry, SessionTransport

__all__ = ["MCPHttpServer", "Session", "SessionRegistry", "SessionTransport"]
