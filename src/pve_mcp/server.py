"""
Proxmox VE MCP Server: main entry point.

Exposes every tool registered in ``pve_mcp.tools`` over one of two
transports, chosen by MCP_TRANSPORT:

  stdio   line-oriented JSON-RPC on stdin/stdout (default)
  http    stateless Streamable HTTP at http://MCP_HTTP_HOST:MCP_HTTP_PORT/mcp

Run:
    python -m pve_mcp.server
    # or via the installed script:
    pve-mcp
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import sys
from typing import Any, AsyncIterator, Optional

import structlog
import uvicorn
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.server.streamable_http_manager import StreamableHTTPSessionManager
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.routing import Mount
from starlette.types import Receive, Scope, Send

from pve_mcp import __version__
from pve_mcp.client import ApiError, AuthenticationError, ProxmoxClient, TicketCache
from pve_mcp.config import ConfigError, Settings, load_settings
from pve_mcp.tools import TOOLS

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Logging setup: structured JSON to stderr, never to stdout (MCP uses stdout)
# ---------------------------------------------------------------------------

def configure_logging(level: str = "INFO") -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


# ---------------------------------------------------------------------------
# Result helpers
# ---------------------------------------------------------------------------

def _ok(data: object) -> types.CallToolResult:
    """Wrap a result as a JSON TextContent response."""
    text = json.dumps(data, indent=2, default=str)
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)])


def _err(message: str) -> types.CallToolResult:
    """Wrap an error message as a TextContent response flagged as an error."""
    return types.CallToolResult(
        content=[types.TextContent(type="text", text=message)],
        isError=True,
    )


def _validation_summary(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
        for err in exc.errors()
    )


# ---------------------------------------------------------------------------
# Tool dispatcher
# ---------------------------------------------------------------------------

async def run_tool(
    name: str,
    arguments: Optional[dict],
    settings: Settings,
    ticket_cache: Optional[TicketCache] = None,
) -> types.CallToolResult:
    """Validate *arguments*, run the named tool and format its outcome.

    Failures never propagate: they come back as error results reading
    ``"Error <action>: <message>"``.
    """
    log.info("tool.called", tool=name)

    spec = TOOLS.get(name)
    if spec is None:
        return _err(f"Unknown tool: {name!r}")

    try:
        inp = spec.model.model_validate(arguments or {})
        async with ProxmoxClient(settings, ticket_cache) as client:
            result = await spec.handler(client, inp)
    except ValidationError as e:
        log.warning("tool.validation_error", tool=name, errors=e.errors(include_url=False))
        return _err(f"Error {spec.action}: invalid arguments: {_validation_summary(e)}")
    except AuthenticationError as e:
        log.error("tool.auth_error", tool=name, error=str(e))
        return _err(f"Error {spec.action}: {e}")
    except ApiError as e:
        log.error("tool.api_error", tool=name, status=e.status_code, error=str(e))
        return _err(f"Error {spec.action}: {e}")
    except Exception as e:
        log.exception("tool.unexpected_error", tool=name)
        return _err(f"Error {spec.action}: {type(e).__name__}: {e}")

    return _ok(result)


def list_tool_definitions() -> list[types.Tool]:
    return [
        types.Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema())
        for spec in TOOLS.values()
    ]


def create_server(settings: Settings, ticket_cache: Optional[TicketCache] = None) -> Server:
    """Build the MCP server bound to *settings*.

    One ``TicketCache`` is shared by all tool calls; with the default TTL of 0
    it stays empty and every request authenticates afresh.
    """
    app: Server = Server("pve-mcp", version=__version__)
    cache = ticket_cache if ticket_cache is not None else TicketCache(settings.ticket_cache_ttl)

    @app.list_tools()
    async def list_tools() -> list[types.Tool]:
        """Advertise all available tools to the MCP client."""
        return list_tool_definitions()

    # Arguments are validated by the tool's own model so errors keep one format
    @app.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict) -> types.CallToolResult:
        return await run_tool(name, arguments, settings, cache)

    return app


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

async def serve_stdio(app: Server) -> None:
    log.info("server.starting", name="pve-mcp", transport="stdio")
    async with stdio_server() as (read_stream, write_stream):
        await app.run(read_stream, write_stream, app.create_initialization_options())


def create_http_app(app: Server) -> Starlette:
    """Wrap *app* in a Starlette app serving stateless Streamable HTTP on /mcp."""
    session_manager = StreamableHTTPSessionManager(app=app, stateless=True)

    async def handle_mcp(scope: Scope, receive: Receive, send: Send) -> None:
        await session_manager.handle_request(scope, receive, send)

    @contextlib.asynccontextmanager
    async def lifespan(_: Any) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    return Starlette(routes=[Mount("/mcp", app=handle_mcp)], lifespan=lifespan)


def main() -> None:
    configure_logging(os.environ.get("PVE_MCP_LOG_LEVEL", "INFO"))
    try:
        settings = load_settings()
    except ConfigError as e:
        log.error("config.invalid", error=str(e))
        sys.exit(1)

    app = create_server(settings)
    if settings.transport == "http":
        log.info(
            "server.starting",
            name="pve-mcp",
            transport="http",
            host=settings.http_host,
            port=settings.http_port,
        )
        uvicorn.run(
            create_http_app(app),
            host=settings.http_host,
            port=settings.http_port,
            log_level="info",
        )
    else:
        asyncio.run(serve_stdio(app))


if __name__ == "__main__":
    main()
