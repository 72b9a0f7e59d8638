"""MCP server entry point for the browser control plane.

Exposes the session tools over the Model Context Protocol:
start_session, session_status, list_sessions, execute_action, close_session.

The control plane HTTP service (aiohttp on localhost:8024) is auto-started
as part of the MCP server lifecycle, unless one is already listening.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from aiohttp.web import AppRunner, TCPSite
from mcp.server.fastmcp import FastMCP

from .config import CONTROL_PLANE_HOST, CONTROL_PLANE_PORT, ensure_dirs
from .tools.session_tools import close_session, execute_action, list_sessions, session_status, start_session

# Configure logging to stderr (stdout is reserved for MCP JSON-RPC)
logging.basicConfig(
    stream=sys.stderr,
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("browser-control")

ensure_dirs()


# ── Lifespan: auto-start control plane ───────────────────────────────────────


@asynccontextmanager
async def lifespan(server: FastMCP):
    """Start the control plane HTTP service alongside the MCP server."""
    from .control_plane.manager import create_app

    app = create_app()
    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, CONTROL_PLANE_HOST, CONTROL_PLANE_PORT)
    managed = False
    try:
        await site.start()
        logger.info("Control plane auto-started on %s:%s", CONTROL_PLANE_HOST, CONTROL_PLANE_PORT)
        managed = True
    except OSError:
        # Port already in use, assume the control plane was started manually
        logger.info("Control plane already running on %s:%s", CONTROL_PLANE_HOST, CONTROL_PLANE_PORT)
        await runner.cleanup()

    try:
        yield {}
    finally:
        if managed:
            await runner.cleanup()
            logger.info("Control plane stopped.")


# ── MCP Server ───────────────────────────────────────────────────────────────

mcp = FastMCP(
    "browser-control",
    lifespan=lifespan,
    instructions=(
        "Browser control plane - launch and drive isolated browser sessions. "
        "The control plane starts automatically with this server. "
        "Call start_session with a campaign id to launch a browser, then "
        "execute_action to click, type or navigate in it. "
        "Use session_status and list_sessions to inspect live sessions, "
        "and close_session when done."
    ),
)


@mcp.tool()
async def tool_start_session(campaign_id: str, session_token: str = "", target_urls: Optional[list[str]] = None) -> str:
    """Launch a browser session.

    Args:
        campaign_id: Campaign the session belongs to.
        session_token: Optional token to reuse; a new one is generated when empty.
        target_urls: Ordered candidate URLs to try; configured defaults when omitted.
    """
    return await start_session(campaign_id, session_token, target_urls)


@mcp.tool()
async def tool_session_status(session_token: str) -> str:
    """Show state, current URL, viewer count and capture count for one session."""
    return await session_status(session_token)


@mcp.tool()
async def tool_list_sessions() -> str:
    """List every live session."""
    return await list_sessions()


@mcp.tool()
async def tool_execute_action(session_token: str, action: str, params: Optional[dict] = None) -> str:
    """Apply a remote-control action to a session.

    Args:
        session_token: Target session.
        action: One of click, type, key, clear, navigate, scroll, screenshot,
                getUrl, getTitle, focus.
        params: Action parameters, e.g. {"selector": "#next"} or {"x": 10, "y": 20}.
    """
    return await execute_action(session_token, action, params)


@mcp.tool()
async def tool_close_session(session_token: str) -> str:
    """Close a session and release its browser."""
    return await close_session(session_token)


# ── Entry Point ──────────────────────────────────────────────────────────────


def main():
    """Run the MCP server on STDIO transport."""
    logger.info("Starting browser control MCP server...")
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
