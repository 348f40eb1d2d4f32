from __future__ import annotations

import os
from typing import TYPE_CHECKING

from auth.token_store import FileTokenStore
from kitemcp.constants import LOGGER, SERVER_NAME
from kitemcp.env import get_env_int, load_env, load_settings, setup_logging
from kitemcp.http import build_http_client
from kitemcp.kite_client import KiteClient
from kitemcp.mcp_app import log_auth_status, mount_health_route
from kitemcp.tools import register_tools

if TYPE_CHECKING:
    from fastmcp import FastMCP


def create_mcp() -> "FastMCP":
    from fastmcp import FastMCP

    load_env()
    debug_enabled = setup_logging()
    settings = load_settings()

    token_store = FileTokenStore(settings.token_path)
    client = build_http_client(
        base_url=settings.api_base_url,
        timeout=settings.api_timeout,
        max_retries=settings.max_retries,
        debug_enabled=debug_enabled,
    )
    kite_client = KiteClient(settings.api_key, token_store, client)
    log_auth_status(kite_client)

    mcp = FastMCP(
        name=SERVER_NAME,
        instructions="Tools for the Zerodha Kite Connect trading API.",
    )
    register_tools(mcp, kite_client)
    mount_health_route(mcp, kite_client)
    setattr(mcp, "_kite_client", kite_client)
    return mcp


def main() -> None:
    transport = os.getenv("MCP_TRANSPORT", "stdio").strip() or "stdio"
    mcp = create_mcp()
    if transport == "stdio":
        LOGGER.info("Kite MCP server running on stdio")
        mcp.run(transport="stdio")
        return

    host = os.getenv("MCP_HOST", "127.0.0.1")
    port = get_env_int("MCP_PORT", 8000)
    mcp.run(transport=transport, host=host, port=port)


if __name__ == "__main__":
    main()
