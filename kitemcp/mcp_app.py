from __future__ import annotations

from typing import TYPE_CHECKING

from .constants import APP_VERSION, LOGGER
from .kite_client import KiteClient

if TYPE_CHECKING:
    from fastmcp import FastMCP


def log_auth_status(kite_client: KiteClient) -> dict:
    status = kite_client.get_authentication_status()
    if status["authenticated"]:
        LOGGER.info("Authenticated as: %s", status["user"])
    else:
        LOGGER.warning(
            "Not authenticated with Kite API. Some tools may not work. "
            "Run authentication with: python authenticate.py"
        )
    return status


def mount_health_route(mcp: "FastMCP", kite_client: KiteClient) -> None:
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> Response:
        del request
        return JSONResponse(
            {
                "status": "ok",
                "version": APP_VERSION,
                "authenticated": kite_client.is_ready(),
            }
        )
