import json

import httpx
import pytest
from fastmcp import Client, FastMCP
from fastmcp.exceptions import ToolError

from auth.models import TokenRecord
from auth.token_store import MemoryTokenStore
from kitemcp.http import build_http_client
from kitemcp.kite_client import KiteClient
from kitemcp.tools import NOT_AUTHENTICATED_MESSAGE, register_tools

EXPECTED_TOOLS = {
    "get_profile",
    "get_positions",
    "get_holdings",
    "get_orders",
    "get_order_history",
    "place_order",
    "modify_order",
    "cancel_order",
    "get_ltp",
    "get_ohlc",
    "get_quote",
    "get_instruments",
    "get_margins",
    "get_auth_status",
}


def _build_mcp(handler, *, authenticated: bool = True):
    store = MemoryTokenStore()
    if authenticated:
        store.save(TokenRecord(access_token="access-1", user_id="AB1234", user_name="Test Trader"))
    http_client = build_http_client(
        base_url="https://api.kite.trade",
        max_retries=0,
        transport=httpx.MockTransport(handler),
    )
    kite_client = KiteClient("kite-key", store, http_client)
    mcp = FastMCP(name="test")
    register_tools(mcp, kite_client)
    return mcp


def _success(data):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"status": "success", "data": data})

    return handler


def _text(result) -> str:
    return result.content[0].text


@pytest.mark.asyncio
async def test_tool_catalog() -> None:
    mcp = _build_mcp(_success({}))

    async with Client(mcp) as client:
        tools = {tool.name: tool for tool in await client.list_tools()}

    assert set(tools) == EXPECTED_TOOLS
    assert tools["get_holdings"].annotations.readOnlyHint is True
    assert tools["cancel_order"].annotations.destructiveHint is True
    assert tools["place_order"].annotations.readOnlyHint is False
    assert tools["place_order"].annotations.destructiveHint is False
    assert set(tools["place_order"].inputSchema["required"]) == {
        "exchange",
        "tradingsymbol",
        "transaction_type",
        "order_type",
        "quantity",
        "product",
    }


@pytest.mark.asyncio
async def test_get_holdings_returns_json_text() -> None:
    holdings = [{"tradingsymbol": "INFY", "quantity": 10}]
    mcp = _build_mcp(_success(holdings))

    async with Client(mcp) as client:
        result = await client.call_tool("get_holdings", {})

    assert json.loads(_text(result)) == holdings


@pytest.mark.asyncio
async def test_tools_require_authentication() -> None:
    mcp = _build_mcp(_success({}), authenticated=False)

    async with Client(mcp) as client:
        with pytest.raises(ToolError, match=NOT_AUTHENTICATED_MESSAGE):
            await client.call_tool("get_profile", {})


@pytest.mark.asyncio
async def test_auth_status_available_without_authentication() -> None:
    mcp = _build_mcp(_success({}), authenticated=False)

    async with Client(mcp) as client:
        result = await client.call_tool("get_auth_status", {})

    assert json.loads(_text(result))["authenticated"] is False


@pytest.mark.asyncio
async def test_get_ltp_forwards_instruments() -> None:
    seen: list[list[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params.get_list("i"))
        return httpx.Response(
            200,
            json={"status": "success", "data": {"NSE:INFY": {"last_price": 1500.5}}},
        )

    mcp = _build_mcp(handler)

    async with Client(mcp) as client:
        result = await client.call_tool("get_ltp", {"instruments": ["NSE:INFY"]})

    assert seen == [["NSE:INFY"]]
    assert json.loads(_text(result))["NSE:INFY"]["last_price"] == 1500.5


@pytest.mark.asyncio
async def test_place_order_limit_requires_price() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"status": "success", "data": {"order_id": "1"}})

    mcp = _build_mcp(handler)

    async with Client(mcp) as client:
        with pytest.raises(ToolError, match="price is required for LIMIT orders"):
            await client.call_tool(
                "place_order",
                {
                    "exchange": "NSE",
                    "tradingsymbol": "INFY",
                    "transaction_type": "BUY",
                    "order_type": "LIMIT",
                    "quantity": 1,
                    "product": "CNC",
                },
            )

    assert calls == []


@pytest.mark.asyncio
async def test_place_order_success() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"status": "success", "data": {"order_id": "1"}})

    mcp = _build_mcp(handler)

    async with Client(mcp) as client:
        result = await client.call_tool(
            "place_order",
            {
                "exchange": "NSE",
                "tradingsymbol": "INFY",
                "transaction_type": "BUY",
                "order_type": "LIMIT",
                "quantity": 1,
                "product": "CNC",
                "price": 1500.5,
            },
        )

    assert json.loads(_text(result)) == {"order_id": "1"}
    assert calls[0].url.path == "/orders/regular"


@pytest.mark.asyncio
async def test_api_failure_becomes_tool_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            400,
            json={"status": "error", "message": "Invalid order id", "error_type": "InputException"},
        )

    mcp = _build_mcp(handler)

    async with Client(mcp) as client:
        with pytest.raises(ToolError, match="cancel_order failed: Invalid order id"):
            await client.call_tool("cancel_order", {"order_id": "nope"})


@pytest.mark.asyncio
async def test_modify_order_requires_a_field() -> None:
    mcp = _build_mcp(_success({}))

    async with Client(mcp) as client:
        with pytest.raises(ToolError, match="at least one field"):
            await client.call_tool("modify_order", {"order_id": "42"})
