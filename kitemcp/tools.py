import json
from typing import TYPE_CHECKING, Annotated, Any, Awaitable, Callable, Literal

from fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import Field

from .constants import LOGGER
from .kite_client import KiteAPIError, KiteClient

if TYPE_CHECKING:
    from fastmcp import FastMCP

Exchange = Literal["NSE", "BSE", "NFO", "BFO", "CDS", "MCX"]
TransactionType = Literal["BUY", "SELL"]
OrderType = Literal["MARKET", "LIMIT", "SL", "SL-M"]
Product = Literal["NRML", "MIS", "CNC"]
Validity = Literal["DAY", "IOC"]
Variety = Literal["regular", "amo", "co", "iceberg", "auction"]
Instruments = Annotated[
    list[str],
    Field(description='List of instruments (e.g., ["NSE:INFY", "NSE:TCS"])', min_length=1),
]

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, openWorldHint=True)
WRITE = ToolAnnotations(readOnlyHint=False, destructiveHint=False, openWorldHint=True)
DESTRUCTIVE = ToolAnnotations(readOnlyHint=False, destructiveHint=True, openWorldHint=True)

NOT_AUTHENTICATED_MESSAGE = "Not authenticated with Kite API. Please run authentication first."


def to_text(result: Any) -> str:
    return json.dumps(result, indent=2, default=str)


async def run_kite_call(
    kite_client: KiteClient,
    operation: str,
    call: Callable[[], Awaitable[Any]],
) -> str:
    if not kite_client.is_ready():
        raise ToolError(NOT_AUTHENTICATED_MESSAGE)
    try:
        result = await call()
    except KiteAPIError as error:
        LOGGER.warning("Tool %s failed: %s", operation, error)
        raise ToolError(f"Tool execution failed: {error}") from error
    return to_text(result)


def register_tools(mcp: "FastMCP", kite_client: KiteClient) -> None:
    @mcp.tool(description="Get user profile information from Kite", annotations=READ_ONLY)
    async def get_profile() -> str:
        return await run_kite_call(kite_client, "get_profile", kite_client.get_profile)

    @mcp.tool(description="Get current trading positions", annotations=READ_ONLY)
    async def get_positions() -> str:
        return await run_kite_call(kite_client, "get_positions", kite_client.get_positions)

    @mcp.tool(description="Get long-term stock holdings", annotations=READ_ONLY)
    async def get_holdings() -> str:
        return await run_kite_call(kite_client, "get_holdings", kite_client.get_holdings)

    @mcp.tool(description="Get list of orders for the day", annotations=READ_ONLY)
    async def get_orders() -> str:
        return await run_kite_call(kite_client, "get_orders", kite_client.get_orders)

    @mcp.tool(description="Get the state history of a single order", annotations=READ_ONLY)
    async def get_order_history(
        order_id: Annotated[str, Field(description="Order ID to inspect")],
    ) -> str:
        return await run_kite_call(
            kite_client,
            "get_order_history",
            lambda: kite_client.get_order_history(order_id),
        )

    @mcp.tool(description="Place a new trading order", annotations=WRITE)
    async def place_order(
        exchange: Annotated[Exchange, Field(description="Exchange (NSE, BSE, etc.)")],
        tradingsymbol: Annotated[str, Field(description="Trading symbol (e.g., INFY, SBIN)")],
        transaction_type: Annotated[TransactionType, Field(description="Transaction type")],
        order_type: Annotated[OrderType, Field(description="Order type")],
        quantity: Annotated[int, Field(description="Number of shares to trade", gt=0)],
        product: Annotated[Product, Field(description="Product type")],
        price: Annotated[
            float | None, Field(description="Price per share (required for LIMIT orders)")
        ] = None,
        trigger_price: Annotated[
            float | None,
            Field(description="Trigger price (required for SL and SL-M orders)"),
        ] = None,
        validity: Annotated[Validity | None, Field(description="Order validity")] = None,
        variety: Annotated[Variety, Field(description="Order variety")] = "regular",
    ) -> str:
        if order_type == "LIMIT" and price is None:
            raise ToolError("price is required for LIMIT orders.")
        if order_type in {"SL", "SL-M"} and trigger_price is None:
            raise ToolError("trigger_price is required for SL and SL-M orders.")

        params = {
            "exchange": exchange,
            "tradingsymbol": tradingsymbol,
            "transaction_type": transaction_type,
            "order_type": order_type,
            "quantity": quantity,
            "product": product,
            "price": price,
            "trigger_price": trigger_price,
            "validity": validity,
        }
        return await run_kite_call(
            kite_client,
            "place_order",
            lambda: kite_client.place_order(params, variety=variety),
        )

    @mcp.tool(description="Modify an open order", annotations=WRITE)
    async def modify_order(
        order_id: Annotated[str, Field(description="Order ID to modify")],
        order_type: Annotated[OrderType | None, Field(description="New order type")] = None,
        quantity: Annotated[int | None, Field(description="New quantity", gt=0)] = None,
        price: Annotated[float | None, Field(description="New price")] = None,
        trigger_price: Annotated[float | None, Field(description="New trigger price")] = None,
        validity: Annotated[Validity | None, Field(description="New validity")] = None,
        variety: Annotated[Variety, Field(description="Order variety")] = "regular",
    ) -> str:
        params = {
            "order_type": order_type,
            "quantity": quantity,
            "price": price,
            "trigger_price": trigger_price,
            "validity": validity,
        }
        if all(value is None for value in params.values()):
            raise ToolError("Provide at least one field to modify.")
        return await run_kite_call(
            kite_client,
            "modify_order",
            lambda: kite_client.modify_order(order_id, params, variety=variety),
        )

    @mcp.tool(description="Cancel an existing order", annotations=DESTRUCTIVE)
    async def cancel_order(
        order_id: Annotated[str, Field(description="Order ID to cancel")],
        variety: Annotated[Variety, Field(description="Order variety")] = "regular",
    ) -> str:
        return await run_kite_call(
            kite_client,
            "cancel_order",
            lambda: kite_client.cancel_order(order_id, variety=variety),
        )

    @mcp.tool(description="Get Last Traded Price for instruments", annotations=READ_ONLY)
    async def get_ltp(instruments: Instruments) -> str:
        return await run_kite_call(
            kite_client, "get_ltp", lambda: kite_client.get_ltp(instruments)
        )

    @mcp.tool(description="Get OHLC and last price for instruments", annotations=READ_ONLY)
    async def get_ohlc(instruments: Instruments) -> str:
        return await run_kite_call(
            kite_client, "get_ohlc", lambda: kite_client.get_ohlc(instruments)
        )

    @mcp.tool(description="Get detailed market quote for instruments", annotations=READ_ONLY)
    async def get_quote(instruments: Instruments) -> str:
        return await run_kite_call(
            kite_client, "get_quote", lambda: kite_client.get_quote(instruments)
        )

    @mcp.tool(
        description="Get list of tradable instruments for an exchange",
        annotations=READ_ONLY,
    )
    async def get_instruments(
        exchange: Annotated[Exchange | None, Field(description="Exchange name (optional)")] = None,
    ) -> str:
        return await run_kite_call(
            kite_client,
            "get_instruments",
            lambda: kite_client.get_instruments(exchange),
        )

    @mcp.tool(description="Get account margins and available funds", annotations=READ_ONLY)
    async def get_margins(
        segment: Annotated[
            Literal["equity", "commodity"] | None,
            Field(description="Restrict to one segment (optional)"),
        ] = None,
    ) -> str:
        return await run_kite_call(
            kite_client, "get_margins", lambda: kite_client.get_margins(segment)
        )

    @mcp.tool(description="Get current authentication status", annotations=READ_ONLY)
    async def get_auth_status() -> str:
        return to_text(kite_client.get_authentication_status())
