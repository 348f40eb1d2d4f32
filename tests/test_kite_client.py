import urllib.parse

import httpx
import pytest

from auth.models import TokenRecord, format_timestamp, utcnow
from auth.token_store import MemoryTokenStore
from kitemcp.http import build_http_client
from kitemcp.kite_client import (
    KiteAPIError,
    KiteClient,
    NotAuthenticatedError,
    parse_instruments_csv,
)

INSTRUMENTS_CSV = (
    "instrument_token,exchange_token,tradingsymbol,name,last_price,expiry,strike,"
    "tick_size,lot_size,instrument_type,segment,exchange\n"
    "408065,1594,INFY,INFOSYS,0,,0,0.05,1,EQ,NSE,NSE\n"
    "2953217,11536,TCS,TATA CONSULTANCY SERV LT,0,,,0.05,1,EQ,NSE,NSE\n"
)


class Recorder:
    def __init__(self, routes: dict[tuple[str, str], httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        if key not in self.routes:
            return httpx.Response(404, json={"status": "error", "message": "Route not found"})
        return self.routes[key]


def _store(access_token: str = "access-1") -> MemoryTokenStore:
    store = MemoryTokenStore()
    store.save(
        TokenRecord(
            access_token=access_token,
            user_id="AB1234",
            user_name="Test Trader",
            generated_at=format_timestamp(utcnow()),
        )
    )
    return store


def _client(routes, store=None) -> tuple[KiteClient, Recorder]:
    recorder = Recorder(routes)
    http_client = build_http_client(
        base_url="https://api.kite.trade",
        max_retries=0,
        transport=httpx.MockTransport(recorder),
    )
    return KiteClient("kite-key", store if store is not None else _store(), http_client), recorder


def _ok(data) -> httpx.Response:
    return httpx.Response(200, json={"status": "success", "data": data})


@pytest.mark.asyncio
async def test_get_profile_sends_auth_headers() -> None:
    kite, recorder = _client({("GET", "/user/profile"): _ok({"user_id": "AB1234"})})

    profile = await kite.get_profile()

    assert profile == {"user_id": "AB1234"}
    request = recorder.requests[0]
    assert request.headers["Authorization"] == "token kite-key:access-1"
    assert request.headers["X-Kite-Version"] == "3"
    await kite.aclose()


@pytest.mark.asyncio
async def test_not_authenticated_without_token() -> None:
    kite, recorder = _client({}, store=MemoryTokenStore())

    with pytest.raises(NotAuthenticatedError):
        await kite.get_holdings()

    assert recorder.requests == []
    assert kite.is_ready() is False
    await kite.aclose()


@pytest.mark.asyncio
async def test_quote_sends_repeated_instrument_params() -> None:
    kite, recorder = _client({("GET", "/quote/ltp"): _ok({"NSE:INFY": {"last_price": 1500.5}})})

    result = await kite.get_ltp(["NSE:INFY", "NSE:TCS"])

    assert result == {"NSE:INFY": {"last_price": 1500.5}}
    assert recorder.requests[0].url.params.get_list("i") == ["NSE:INFY", "NSE:TCS"]
    await kite.aclose()


@pytest.mark.asyncio
async def test_place_order_posts_form_without_empty_fields() -> None:
    kite, recorder = _client({("POST", "/orders/regular"): _ok({"order_id": "151220000000000"})})

    result = await kite.place_order(
        {
            "exchange": "NSE",
            "tradingsymbol": "INFY",
            "transaction_type": "BUY",
            "order_type": "MARKET",
            "quantity": 1,
            "product": "CNC",
            "price": None,
        }
    )

    assert result == {"order_id": "151220000000000"}
    form = urllib.parse.parse_qs(recorder.requests[0].content.decode())
    assert form == {
        "exchange": ["NSE"],
        "tradingsymbol": ["INFY"],
        "transaction_type": ["BUY"],
        "order_type": ["MARKET"],
        "quantity": ["1"],
        "product": ["CNC"],
    }
    await kite.aclose()


@pytest.mark.asyncio
async def test_modify_and_cancel_use_variety_paths() -> None:
    kite, recorder = _client(
        {
            ("PUT", "/orders/amo/42"): _ok({"order_id": "42"}),
            ("DELETE", "/orders/regular/42"): _ok({"order_id": "42"}),
        }
    )

    await kite.modify_order("42", {"price": 10.5}, variety="amo")
    await kite.cancel_order("42")

    assert [request.method for request in recorder.requests] == ["PUT", "DELETE"]
    await kite.aclose()


@pytest.mark.asyncio
async def test_get_instruments_parses_csv() -> None:
    kite, recorder = _client({("GET", "/instruments/NSE"): httpx.Response(200, text=INSTRUMENTS_CSV)})

    instruments = await kite.get_instruments("NSE")

    assert recorder.requests[0].url.path == "/instruments/NSE"
    assert instruments[0]["tradingsymbol"] == "INFY"
    assert instruments[0]["instrument_token"] == 408065
    assert instruments[0]["tick_size"] == 0.05
    assert instruments[1]["strike"] is None
    await kite.aclose()


def test_parse_instruments_csv_empty() -> None:
    assert parse_instruments_csv("") == []


@pytest.mark.asyncio
async def test_api_error_surfaces_upstream_message() -> None:
    kite, _ = _client(
        {
            ("POST", "/orders/regular"): httpx.Response(
                400,
                json={
                    "status": "error",
                    "message": "Insufficient funds.",
                    "error_type": "MarginException",
                },
            )
        }
    )

    with pytest.raises(KiteAPIError, match="place_order failed: Insufficient funds.") as excinfo:
        await kite.place_order({"exchange": "NSE"})

    assert excinfo.value.status_code == 400
    assert excinfo.value.error_type == "MarginException"
    assert kite.is_ready() is True
    await kite.aclose()


@pytest.mark.asyncio
async def test_403_marks_token_rejected_until_new_token() -> None:
    store = _store("stale")
    kite, _ = _client(
        {
            ("GET", "/portfolio/positions"): httpx.Response(
                403,
                json={"status": "error", "message": "Invalid token", "error_type": "TokenException"},
            )
        },
        store=store,
    )

    with pytest.raises(KiteAPIError, match="Authentication failed during get_positions"):
        await kite.get_positions()

    assert kite.is_ready() is False
    with pytest.raises(NotAuthenticatedError):
        await kite.get_positions()

    store.save(TokenRecord(access_token="fresh", user_id="AB1234"))
    assert kite.is_ready() is True
    await kite.aclose()


@pytest.mark.asyncio
async def test_transport_error_is_wrapped() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    http_client = build_http_client(
        base_url="https://api.kite.trade",
        max_retries=0,
        transport=httpx.MockTransport(handler),
    )
    kite = KiteClient("kite-key", _store(), http_client)

    with pytest.raises(KiteAPIError, match="get_margins failed: connection refused"):
        await kite.get_margins()
    await kite.aclose()


def test_authentication_status() -> None:
    kite = KiteClient("kite-key", _store(), httpx.AsyncClient())

    status = kite.get_authentication_status()

    assert status["authenticated"] is True
    assert status["user"] == "Test Trader"
    assert status["token_generated_at"]
    assert status["token_expires_at"] is None


def test_authentication_status_without_token() -> None:
    kite = KiteClient("kite-key", MemoryTokenStore(), httpx.AsyncClient())

    assert kite.get_authentication_status() == {
        "authenticated": False,
        "user": None,
        "token_generated_at": None,
        "token_expires_at": None,
    }


@pytest.mark.asyncio
async def test_place_order_sent_once_on_gateway_error() -> None:
    calls: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append((request.method, request.url.path))
        return httpx.Response(504, text="gateway timeout")

    http_client = build_http_client(
        base_url="https://api.kite.trade",
        max_retries=2,
        transport=httpx.MockTransport(handler),
    )
    kite = KiteClient("kite-key", _store(), http_client)

    with pytest.raises(KiteAPIError) as excinfo:
        await kite.place_order({"exchange": "NSE", "tradingsymbol": "INFY"})

    assert calls == [("POST", "/orders/regular")]
    assert excinfo.value.status_code == 504
    await kite.aclose()
