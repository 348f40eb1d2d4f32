from __future__ import annotations

import csv
import io
from typing import Any

import httpx

from auth.token_store import TokenStore

from .constants import LOGGER

_INSTRUMENT_INT_FIELDS = ("instrument_token", "exchange_token", "lot_size")
_INSTRUMENT_FLOAT_FIELDS = ("last_price", "strike", "tick_size")


class KiteAPIError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class NotAuthenticatedError(KiteAPIError):
    def __init__(
        self,
        message: str = "Not authenticated. Please run authentication first.",
    ) -> None:
        super().__init__(message, status_code=401)


def _error_message(payload: Any, fallback: str) -> tuple[str, str | None]:
    if not isinstance(payload, dict):
        return fallback, None
    error_type = payload.get("error_type")
    upstream = payload.get("kite_error")
    if isinstance(upstream, dict) and upstream.get("message"):
        return str(upstream["message"]), error_type
    if payload.get("message"):
        return str(payload["message"]), error_type
    return fallback, error_type


def _coerce(value: str, kind: type) -> Any:
    if value == "":
        return None
    try:
        return kind(value)
    except ValueError:
        return value


def parse_instruments_csv(text: str) -> list[dict[str, Any]]:
    instruments: list[dict[str, Any]] = []
    for row in csv.DictReader(io.StringIO(text)):
        record: dict[str, Any] = dict(row)
        for key in _INSTRUMENT_INT_FIELDS:
            if key in record:
                record[key] = _coerce(record[key], int)
        for key in _INSTRUMENT_FLOAT_FIELDS:
            if key in record:
                record[key] = _coerce(record[key], float)
        instruments.append(record)
    return instruments


class KiteClient:
    """Thin async wrapper over the Kite Connect v3 REST API.

    The access token is read from the token store on every call, so a token
    written by a concurrent login is picked up without restarting the server.
    """

    def __init__(self, api_key: str, token_store: TokenStore, client: httpx.AsyncClient) -> None:
        self.api_key = api_key
        self.token_store = token_store
        self._client = client
        self._rejected_token: str | None = None

    async def aclose(self) -> None:
        await self._client.aclose()

    def is_ready(self) -> bool:
        token = self.token_store.get_valid_token()
        return token is not None and token != self._rejected_token

    def get_authentication_status(self) -> dict[str, Any]:
        record = self.token_store.get_valid_record()
        return {
            "authenticated": self.is_ready(),
            "user": record.display_name if record else None,
            "token_generated_at": record.generated_at if record else None,
            "token_expires_at": record.expires_at if record else None,
        }

    # -- user ------------------------------------------------------------------

    async def get_profile(self) -> Any:
        return await self._request("GET", "/user/profile", operation="get_profile")

    async def get_margins(self, segment: str | None = None) -> Any:
        path = f"/user/margins/{segment}" if segment else "/user/margins"
        return await self._request("GET", path, operation="get_margins")

    # -- portfolio -------------------------------------------------------------

    async def get_positions(self) -> Any:
        return await self._request("GET", "/portfolio/positions", operation="get_positions")

    async def get_holdings(self) -> Any:
        return await self._request("GET", "/portfolio/holdings", operation="get_holdings")

    # -- orders ----------------------------------------------------------------

    async def get_orders(self) -> Any:
        return await self._request("GET", "/orders", operation="get_orders")

    async def get_order_history(self, order_id: str) -> Any:
        return await self._request("GET", f"/orders/{order_id}", operation="get_order_history")

    async def place_order(self, params: dict[str, Any], variety: str = "regular") -> Any:
        return await self._request(
            "POST",
            f"/orders/{variety}",
            data=_form_data(params),
            operation="place_order",
        )

    async def modify_order(
        self,
        order_id: str,
        params: dict[str, Any],
        variety: str = "regular",
    ) -> Any:
        return await self._request(
            "PUT",
            f"/orders/{variety}/{order_id}",
            data=_form_data(params),
            operation="modify_order",
        )

    async def cancel_order(self, order_id: str, variety: str = "regular") -> Any:
        return await self._request(
            "DELETE",
            f"/orders/{variety}/{order_id}",
            operation="cancel_order",
        )

    # -- market data -----------------------------------------------------------

    async def get_instruments(self, exchange: str | None = None) -> list[dict[str, Any]]:
        path = f"/instruments/{exchange}" if exchange else "/instruments"
        response = await self._send("GET", path, operation="get_instruments")
        return parse_instruments_csv(response.text)

    async def get_ltp(self, instruments: list[str]) -> Any:
        return await self._request(
            "GET", "/quote/ltp", params=_instrument_params(instruments), operation="get_ltp"
        )

    async def get_ohlc(self, instruments: list[str]) -> Any:
        return await self._request(
            "GET", "/quote/ohlc", params=_instrument_params(instruments), operation="get_ohlc"
        )

    async def get_quote(self, instruments: list[str]) -> Any:
        return await self._request(
            "GET", "/quote", params=_instrument_params(instruments), operation="get_quote"
        )

    # -- plumbing --------------------------------------------------------------

    def _require_token(self) -> str:
        token = self.token_store.get_valid_token()
        if token is None or token == self._rejected_token:
            raise NotAuthenticatedError()
        return token

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params=None,
        data: dict[str, str] | None = None,
    ) -> httpx.Response:
        token = self._require_token()
        headers = {"Authorization": f"token {self.api_key}:{token}"}
        try:
            response = await self._client.request(
                method, path, params=params, data=data, headers=headers
            )
        except httpx.HTTPError as error:
            raise KiteAPIError(f"{operation} failed: {error}") from error

        if response.status_code < 400:
            return response

        try:
            payload = response.json()
        except ValueError:
            payload = None
        message, error_type = _error_message(payload, response.text)

        if response.status_code == 403 or error_type == "TokenException":
            self._rejected_token = token
            LOGGER.warning("Kite rejected the stored access token during %s", operation)
            raise KiteAPIError(
                f"Authentication failed during {operation}. Token may be expired.",
                status_code=response.status_code,
                error_type=error_type,
            )

        raise KiteAPIError(
            f"{operation} failed: {message}",
            status_code=response.status_code,
            error_type=error_type,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params=None,
        data: dict[str, str] | None = None,
    ) -> Any:
        response = await self._send(method, path, operation=operation, params=params, data=data)
        try:
            payload = response.json()
        except ValueError as error:
            raise KiteAPIError(f"{operation} failed: response was not valid JSON.") from error

        if isinstance(payload, dict) and payload.get("status") == "error":
            message, error_type = _error_message(payload, "unknown error")
            raise KiteAPIError(f"{operation} failed: {message}", error_type=error_type)
        if isinstance(payload, dict) and "data" in payload:
            return payload["data"]
        return payload


def _instrument_params(instruments: list[str]) -> list[tuple[str, str]]:
    return [("i", instrument) for instrument in instruments]


def _form_data(params: dict[str, Any]) -> dict[str, str]:
    return {key: str(value) for key, value in params.items() if value is not None}
