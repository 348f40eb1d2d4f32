from __future__ import annotations

import hashlib
import urllib.parse

import httpx

from auth.errors import ExchangeError
from auth.models import SessionResponse

KITE_LOGIN_URL = "https://kite.zerodha.com/connect/login"
KITE_SESSION_URL = "https://api.kite.trade/session/token"
KITE_API_VERSION = "3"


def generate_checksum(api_key: str, request_token: str, api_secret: str) -> str:
    return hashlib.sha256(f"{api_key}{request_token}{api_secret}".encode("utf-8")).hexdigest()


def build_login_url(api_key: str) -> str:
    query = {"v": KITE_API_VERSION, "api_key": api_key}
    return f"{KITE_LOGIN_URL}?{urllib.parse.urlencode(query)}"


def session_from_payload(payload: object) -> SessionResponse:
    if not isinstance(payload, dict):
        raise ExchangeError("Session response must be a JSON object.")

    data = payload.get("data", payload)
    if not isinstance(data, dict):
        raise ExchangeError("Session response data must be a JSON object.")

    access_token = data.get("access_token")
    user_id = data.get("user_id")
    refresh_token = data.get("refresh_token")
    user_name = data.get("user_name")

    if not isinstance(access_token, str) or not access_token:
        raise ExchangeError("Session response missing access_token.")
    if not isinstance(user_id, str) or not user_id:
        raise ExchangeError("Session response missing user_id.")

    return SessionResponse(
        access_token=access_token,
        user_id=user_id,
        refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
        user_name=user_name if isinstance(user_name, str) and user_name else None,
    )


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text


async def exchange_request_token(
    api_key: str,
    api_secret: str,
    request_token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> SessionResponse:
    """Trade the one-time ``request_token`` from the login redirect for a session."""
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.post(
            KITE_SESSION_URL,
            data={
                "api_key": api_key,
                "request_token": request_token,
                "checksum": generate_checksum(api_key, request_token, api_secret),
            },
            headers={"X-Kite-Version": KITE_API_VERSION},
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        raise ExchangeError(
            f"Session request failed with status {error.response.status_code}: "
            f"{_error_detail(error.response)}"
        ) from error
    except httpx.HTTPError as error:
        raise ExchangeError(f"Session request failed: {error}") from error
    finally:
        if own_client:
            await http_client.aclose()

    try:
        payload = response.json()
    except ValueError as error:
        raise ExchangeError("Session response was not valid JSON.") from error

    if isinstance(payload, dict) and payload.get("status") == "error":
        raise ExchangeError(str(payload.get("message") or "Session request was rejected."))

    return session_from_payload(payload)


async def invalidate_access_token(
    api_key: str,
    access_token: str,
    *,
    client: httpx.AsyncClient | None = None,
) -> None:
    own_client = client is None
    http_client = client or httpx.AsyncClient()

    try:
        response = await http_client.delete(
            KITE_SESSION_URL,
            params={"api_key": api_key, "access_token": access_token},
            headers={"X-Kite-Version": KITE_API_VERSION},
        )
        response.raise_for_status()
    except httpx.HTTPStatusError as error:
        raise ExchangeError(
            f"Session logout failed with status {error.response.status_code}: "
            f"{_error_detail(error.response)}"
        ) from error
    except httpx.HTTPError as error:
        raise ExchangeError(f"Session logout failed: {error}") from error
    finally:
        if own_client:
            await http_client.aclose()
