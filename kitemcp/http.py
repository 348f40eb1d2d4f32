from __future__ import annotations

import asyncio
import json
import logging

import httpx

from .constants import KITE_API_VERSION, LOGGER

# A 5xx on a write says nothing about whether Kite already accepted it.
IDEMPOTENT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class RetryTransport(httpx.AsyncBaseTransport):
    def __init__(
        self,
        transport: httpx.AsyncBaseTransport,
        *,
        max_retries: int = 2,
        sleep=asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._max_retries = max(0, max_retries)
        self._sleep = sleep
        self._logger = logger or LOGGER

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        body = request.content
        retries = 0

        while True:
            next_request = httpx.Request(
                method=request.method,
                url=request.url,
                headers=request.headers,
                content=body,
                extensions=request.extensions,
            )
            response = await self._transport.handle_async_request(next_request)

            if self._max_retries == 0:
                return response

            # Kite sends no reset hint on 429; one short pause is enough for its per-second limits.
            if response.status_code == 429 and retries < min(self._max_retries, 1):
                self._logger.warning(
                    "Retrying 429 after 1s (%s %s)",
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(1)
                retries += 1
                continue

            if (
                500 <= response.status_code < 600
                and request.method in IDEMPOTENT_METHODS
                and retries < self._max_retries
            ):
                backoff_seconds = 2**retries
                self._logger.warning(
                    "Retrying %s after %ss (%s %s)",
                    response.status_code,
                    backoff_seconds,
                    request.method,
                    request.url,
                )
                await response.aclose()
                await self._sleep(backoff_seconds)
                retries += 1
                continue

            return response

    async def aclose(self) -> None:
        await self._transport.aclose()


def _friendly_error_message(status_code: int) -> str:
    if status_code == 400:
        return "Kite rejected the request parameters."
    if status_code == 403:
        return "Authentication failed. Your Kite session may have expired; run authentication again."
    if status_code == 404:
        return "The requested resource was not found on Kite."
    if status_code == 429:
        return "Rate limit exceeded. Please slow down and retry."
    if status_code >= 500:
        return "Kite API is experiencing issues. Please try again later."
    return f"Kite API request failed with status {status_code}."


async def transform_error_response(response: httpx.Response) -> None:
    if response.status_code < 400:
        return

    body = await response.aread()
    try:
        raw_error = json.loads(body)
    except ValueError:
        raw_error = {"raw": body.decode("utf-8", errors="replace")}

    error_type = raw_error.get("error_type") if isinstance(raw_error, dict) else None
    payload = {
        "status": "error",
        "message": _friendly_error_message(response.status_code),
        "error_type": error_type,
        "kite_error": raw_error,
    }
    transformed = json.dumps(payload).encode("utf-8")
    response._content = transformed  # type: ignore[attr-defined]
    response.headers["content-type"] = "application/json"
    response.headers["content-length"] = str(len(transformed))

    LOGGER.warning(
        "Transformed Kite API error status=%s endpoint=%s error_type=%s",
        response.status_code,
        response.request.url.path,
        error_type,
    )


def build_http_client(
    *,
    base_url: str,
    timeout: float = 30.0,
    max_retries: int = 2,
    debug_enabled: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    async def log_request(request: httpx.Request) -> None:
        if not debug_enabled:
            return
        # Query strings can carry access tokens, so only the path is logged.
        LOGGER.info("Kite API request %s %s", request.method, request.url.path)

    async def log_response(response: httpx.Response) -> None:
        if not debug_enabled:
            return
        LOGGER.info(
            "Kite API response %s %s -> %s",
            response.request.method,
            response.request.url.path,
            response.status_code,
        )

    retry_transport = RetryTransport(
        transport or httpx.AsyncHTTPTransport(),
        max_retries=max_retries,
        logger=LOGGER,
    )
    return httpx.AsyncClient(
        base_url=base_url,
        headers={"X-Kite-Version": KITE_API_VERSION},
        timeout=timeout,
        transport=retry_transport,
        event_hooks={
            "request": [log_request],
            "response": [log_response, transform_error_response],
        },
    )
