from __future__ import annotations

import asyncio
import contextlib
import html
import logging
import socket
import time

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response
from starlette.routing import Route

from auth import kite_session
from auth.errors import (
    AuthTimeoutError,
    CallbackError,
    ExchangeError,
    FlowInProgressError,
    KiteAuthError,
    ListenerError,
    StorageError,
    TokenValidationError,
)
from auth.models import PendingAuthAttempt, TokenRecord, format_timestamp, utcnow
from auth.token_store import TokenStore

LOGGER = logging.getLogger("kitemcp.auth")

CALLBACK_PATH = "/zerodha/auth/redirect"
DEFAULT_OAUTH_HOST = "127.0.0.1"
DEFAULT_OAUTH_PORT = 50000
AUTH_TIMEOUT_SECONDS = 5 * 60
SHUTDOWN_GRACE_SECONDS = 1.0
WAITING_MESSAGE = "Kite OAuth Server - Waiting for callback..."


def _page(title: str, message: str) -> str:
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\">"
        f"<title>{html.escape(title)}</title></head>"
        f"<body><h1>{html.escape(title)}</h1><p>{html.escape(message)}</p></body></html>"
    )


class UvicornListener:
    """Serves the callback app on a socket bound up front, so bind errors surface here."""

    def __init__(self, app: Starlette, *, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning", lifespan="off")
        )
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as error:
            sock.close()
            raise ListenerError(
                f"Could not listen on {self.host}:{self.port}: {error}"
            ) from error
        self.port = sock.getsockname()[1]

        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                raise ListenerError(f"Callback listener on port {self.port} exited during startup.")
            await asyncio.sleep(0.01)

    async def stop(self) -> None:
        self._server.should_exit = True
        if self._task is not None:
            await self._task
            self._task = None


class OAuthServer:
    """Runs one Kite login handshake at a time behind a local callback listener.

    ``start_flow`` binds the listener and returns a future that settles exactly
    once: with the persisted ``TokenRecord`` when the redirect carries a usable
    ``request_token``, or with a ``KiteAuthError`` on provider failure, exchange
    failure, timeout or cancellation. The listener is always torn down after
    settlement, with a short grace delay when a browser response is in flight.
    """

    def __init__(
        self,
        *,
        api_key: str,
        api_secret: str,
        token_store: TokenStore,
        host: str = DEFAULT_OAUTH_HOST,
        port: int = DEFAULT_OAUTH_PORT,
        callback_path: str = CALLBACK_PATH,
        timeout_seconds: float = AUTH_TIMEOUT_SECONDS,
        shutdown_grace_seconds: float = SHUTDOWN_GRACE_SECONDS,
        exchange_fn=kite_session.exchange_request_token,
        listener_factory=UvicornListener,
    ) -> None:
        self.api_key = api_key
        self.api_secret = api_secret
        self.token_store = token_store
        self.host = host
        self.port = port
        self.callback_path = callback_path
        self.timeout_seconds = timeout_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds

        self._exchange_fn = exchange_fn
        self._listener_factory = listener_factory
        self._pending: PendingAuthAttempt | None = None
        self._listener = None
        self._shutdown_task: asyncio.Task | None = None

    @property
    def login_url(self) -> str:
        return kite_session.build_login_url(self.api_key)

    @property
    def redirect_url(self) -> str:
        return f"http://localhost:{self.port}{self.callback_path}"

    @property
    def is_pending(self) -> bool:
        return self._pending is not None

    @property
    def is_listening(self) -> bool:
        return self._listener is not None

    def build_app(self) -> Starlette:
        return Starlette(
            routes=[
                Route(self.callback_path, self._handle_callback, methods=["GET"]),
                Route("/{path:path}", self._handle_waiting),
            ]
        )

    # -- flow ------------------------------------------------------------------

    async def start_flow(self) -> asyncio.Future:
        if self._pending is not None:
            raise FlowInProgressError()

        loop = asyncio.get_running_loop()
        attempt = PendingAuthAttempt(
            future=loop.create_future(),
            timeout_handle=None,
            listener=None,
            created_at=time.time(),
        )
        self._pending = attempt

        try:
            await self._drain_shutdown()
            listener = self._listener_factory(self.build_app(), host=self.host, port=self.port)
            await listener.start()
        except BaseException:
            if self._pending is attempt:
                self._pending = None
            raise

        if self._pending is not attempt:
            # stop() ran while the listener was starting.
            await listener.stop()
            return attempt.future

        attempt.listener = listener
        self._listener = listener
        attempt.timeout_handle = loop.call_later(self.timeout_seconds, self._on_timeout, attempt)
        attempt.future.add_done_callback(self._on_future_done)
        LOGGER.info(
            "OAuth callback listener started on %s:%s",
            self.host,
            getattr(listener, "port", self.port),
        )
        return attempt.future

    async def authenticate(self) -> TokenRecord:
        future = await self.start_flow()
        return await future

    async def stop(self) -> None:
        if self._settle(error=CallbackError("Authentication cancelled")):
            LOGGER.info("Authentication flow cancelled")

        task = self._shutdown_task
        if task is not None and not task.done():
            if self._listener is None:
                # Already closing; let it finish.
                await task
            else:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        listener = self._listener
        if listener is not None:
            await self._close_listener(listener)

    # -- handlers --------------------------------------------------------------

    async def _handle_waiting(self, request: Request) -> Response:
        del request
        return PlainTextResponse(WAITING_MESSAGE)

    async def _handle_callback(self, request: Request) -> Response:
        attempt = self._pending
        if attempt is None or attempt.future.done():
            return HTMLResponse(
                _page("No authentication in progress", "This login link has already been used."),
                status_code=409,
            )
        if attempt.callback_received:
            return HTMLResponse(
                _page("Authentication in progress", "A callback is already being processed."),
                status_code=409,
            )
        attempt.callback_received = True

        status = request.query_params.get("status")
        request_token = request.query_params.get("request_token")
        if status != "success" or not request_token:
            reason = request.query_params.get("error_type") or "OAuth callback failed"
            return self._finish(
                attempt,
                CallbackError(reason),
                _page("Authentication failed", reason),
                400,
            )

        try:
            session = await self._exchange_fn(
                api_key=self.api_key,
                api_secret=self.api_secret,
                request_token=request_token,
            )
        except Exception as error:
            message = f"Session generation failed: {error}"
            return self._finish(
                attempt,
                ExchangeError(message),
                _page("Authentication failed", message),
                502,
            )

        if attempt.future.done():
            return HTMLResponse(
                _page("Authentication expired", "The login window closed before completion."),
                status_code=409,
            )

        record = TokenRecord(
            access_token=session.access_token,
            user_id=session.user_id,
            refresh_token=session.refresh_token,
            user_name=session.user_name,
            generated_at=format_timestamp(utcnow()),
        )
        try:
            record = self.token_store.save(record)
        except (StorageError, TokenValidationError) as error:
            return self._finish(
                attempt,
                error,
                _page("Authentication failed", str(error)),
                500,
            )

        self._settle(result=record)
        LOGGER.info("Authenticated Kite user %s", record.user_id)
        self._schedule_shutdown(self.shutdown_grace_seconds)
        return HTMLResponse(
            _page(
                "Authentication successful",
                "Token saved. You can close this window.",
            )
        )

    def _finish(
        self,
        attempt: PendingAuthAttempt,
        error: KiteAuthError,
        body: str,
        status_code: int,
    ) -> Response:
        if attempt is self._pending:
            self._settle(error=error)
            LOGGER.warning("Authentication failed: %s", error)
            self._schedule_shutdown(self.shutdown_grace_seconds)
        return HTMLResponse(body, status_code=status_code)

    # -- settlement ------------------------------------------------------------

    def _settle(
        self,
        *,
        result: TokenRecord | None = None,
        error: BaseException | None = None,
    ) -> bool:
        attempt = self._pending
        if attempt is None or attempt.future.done():
            return False

        if attempt.timeout_handle is not None:
            attempt.timeout_handle.cancel()
        self._pending = None

        if error is not None:
            attempt.future.set_exception(error)
        else:
            attempt.future.set_result(result)
        return True

    def _on_timeout(self, attempt: PendingAuthAttempt) -> None:
        if attempt is not self._pending:
            return
        error = AuthTimeoutError()
        self._settle(error=error)
        LOGGER.warning("%s", error)
        self._schedule_shutdown(0)

    def _on_future_done(self, future: asyncio.Future) -> None:
        if not future.cancelled():
            return
        attempt = self._pending
        if attempt is None or attempt.future is not future:
            return
        if attempt.timeout_handle is not None:
            attempt.timeout_handle.cancel()
        self._pending = None
        LOGGER.info("Authentication flow cancelled by caller")
        self._schedule_shutdown(0)

    # -- listener teardown -----------------------------------------------------

    def _schedule_shutdown(self, delay: float) -> None:
        listener = self._listener
        if listener is None:
            return
        self._shutdown_task = asyncio.get_running_loop().create_task(
            self._close_listener_after(delay, listener)
        )

    async def _close_listener_after(self, delay: float, listener) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        await self._close_listener(listener)

    async def _close_listener(self, listener) -> None:
        if self._listener is listener:
            self._listener = None
        await listener.stop()
        LOGGER.info("OAuth callback listener stopped")

    async def _drain_shutdown(self) -> None:
        task = self._shutdown_task
        if task is not None and not task.done():
            await task
        self._shutdown_task = None
