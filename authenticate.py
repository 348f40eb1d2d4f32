from __future__ import annotations

import argparse
import asyncio
import sys

from auth import kite_session
from auth.errors import ExchangeError
from auth.oauth_server import OAuthServer
from auth.token_store import FileTokenStore
from kitemcp.constants import LOGGER
from kitemcp.env import KiteSettings, load_env, load_settings, setup_logging

TROUBLESHOOTING = (
    "Troubleshooting:\n"
    "   - Check your API_KEY and API_SECRET in .env file\n"
    "   - Make sure your redirect URL is correctly configured in Kite Connect app\n"
    "   - Ensure you complete the authentication within 5 minutes"
)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Authenticate with the Kite Connect API.")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--force",
        action="store_true",
        help="Run the login flow even when a valid token is already stored.",
    )
    group.add_argument(
        "--logout",
        action="store_true",
        help="Invalidate the stored session and delete the token file.",
    )
    return parser


async def logout(settings: KiteSettings, token_store: FileTokenStore) -> None:
    record = token_store.load()
    if record is not None:
        try:
            await kite_session.invalidate_access_token(settings.api_key, record.access_token)
        except ExchangeError as error:
            LOGGER.warning("Could not invalidate the session upstream: %s", error)
    token_store.clear()
    print(f"Logged out. Removed {token_store.path}")


async def login(oauth_server: OAuthServer, token_store: FileTokenStore) -> None:
    print(f"Starting OAuth server on port {oauth_server.port}")
    print("")
    print("Authentication Steps:")
    print("1. Open the following URL in your browser:")
    print("")
    print(f"   {oauth_server.login_url}")
    print("")
    print("2. Complete authentication with your Zerodha credentials")
    print(f"3. You will be redirected to {oauth_server.redirect_url} and the token will be saved")
    print("")
    print("Waiting for authentication... (Press Ctrl+C to cancel)")

    try:
        record = await oauth_server.authenticate()
    finally:
        await oauth_server.stop()

    print("")
    print("Authentication successful!")
    print(f"Welcome, {record.display_name}!")
    print(f"Token saved to: {token_store.path}")
    print("You can now start the Kite MCP server with: python server.py")


async def run(args: argparse.Namespace) -> int:
    load_env()
    setup_logging()
    settings = load_settings()
    token_store = FileTokenStore(settings.token_path)

    if args.logout:
        await logout(settings, token_store)
        return 0

    if not args.force:
        record = token_store.get_valid_record()
        if record is not None:
            print("Already authenticated!")
            print(f"User: {record.display_name}")
            print(f"Token generated: {record.generated_at}")
            print("")
            print("To re-authenticate, run with --force or --logout first.")
            return 0

    oauth_server = OAuthServer(
        api_key=settings.api_key,
        api_secret=settings.api_secret,
        token_store=token_store,
        host=settings.oauth_host,
        port=settings.oauth_port,
    )
    await login(oauth_server, token_store)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    print("Kite API Authentication")
    print("=======================")
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nAuthentication cancelled by user")
        return 0
    except RuntimeError as error:
        print("", file=sys.stderr)
        print("Authentication failed:", file=sys.stderr)
        print(f"   {error}", file=sys.stderr)
        print("", file=sys.stderr)
        print(TROUBLESHOOTING, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
