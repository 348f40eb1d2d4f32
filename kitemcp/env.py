from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from auth.oauth_server import CALLBACK_PATH, DEFAULT_OAUTH_HOST, DEFAULT_OAUTH_PORT

from .constants import KITE_API_BASE_URL, LOGGER, PROJECT_DIR, TOKEN_FILENAME


@dataclass(frozen=True)
class KiteSettings:
    api_key: str
    api_secret: str
    oauth_host: str = DEFAULT_OAUTH_HOST
    oauth_port: int = DEFAULT_OAUTH_PORT
    token_path: Path = PROJECT_DIR / TOKEN_FILENAME
    api_base_url: str = KITE_API_BASE_URL
    api_timeout: float = 30.0
    max_retries: int = 2

    @property
    def redirect_url(self) -> str:
        return f"http://localhost:{self.oauth_port}{CALLBACK_PATH}"


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")


def _get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")


def _candidate_dirs() -> list[Path]:
    candidates = [PROJECT_DIR, Path.cwd()]
    unique: list[Path] = []
    for candidate in candidates:
        if candidate not in unique:
            unique.append(candidate)
    return unique


def load_env() -> None:
    """Load the first ``.env`` found, then let a sibling ``.env.local`` override it."""
    for directory in _candidate_dirs():
        env_path = directory / ".env"
        if env_path.exists():
            LOGGER.info("Loading environment from %s", env_path)
            load_dotenv(env_path, override=True)
            break

    for directory in _candidate_dirs():
        local_path = directory / ".env.local"
        if local_path.exists():
            LOGGER.info("Loading local environment from %s", local_path)
            load_dotenv(local_path, override=True)
            break


def resolve_token_path() -> Path:
    explicit = os.getenv("KITE_TOKEN_PATH", "").strip()
    if explicit:
        return Path(explicit).expanduser()

    for directory in _candidate_dirs():
        candidate = directory / TOKEN_FILENAME
        if candidate.exists():
            return candidate
    return PROJECT_DIR / TOKEN_FILENAME


def validate_env() -> None:
    required = ("API_KEY", "API_SECRET")
    missing = [key for key in required if not os.getenv(key, "").strip()]
    if missing:
        raise RuntimeError(
            f"Missing required environment variables: {', '.join(missing)}. "
            f"Add them to a .env file (checked: "
            f"{', '.join(str(path / '.env') for path in _candidate_dirs())})."
        )


def load_settings() -> KiteSettings:
    validate_env()
    LOGGER.debug("Working directory: %s", Path.cwd())
    return KiteSettings(
        api_key=os.environ["API_KEY"].strip(),
        api_secret=os.environ["API_SECRET"].strip(),
        oauth_host=os.getenv("OAUTH_HOST", DEFAULT_OAUTH_HOST).strip() or DEFAULT_OAUTH_HOST,
        oauth_port=get_env_int("OAUTH_PORT", DEFAULT_OAUTH_PORT),
        token_path=resolve_token_path(),
        api_base_url=os.getenv("KITE_API_BASE_URL", KITE_API_BASE_URL).rstrip("/"),
        api_timeout=_get_env_float("KITE_API_TIMEOUT", 30.0),
        max_retries=get_env_int("KITE_API_MAX_RETRIES", 2),
    )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("KITE_API_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
    return debug_enabled
