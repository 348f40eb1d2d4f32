from datetime import datetime, timezone

import pytest

from tests.oauth_helpers import FakeListener


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 1, 6, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def reset_fake_listeners():
    FakeListener.instances.clear()
    yield
    FakeListener.instances.clear()


@pytest.fixture
def kite_env(monkeypatch, tmp_path):
    monkeypatch.setenv("API_KEY", "kite-key")
    monkeypatch.setenv("API_SECRET", "kite-secret")
    monkeypatch.setenv("KITE_TOKEN_PATH", str(tmp_path / "access_token.json"))
    for key in ("OAUTH_PORT", "OAUTH_HOST", "KITE_API_BASE_URL", "KITE_API_TIMEOUT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("KITE_API_MAX_RETRIES", raising=False)
    return tmp_path
