from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable

from auth.errors import StorageError, TokenValidationError
from auth.models import TokenRecord, format_timestamp, parse_timestamp, utcnow

LOGGER = logging.getLogger("kitemcp.auth")

# Kite access tokens live roughly six hours; stay an hour short of that.
FRESHNESS_WINDOW = timedelta(hours=5)


class TokenStore(ABC):
    """Holds a single Kite credential record and decides whether it is usable."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock

    @abstractmethod
    def load(self) -> TokenRecord | None:
        raise NotImplementedError

    @abstractmethod
    def _write(self, record: TokenRecord) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError

    def save(self, record: TokenRecord) -> TokenRecord:
        if not record.generated_at:
            record = replace(record, generated_at=format_timestamp(self._clock()))
        TokenRecord.from_payload(record.to_payload())
        self._write(record)
        return record

    def is_valid(self) -> bool:
        record = self.load()
        if record is None:
            return False
        valid = self._is_fresh(record)
        LOGGER.debug("Token validation: %s", "valid" if valid else "expired")
        return valid

    def get_valid_token(self) -> str | None:
        record = self.get_valid_record()
        return record.access_token if record else None

    def get_valid_record(self) -> TokenRecord | None:
        record = self.load()
        if record is None or not self._is_fresh(record):
            return None
        return record

    def _is_fresh(self, record: TokenRecord) -> bool:
        now = self._clock()
        try:
            if record.expires_at:
                return now < parse_timestamp(record.expires_at)
            return now - parse_timestamp(record.generated_at or "") < FRESHNESS_WINDOW
        except TokenValidationError:
            return False


class MemoryTokenStore(TokenStore):
    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        super().__init__(clock=clock)
        self._record: TokenRecord | None = None

    def load(self) -> TokenRecord | None:
        return self._record

    def _write(self, record: TokenRecord) -> None:
        self._record = record

    def clear(self) -> None:
        self._record = None


class FileTokenStore(TokenStore):
    def __init__(
        self,
        path: str | Path = "access_token.json",
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(clock=clock)
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> TokenRecord | None:
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            record = TokenRecord.from_payload(raw)
        except FileNotFoundError:
            LOGGER.info("Token file not found at %s", self._path)
            return None
        except (OSError, ValueError, TokenValidationError) as error:
            LOGGER.warning("Failed to load token from %s: %s", self._path, error)
            return None

        return record

    def _write(self, record: TokenRecord) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self._path.name}.",
                suffix=".tmp",
                dir=self._path.parent,
            )
        except OSError as error:
            raise StorageError(f"Failed to save token: {error}") from error

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_payload(), handle, indent=2)
            os.replace(tmp_path, self._path)
        except OSError as error:
            raise StorageError(f"Failed to save token: {error}") from error
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        LOGGER.info("Token saved to %s", self._path)

    def clear(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as error:
            raise StorageError(f"Failed to clear token: {error}") from error
