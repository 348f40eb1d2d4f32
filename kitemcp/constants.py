from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("kitemcp")
APP_VERSION = "1.0.0"
SERVER_NAME = "Kite MCP"

PROJECT_DIR = Path(__file__).resolve().parent.parent
TOKEN_FILENAME = "access_token.json"

KITE_API_BASE_URL = "https://api.kite.trade"
KITE_API_VERSION = "3"
