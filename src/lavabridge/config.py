"""Environment-backed configuration helpers."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[2]
DEFAULT_LAVALINK_PORT = 2333
DEFAULT_RECONNECT_INTERVAL = 10.0
# Only auto-load the .env file when not running under pytest to let tests
# control environment via monkeypatch.
_running_under_pytest = bool(os.getenv("PYTEST_CURRENT_TEST")) or any(
    "pytest" in (arg or "") for arg in sys.argv
)
if not _running_under_pytest:
    load_dotenv(BASE_DIR / ".env")

logger = logging.getLogger("lavabridge.config")


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s '%s' - expected integer", key, raw)
        return default


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s '%s' - expected number", key, raw)
        return default
    if value < 0:
        logger.warning("Invalid %s '%s' - must not be negative", key, raw)
        return default
    return value


@dataclass(slots=True)
class NodeOptions:
    """Everything needed to open one node connection."""

    host: str
    gateway: str
    password: str
    user_id: str
    shards: int = 1
    reconnect_interval: float = DEFAULT_RECONNECT_INTERVAL

    @property
    def url(self) -> str:
        if self.gateway.startswith(("ws://", "wss://")):
            return self.gateway
        return f"ws://{self.gateway}"


class Config:
    """Central configuration loaded from environment variables."""

    BASE_DIR = BASE_DIR

    LAVALINK_LABEL = os.getenv("LAVALINK_LABEL", "primary")
    LAVALINK_HOST = os.getenv("LAVALINK_HOST", "localhost")
    LAVALINK_PORT = _int_env("LAVALINK_PORT", DEFAULT_LAVALINK_PORT)
    LAVALINK_PASSWORD = os.getenv("LAVALINK_PASSWORD", "youshallnotpass")
    LAVALINK_SHARDS = _int_env("LAVALINK_SHARDS", 1)
    LAVALINK_USER_ID = os.getenv("LAVALINK_USER_ID", "")
    LAVALINK_RECONNECT_INTERVAL = _float_env(
        "LAVALINK_RECONNECT_INTERVAL", DEFAULT_RECONNECT_INTERVAL
    )



def node_options_from_env(user_id: Optional[str] = None) -> NodeOptions:
    """Return node options using runtime environment overrides."""

    host = os.getenv("LAVALINK_HOST") or Config.LAVALINK_HOST or "127.0.0.1"
    port = _int_env("LAVALINK_PORT", Config.LAVALINK_PORT)
    password = os.getenv("LAVALINK_PASSWORD") or Config.LAVALINK_PASSWORD
    label = os.getenv("LAVALINK_LABEL") or Config.LAVALINK_LABEL
    return NodeOptions(
        host=label,
        gateway=f"{host}:{port}",
        password=password,
        user_id=str(user_id or os.getenv("LAVALINK_USER_ID") or Config.LAVALINK_USER_ID),
        shards=_int_env("LAVALINK_SHARDS", Config.LAVALINK_SHARDS),
        reconnect_interval=_float_env(
            "LAVALINK_RECONNECT_INTERVAL", Config.LAVALINK_RECONNECT_INTERVAL
        ),
    )
