"""Constants used across the satgate package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "satgate"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_HOME = Path.home() / f".{APP_NAME}"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / DEFAULT_CONFIG_FILENAME
DEFAULT_STAGING_DIR = DEFAULT_HOME / "downlinked_files"
DEFAULT_LOG_PATH = DEFAULT_HOME / "logs" / f"{APP_NAME}.log"

DEFAULT_CONTROL_BASE_URL = "http://localhost:3001"
GATEWAY_API_PATH = "/gateway_api/v1.0"

DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_TOPIC_PREFIX = APP_NAME
DEFAULT_SYSTEM_NAME = "satellite"

TRAFFIC_LOGGER_NAME = f"{APP_NAME}.traffic"
TRAFFIC_TRUNCATE_AT = 180
