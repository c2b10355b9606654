import os
from typing import TypedDict

from mqtt_sensor_exporter import __version__

__all__ = [
    "EXPORTER_VERSION",
    "HA_DISCOVERY_PREFIX",
    "HA_SUBSCRIBE_TIMEOUT",
    "HOMIE_PREFIX",
    "METRIC_NAME",
    "MQTT_CLIENT_START_TASK_NAME",
    "MQTT_EXPORTER_BROKER",
    "MQTT_EXPORTER_CLIENT_ID",
    "MQTT_EXPORTER_CONN_DELAY",
    "MQTT_EXPORTER_DEBUG",
    "MQTT_EXPORTER_HA_STATE_PREFIX",
    "MQTT_EXPORTER_LISTEN",
    "MQTT_EXPORTER_LOG_FORMAT",
    "MQTT_EXPORTER_LOG_HUMAN_OUTPUT",
    "MQTT_EXPORTER_LOG_JSON_FILE",
    "MQTT_EXPORTER_PASS",
    "MQTT_EXPORTER_PERF_THRESHOLD_MS",
    "MQTT_EXPORTER_PERF_TRACKING",
    "MQTT_EXPORTER_USER",
    "ROOT_SUBSCRIBE_TIMEOUT",
    "YES_ANSWER",
    "SettingsEnv",
    "read_settings_env",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
EXPORTER_VERSION: str = __version__

METRIC_NAME: str = "mqtt_sensor"
HOMIE_PREFIX: str = "homie/"
HA_DISCOVERY_PREFIX: str = "homeassistant/sensor/"
# seconds
ROOT_SUBSCRIBE_TIMEOUT: float = 5.0
HA_SUBSCRIBE_TIMEOUT: float = 2.0
MQTT_CLIENT_START_TASK_NAME = "MQTTTransport_START"


class SettingsEnv(TypedDict):
    """``MQTT_EXPORTER_*`` connection settings, keyed by ``ExporterSettings`` field."""

    broker_url: str
    username: str | None
    password: str | None
    client_id: str
    listen_address: str
    ha_state_prefix: str
    conn_delay: int
    debug: bool


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    try:
        return int(value) if value else default
    except ValueError:
        return default


def read_settings_env() -> SettingsEnv:
    """Read the connection settings from the current environment (call again after a dotenv load)."""
    return SettingsEnv(
        broker_url=os.environ.get("MQTT_EXPORTER_BROKER", "tcp://[::1]:1883"),
        username=os.environ.get("MQTT_EXPORTER_USER") or None,
        password=os.environ.get("MQTT_EXPORTER_PASS") or None,
        client_id=os.environ.get("MQTT_EXPORTER_CLIENT_ID", "homiexporter"),
        listen_address=os.environ.get("MQTT_EXPORTER_LISTEN", "[::1]:8080"),
        ha_state_prefix=os.environ.get("MQTT_EXPORTER_HA_STATE_PREFIX", ""),
        conn_delay=_env_int("MQTT_EXPORTER_CONN_DELAY", 5),
        debug=os.environ.get("MQTT_EXPORTER_DEBUG", "0").casefold() in YES_ANSWER,
    )


_settings_env = read_settings_env()
MQTT_EXPORTER_BROKER: str = _settings_env["broker_url"]
MQTT_EXPORTER_USER: str | None = _settings_env["username"]
MQTT_EXPORTER_PASS: str | None = _settings_env["password"]
MQTT_EXPORTER_CLIENT_ID: str = _settings_env["client_id"]
MQTT_EXPORTER_LISTEN: str = _settings_env["listen_address"]
MQTT_EXPORTER_HA_STATE_PREFIX: str = _settings_env["ha_state_prefix"]
MQTT_EXPORTER_CONN_DELAY: int = _settings_env["conn_delay"]
MQTT_EXPORTER_DEBUG: bool = _settings_env["debug"]

# Logging Configuration
MQTT_EXPORTER_LOG_FORMAT: str = os.environ.get("MQTT_EXPORTER_LOG_FORMAT", "human")  # "json", "human", or "both"
MQTT_EXPORTER_LOG_JSON_FILE: str | None = os.environ.get("MQTT_EXPORTER_LOG_JSON_FILE") or None
MQTT_EXPORTER_LOG_HUMAN_OUTPUT: str = os.environ.get("MQTT_EXPORTER_LOG_HUMAN_OUTPUT", "stderr")

# Performance Instrumentation
MQTT_EXPORTER_PERF_TRACKING: bool = os.environ.get("MQTT_EXPORTER_PERF_TRACKING", "true").casefold() in YES_ANSWER
MQTT_EXPORTER_PERF_THRESHOLD_MS: int = _env_int("MQTT_EXPORTER_PERF_THRESHOLD_MS", 500)
