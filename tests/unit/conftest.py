"""
Shared fixtures for unit tests.

Every test gets its own registry and its own Prometheus CollectorRegistry so
metric samples never leak between tests.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from unittest.mock import AsyncMock

import pytest
from prometheus_client import CollectorRegistry

from mqtt_sensor_exporter.homie import HomieParser
from mqtt_sensor_exporter.metrics import PrometheusMetricSink
from mqtt_sensor_exporter.mqtt.discovery import HADiscoveryParser
from mqtt_sensor_exporter.mqtt.dispatcher import Dispatcher
from mqtt_sensor_exporter.mqtt.state_updates import HADataHandler
from mqtt_sensor_exporter.registry import Registry

SampleReader = Callable[..., float | None]


@pytest.fixture
def registry() -> Registry:
    return Registry()


@pytest.fixture
def sink() -> PrometheusMetricSink:
    return PrometheusMetricSink(CollectorRegistry())


@pytest.fixture
def sample(sink: PrometheusMetricSink) -> SampleReader:
    """
    Read one ``mqtt_sensor`` sample.

    Usage: ``sample(device="dev1", path="dev1/sensor", property="temp", unit="C", source_type="homie")``
    """

    def _read(**labels: str) -> float | None:
        return sink.registry.get_sample_value("mqtt_sensor", labels)

    return _read


@pytest.fixture
def homie(registry: Registry, sink: PrometheusMetricSink) -> HomieParser:
    return HomieParser(registry, sink)


@pytest.fixture
def mock_subscriber() -> AsyncMock:
    """
    Stand-in for MQTTTransport.subscribe: acknowledges immediately.
    """
    subscriber = AsyncMock()
    subscriber.subscribe = AsyncMock(return_value=None)
    return subscriber


@pytest.fixture
def dispatcher() -> Dispatcher:
    return Dispatcher(ha_state_prefix="zigbee2mqtt")


@pytest.fixture
def ha_data(registry: Registry, sink: PrometheusMetricSink) -> HADataHandler:
    return HADataHandler(registry, sink)


@pytest.fixture
def discovery(
    registry: Registry,
    mock_subscriber: AsyncMock,
    dispatcher: Dispatcher,
    ha_data: HADataHandler,
) -> HADiscoveryParser:
    parser = HADiscoveryParser(registry, mock_subscriber, dispatcher.bind, ha_data)
    dispatcher.route("homeassistant/sensor/", parser.handle)
    return parser


def make_ha_config(
    uniq_id: str = "kitchen_temperature",
    dev_id: str = "0x00158d0001",
    stat_t: str = "zigbee2mqtt/kitchen/temperature",
    name: str = "Temperature",
    unit: str = "°C",
    dev_name: str = "Kitchen sensor",
    **extra: object,
) -> bytes:
    """Abbreviated-key discovery payload as Zigbee2MQTT publishes it."""
    conf: dict[str, object] = {
        "avty_t": "zigbee2mqtt/bridge/state",
        "dev_cla": "temperature",
        "name": name,
        "stat_cla": "measurement",
        "stat_t": stat_t,
        "uniq_id": uniq_id,
        "unit_of_meas": unit,
        "dev": {
            "ids": [dev_id],
            "name": dev_name,
            "sw": "1.2.3",
            "mdl": "WSDCGQ11LM",
            "mf": "Aqara",
        },
    }
    conf.update(extra)
    return json.dumps(conf).encode()


@pytest.fixture
def ha_config() -> Callable[..., bytes]:
    return make_ha_config
