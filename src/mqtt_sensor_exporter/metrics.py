"""Prometheus metrics for the exporter."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from prometheus_client import (  # type: ignore[import-untyped]
    CollectorRegistry,
    Gauge,
    start_http_server,
)

from mqtt_sensor_exporter.const import METRIC_NAME
from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.structs import MetricKey

logger = get_logger(__name__)

SENSOR_LABELS = ("device", "path", "property", "unit", "source_type")


class MetricSink(Protocol):
    """Where parsed sensor values end up."""

    def set(self, key: MetricKey, value: float) -> None:
        """Overwrite the latest value for ``key``."""
        ...


class PrometheusMetricSink:
    """``mqtt_sensor`` gauge: last write wins, no history, no deletion."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry: CollectorRegistry = registry if registry is not None else CollectorRegistry()
        self.sensor: Gauge = Gauge(
            METRIC_NAME,
            "HA|Homie metric.",
            SENSOR_LABELS,
            registry=self.registry,
        )
        self._client_status: Gauge | None = None

    def set(self, key: MetricKey, value: float) -> None:
        self.sensor.labels(**key.labels()).set(value)  # type: ignore[no-untyped-call]

    def track_client_status(self, broker: str, is_connected: Callable[[], bool]) -> None:
        """Expose ``mqtt_client_status{broker}``: 1 while connected to the broker, else 0."""
        if self._client_status is None:
            self._client_status = Gauge(
                "mqtt_client_status",
                "MQTT broker connection status.",
                ["broker"],
                registry=self.registry,
            )
        self._client_status.labels(broker=broker).set_function(lambda: 1.0 if is_connected() else 0.0)


def start_metrics_server(sink: PrometheusMetricSink, host: str, port: int) -> None:
    """Serve ``/metrics`` for the sink's registry from a background thread."""
    lp = "metrics:server:"
    logger.info("%s Serving metrics on %s:%s", lp, host, port)
    _ = start_http_server(port, addr=host, registry=sink.registry)  # type: ignore[no-untyped-call]
