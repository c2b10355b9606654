"""Core data structures and typing protocols for the exporter."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from enum import StrEnum
from typing import NamedTuple, Protocol
from urllib.parse import urlsplit

from pydantic import BaseModel, field_validator

from mqtt_sensor_exporter.const import (
    MQTT_EXPORTER_BROKER,
    MQTT_EXPORTER_CLIENT_ID,
    MQTT_EXPORTER_CONN_DELAY,
    MQTT_EXPORTER_DEBUG,
    MQTT_EXPORTER_HA_STATE_PREFIX,
    MQTT_EXPORTER_LISTEN,
    MQTT_EXPORTER_PASS,
    MQTT_EXPORTER_USER,
    read_settings_env,
)

MessageHandler = Callable[[str, bytes], Awaitable[None]]


class SourceType(StrEnum):
    """Convention a device was learned from; also the ``source_type`` metric label."""

    HOMIE = "homie"
    HA = "ha"


class DeviceKey(NamedTuple):
    """Registry key. Homie devices use their ``<device>/<node>`` path, HA devices their ``ids``."""

    source: SourceType
    id: str


class PropertyKey(NamedTuple):
    """Stable address of one property, used to bind HA status topics."""

    device: DeviceKey
    id: str


class MetricKey(NamedTuple):
    device: str
    path: str
    property: str
    unit: str
    source_type: SourceType

    def labels(self) -> dict[str, str]:
        return {
            "device": self.device,
            "path": self.path,
            "property": self.property,
            "unit": self.unit,
            "source_type": str(self.source_type),
        }


class Property:
    """One measurement of a device.

    ``ignored`` is a one-way latch: :meth:`ignore` sets it and nothing clears
    it. ``status_topic`` is fixed when the property is created.
    """

    __slots__ = ("_ignored", "_status_topic", "name", "unit")

    def __init__(
        self,
        name: str = "",
        unit: str = "",
        status_topic: str | None = None,
        *,
        ignored: bool = False,
    ) -> None:
        self.name: str = name
        self.unit: str = unit
        self._status_topic: str | None = status_topic
        self._ignored: bool = ignored

    @property
    def ignored(self) -> bool:
        return self._ignored

    @property
    def status_topic(self) -> str | None:
        return self._status_topic

    def ignore(self) -> bool:
        """Latch the property as ignored. Returns True only on the first call."""
        if self._ignored:
            return False
        self._ignored = True
        return True

    def copy(self) -> Property:
        return Property(self.name, self.unit, self._status_topic, ignored=self._ignored)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Property):
            return NotImplemented
        return (self.name, self.unit, self._status_topic, self._ignored) == (
            other.name,
            other.unit,
            other.status_topic,
            other.ignored,
        )

    def __repr__(self) -> str:
        return (
            f"Property(name={self.name!r}, unit={self.unit!r}, "
            f"status_topic={self._status_topic!r}, ignored={self._ignored})"
        )


class Device:
    """Device metadata and its properties.

    For Homie this is really a device node: root device attributes are not
    parsed, so each ``<device>/<node>`` pair is tracked as its own device.
    """

    def __init__(
        self,
        path: str = "",
        name: str = "",
        properties: Mapping[str, Property] | None = None,
        declared_properties: tuple[str, ...] = (),
    ) -> None:
        self.path: str = path
        self.name: str = name
        self.properties: dict[str, Property] = {k: v.copy() for k, v in (properties or {}).items()}
        # last Homie $properties payload; informational only
        self.declared_properties: tuple[str, ...] = declared_properties

    def get_property(self, prop_id: str, create: bool = True) -> Property | None:
        prop = self.properties.get(prop_id)
        if prop is None and create:
            prop = self.properties[prop_id] = Property()
        return prop

    def copy(self) -> Device:
        return Device(self.path, self.name, self.properties, self.declared_properties)

    def metric_key(self, device_id: str, prop_id: str, source_type: SourceType) -> MetricKey:
        """Labels for a property of this device; display names fall back to identifiers."""
        prop = self.properties[prop_id]
        return MetricKey(
            device=self.name or device_id,
            path=self.path,
            property=prop.name or prop_id,
            unit=prop.unit,
            source_type=source_type,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Device):
            return NotImplemented
        return (self.path, self.name, self.properties, self.declared_properties) == (
            other.path,
            other.name,
            other.properties,
            other.declared_properties,
        )

    def __repr__(self) -> str:
        return f"Device(path={self.path!r}, name={self.name!r}, properties={self.properties!r})"


class Subscriber(Protocol):
    """Broker-side subscription with bounded wait for the acknowledgment."""

    async def subscribe(self, topic: str, timeout: float) -> None:
        """Subscribe to ``topic``; raise SubscriptionError on failure or timeout."""
        ...


def split_host_port(address: str, default_port: int) -> tuple[str, int]:
    """Split ``[scheme://]host[:port]``; IPv6 hosts go in brackets (``[::1]:8080``)."""
    url = address if "://" in address else f"tcp://{address}"
    parts = urlsplit(url)
    host = parts.hostname
    if not host:
        msg = f"no host in address '{address}'"
        raise ValueError(msg)
    return host, parts.port or default_port


class ExporterSettings(BaseModel):
    """Runtime configuration: environment defaults, overridden by CLI flags."""

    broker_url: str = MQTT_EXPORTER_BROKER
    username: str | None = MQTT_EXPORTER_USER
    password: str | None = MQTT_EXPORTER_PASS
    client_id: str = MQTT_EXPORTER_CLIENT_ID
    listen_address: str = MQTT_EXPORTER_LISTEN
    ha_state_prefix: str = MQTT_EXPORTER_HA_STATE_PREFIX
    conn_delay: int = MQTT_EXPORTER_CONN_DELAY
    debug: bool = MQTT_EXPORTER_DEBUG

    @field_validator("broker_url", "listen_address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        _ = split_host_port(value, 0)
        return value

    @field_validator("ha_state_prefix")
    @classmethod
    def _strip_prefix(cls, value: str) -> str:
        return value.strip().rstrip("/#")

    @property
    def broker_host(self) -> str:
        return split_host_port(self.broker_url, 1883)[0]

    @property
    def broker_port(self) -> int:
        return split_host_port(self.broker_url, 1883)[1]

    @property
    def listen_host(self) -> str:
        return split_host_port(self.listen_address, 8080)[0]

    @property
    def listen_port(self) -> int:
        return split_host_port(self.listen_address, 8080)[1]

    @classmethod
    def from_env(cls, **overrides: object) -> ExporterSettings:
        """Re-read the environment (after a dotenv load) and apply non-None overrides."""
        values: dict[str, object] = dict(read_settings_env())
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
