"""Home Assistant MQTT discovery parsing.

Consumes ``homeassistant/sensor/.../config`` messages, keeps the registry's HA
devices and properties up to date and subscribes to the state topic of every
newly discovered entity.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from mqtt_sensor_exporter.const import HA_SUBSCRIBE_TIMEOUT
from mqtt_sensor_exporter.exceptions import ExporterError
from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.mqtt.state_updates import HADataHandler
from mqtt_sensor_exporter.registry import Registry
from mqtt_sensor_exporter.structs import (
    Device,
    DeviceKey,
    MessageHandler,
    Property,
    PropertyKey,
    SourceType,
    Subscriber,
)

logger = get_logger(__name__)

CONFIG_SUFFIX = "/config"


def _as_text(value: object) -> object:
    """HA publishes ``null`` for unset fields and numbers for some ids."""
    if value is None:
        return ""
    if isinstance(value, int | float) and not isinstance(value, bool):
        return str(value)
    return value


class HADeviceConfig(BaseModel):
    """The ``dev`` block of a discovery payload."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field("", validation_alias=AliasChoices("ids", "identifiers"))
    name: str = ""
    version: str = Field("", validation_alias=AliasChoices("sw", "sw_version"))
    model: str = Field("", validation_alias=AliasChoices("mdl", "model"))
    vendor: str = Field("", validation_alias=AliasChoices("mf", "manufacturer"))

    @field_validator("id", mode="before")
    @classmethod
    def _first_identifier(cls, value: object) -> object:
        if isinstance(value, list):
            value = value[0] if value else ""
        return _as_text(value)

    @field_validator("name", "version", "model", "vendor", mode="before")
    @classmethod
    def _null_to_empty(cls, value: object) -> object:
        return _as_text(value)


class HAEntityConfig(BaseModel):
    """A sensor entity discovery payload, abbreviated or long key form."""

    model_config = ConfigDict(populate_by_name=True)

    availability_topic: str = Field("", validation_alias=AliasChoices("avty_t", "availability_topic"))
    device_class: str = Field("", validation_alias=AliasChoices("dev_cla", "device_class"))
    entity_category: str = Field("", validation_alias=AliasChoices("ent_cat", "entity_category"))
    name: str = ""
    state_class: str = Field("", validation_alias=AliasChoices("stat_cla", "state_class"))
    status_topic: str = Field("", validation_alias=AliasChoices("stat_t", "state_topic"))
    unique_id: str = Field("", validation_alias=AliasChoices("uniq_id", "unique_id"))
    unit: str = Field("", validation_alias=AliasChoices("unit_of_meas", "unit_of_measurement"))
    device: HADeviceConfig | None = Field(None, validation_alias=AliasChoices("dev", "device"))

    @field_validator(
        "availability_topic",
        "device_class",
        "entity_category",
        "name",
        "state_class",
        "status_topic",
        "unique_id",
        "unit",
        mode="before",
    )
    @classmethod
    def _null_to_empty(cls, value: object) -> object:
        return _as_text(value)

    @property
    def device_path(self) -> str:
        """First two segments of the state topic."""
        return "/".join(self.status_topic.split("/", 2)[:2])


class HADiscoveryParser:
    """Registry upserts for HA discovery messages.

    The broker round-trip of a new subscription happens outside the registry
    lock; the property is inserted only once the subscription is acknowledged.
    A failed subscription is pushed to :attr:`done` and the process is expected
    to stop: that entity would otherwise never report again.
    """

    lp: str = "ha:discovery:"

    def __init__(
        self,
        registry: Registry,
        subscriber: Subscriber,
        bind: Callable[[str, MessageHandler], None],
        data_handler: HADataHandler,
        subscribe_timeout: float = HA_SUBSCRIBE_TIMEOUT,
    ) -> None:
        self.registry = registry
        self.subscriber = subscriber
        self.bind = bind
        self.data_handler = data_handler
        self.subscribe_timeout = subscribe_timeout
        self.done: asyncio.Queue[ExporterError] = asyncio.Queue()
        self._pending: set[PropertyKey] = set()

    async def handle(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}handle:"
        if not topic.endswith(CONFIG_SUFFIX):
            logger.debug("%s Received ha message, but it's not a config topic", lp, extra={"topic": topic})
            return

        logger.info("%s New HA entity config message", lp, extra={"topic": topic})
        try:
            conf = HAEntityConfig.model_validate_json(payload)
        except ValidationError as e:
            logger.warning(
                "%s Failed to parse device configuration",
                lp,
                extra={"topic": topic, "payload": payload, "error": e},
            )
            return

        if not conf.unique_id:
            logger.warning("%s HA entity configuration is missing 'uniq_id' field", lp, extra={"topic": topic})
            return
        if conf.device is None or not conf.device.id:
            logger.warning("%s HA device configuration is missing 'ids' field", lp, extra={"topic": topic})
            return
        if not conf.status_topic:
            logger.warning("%s HA entity configuration is missing 'stat_t' field", lp, extra={"topic": topic})
            return

        key = PropertyKey(DeviceKey(SourceType.HA, conf.device.id), conf.unique_id)
        needs_subscription = False
        async with self.registry.transaction(key.device) as dev:
            assert dev is not None
            self._update_device(dev, key, conf)
            prop = dev.get_property(key.id, create=False)
            if prop is not None:
                self._update_property(prop, key, conf)
            elif key not in self._pending:
                self._pending.add(key)
                needs_subscription = True
            else:
                logger.debug("%s Subscription already in flight", lp, extra={"unique_id": key.id})

        if needs_subscription:
            await self._subscribe_property(key, conf)

    def _update_device(self, dev: Device, key: PropertyKey, conf: HAEntityConfig) -> None:
        lp = f"{self.lp}device:"
        assert conf.device is not None
        if dev.path != conf.device_path:
            logger.info(
                "%s Updating homeassistant device path",
                lp,
                extra={"id": key.device.id, "old_path": dev.path, "new_path": conf.device_path},
            )
        if dev.name != conf.device.name:
            logger.info(
                "%s Updating homeassistant device name",
                lp,
                extra={"id": key.device.id, "old_name": dev.name, "new_name": conf.device.name},
            )
        dev.path = conf.device_path
        dev.name = conf.device.name

    def _update_property(self, prop: Property, key: PropertyKey, conf: HAEntityConfig) -> None:
        lp = f"{self.lp}property:"
        context = {"device": key.device.id, "unique_id": key.id}
        if prop.name != conf.name:
            logger.info(
                "%s Updating homeassistant property name",
                lp,
                extra={**context, "old_name": prop.name, "new_name": conf.name},
            )
            prop.name = conf.name
        if prop.unit != conf.unit:
            logger.info(
                "%s Updating homeassistant property unit",
                lp,
                extra={**context, "old_unit": prop.unit, "new_unit": conf.unit},
            )
            prop.unit = conf.unit
        if prop.status_topic != conf.status_topic:
            logger.warning(
                "%s Status topic has been updated but we don't support topic change",
                lp,
                extra={**context, "old_topic": prop.status_topic, "new_topic": conf.status_topic},
            )

    async def _subscribe_property(self, key: PropertyKey, conf: HAEntityConfig) -> None:
        lp = f"{self.lp}subscribe:"
        try:
            try:
                await self.subscriber.subscribe(conf.status_topic, self.subscribe_timeout)
            except ExporterError as e:
                logger.error(
                    "%s HA state topic subscription failed",
                    lp,
                    extra={"device": key.device.id, "unique_id": key.id, "topic": conf.status_topic, "error": e},
                )
                self.done.put_nowait(e)
                return

            async with self.registry.transaction(key.device) as dev:
                assert dev is not None
                dev.properties[key.id] = Property(conf.name, conf.unit, conf.status_topic)
            # bound only once subscribed, so a failed attempt leaves no handler behind
            self.bind(conf.status_topic, self.data_handler.bind(key))
        finally:
            self._pending.discard(key)
        logger.info(
            "%s Created new homeassistant property",
            lp,
            extra={"device": key.device.id, "unique_id": key.id, "topic": conf.status_topic},
        )
