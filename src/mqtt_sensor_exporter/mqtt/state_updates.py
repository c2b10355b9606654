"""Home Assistant state topic handling.

Each discovered entity gets its own status topic subscription, bound to the
entity's :class:`PropertyKey`. The property is looked up again on every
message so the handler always sees the registry's committed state.
"""

from __future__ import annotations

from functools import partial

from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.metrics import MetricSink
from mqtt_sensor_exporter.registry import Registry
from mqtt_sensor_exporter.structs import MessageHandler, PropertyKey, SourceType
from mqtt_sensor_exporter.utils import parse_float

logger = get_logger(__name__)


class HADataHandler:
    """Turns HA state payloads into ``source_type="ha"`` metrics.

    An unparseable payload latches the property as ignored for good; HA
    entities that publish text states (``ON``, ``unavailable``...) stop being
    considered after their first non-numeric state.
    """

    lp: str = "ha:data:"

    def __init__(self, registry: Registry, sink: MetricSink) -> None:
        self.registry = registry
        self.sink = sink

    def bind(self, key: PropertyKey) -> MessageHandler:
        """Callback for the status topic of ``key``."""
        return partial(self.handle, key)

    async def handle(self, key: PropertyKey, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}handle:"
        context = {"device": key.device.id, "unique_id": key.id, "topic": topic}
        async with self.registry.transaction(key.device, create=False) as dev:
            prop = dev.get_property(key.id, create=False) if dev is not None else None
            if dev is None or prop is None:
                logger.debug("%s Unknown property, dropping state", lp, extra=context)
                return
            if prop.ignored:
                return

            try:
                value = parse_float(payload)
            except ValueError as e:
                _ = prop.ignore()
                logger.warning(
                    "%s Couldn't convert payload to float, set property to ignore",
                    lp,
                    extra={**context, "property": prop.name, "payload": payload, "error": e},
                )
                return

            self.sink.set(dev.metric_key(key.device.id, key.id, SourceType.HA), value)
