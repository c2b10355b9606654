"""Homie convention parser.

Topics look like ``homie/<device>/<node>/<attr>[/<sub-attr>]``. Nodes are
tracked as registry devices keyed by ``<device>/<node>``; ``<attr>`` is either
a ``$`` node attribute or a property id whose value and ``$`` attributes are
handled by :meth:`HomieParser._parse_property`.
"""

from __future__ import annotations

from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.metrics import MetricSink
from mqtt_sensor_exporter.registry import Registry
from mqtt_sensor_exporter.structs import Device, DeviceKey, SourceType
from mqtt_sensor_exporter.utils import decode_payload, parse_float

logger = get_logger(__name__)

HOMIE_ROOT = "homie"


class HomieParser:
    """Applies Homie messages to the registry and pushes property values to the sink."""

    lp: str = "homie:"

    def __init__(self, registry: Registry, sink: MetricSink) -> None:
        self.registry = registry
        self.sink = sink

    async def handle(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}handle:"
        parts = topic.split("/")
        if parts[0] != HOMIE_ROOT:
            logger.error("%s Error parsing topic, doesn't start with '%s'", lp, HOMIE_ROOT, extra={"topic": topic})
            return
        if len(parts) < 3:
            logger.error("%s Error parsing topic, expected 4+ parts", lp, extra={"topic": topic})
            return
        if len(parts) == 3:
            logger.debug("%s Root device attribute is ignored", lp, extra={"topic": topic})
            return

        path = "/".join(parts[1:3])
        attr, rest = parts[3], parts[4:]
        is_property = not attr.startswith("$")
        if not attr or (is_property and rest and not rest[0].startswith("$")):
            logger.error("%s Unexpected property attributes", lp, extra={"topic": topic, "attributes": parts[3:]})
            return

        value: float | None = None
        if is_property and not rest:
            try:
                value = parse_float(payload)
            except ValueError as e:
                logger.warning(
                    "%s Couldn't convert payload to float",
                    lp,
                    extra={"path": path, "property": attr, "payload": payload, "error": e},
                )
                return

        text = decode_payload(payload)
        async with self.registry.transaction(DeviceKey(SourceType.HOMIE, path)) as dev:
            assert dev is not None
            if attr == "$name":
                dev.name = text
            elif attr == "$properties":
                dev.declared_properties = tuple(p.strip() for p in text.split(",") if p.strip())
                logger.debug(
                    "%s Device declares %d properties",
                    lp,
                    len(dev.declared_properties),
                    extra={"path": path},
                )
            elif not is_property:
                logger.debug("%s Attribute is ignored", lp, extra={"path": path, "attribute": attr})
            else:
                self._parse_property(dev, path, attr, rest, text, value)

    def _parse_property(
        self,
        dev: Device,
        path: str,
        prop_id: str,
        rest: list[str],
        text: str,
        value: float | None,
    ) -> None:
        """Apply one property message to ``dev`` (a registry working copy)."""
        lp = f"{self.lp}property:"
        context = {"path": path, "property": prop_id}
        prop = dev.get_property(prop_id)
        assert prop is not None

        if not rest:
            assert value is not None
            if not prop.ignored:
                self.sink.set(dev.metric_key(path, prop_id, SourceType.HOMIE), value)
            return

        sub_attr = rest[0]
        if sub_attr == "$name":
            prop.name = text
        elif sub_attr == "$datatype":
            if text.startswith(("int", "bool")):
                logger.debug("%s Unsupported datatype, converting to float", lp, extra={**context, "datatype": text})
            elif not text.startswith("float"):
                if prop.ignore():
                    logger.warning("%s Unsupported datatype, ignoring property", lp, extra={**context, "datatype": text})
        elif sub_attr == "$unit":
            prop.unit = text
        else:
            logger.debug("%s Attribute is ignored", lp, extra={**context, "attribute": sub_attr})
