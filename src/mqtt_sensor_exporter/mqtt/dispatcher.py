"""Routes inbound MQTT messages to the Homie, HA discovery and HA state handlers."""

from __future__ import annotations

from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.structs import MessageHandler

logger = get_logger(__name__)


class Dispatcher:
    """Prefix routing plus exact-topic bindings for HA status topics.

    Resolution order: status topics bound by the discovery parser (HA state
    topics may live under the discovery prefix), then prefix routes in
    registration order, then the HA state prefix, whose unbound topics are
    dropped as unknown properties. Anything else is an error.
    """

    lp: str = "dispatch:"

    def __init__(self, ha_state_prefix: str = "") -> None:
        self.ha_state_prefix = ha_state_prefix.rstrip("/")
        self._routes: list[tuple[str, MessageHandler]] = []
        self._bindings: dict[str, list[MessageHandler]] = {}

    def route(self, prefix: str, handler: MessageHandler) -> None:
        self._routes.append((prefix, handler))

    def bind(self, topic: str, handler: MessageHandler) -> None:
        """Deliver messages published on exactly ``topic`` to ``handler``."""
        self._bindings.setdefault(topic, []).append(handler)

    def is_bound(self, topic: str) -> bool:
        return topic in self._bindings

    async def dispatch(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}route:"
        handlers = self._bindings.get(topic)
        if handlers:
            for handler in list(handlers):
                await handler(topic, payload)
            return

        for prefix, handler in self._routes:
            if topic.startswith(prefix):
                await handler(topic, payload)
                return

        if self.ha_state_prefix and topic.startswith(f"{self.ha_state_prefix}/"):
            logger.debug("%s State topic has no known property, dropping", lp, extra={"topic": topic})
            return

        logger.error("%s No handler for topic, dropping", lp, extra={"topic": topic})
