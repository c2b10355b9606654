"""MQTT transport for the exporter.

Owns the aiomqtt connection: reconnect loop, subscription bookkeeping (every
recorded topic filter is sent again after a reconnect) and fan-out of inbound
messages, one asyncio task per message.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import aiomqtt

from mqtt_sensor_exporter.const import ROOT_SUBSCRIBE_TIMEOUT
from mqtt_sensor_exporter.correlation import correlation_context
from mqtt_sensor_exporter.exceptions import (
    SubscriptionError,
    SubscriptionTimeoutError,
    TransportNotConnectedError,
)
from mqtt_sensor_exporter.instrumentation import timed_async
from mqtt_sensor_exporter.logging_abstraction import get_logger
from mqtt_sensor_exporter.structs import ExporterSettings, MessageHandler

logger = get_logger(__name__)

# CONNACK codes that retrying will not fix (v3.1.1 and v5)
_AUTH_FAILURE_CODES = ("code:4]", "code:5]", "code:134]", "code:135]")


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    return str(payload).encode()


def _has_failure(granted: Iterable[object] | None) -> bool:
    """True if a SUBACK carries a failure reason code (0x80 and up)."""
    for code in granted or ():
        if getattr(code, "is_failure", False):
            return True
        if isinstance(code, int) and code >= 0x80:
            return True
    return False


class MQTTTransport:
    """aiomqtt connection with subscribe-and-wait and per-message tasks."""

    lp: str = "mqtt:"

    def __init__(self, settings: ExporterSettings, on_message: MessageHandler) -> None:
        self.settings = settings
        self.on_message = on_message
        self.client: aiomqtt.Client | None = None
        self.start_task: asyncio.Task[None] | None = None
        self._connected: bool = False
        self._subscriptions: dict[str, int] = {}
        self._message_tasks: set[asyncio.Task[None]] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def subscriptions(self) -> list[str]:
        return list(self._subscriptions)

    def add_subscription(self, topic: str, qos: int = 0) -> None:
        """Record a topic filter; it is sent to the broker on every (re)connect."""
        self._subscriptions[topic] = qos

    @timed_async("mqtt_subscribe")
    async def subscribe(self, topic: str, timeout: float) -> None:
        """Subscribe now and wait at most ``timeout`` seconds for the SUBACK.

        Raises:
            TransportNotConnectedError: no broker connection
            SubscriptionTimeoutError: no SUBACK in time
            SubscriptionError: the broker or the client rejected the request

        """
        if not self._connected or self.client is None:
            raise TransportNotConnectedError(f"subscribe to '{topic}'")
        qos = self._subscriptions.get(topic, 0)
        await self._subscribe_now(self.client, topic, qos, timeout)
        # only acknowledged filters are sent again on reconnect
        self.add_subscription(topic, qos)

    async def _subscribe_now(self, client: aiomqtt.Client, topic: str, qos: int, timeout: float) -> None:
        lp = f"{self.lp}subscribe:"
        try:
            async with asyncio.timeout(timeout):
                granted = await client.subscribe(topic, qos=qos)
        except TimeoutError as e:
            raise SubscriptionTimeoutError(topic, timeout) from e
        except aiomqtt.MqttError as e:
            raise SubscriptionError(topic, str(e)) from e
        except ValueError as e:
            # raised synchronously by the client for a malformed topic filter
            raise SubscriptionError(topic, str(e)) from e
        if _has_failure(granted):  # type: ignore[arg-type]
            raise SubscriptionError(topic, f"broker refused subscription ({granted})")
        logger.debug("%s Subscribed", lp, extra={"topic": topic, "qos": qos})

    async def _resubscribe(self, client: aiomqtt.Client) -> None:
        for topic, qos in list(self._subscriptions.items()):
            await self._subscribe_now(client, topic, qos, ROOT_SUBSCRIBE_TIMEOUT)

    def _new_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.settings.broker_host,
            port=self.settings.broker_port,
            username=self.settings.username,
            password=self.settings.password,
            identifier=self.settings.client_id,
        )

    async def start(self) -> None:
        """Connect, subscribe and receive until cancelled.

        Connection loss is retried after ``conn_delay`` seconds. A refused
        subscription or rejected credentials end the loop with an exception.
        """
        lp = f"{self.lp}start:"
        while True:
            self.client = client = self._new_client()
            logger.debug("%s Connecting to MQTT broker...", lp, extra={"broker": self.settings.broker_url})
            try:
                async with client:
                    self._connected = True
                    logger.info(
                        "%s Connected to MQTT broker: %s port: %s",
                        lp,
                        self.settings.broker_host,
                        self.settings.broker_port,
                    )
                    await self._resubscribe(client)
                    await self._receive(client)
            except SubscriptionError:
                logger.exception("%s Subscription failed, giving up", lp)
                raise
            except aiomqtt.MqttError as mqtt_err:
                if any(code in str(mqtt_err) for code in _AUTH_FAILURE_CODES):
                    logger.exception(
                        "%s Broker rejected the connection, check your MQTT credentials (username: %s)",
                        lp,
                        self.settings.username,
                    )
                    raise
                logger.warning("%s MQTT error: %s", lp, mqtt_err)
            finally:
                self._connected = False

            delay = self.settings.conn_delay if self.settings.conn_delay > 0 else 5
            logger.info("%s Disconnected, sleeping for %s seconds before re-trying...", lp, delay)
            await asyncio.sleep(delay)

    async def _receive(self, client: aiomqtt.Client) -> None:
        async for message in client.messages:
            task = asyncio.create_task(self._deliver(message.topic.value, _payload_bytes(message.payload)))
            self._message_tasks.add(task)
            task.add_done_callback(self._message_tasks.discard)

    async def _deliver(self, topic: str, payload: bytes) -> None:
        lp = f"{self.lp}rcv:"
        with correlation_context():
            logger.debug("%s New mqtt message", lp, extra={"topic": topic, "payload_len": len(payload)})
            try:
                await self.on_message(topic, payload)
            except Exception:
                logger.exception("%s Message handler failed", lp, extra={"topic": topic})

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self.start_task is not None and not self.start_task.done():
            logger.debug("%s Cancelling start task", lp)
            _ = self.start_task.cancel()
        pending = [task for task in self._message_tasks if not task.done()]
        for task in pending:
            _ = task.cancel()
        tasks = [*pending, *([self.start_task] if self.start_task is not None else [])]
        if tasks:
            _ = await asyncio.gather(*tasks, return_exceptions=True)
        self._connected = False
        logger.info("%s Disconnected from MQTT broker", lp)
