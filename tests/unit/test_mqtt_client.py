"""
Unit tests for the MQTT transport.

aiomqtt.Client is mocked throughout; tests cover subscribe-and-wait, the
reconnect loop and per-message delivery.
"""

import asyncio
import contextlib
from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from mqtt_sensor_exporter.correlation import get_correlation_id
from mqtt_sensor_exporter.exceptions import (
    SubscriptionError,
    SubscriptionTimeoutError,
    TransportNotConnectedError,
)
from mqtt_sensor_exporter.mqtt.client import MQTTTransport
from mqtt_sensor_exporter.structs import ExporterSettings


@pytest.fixture
def settings() -> ExporterSettings:
    return ExporterSettings(
        broker_url="tcp://broker.lan:1884",
        username="user",
        password="pass",
        client_id="test-exporter",
        listen_address="127.0.0.1:9100",
        conn_delay=1,
    )


def make_message(topic: str, payload: bytes) -> MagicMock:
    message = MagicMock()
    message.topic.value = topic
    message.payload = payload
    return message


async def message_stream(*messages: MagicMock) -> AsyncIterator[MagicMock]:
    for message in messages:
        yield message
    # keep the connection open until the test cancels it
    await asyncio.Event().wait()


def make_client(*messages: MagicMock, granted: list[int] | None = None) -> MagicMock:
    client = MagicMock()
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    client.subscribe = AsyncMock(return_value=granted if granted is not None else [0])
    client.messages = message_stream(*messages)
    return client


_real_sleep = asyncio.sleep


async def wait_for(condition, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not condition():
            await _real_sleep(0.001)


class TestSubscribe:
    """Tests for MQTTTransport.subscribe"""

    @pytest.mark.asyncio
    async def test_not_connected(self, settings: ExporterSettings):
        """Subscribing without a connection fails and nothing is recorded for reconnect"""
        transport = MQTTTransport(settings, AsyncMock())

        with pytest.raises(TransportNotConnectedError):
            await transport.subscribe("zigbee2mqtt/kitchen", 2.0)

        assert transport.subscriptions == []

    @pytest.mark.asyncio
    async def test_acknowledged(self, settings: ExporterSettings):
        transport = MQTTTransport(settings, AsyncMock())
        transport.client = make_client()
        transport._connected = True

        await transport.subscribe("zigbee2mqtt/kitchen", 2.0)

        transport.client.subscribe.assert_awaited_once_with("zigbee2mqtt/kitchen", qos=0)

    @pytest.mark.asyncio
    async def test_timeout(self, settings: ExporterSettings):
        """No SUBACK within the timeout raises SubscriptionTimeoutError"""

        async def never_acked(topic: str, qos: int = 0) -> list[int]:
            await asyncio.sleep(10)
            return [0]

        transport = MQTTTransport(settings, AsyncMock())
        transport.client = make_client()
        transport.client.subscribe = AsyncMock(side_effect=never_acked)
        transport._connected = True

        with pytest.raises(SubscriptionTimeoutError) as exc_info:
            await transport.subscribe("zigbee2mqtt/kitchen", 0.01)

        assert exc_info.value.topic == "zigbee2mqtt/kitchen"
        assert exc_info.value.timeout_seconds == 0.01

    @pytest.mark.asyncio
    async def test_client_error(self, settings: ExporterSettings):
        transport = MQTTTransport(settings, AsyncMock())
        transport.client = make_client()
        transport.client.subscribe = AsyncMock(side_effect=aiomqtt.MqttError("Operation timed out"))
        transport._connected = True

        with pytest.raises(SubscriptionError, match="Operation timed out"):
            await transport.subscribe("zigbee2mqtt/kitchen", 2.0)

    @pytest.mark.asyncio
    async def test_refused(self, settings: ExporterSettings):
        """A failure reason code in the SUBACK is an error"""
        transport = MQTTTransport(settings, AsyncMock())
        transport.client = make_client(granted=[0x80])
        transport._connected = True

        with pytest.raises(SubscriptionError, match="refused"):
            await transport.subscribe("zigbee2mqtt/kitchen", 2.0)

        assert transport.subscriptions == []

    @pytest.mark.asyncio
    async def test_acknowledged_topic_is_resubscribed(self, settings: ExporterSettings):
        """Only topics with a successful SUBACK are kept for reconnect"""
        transport = MQTTTransport(settings, AsyncMock())
        transport.client = make_client()
        transport._connected = True

        await transport.subscribe("zigbee2mqtt/kitchen", 2.0)

        assert transport.subscriptions == ["zigbee2mqtt/kitchen"]

    @pytest.mark.asyncio
    async def test_invalid_filter(self, settings: ExporterSettings):
        """A filter the client rejects locally becomes a SubscriptionError"""
        transport = MQTTTransport(settings, AsyncMock())
        transport.client = aiomqtt.Client(hostname="localhost", identifier="test-exporter")
        transport._connected = True

        with pytest.raises(SubscriptionError) as exc_info:
            await transport.subscribe("zigbee2mqtt/#/temperature", 2.0)

        assert exc_info.value.topic == "zigbee2mqtt/#/temperature"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert transport.subscriptions == []


class TestStart:
    """Tests for the MQTTTransport.start connection loop"""

    @pytest.mark.asyncio
    async def test_connects_subscribes_and_delivers(self, settings: ExporterSettings):
        """Recorded topics are subscribed and every message reaches the handler"""
        on_message = AsyncMock()
        client = make_client(make_message("homie/a/b/c", b"1"), make_message("homie/a/b/d", bytearray(b"2")))
        transport = MQTTTransport(settings, on_message)
        transport.add_subscription("homie/#")
        transport.add_subscription("homeassistant/sensor/#")

        with patch("mqtt_sensor_exporter.mqtt.client.aiomqtt.Client", return_value=client) as mock_client_class:
            start_task = asyncio.create_task(transport.start())
            await wait_for(lambda: on_message.await_count == 2)
            assert transport.is_connected
            start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await start_task

        mock_client_class.assert_called_once_with(
            hostname="broker.lan",
            port=1884,
            username="user",
            password="pass",
            identifier="test-exporter",
        )
        assert [c.args[0] for c in client.subscribe.await_args_list] == ["homie/#", "homeassistant/sensor/#"]
        on_message.assert_any_await("homie/a/b/c", b"1")
        on_message.assert_any_await("homie/a/b/d", b"2")
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_reconnects_after_connection_loss(self, settings: ExporterSettings):
        """A lost connection is retried after conn_delay"""
        failing = make_client()
        failing.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("Connection refused"))
        healthy = make_client()
        transport = MQTTTransport(settings, AsyncMock())
        transport.add_subscription("homie/#")

        with (
            patch("mqtt_sensor_exporter.mqtt.client.aiomqtt.Client", side_effect=[failing, healthy]),
            patch("mqtt_sensor_exporter.mqtt.client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
        ):
            start_task = asyncio.create_task(transport.start())
            await wait_for(lambda: healthy.subscribe.await_count == 1)
            start_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await start_task

        mock_sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_bad_credentials_are_fatal(self, settings: ExporterSettings):
        client = make_client()
        client.__aenter__ = AsyncMock(side_effect=aiomqtt.MqttError("[code:134] Bad user name or password"))
        transport = MQTTTransport(settings, AsyncMock())

        with (
            patch("mqtt_sensor_exporter.mqtt.client.aiomqtt.Client", return_value=client),
            pytest.raises(aiomqtt.MqttError),
        ):
            await transport.start()

    @pytest.mark.asyncio
    async def test_refused_root_subscription_is_fatal(self, settings: ExporterSettings):
        client = make_client(granted=[0x87])
        transport = MQTTTransport(settings, AsyncMock())
        transport.add_subscription("homie/#")

        with (
            patch("mqtt_sensor_exporter.mqtt.client.aiomqtt.Client", return_value=client),
            pytest.raises(SubscriptionError),
        ):
            await transport.start()

        assert not transport.is_connected


class TestDelivery:
    """Tests for per-message delivery"""

    @pytest.mark.asyncio
    async def test_handler_errors_are_contained(self, settings: ExporterSettings, caplog: pytest.LogCaptureFixture):
        """A failing handler is logged and does not propagate"""
        transport = MQTTTransport(settings, AsyncMock(side_effect=RuntimeError("boom")))

        await transport._deliver("homie/a/b/c", b"1")

        assert "Message handler failed" in caplog.text

    @pytest.mark.asyncio
    async def test_each_message_has_a_correlation_id(self, settings: ExporterSettings):
        seen: list[str | None] = []

        async def on_message(topic: str, payload: bytes) -> None:
            seen.append(get_correlation_id())

        transport = MQTTTransport(settings, on_message)
        await transport._deliver("homie/a/b/c", b"1")
        await transport._deliver("homie/a/b/c", b"2")

        assert all(seen)
        assert seen[0] != seen[1]

    @pytest.mark.asyncio
    async def test_stop_cancels_tasks(self, settings: ExporterSettings):
        transport = MQTTTransport(settings, AsyncMock())
        transport.start_task = asyncio.create_task(asyncio.Event().wait())

        await transport.stop()

        assert transport.start_task.cancelled()
        assert not transport.is_connected
