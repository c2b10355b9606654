from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from collections.abc import Sequence
from pathlib import Path

import dotenv
import uvloop
from pydantic import ValidationError

from mqtt_sensor_exporter.const import (
    EXPORTER_VERSION,
    HA_DISCOVERY_PREFIX,
    HOMIE_PREFIX,
    MQTT_CLIENT_START_TASK_NAME,
)
from mqtt_sensor_exporter.correlation import correlation_context, ensure_correlation_id
from mqtt_sensor_exporter.homie import HomieParser
from mqtt_sensor_exporter.logging_abstraction import get_logger, set_log_level
from mqtt_sensor_exporter.metrics import PrometheusMetricSink, start_metrics_server
from mqtt_sensor_exporter.mqtt import Dispatcher, HADataHandler, HADiscoveryParser, MQTTTransport
from mqtt_sensor_exporter.registry import Registry
from mqtt_sensor_exporter.structs import ExporterSettings

logger = get_logger(__name__)

# aiomqtt logs through "mqtt"; keep it to errors
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False


class MQTTExporter:
    """Wires registry, parsers, dispatcher, transport and metric sink together."""

    lp: str = "MQTTExporter:"

    def __init__(self, settings: ExporterSettings, sink: PrometheusMetricSink | None = None) -> None:
        self.settings = settings
        self.registry = Registry()
        self.sink = sink if sink is not None else PrometheusMetricSink()
        self.dispatcher = Dispatcher(settings.ha_state_prefix)
        self.transport = MQTTTransport(settings, self.dispatcher.dispatch)
        self.homie = HomieParser(self.registry, self.sink)
        self.ha_data = HADataHandler(self.registry, self.sink)
        self.ha_discovery = HADiscoveryParser(
            self.registry,
            self.transport,
            self.dispatcher.bind,
            self.ha_data,
        )

        self.dispatcher.route(HOMIE_PREFIX, self.homie.handle)
        self.dispatcher.route(HA_DISCOVERY_PREFIX, self.ha_discovery.handle)
        self.transport.add_subscription(f"{HOMIE_PREFIX}#")
        self.transport.add_subscription(f"{HA_DISCOVERY_PREFIX}#")
        self.sink.track_client_status(settings.broker_url, lambda: self.transport.is_connected)

        self._stop_event = asyncio.Event()

    def request_stop(self, signum: int | None = None) -> None:
        if signum is not None:
            logger.info("%s Intercepted signal: %s (%s)", self.lp, signal.Signals(signum).name, signum)
        self._stop_event.set()

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_stop, signum)
        logger.debug("%s Signal handlers configured for SIGINT & SIGTERM", self.lp)

    async def run(self) -> int:
        """Run until a signal, a dead transport or a fatal discovery error. Returns the exit code."""
        lp = f"{self.lp}run:"
        _ = ensure_correlation_id()
        self._install_signal_handlers()

        self.transport.start_task = transport_task = asyncio.create_task(
            self.transport.start(),
            name=MQTT_CLIENT_START_TASK_NAME,
        )
        stop_task = asyncio.create_task(self._stop_event.wait())
        fatal_task = asyncio.create_task(self.ha_discovery.done.get())

        done, _ = await asyncio.wait(
            {transport_task, stop_task, fatal_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        exit_code = 0
        if fatal_task in done:
            logger.error("%s HA listener error", lp, extra={"error": fatal_task.result()})
            exit_code = 1
        elif transport_task in done:
            error = None if transport_task.cancelled() else transport_task.exception()
            logger.error("%s MQTT transport stopped", lp, extra={"error": error})
            exit_code = 1
        else:
            logger.debug("%s Interrupt received", lp)

        for waiter in (stop_task, fatal_task):
            _ = waiter.cancel()
        await self.transport.stop()
        return exit_code


def parse_cli(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prometheus exporter for Homie and Home Assistant MQTT sensors")
    _ = parser.add_argument(
        "-b",
        "--broker",
        default=None,
        help="MQTT broker url, with the format tcp://<host>:<port>",
    )
    _ = parser.add_argument(
        "-l",
        "--listen",
        default=None,
        help="Address to listen on, with the format <ip>:<port>",
    )
    _ = parser.add_argument(
        "-p",
        "--ha-state-prefix",
        dest="ha_state_prefix",
        default=None,
        help="Topic prefix of Home Assistant state topics",
    )
    _ = parser.add_argument("-d", "--debug", action="store_true", help="Set debug mode")
    _ = parser.add_argument("--env", help="Path to an environment file", default=None, type=Path)
    return parser.parse_args(argv)


def load_env_file(env_file: Path) -> bool:
    env_path = env_file.expanduser().resolve()
    if not env_path.exists():
        logger.error("Environment file not found", extra={"path": str(env_path)})
        return False
    loaded_any = dotenv.load_dotenv(env_path, override=True)
    if loaded_any:
        logger.info("Environment variables loaded", extra={"source": str(env_path)})
    else:
        logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})
    return loaded_any


def build_settings(args: argparse.Namespace) -> ExporterSettings:
    return ExporterSettings.from_env(
        broker_url=args.broker,
        listen_address=args.listen,
        ha_state_prefix=args.ha_state_prefix,
        debug=True if args.debug else None,
    )


async def _serve(settings: ExporterSettings) -> int:
    exporter = MQTTExporter(settings)
    start_metrics_server(exporter.sink, settings.listen_host, settings.listen_port)
    return await exporter.run()


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``mqtt-sensor-exporter``."""
    with correlation_context():
        args = parse_cli(argv)
        if args.env is not None:
            _ = load_env_file(args.env)

        try:
            settings = build_settings(args)
        except ValidationError as e:
            logger.error("Invalid configuration", extra={"error": e})
            return 2

        if settings.debug:
            set_log_level(logging.DEBUG)
            logger.info("Debug mode enabled")

        logger.info("mqtt exporter start", extra={"version": EXPORTER_VERSION, "broker": settings.broker_url})
        try:
            exit_code = uvloop.run(_serve(settings))
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
            exit_code = 0
        except OSError:
            logger.exception("Failed to start metrics server", extra={"listen": settings.listen_address})
            exit_code = 1
        logger.info("mqtt exporter stopped", extra={"exit_code": exit_code})
        return exit_code
