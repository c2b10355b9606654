"""Logging for the MQTT sensor exporter.

Human-readable and/or JSON output, every line tagged with the correlation ID of
the MQTT message being processed and with optional structured context passed
through ``extra=``.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast

from typing_extensions import override

from mqtt_sensor_exporter.correlation import get_correlation_id

__all__ = [
    "ExporterLogger",
    "HumanReadableFormatter",
    "JSONFormatter",
    "get_logger",
    "set_log_level",
]


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping) and extra_data:
        return cast("Mapping[str, object]", extra_data)
    return None


def _open_output(target: str | Path) -> logging.Handler:
    """``stdout``/``stderr`` stream or an appended file; falls back to stderr if the file can't be opened."""
    if target == "stdout":
        return logging.StreamHandler(sys.stdout)
    if target == "stderr":
        return logging.StreamHandler(sys.stderr)
    path = Path(target)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path, mode="a")
    except OSError as e:
        print(f"Warning: cannot open log file {path}, logging to stderr: {e}", file=sys.stderr)
        return logging.StreamHandler(sys.stderr)


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": get_correlation_id(),
        }

        context = _context_of(record)
        if context is not None:
            log_data["context"] = dict(context)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``timestamp level [module:line] [corr-id] > message | k=v | k=v``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(correlation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = get_correlation_id()
        record.correlation_id = f"[{correlation_id[:8]}]" if correlation_id else "[--------]"

        formatted = super().format(record)
        context = _context_of(record)
        if context is not None:
            context_str = " | ".join(f"{k}={v}" for k, v in context.items())
            formatted = f"{formatted} | {context_str}"
        return formatted


class ExporterLogger:
    """Thin wrapper over :class:`logging.Logger` taking structured context.

    ``logger.warning("%s bad payload", lp, extra={"topic": topic})`` keeps the
    printf-style message and attaches ``topic`` as context that both formatters
    render.
    """

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stderr",
    ) -> None:
        """
        Args:
            name: dotted module name, ``mqtt_sensor_exporter.<module>``
            log_format: ``human``, ``json`` or ``both``
            json_file: JSON log file; stderr when None
            human_output: ``stdout``, ``stderr`` or a file path

        Handlers are attached only the first time a name is seen.
        """
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format

        from mqtt_sensor_exporter.const import MQTT_EXPORTER_DEBUG

        self.logger.setLevel(logging.DEBUG if MQTT_EXPORTER_DEBUG else logging.INFO)

        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _configure_handlers(
        self,
        json_file: str | Path | None,
        human_output: str | None,
    ) -> None:
        outputs: list[tuple[str | Path, logging.Formatter]] = []
        if self.log_format in ("json", "both"):
            outputs.append((json_file or "stderr", JSONFormatter()))
        if self.log_format in ("human", "both"):
            outputs.append((human_output or "stderr", HumanReadableFormatter()))

        for target, formatter in outputs:
            handler = _open_output(target)
            handler.setFormatter(formatter)
            handler.setLevel(self.logger.level)
            self.logger.addHandler(handler)

    @staticmethod
    def _wrap(extra: Mapping[str, object] | None) -> Mapping[str, object] | None:
        return {"extra_data": dict(extra)} if extra else None

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self.logger.log(level, msg, *args, extra=self._wrap(extra))

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def critical(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.CRITICAL, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self.logger.exception(msg, *args, extra=self._wrap(extra))

    def set_level(self, level: int) -> None:
        """Set the level on the logger and on every handler it owns."""
        self.logger.setLevel(level)
        for handler in self.logger.handlers:
            handler.setLevel(level)

    @property
    def handlers(self) -> list[logging.Handler]:
        return self.logger.handlers


def get_logger(
    name: str,
    log_format: str | None = None,
    json_file: str | Path | None = None,
    human_output: str | None = None,
) -> ExporterLogger:
    """Get or create an ExporterLogger, defaulting its outputs from ``const``."""
    from mqtt_sensor_exporter.const import (
        MQTT_EXPORTER_LOG_FORMAT,
        MQTT_EXPORTER_LOG_HUMAN_OUTPUT,
        MQTT_EXPORTER_LOG_JSON_FILE,
    )

    return ExporterLogger(
        name=name,
        log_format=log_format or MQTT_EXPORTER_LOG_FORMAT,
        json_file=json_file or MQTT_EXPORTER_LOG_JSON_FILE,
        human_output=human_output or MQTT_EXPORTER_LOG_HUMAN_OUTPUT,
    )


def set_log_level(level: int, package: str = "mqtt_sensor_exporter") -> None:
    """Apply ``level`` to every logger (and its handlers) under ``package``."""
    for name in list(logging.Logger.manager.loggerDict):
        if name == package or name.startswith(f"{package}."):
            target = logging.getLogger(name)
            target.setLevel(level)
            for handler in target.handlers:
                handler.setLevel(level)
