"""
Timing for network round-trips.

Wraps coroutines such as broker subscriptions and logs how long they took,
warning when a call crosses ``MQTT_EXPORTER_PERF_THRESHOLD_MS``.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from mqtt_sensor_exporter.logging_abstraction import ExporterLogger, get_logger

__all__ = [
    "measure_time",
    "timed_async",
]

P = ParamSpec("P")
T = TypeVar("T")

logger = get_logger(__name__)


def measure_time(start_time: float) -> float:
    """Milliseconds elapsed since ``start_time`` (a ``time.perf_counter()`` value)."""
    return (time.perf_counter() - start_time) * 1000


def timed_async(
    operation_name: str | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator timing an async function.

    Disabled entirely when ``MQTT_EXPORTER_PERF_TRACKING`` is off.

    Example:
        @timed_async("mqtt_subscribe")
        async def subscribe(self, topic):
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            from mqtt_sensor_exporter.const import (  # noqa: PLC0415
                MQTT_EXPORTER_PERF_THRESHOLD_MS,
                MQTT_EXPORTER_PERF_TRACKING,
            )

            if not MQTT_EXPORTER_PERF_TRACKING:
                return await func(*args, **kwargs)

            op_name = operation_name or func.__name__
            start_time = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                _log_timing(logger, op_name, measure_time(start_time), MQTT_EXPORTER_PERF_THRESHOLD_MS)

        return wrapper

    return decorator


def _log_timing(log: ExporterLogger, operation_name: str, elapsed_ms: float, threshold_ms: int) -> None:
    context = {
        "operation": operation_name,
        "duration_ms": round(elapsed_ms, 2),
        "threshold_ms": threshold_ms,
    }
    if elapsed_ms > threshold_ms:
        log.warning(
            "[%s] completed in %.1fms (threshold: %dms)",
            operation_name,
            elapsed_ms,
            threshold_ms,
            extra={**context, "exceeded_threshold": True},
        )
    else:
        log.debug(
            "[%s] completed in %.1fms",
            operation_name,
            elapsed_ms,
            extra={**context, "exceeded_threshold": False},
        )
