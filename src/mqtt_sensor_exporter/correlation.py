"""
Per-message correlation IDs.

Every inbound MQTT message is handled in its own asyncio task; the transport
opens a correlation scope for it so all log lines emitted while parsing that
message (Homie, HA discovery or HA state) share one ID.
"""

from __future__ import annotations

import contextvars
import uuid
from collections.abc import Generator
from contextlib import contextmanager

__all__ = [
    "correlation_context",
    "ensure_correlation_id",
    "generate_correlation_id",
    "get_correlation_id",
    "set_correlation_id",
]

_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id",
    default=None,
)


def generate_correlation_id() -> str:
    """Return a new 32 character hex ID."""
    return uuid.uuid4().hex


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def set_correlation_id(correlation_id: str | None) -> None:
    _ = _correlation_id.set(correlation_id)


@contextmanager
def correlation_context(correlation_id: str | None = None) -> Generator[str]:
    """
    Scope a correlation ID, restoring the previous one on exit.

    Args:
        correlation_id: ID to use; a new one is generated when None

    Yields:
        The correlation ID active inside the block
    """
    previous_id = get_correlation_id()
    active_id = correlation_id or generate_correlation_id()
    set_correlation_id(active_id)
    try:
        yield active_id
    finally:
        set_correlation_id(previous_id)


def ensure_correlation_id() -> str:
    """Return the current correlation ID, creating one for task entry points that have none."""
    current_id = get_correlation_id()
    if current_id is None:
        current_id = generate_correlation_id()
        set_correlation_id(current_id)
    return current_id
