"""Exception hierarchy for the exporter.

Parsing problems never raise: malformed topics and payloads are logged and
dropped where they are found. Exceptions are reserved for the transport, where
a failed subscription means a metric stream is silently lost.
"""

from __future__ import annotations


class ExporterError(Exception):
    """Base class for exporter errors."""


class TransportNotConnectedError(ExporterError):
    """Operation needs a live broker connection and there is none."""

    def __init__(self, operation: str) -> None:
        self.operation: str = operation
        super().__init__(f"MQTT client not connected, cannot {operation}")


class SubscriptionError(ExporterError):
    """The broker refused a subscription, or the request failed in flight.

    Attributes:
        topic: Topic filter that could not be subscribed
        reason: Failure reason reported by the client

    """

    def __init__(self, topic: str, reason: str) -> None:
        self.topic: str = topic
        self.reason: str = reason
        super().__init__(f"Subscription to '{topic}' failed: {reason}")


class SubscriptionTimeoutError(SubscriptionError):
    """No SUBACK within the allowed wait."""

    def __init__(self, topic: str, timeout_seconds: float) -> None:
        self.timeout_seconds: float = timeout_seconds
        super().__init__(topic, f"no acknowledgment after {timeout_seconds}s")
