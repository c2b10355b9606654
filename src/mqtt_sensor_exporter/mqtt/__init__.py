"""MQTT side of the exporter.

- client.py: aiomqtt transport with reconnect and per-message tasks
- dispatcher.py: topic routing
- discovery.py: Home Assistant discovery parsing
- state_updates.py: Home Assistant state topic values
"""

from .client import MQTTTransport
from .discovery import HADeviceConfig, HADiscoveryParser, HAEntityConfig
from .dispatcher import Dispatcher
from .state_updates import HADataHandler

__all__ = [
    "Dispatcher",
    "HADataHandler",
    "HADeviceConfig",
    "HADiscoveryParser",
    "HAEntityConfig",
    "MQTTTransport",
]
