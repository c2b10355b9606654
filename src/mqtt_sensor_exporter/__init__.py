"""Prometheus exporter for Homie and Home Assistant MQTT sensors."""

__version__ = "0.3.0"
