"""
Unit tests for payload helpers.
"""

import math

import pytest

from mqtt_sensor_exporter.utils import decode_payload, parse_float


class TestParseFloat:
    """Tests for parse_float"""

    @pytest.mark.parametrize(
        ("payload", "expected"),
        [
            (b"21.5", 21.5),
            (b"-4", -4.0),
            (b"1e3", 1000.0),
            (b"+0.25", 0.25),
            ("42", 42.0),
            (b"inf", math.inf),
        ],
    )
    def test_valid(self, payload, expected):
        assert parse_float(payload) == expected

    def test_nan(self):
        assert math.isnan(parse_float(b"NaN"))

    @pytest.mark.parametrize("payload", [b"", b"abc", b" 1", b"1\n", b"1_000", b"true", b"ON", b"1,5"])
    def test_invalid(self, payload):
        with pytest.raises(ValueError):
            _ = parse_float(payload)


class TestDecodePayload:
    """Tests for decode_payload"""

    def test_utf8(self):
        assert decode_payload("°C".encode()) == "°C"

    def test_invalid_bytes_replaced(self):
        assert decode_payload(b"\xffabc") == "�abc"
