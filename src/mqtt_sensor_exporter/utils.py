from __future__ import annotations


def decode_payload(payload: bytes) -> str:
    """MQTT payloads are UTF-8 text in both conventions; undecodable bytes become U+FFFD."""
    return payload.decode("utf-8", errors="replace")


def parse_float(payload: bytes | str) -> float:
    """Parse a sensor value as a 64-bit float.

    Stricter than ``float()``: surrounding whitespace and digit-group
    underscores are rejected, so ``"21.5\\n"`` is not a number.

    Raises:
        ValueError: payload is not a plain decimal, exponent, inf or nan literal

    """
    text = decode_payload(payload) if isinstance(payload, bytes) else payload
    if not text or text != text.strip() or "_" in text:
        msg = f"invalid float literal: {text!r}"
        raise ValueError(msg)
    return float(text)
