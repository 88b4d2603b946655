"""Payload encoding for netcat messages."""

from __future__ import annotations

import base64
import binascii
import re
from typing import Tuple

from toolbox_api.core.errors import ValidationError

_HEX_PREFIX = re.compile(r"(?<![0-9a-fA-F])0[xX]")


def parse_hex(text: str) -> bytes:
    """Parse ``"48 65 6c"``, ``"0x48 0x65"`` or ``"48656c"`` into bytes."""
    cleaned = "".join(_HEX_PREFIX.sub("", text).split())
    if len(cleaned) % 2:
        raise ValidationError("hex payload must have an even number of digits")
    try:
        return bytes.fromhex(cleaned)
    except ValueError as e:
        raise ValidationError(f"invalid hex payload: {e}") from e


def encode_payload(data: str, fmt: str) -> bytes:
    if fmt == "hex":
        return parse_hex(data)
    if fmt == "base64":
        try:
            return base64.b64decode("".join(data.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"invalid base64 payload: {e}") from e
    return data.encode("utf-8")


def format_hex(data: bytes) -> str:
    return " ".join(f"{b:02X}" for b in data)


def describe_received(data: bytes) -> Tuple[str, str]:
    """Text when the bytes are valid UTF-8, spaced uppercase hex otherwise."""
    try:
        return data.decode("utf-8"), "text"
    except UnicodeDecodeError:
        return format_hex(data), "hex"
