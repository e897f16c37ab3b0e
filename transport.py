"""Base64 transport encoding for embedding PCM in JSON bodies."""

from __future__ import annotations

import base64
import binascii

from errors import MALFORMED_AUDIO, FormatError


def encode_payload(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_payload(text: str) -> bytes:
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FormatError(MALFORMED_AUDIO, f"invalid base64 payload: {exc}") from exc
