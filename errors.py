"""Shared error codes, user-facing messages and the pipeline exception types."""

from __future__ import annotations

# Categories
DEVICE = "DEVICE"
FORMAT = "FORMAT"
VALIDATION = "VALIDATION"
TRANSPORT = "TRANSPORT"
RECOGNITION = "RECOGNITION"

# Device
PERMISSION_DENIED = "PERMISSION_DENIED"
DEVICE_UNAVAILABLE = "DEVICE_UNAVAILABLE"

# Format
UNSUPPORTED_CONTAINER = "UNSUPPORTED_CONTAINER"
DECODE_FAILED = "DECODE_FAILED"

# Validation
EMPTY = "EMPTY"
TOO_SHORT = "TOO_SHORT"
TOO_LONG = "TOO_LONG"

# Transport
TIMEOUT = "TIMEOUT"
UNAVAILABLE = "UNAVAILABLE"
RATE_LIMITED = "RATE_LIMITED"
NETWORK_ERROR = "NETWORK_ERROR"

# Recognition
AUTH_FAILED = "AUTH_FAILED"
MALFORMED_AUDIO = "MALFORMED_AUDIO"
NO_SPEECH = "NO_SPEECH"
UNCLEAR = "UNCLEAR"
INVALID_PARAMETERS = "INVALID_PARAMETERS"
LOW_QUALITY = "LOW_QUALITY"
UNKNOWN = "UNKNOWN"

ERROR_MESSAGES = {
    PERMISSION_DENIED: "Microphone permission was denied, allow access in system settings.",
    DEVICE_UNAVAILABLE: "No usable microphone was found.",
    UNSUPPORTED_CONTAINER: "Recorded audio is in an unsupported format.",
    DECODE_FAILED: "Audio could not be decoded.",
    EMPTY: "No audio was captured.",
    TOO_SHORT: "Recording is too short, speak for at least half a second.",
    TOO_LONG: "Recording is too long, keep it under 60 seconds.",
    TIMEOUT: "Recognition timed out, please retry.",
    UNAVAILABLE: "Speech recognition service is unavailable.",
    RATE_LIMITED: "Too many requests, please retry later.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "Speech service authentication failed.",
    MALFORMED_AUDIO: "Audio data is malformed.",
    NO_SPEECH: "No speech was detected.",
    UNCLEAR: "Speech was unclear, please record again.",
    INVALID_PARAMETERS: "Audio parameters were rejected, check sample rate and format.",
    LOW_QUALITY: "Audio quality is too low to recognise.",
    UNKNOWN: "Speech recognition failed.",
}

ERROR_CATEGORIES = {
    PERMISSION_DENIED: DEVICE,
    DEVICE_UNAVAILABLE: DEVICE,
    UNSUPPORTED_CONTAINER: FORMAT,
    DECODE_FAILED: FORMAT,
    EMPTY: VALIDATION,
    TOO_SHORT: VALIDATION,
    TOO_LONG: VALIDATION,
    TIMEOUT: TRANSPORT,
    UNAVAILABLE: TRANSPORT,
    RATE_LIMITED: TRANSPORT,
    NETWORK_ERROR: TRANSPORT,
    AUTH_FAILED: RECOGNITION,
    MALFORMED_AUDIO: RECOGNITION,
    NO_SPEECH: RECOGNITION,
    UNCLEAR: RECOGNITION,
    INVALID_PARAMETERS: RECOGNITION,
    LOW_QUALITY: RECOGNITION,
    UNKNOWN: RECOGNITION,
}

# Remote err_no -> local code. New provider codes go here; anything missing
# degrades to UNKNOWN in describe_remote_error.
REMOTE_ERROR_CODES = {
    3300: INVALID_PARAMETERS,
    3301: LOW_QUALITY,
    3302: AUTH_FAILED,
    3304: RATE_LIMITED,
    3305: DECODE_FAILED,
    3307: TIMEOUT,
    3308: TOO_SHORT,
    3309: MALFORMED_AUDIO,
    3310: TOO_LONG,
    3311: UNAVAILABLE,
    3312: UNCLEAR,
}


def message_for(code: str) -> str:
    return ERROR_MESSAGES.get(code, ERROR_MESSAGES[UNKNOWN])


def category_for(code: str) -> str:
    return ERROR_CATEGORIES.get(code, RECOGNITION)


def describe_remote_error(err_no: int, table: dict[int, str] | None = None) -> tuple[str, str]:
    """Map a remote ``err_no`` to ``(code, message)``.

    Unlisted codes never raise; they become ``UNKNOWN`` with a generic message
    that carries the number instead of the provider's raw text.
    """
    code = (table if table is not None else REMOTE_ERROR_CODES).get(err_no)
    if code is None:
        return UNKNOWN, f"Recognition failed (code {err_no})."
    return code, message_for(code)


class VoiceInputError(Exception):
    """Base error carrying a machine-readable code and a human message."""

    category = RECOGNITION

    def __init__(self, code: str, message: str = "") -> None:
        self.code = code
        self.message = message or message_for(code)
        super().__init__(f"{code}: {self.message}")


class DeviceError(VoiceInputError):
    category = DEVICE


class FormatError(VoiceInputError):
    category = FORMAT


class DecodeError(FormatError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(DECODE_FAILED, f"{ERROR_MESSAGES[DECODE_FAILED]} ({reason})")


class ValidationError(VoiceInputError):
    category = VALIDATION


class TransportError(VoiceInputError):
    category = TRANSPORT


class RecognitionError(VoiceInputError):
    category = RECOGNITION
