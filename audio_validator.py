"""Local duration checks mirroring the recognition service's own limits."""

from __future__ import annotations

import logging

from errors import EMPTY, TOO_LONG, TOO_SHORT, ValidationError, message_for
from models import DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE, SAMPLE_WIDTH, ValidationResult

logger = logging.getLogger(__name__)

MIN_DURATION_S = 0.5
MAX_DURATION_S = 60.0


def byte_bounds(
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channel_count: int = DEFAULT_CHANNELS,
) -> tuple[int, int]:
    bytes_per_second = sample_rate * channel_count * SAMPLE_WIDTH
    return int(bytes_per_second * MIN_DURATION_S), int(bytes_per_second * MAX_DURATION_S)


def validate_pcm(
    pcm: bytes,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channel_count: int = DEFAULT_CHANNELS,
) -> ValidationResult:
    size = len(pcm)
    duration_s = size / float(sample_rate * channel_count * SAMPLE_WIDTH)
    min_bytes, max_bytes = byte_bounds(sample_rate, channel_count)

    if size == 0:
        code = EMPTY
    elif size < min_bytes:
        code = TOO_SHORT
    elif size > max_bytes:
        code = TOO_LONG
    else:
        logger.debug("Audio validated: %d bytes (%.2fs)", size, duration_s)
        return ValidationResult(ok=True, byte_length=size, duration_s=duration_s)

    message = message_for(code)
    logger.info("Audio rejected (%s): %d bytes, allowed %d..%d", code, size, min_bytes, max_bytes)
    return ValidationResult(
        ok=False,
        code=code,
        message=message,
        byte_length=size,
        duration_s=duration_s,
    )


def ensure_valid(
    pcm: bytes,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channel_count: int = DEFAULT_CHANNELS,
) -> ValidationResult:
    result = validate_pcm(pcm, sample_rate, channel_count)
    if not result.ok:
        raise ValidationError(result.code, result.message)
    return result
