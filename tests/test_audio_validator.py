from __future__ import annotations

import pytest

from audio_validator import byte_bounds, ensure_valid, validate_pcm
from errors import EMPTY, TOO_LONG, TOO_SHORT, ValidationError


def test_bounds_for_16k_mono() -> None:
    assert byte_bounds(16000, 1) == (16000, 1920000)


def test_bounds_scale_with_channels() -> None:
    assert byte_bounds(16000, 2) == (32000, 3840000)


@pytest.mark.parametrize(
    "size, code",
    [
        (0, EMPTY),
        (1, TOO_SHORT),
        (15999, TOO_SHORT),
        (1920001, TOO_LONG),
    ],
)
def test_out_of_range_audio_is_rejected(size: int, code: str) -> None:
    result = validate_pcm(b"\x00" * size)

    assert not result.ok
    assert result.code == code
    assert result.message
    assert result.byte_length == size


@pytest.mark.parametrize("size", [16000, 64000, 1920000])
def test_inclusive_bounds_are_accepted(size: int) -> None:
    result = validate_pcm(b"\x00" * size)

    assert result.ok
    assert result.code == ""
    assert result.duration_s == pytest.approx(size / 32000.0)


def test_each_rejection_has_distinct_message() -> None:
    messages = {
        validate_pcm(b"").message,
        validate_pcm(b"\x00" * 100).message,
        validate_pcm(b"\x00" * 1920002).message,
    }
    assert len(messages) == 3


def test_ensure_valid_raises_validation_error() -> None:
    with pytest.raises(ValidationError) as exc_info:
        ensure_valid(b"\x00" * 6400)

    assert exc_info.value.code == TOO_SHORT


def test_ensure_valid_returns_result() -> None:
    assert ensure_valid(b"\x00" * 32000).byte_length == 32000
