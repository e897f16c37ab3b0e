"""Container sniffing and canonical 16-bit PCM WAV encoding/extraction.

The WAV layout written here is the canonical 44-byte form (RIFF header,
16-byte ``fmt `` chunk, ``data`` chunk) with no extension chunks, which is
what the recognition endpoint and the upload route expect.
"""

from __future__ import annotations

import logging
import struct
from typing import Sequence, Union

import numpy as np

from models import SAMPLE_WIDTH, AudioFormat

logger = logging.getLogger(__name__)

WAV_HEADER_SIZE = 44
DATA_SIZE_OFFSET = 40

EBML_MAGIC = b"\x1a\x45\xdf\xa3"
RIFF_MAGIC = b"RIFF"
OGG_MAGIC = b"OggS"

_MAGICS = (
    (EBML_MAGIC, AudioFormat.WEBM),
    (RIFF_MAGIC, AudioFormat.WAV),
    (OGG_MAGIC, AudioFormat.OGG),
)

_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")

Samples = Union[np.ndarray, Sequence[Sequence[float]]]


def sniff(buf: bytes) -> AudioFormat:
    """Classify ``buf`` by its first four bytes. Never raises."""
    head = bytes(buf[:4])
    if len(head) < 4:
        return AudioFormat.UNKNOWN
    for magic, fmt in _MAGICS:
        if head == magic:
            return fmt
    return AudioFormat.UNKNOWN


def build_wav_header(data_size: int, sample_rate: int, channel_count: int) -> bytes:
    block_align = channel_count * SAMPLE_WIDTH
    return _HEADER.pack(
        b"RIFF",
        WAV_HEADER_SIZE + data_size - 8,
        b"WAVE",
        b"fmt ",
        16,
        1,
        channel_count,
        sample_rate,
        sample_rate * block_align,
        block_align,
        SAMPLE_WIDTH * 8,
        b"data",
        data_size,
    )


def _as_channel_matrix(samples: Samples, channel_count: int) -> np.ndarray:
    if isinstance(samples, np.ndarray):
        matrix = samples.astype(np.float64, copy=False)
    else:
        channels = [np.asarray(ch, dtype=np.float64).reshape(-1) for ch in samples]
        if channels and len({len(ch) for ch in channels}) != 1:
            raise ValueError("all channels must have the same number of frames")
        matrix = np.stack(channels) if channels else np.zeros((0, 0))
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2 or matrix.shape[0] != channel_count:
        raise ValueError(
            f"expected {channel_count} channel(s), got array of shape {matrix.shape}"
        )
    return matrix


def samples_to_pcm(samples: Samples, channel_count: int = 1) -> bytes:
    """Interleave float samples ``[channel][frame]`` into int16 LE PCM."""
    matrix = _as_channel_matrix(samples, channel_count)
    clipped = np.clip(np.nan_to_num(matrix, nan=0.0), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    # astype truncates toward zero, same as an int16 store of the scaled float
    interleaved = scaled.astype(np.int16).T.reshape(-1)
    return interleaved.astype("<i2").tobytes()


def wrap_pcm(pcm: bytes, sample_rate: int, channel_count: int) -> bytes:
    return build_wav_header(len(pcm), sample_rate, channel_count) + bytes(pcm)


def encode_wav(samples: Samples, sample_rate: int, channel_count: int) -> bytes:
    """Encode decoded float samples into a canonical 16-bit PCM WAV buffer."""
    pcm = samples_to_pcm(samples, channel_count)
    return wrap_pcm(pcm, sample_rate, channel_count)


def declared_data_size(buf: bytes) -> int | None:
    if len(buf) < WAV_HEADER_SIZE or bytes(buf[:4]) != RIFF_MAGIC:
        return None
    return struct.unpack_from("<I", buf, DATA_SIZE_OFFSET)[0]


def extract_pcm(buf: bytes) -> bytes:
    """Strip a canonical WAV header, or pass non-WAV input through as raw PCM.

    A header that declares more data than the buffer holds is tolerated: the
    available payload is returned and a warning is logged.
    """
    size = declared_data_size(buf)
    if size is None:
        logger.debug("Input is not WAV-tagged, treating %d bytes as raw PCM", len(buf))
        return bytes(buf)
    end = WAV_HEADER_SIZE + size
    if end > len(buf):
        logger.warning(
            "WAV header declares %d data bytes but only %d are present, using the available payload",
            size,
            len(buf) - WAV_HEADER_SIZE,
        )
        return bytes(buf[WAV_HEADER_SIZE:])
    return bytes(buf[WAV_HEADER_SIZE:end])
