"""Compressed audio (WebM/Ogg) decoding into float sample matrices via PyAV."""

from __future__ import annotations

import io
import logging

import av
import numpy as np

from errors import DecodeError
from models import DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE

logger = logging.getLogger(__name__)


class PyAVDecoder:
    """Decode a whole in-memory container and resample it for recognition.

    Returns a ``float32`` array shaped ``(channels, frames)`` with values in
    [-1, 1], ready for :func:`audio_format.encode_wav`.
    """

    def decode(
        self,
        data: bytes,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channel_count: int = DEFAULT_CHANNELS,
    ) -> np.ndarray:
        if not data:
            raise DecodeError("empty input")
        try:
            return self._decode(data, sample_rate, channel_count)
        except DecodeError:
            raise
        except (av.error.FFmpegError, OSError, ValueError) as exc:
            raise DecodeError(str(exc)) from exc

    def _decode(self, data: bytes, sample_rate: int, channel_count: int) -> np.ndarray:
        with av.open(io.BytesIO(data)) as container:
            stream = next((s for s in container.streams if s.type == "audio"), None)
            if stream is None:
                raise DecodeError("no audio stream found in container")

            resampler = av.AudioResampler(
                format="fltp",
                layout="mono" if channel_count == 1 else "stereo",
                rate=sample_rate,
            )
            blocks: list[np.ndarray] = []
            for frame in container.decode(stream):
                for resampled in resampler.resample(frame):
                    blocks.append(resampled.to_ndarray())
            for resampled in resampler.resample(None):
                blocks.append(resampled.to_ndarray())

        if not blocks:
            raise DecodeError("container holds no audio frames")
        samples = np.concatenate(blocks, axis=1).astype(np.float32, copy=False)
        logger.debug(
            "Decoded %d frame(s) x %d channel(s) at %d Hz",
            samples.shape[1],
            samples.shape[0],
            sample_rate,
        )
        return samples
