"""Microphone capture device backed by sounddevice."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

import numpy as np

from errors import DEVICE_UNAVAILABLE, PERMISSION_DENIED, DeviceError
from models import PCM_ENCODING, AudioChunk, CaptureConstraints, PermissionState

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio missing on the host
    sd = None  # type: ignore

logger = logging.getLogger(__name__)

_PERMISSION_HINTS = ("permission", "denied", "not allowed", "access")


def volume_level(samples: Any) -> float:
    """Blend RMS and peak of int16 samples into a 0-100 meter value."""
    data = np.asarray(samples, dtype=np.float64).reshape(-1) / 32768.0
    if data.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(data * data)))
    peak = float(np.max(np.abs(data)))
    return min(100.0, max(rms, peak * 0.5) * 800.0)


def classify_device_failure(exc: BaseException) -> DeviceError:
    message = str(exc)
    low = message.lower()
    if any(hint in low for hint in _PERMISSION_HINTS):
        return DeviceError(PERMISSION_DENIED, message)
    return DeviceError(DEVICE_UNAVAILABLE, message)


class SoundDeviceRecorder:
    SUPPORTED_ENCODINGS = (PCM_ENCODING,)

    def __init__(self, chunk_ms: int = 100, device: Optional[int] = None) -> None:
        self.chunk_ms = chunk_ms
        self.device = device
        self.chunks_delivered = 0
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self._on_chunk: Optional[Callable[[AudioChunk], None]] = None
        self._on_volume: Optional[Callable[[float], None]] = None
        self._on_error: Optional[Callable[[DeviceError], None]] = None

    def supports(self, encoding: str) -> bool:
        return encoding in self.SUPPORTED_ENCODINGS

    def start(
        self,
        constraints: CaptureConstraints,
        on_chunk: Callable[[AudioChunk], None],
        on_volume: Optional[Callable[[float], None]] = None,
        on_error: Optional[Callable[[DeviceError], None]] = None,
    ) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise DeviceError(DEVICE_UNAVAILABLE, "sounddevice is not installed")
            if not self.supports(constraints.encoding):
                raise DeviceError(DEVICE_UNAVAILABLE, f"encoding {constraints.encoding} is not supported")
            self._on_chunk = on_chunk
            self._on_volume = on_volume
            self._on_error = on_error
            # Echo cancellation / noise suppression are not exposed by
            # PortAudio; the flags are accepted and ignored.
            blocksize = int(constraints.sample_rate * (self.chunk_ms / 1000.0))
            try:
                self._stream = sd.InputStream(
                    samplerate=constraints.sample_rate,
                    channels=constraints.channel_count,
                    dtype="int16",
                    blocksize=blocksize,
                    device=self.device,
                    callback=self._on_audio,
                    finished_callback=self._on_finished,
                )
                self._stream.start()
            except Exception as exc:
                self._stream = None
                logger.error("Could not open input stream: %s", exc)
                raise classify_device_failure(exc) from exc
            self._running = True
            logger.info(
                "Capture started: %d Hz, %d channel(s), %d ms blocks",
                constraints.sample_rate,
                constraints.channel_count,
                self.chunk_ms,
            )

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except Exception as exc:
                logger.warning("Error while closing input stream: %s", exc)
        logger.info("Capture stopped after %d chunk(s)", self.chunks_delivered)

    def request_permission(self) -> PermissionState:
        if sd is None:
            return PermissionState.DENIED
        try:
            stream = sd.InputStream(channels=1, dtype="int16", device=self.device)
            stream.close()
        except Exception as exc:
            error = classify_device_failure(exc)
            logger.info("Microphone permission check failed (%s): %s", error.code, exc)
            if error.code == PERMISSION_DENIED:
                return PermissionState.DENIED
            return PermissionState.PROMPT
        return PermissionState.GRANTED

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._on_chunk is None:
            return
        if status:
            logger.debug("Input stream status: %s", status)
        samples = np.asarray(indata, dtype=np.int16)
        chunk = AudioChunk(
            data=samples.tobytes(),
            encoding=PCM_ENCODING,
            timestamp_ms=int(time.time() * 1000),
        )
        self.chunks_delivered += 1
        self._on_chunk(chunk)
        if self._on_volume is not None:
            self._on_volume(volume_level(samples))

    def _on_finished(self) -> None:
        # Only reached with _running still set when the stream died under us.
        if not self._running:
            return
        self._running = False
        logger.error("Input stream ended unexpectedly")
        if self._on_error is not None:
            self._on_error(DeviceError(DEVICE_UNAVAILABLE, "input stream ended unexpectedly"))
