"""Protocol interfaces for the external collaborators of the pipeline."""

from __future__ import annotations

from typing import Callable, Protocol

import numpy as np

from errors import DeviceError
from models import AudioChunk, CaptureConstraints, PermissionState, RecognitionEvent, RecognitionResult


class CaptureDevice(Protocol):
    def supports(self, encoding: str) -> bool: ...

    def start(
        self,
        constraints: CaptureConstraints,
        on_chunk: Callable[[AudioChunk], None],
        on_volume: Callable[[float], None] | None = None,
        on_error: Callable[[DeviceError], None] | None = None,
    ) -> None: ...

    def stop(self) -> None: ...

    def request_permission(self) -> PermissionState: ...


class AudioDecoder(Protocol):
    def decode(self, data: bytes, sample_rate: int, channel_count: int) -> np.ndarray: ...


class CredentialProvider(Protocol):
    def get_token(self) -> str: ...

    def invalidate(self) -> None: ...


class Recognizer(Protocol):
    def recognize(
        self,
        pcm: bytes,
        sample_rate: int = 16000,
        channel_count: int = 1,
    ) -> RecognitionResult: ...


class StreamingRecognizer(Protocol):
    def start(self, on_event: Callable[[RecognitionEvent], None]) -> None: ...

    def stop(self) -> None: ...

    def abort(self) -> None: ...


class PermissionChecker(Protocol):
    def request_permission(self) -> PermissionState: ...
