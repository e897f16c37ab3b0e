"""Core data models for the voice input pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEFAULT_SAMPLE_RATE = 16000
DEFAULT_CHANNELS = 1
SAMPLE_WIDTH = 2

PCM_ENCODING = "pcm_s16le"


class SessionState(str, Enum):
    IDLE = "IDLE"
    ACQUIRING_DEVICE = "ACQUIRING_DEVICE"
    RECORDING = "RECORDING"
    STOPPING = "STOPPING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERRORED = "ERRORED"


class StopReason(str, Enum):
    MANUAL = "manual"
    TIMEOUT = "timeout"
    ERROR = "error"


class AudioFormat(str, Enum):
    WEBM = "WebM"
    WAV = "WAV"
    OGG = "Ogg"
    UNKNOWN = "Unknown"


class PermissionState(str, Enum):
    PROMPT = "prompt"
    GRANTED = "granted"
    DENIED = "denied"


class RecognitionKind(str, Enum):
    PARTIAL = "partial"
    FINAL = "final"
    ERROR = "error"
    END = "end"


class LiveState(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


@dataclass
class AudioChunk:
    data: bytes
    encoding: str = PCM_ENCODING
    timestamp_ms: int = 0


@dataclass
class CaptureConstraints:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channel_count: int = DEFAULT_CHANNELS
    echo_cancellation: bool = True
    noise_suppression: bool = True
    encoding: str = PCM_ENCODING


@dataclass
class ValidationResult:
    ok: bool
    code: str = ""
    message: str = ""
    byte_length: int = 0
    duration_s: float = 0.0


@dataclass
class RecognitionRequest:
    token: str
    cuid: str
    speech: str
    length: int
    rate: int = DEFAULT_SAMPLE_RATE
    channel: int = DEFAULT_CHANNELS
    format: str = "pcm"
    dev_pid: int = 1537

    def to_payload(self) -> dict[str, Any]:
        return {
            "format": self.format,
            "rate": self.rate,
            "channel": self.channel,
            "token": self.token,
            "cuid": self.cuid,
            "len": self.length,
            "speech": self.speech,
            "dev_pid": self.dev_pid,
        }


@dataclass
class RecognitionResult:
    success: bool
    text: str = ""
    code: str = ""
    message: str = ""
    raw_code: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, text: str, metadata: dict[str, Any] | None = None) -> "RecognitionResult":
        return cls(success=True, text=text, metadata=metadata or {})

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        raw_code: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> "RecognitionResult":
        return cls(
            success=False,
            code=code,
            message=message,
            raw_code=raw_code,
            metadata=metadata or {},
        )


@dataclass
class RecognitionEvent:
    kind: str
    text: str = ""
    code: str = ""
    message: str = ""
    retryable: bool = False

    @property
    def is_final(self) -> bool:
        return self.kind == RecognitionKind.FINAL.value


@dataclass
class LiveOutcome:
    text: str
    committed: bool
