from __future__ import annotations

import threading
import time
from typing import Optional

import httpx
import numpy as np

from audio_format import EBML_MAGIC, wrap_pcm
from errors import (
    AUTH_FAILED,
    DEVICE_UNAVAILABLE,
    PERMISSION_DENIED,
    TOO_SHORT,
    UNKNOWN,
    UNSUPPORTED_CONTAINER,
    DeviceError,
    message_for,
)
from models import PCM_ENCODING, AudioChunk, RecognitionResult, SessionState, StopReason
from recognizer import BaiduRecognizer
from session_controller import CaptureSessionController

WEBM = "audio/webm;codecs=opus"


# ---------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------

class FakeDevice:
    def __init__(
        self,
        encodings: tuple[str, ...] = (PCM_ENCODING,),
        fail_with: Optional[Exception] = None,
        start_gate: Optional[threading.Event] = None,
    ) -> None:
        self.encodings = encodings
        self.fail_with = fail_with
        self.start_gate = start_gate
        self.start_calls = 0
        self.stop_calls = 0
        self.constraints = None
        self.on_chunk = None
        self.on_volume = None
        self.on_error = None

    def supports(self, encoding: str) -> bool:
        return encoding in self.encodings

    def start(self, constraints, on_chunk, on_volume=None, on_error=None) -> None:  # noqa: ANN001
        self.start_calls += 1
        if self.start_gate is not None:
            self.start_gate.wait(2.0)
        if self.fail_with is not None:
            raise self.fail_with
        self.constraints = constraints
        self.on_chunk = on_chunk
        self.on_volume = on_volume
        self.on_error = on_error

    def stop(self) -> None:
        self.stop_calls += 1

    def request_permission(self):  # noqa: ANN201
        return None

    def feed(self, data: bytes, chunk_size: int = 3200) -> None:
        assert self.on_chunk is not None
        encoding = self.constraints.encoding
        for offset in range(0, len(data), chunk_size):
            self.on_chunk(AudioChunk(data=data[offset:offset + chunk_size], encoding=encoding))


class FakeRecognizer:
    def __init__(self, result: Optional[RecognitionResult] = None, gate: Optional[threading.Event] = None) -> None:
        self.result = result or RecognitionResult.ok("hello")
        self.gate = gate
        self.entered = threading.Event()
        self.calls: list[bytes] = []

    def recognize(self, pcm: bytes, sample_rate: int = 16000, channel_count: int = 1) -> RecognitionResult:
        self.calls.append(pcm)
        self.entered.set()
        if self.gate is not None:
            self.gate.wait(2.0)
        return self.result


class FakeDecoder:
    def __init__(self, seconds: float = 2.0) -> None:
        self.seconds = seconds
        self.calls: list[bytes] = []

    def decode(self, data: bytes, sample_rate: int = 16000, channel_count: int = 1) -> np.ndarray:
        self.calls.append(data)
        return np.zeros((channel_count, int(sample_rate * self.seconds)), dtype=np.float32)


class FakeCredentials:
    def __init__(self) -> None:
        self.invalidated = 0

    def get_token(self) -> str:
        return "tok"

    def invalidate(self) -> None:
        self.invalidated += 1


def _http_recognizer(body: dict) -> tuple[BaiduRecognizer, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json=body)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    return BaiduRecognizer(FakeCredentials(), client=client), requests


def _wait_for_state(controller: CaptureSessionController, state: SessionState, timeout: float = 3.0) -> None:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if controller.state == state:
            return
        time.sleep(0.01)
    raise AssertionError(f"state {controller.state} never reached {state}")


def _pcm(seconds: float) -> bytes:
    return b"\x10\x00" * int(16000 * seconds)


# ---------------------------------------------------------------
# Happy paths
# ---------------------------------------------------------------

def test_webm_capture_is_decoded_and_recognised() -> None:
    device = FakeDevice(encodings=(WEBM,))
    decoder = FakeDecoder(seconds=2.0)
    recognizer, requests = _http_recognizer({"err_no": 0, "result": ["你好"]})
    transitions: list[tuple[SessionState, SessionState]] = []
    results: list[str] = []

    controller = CaptureSessionController(
        device=device,
        recognizer=recognizer,
        decoder=decoder,
        auto_stop_s=None,
        on_state_change=lambda f, t: transitions.append((f, t)),
        on_result=results.append,
    )

    assert controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(EBML_MAGIC + b"\x00" * 4000, chunk_size=1000)
    controller.stop()
    assert controller.wait(3.0)

    assert controller.state == SessionState.COMPLETED
    assert controller.transcript == "你好"
    assert results == ["你好"]
    assert device.constraints.encoding == WEBM
    assert decoder.calls == [EBML_MAGIC + b"\x00" * 4000]
    assert len(requests) == 1
    assert controller.session.stop_reason == StopReason.MANUAL
    assert device.stop_calls == 1
    assert transitions == [
        (SessionState.IDLE, SessionState.ACQUIRING_DEVICE),
        (SessionState.ACQUIRING_DEVICE, SessionState.RECORDING),
        (SessionState.RECORDING, SessionState.STOPPING),
        (SessionState.STOPPING, SessionState.PROCESSING),
        (SessionState.PROCESSING, SessionState.COMPLETED),
    ]


def test_raw_pcm_is_sent_unchanged() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller = CaptureSessionController(device=device, recognizer=recognizer, auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    pcm = _pcm(1.0)
    device.feed(pcm)
    controller.stop()
    controller.wait(3.0)

    assert controller.state == SessionState.COMPLETED
    assert recognizer.calls == [pcm]


def test_wav_chunks_are_unwrapped() -> None:
    device = FakeDevice(encodings=("audio/wav",))
    recognizer = FakeRecognizer()
    controller = CaptureSessionController(device=device, recognizer=recognizer, auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    pcm = _pcm(1.0)
    device.feed(wrap_pcm(pcm, 16000, 1))
    controller.stop()
    controller.wait(3.0)

    assert recognizer.calls == [pcm]


def test_auto_stop_timer_ends_recording() -> None:
    device = FakeDevice()
    recognizer = FakeRecognizer()
    controller = CaptureSessionController(device=device, recognizer=recognizer, auto_stop_s=0.3)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(1.0))
    assert controller.wait(3.0)

    assert controller.state == SessionState.COMPLETED
    assert controller.session.stop_reason == StopReason.TIMEOUT
    assert controller.session.timer is None


def test_manual_stop_cancels_auto_stop_timer() -> None:
    device = FakeDevice()
    transitions: list[tuple[SessionState, SessionState]] = []
    controller = CaptureSessionController(
        device=device,
        recognizer=FakeRecognizer(),
        auto_stop_s=0.3,
        on_state_change=lambda f, t: transitions.append((f, t)),
    )

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(1.0))
    controller.stop()
    assert controller.wait(3.0)

    assert controller.session.stop_reason == StopReason.MANUAL
    assert controller.session.timer is None
    seen = list(transitions)

    time.sleep(0.5)

    assert controller.state == SessionState.COMPLETED
    assert transitions == seen
    assert controller.session.events.empty()


def test_volume_levels_are_forwarded() -> None:
    device = FakeDevice()
    levels: list[float] = []
    controller = CaptureSessionController(
        device=device, recognizer=FakeRecognizer(), auto_stop_s=None, on_volume=levels.append
    )

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.on_volume(42.0)
    controller.stop()
    controller.wait(3.0)

    assert levels == [42.0]


# ---------------------------------------------------------------
# Validation and recognition failures
# ---------------------------------------------------------------

def test_short_recording_fails_without_network_call() -> None:
    device = FakeDevice()
    recognizer, requests = _http_recognizer({"err_no": 0, "result": ["x"]})
    errors: list[tuple[str, str]] = []
    controller = CaptureSessionController(
        device=device,
        recognizer=recognizer,
        auto_stop_s=None,
        on_error=lambda code, message: errors.append((code, message)),
    )

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(0.2))
    controller.stop()
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    assert controller.last_error[0] == TOO_SHORT
    assert errors and errors[0][0] == TOO_SHORT
    assert requests == []


def test_remote_auth_failure_is_reported() -> None:
    device = FakeDevice()
    recognizer, requests = _http_recognizer({"err_no": 3302, "err_msg": "auth failed"})
    controller = CaptureSessionController(device=device, recognizer=recognizer, auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(1.0))
    controller.stop()
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    code, message = controller.last_error
    assert code == AUTH_FAILED
    assert message
    assert len(requests) == 1


def test_recognizer_exception_becomes_error() -> None:
    class Exploding(FakeRecognizer):
        def recognize(self, pcm, sample_rate=16000, channel_count=1):  # noqa: ANN001, ANN201
            raise RuntimeError("boom")

    device = FakeDevice()
    controller = CaptureSessionController(device=device, recognizer=Exploding(), auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(1.0))
    controller.stop()
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    assert controller.last_error == (UNKNOWN, message_for(UNKNOWN))


def test_compressed_audio_without_decoder_is_unsupported() -> None:
    device = FakeDevice(encodings=(WEBM,))
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer(), auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(EBML_MAGIC + b"\x00" * 100)
    controller.stop()
    controller.wait(3.0)

    assert controller.last_error[0] == UNSUPPORTED_CONTAINER


# ---------------------------------------------------------------
# Device acquisition
# ---------------------------------------------------------------

def test_permission_denied_at_acquisition() -> None:
    device = FakeDevice(fail_with=DeviceError(PERMISSION_DENIED))
    recognizer = FakeRecognizer()
    controller = CaptureSessionController(device=device, recognizer=recognizer)

    controller.start()
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    assert controller.last_error[0] == PERMISSION_DENIED
    assert controller.session.stop_reason == StopReason.ERROR
    assert recognizer.calls == []
    assert device.stop_calls == 0


def test_no_supported_encoding() -> None:
    device = FakeDevice(encodings=("audio/mp4",))
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer())

    controller.start()
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    assert controller.last_error[0] == UNSUPPORTED_CONTAINER
    assert device.start_calls == 0


def test_first_supported_candidate_wins() -> None:
    device = FakeDevice(encodings=("audio/wav", WEBM))
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer(), auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    controller.cancel()
    controller.wait(3.0)

    assert device.constraints.encoding == WEBM


def test_device_error_while_recording() -> None:
    device = FakeDevice()
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer(), auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.on_error(DeviceError(DEVICE_UNAVAILABLE, "unplugged"))
    controller.wait(3.0)

    assert controller.state == SessionState.ERRORED
    assert controller.last_error == (DEVICE_UNAVAILABLE, "unplugged")
    assert controller.session.stop_reason == StopReason.ERROR
    assert device.stop_calls == 1


# ---------------------------------------------------------------
# Idempotence and cancellation
# ---------------------------------------------------------------

def test_start_is_idempotent_while_active() -> None:
    device = FakeDevice()
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer(), auto_stop_s=None)

    assert controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    assert not controller.start()
    controller.stop()
    controller.wait(3.0)

    assert device.start_calls == 1


def test_stop_when_idle_is_noop() -> None:
    controller = CaptureSessionController(device=FakeDevice(), recognizer=FakeRecognizer())

    controller.stop()

    assert controller.state == SessionState.IDLE


def test_stop_during_acquisition_releases_device() -> None:
    gate = threading.Event()
    device = FakeDevice(start_gate=gate)
    recognizer = FakeRecognizer()
    controller = CaptureSessionController(device=device, recognizer=recognizer, auto_stop_s=None)

    controller.start()
    assert controller.state == SessionState.ACQUIRING_DEVICE
    controller.stop()
    assert controller.state == SessionState.IDLE
    assert not controller.start()

    gate.set()
    assert controller.wait(3.0)

    assert controller.state == SessionState.IDLE
    assert device.stop_calls == 1
    assert recognizer.calls == []
    assert controller.start()
    controller.cancel()
    controller.wait(3.0)


def test_stop_during_processing_discards_result() -> None:
    device = FakeDevice()
    gate = threading.Event()
    recognizer = FakeRecognizer(gate=gate)
    results: list[str] = []
    errors: list[tuple[str, str]] = []
    controller = CaptureSessionController(
        device=device,
        recognizer=recognizer,
        auto_stop_s=None,
        on_result=results.append,
        on_error=lambda code, message: errors.append((code, message)),
    )

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    device.feed(_pcm(1.0))
    controller.stop()
    assert recognizer.entered.wait(3.0)
    assert controller.state == SessionState.PROCESSING

    controller.stop()
    assert controller.state == SessionState.IDLE
    gate.set()
    controller.wait(3.0)

    assert controller.state == SessionState.IDLE
    assert controller.transcript == ""
    assert results == []
    assert errors == []


def test_restart_after_error() -> None:
    device = FakeDevice()
    controller = CaptureSessionController(device=device, recognizer=FakeRecognizer(), auto_stop_s=None)

    controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    controller.stop()
    controller.wait(3.0)
    assert controller.last_error[0] is not None

    assert controller.start()
    _wait_for_state(controller, SessionState.RECORDING)
    assert controller.last_error is None
    device.feed(_pcm(1.0))
    controller.stop()
    controller.wait(3.0)

    assert controller.state == SessionState.COMPLETED
    assert controller.session.session_id == 2
