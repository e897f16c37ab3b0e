"""State-machine based orchestration of one-shot voice capture.

Each ``start()`` creates a :class:`CaptureSession` with its own event queue
and worker thread. Device callbacks and the auto-stop timer only enqueue
events; the worker is the single consumer and owns every transition from
acquisition through recognition. ``stop()`` never blocks on the worker.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from queue import Empty, Queue
from typing import Callable, Optional, Sequence

from audio_format import encode_wav, extract_pcm, sniff
from audio_validator import validate_pcm
from errors import (
    DECODE_FAILED,
    DEVICE_UNAVAILABLE,
    UNKNOWN,
    UNSUPPORTED_CONTAINER,
    DeviceError,
    FormatError,
    VoiceInputError,
    message_for,
)
from interfaces import AudioDecoder, CaptureDevice, Recognizer
from models import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    PCM_ENCODING,
    AudioChunk,
    AudioFormat,
    CaptureConstraints,
    RecognitionResult,
    SessionState,
    StopReason,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
ResultCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
VolumeCallback = Callable[[float], None]

DEFAULT_CANDIDATE_ENCODINGS = (
    PCM_ENCODING,
    "audio/webm;codecs=opus",
    "audio/ogg;codecs=opus",
    "audio/wav",
)

_STARTABLE = (SessionState.IDLE, SessionState.COMPLETED, SessionState.ERRORED)


class EventKind(str, Enum):
    CHUNK_RECEIVED = "CHUNK_RECEIVED"
    STOP_REQUESTED = "STOP_REQUESTED"
    TIMER_FIRED = "TIMER_FIRED"
    DEVICE_ERROR = "DEVICE_ERROR"


@dataclass
class SessionEvent:
    kind: EventKind
    chunk: Optional[AudioChunk] = None
    error: Optional[DeviceError] = None


@dataclass
class CaptureSession:
    session_id: int
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channel_count: int = DEFAULT_CHANNELS
    encoding: str = ""
    started_at: float = 0.0
    stop_reason: Optional[StopReason] = None
    chunks: list[AudioChunk] = field(default_factory=list)
    events: "Queue[SessionEvent]" = field(default_factory=Queue)
    cancelled: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    device_started: bool = False
    device_released: threading.Event = field(default_factory=threading.Event)
    timer: Optional[threading.Timer] = None

    @property
    def byte_length(self) -> int:
        return sum(len(chunk.data) for chunk in self.chunks)


class CaptureSessionController:
    def __init__(
        self,
        device: CaptureDevice,
        recognizer: Recognizer,
        decoder: Optional[AudioDecoder] = None,
        candidate_encodings: Sequence[str] = DEFAULT_CANDIDATE_ENCODINGS,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channel_count: int = DEFAULT_CHANNELS,
        auto_stop_s: Optional[float] = 8.0,
        echo_cancellation: bool = True,
        noise_suppression: bool = True,
        on_state_change: Optional[StateCallback] = None,
        on_result: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_volume: Optional[VolumeCallback] = None,
    ) -> None:
        self._device = device
        self._recognizer = recognizer
        self._decoder = decoder
        self._candidate_encodings = tuple(candidate_encodings)
        self._sample_rate = sample_rate
        self._channel_count = channel_count
        self._auto_stop_s = auto_stop_s
        self._echo_cancellation = echo_cancellation
        self._noise_suppression = noise_suppression
        self._on_state_change = on_state_change
        self._on_result = on_result
        self._on_error = on_error
        self._on_volume = on_volume

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_counter = 0
        self._session: Optional[CaptureSession] = None
        self._transcript = ""
        self._last_error: Optional[tuple[str, str]] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def last_error(self) -> Optional[tuple[str, str]]:
        return self._last_error

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> bool:
        with self._lock:
            if self._state not in _STARTABLE:
                logger.debug("start() ignored in state %s", self._state.value)
                return False
            previous = self._session
            if previous is not None and not previous.device_released.is_set():
                logger.info("start() rejected: session %d still holds the device", previous.session_id)
                return False
            if self._state != SessionState.IDLE:
                self._transition(SessionState.IDLE)

            self._session_counter += 1
            session = CaptureSession(
                session_id=self._session_counter,
                sample_rate=self._sample_rate,
                channel_count=self._channel_count,
            )
            self._session = session
            self._transcript = ""
            self._last_error = None
            self._transition(SessionState.ACQUIRING_DEVICE)
            worker = threading.Thread(
                target=self._run,
                args=(session,),
                name=f"capture-session-{session.session_id}",
                daemon=True,
            )
            worker.start()
            return True

    def stop(self) -> None:
        with self._lock:
            session = self._session
            if session is None:
                return
            state = self._state
            if state == SessionState.RECORDING:
                session.events.put(SessionEvent(EventKind.STOP_REQUESTED))
                return
            if state == SessionState.ACQUIRING_DEVICE:
                logger.info("Session %d: stop during acquisition, aborting", session.session_id)
                session.stop_reason = StopReason.MANUAL
                session.cancelled.set()
                self._transition(SessionState.IDLE)
                return
            if state in (SessionState.STOPPING, SessionState.PROCESSING):
                # The recognition call is left to finish; its result is dropped.
                logger.info("Session %d: stop during processing, result will be discarded", session.session_id)
                session.cancelled.set()
                self._transition(SessionState.IDLE)

    def cancel(self, reason: str = "cancelled") -> None:
        with self._lock:
            session = self._session
            if session is None or self._state in _STARTABLE:
                return
            logger.info("Session %d cancelled: %s", session.session_id, reason)
            session.stop_reason = StopReason.MANUAL
            session.cancelled.set()
            session.events.put(SessionEvent(EventKind.STOP_REQUESTED))
            self._transition(SessionState.IDLE)

    def wait(self, timeout: Optional[float] = None) -> bool:
        session = self._session
        if session is None:
            return True
        return session.done.wait(timeout)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self, session: CaptureSession) -> None:
        try:
            if not self._acquire(session):
                return
            if not self._record(session):
                return
            self._process(session)
        finally:
            self._cancel_timer(session)
            self._release_device(session)
            session.done.set()

    def _acquire(self, session: CaptureSession) -> bool:
        encoding = self._negotiate_encoding()
        if encoding is None:
            self._fail(
                session,
                UNSUPPORTED_CONTAINER,
                "The capture device supports none of the candidate encodings.",
            )
            return False
        session.encoding = encoding
        constraints = CaptureConstraints(
            sample_rate=session.sample_rate,
            channel_count=session.channel_count,
            echo_cancellation=self._echo_cancellation,
            noise_suppression=self._noise_suppression,
            encoding=encoding,
        )
        events = session.events
        try:
            self._device.start(
                constraints,
                on_chunk=lambda chunk: events.put(SessionEvent(EventKind.CHUNK_RECEIVED, chunk=chunk)),
                on_volume=lambda level: self._emit_volume(session, level),
                on_error=lambda error: events.put(SessionEvent(EventKind.DEVICE_ERROR, error=error)),
            )
        except DeviceError as exc:
            session.stop_reason = StopReason.ERROR
            self._fail(session, exc.code, exc.message)
            return False
        except Exception:
            logger.exception("Session %d: device start raised", session.session_id)
            session.stop_reason = StopReason.ERROR
            self._fail(session, DEVICE_UNAVAILABLE, message_for(DEVICE_UNAVAILABLE))
            return False
        session.device_started = True

        with self._lock:
            if session.cancelled.is_set() or self._session is not session:
                logger.info("Session %d: acquisition finished after cancellation", session.session_id)
                return False
            session.started_at = time.monotonic()
            logger.info("Session %d recording with %s", session.session_id, encoding)
            self._transition(SessionState.RECORDING)
            if self._auto_stop_s is not None:
                session.timer = threading.Timer(
                    self._auto_stop_s,
                    events.put,
                    args=(SessionEvent(EventKind.TIMER_FIRED),),
                )
                session.timer.daemon = True
                session.timer.start()
        return True

    def _record(self, session: CaptureSession) -> bool:
        while True:
            event = session.events.get()
            if session.cancelled.is_set():
                return False
            if event.kind == EventKind.CHUNK_RECEIVED and event.chunk is not None:
                session.chunks.append(event.chunk)
                continue
            if event.kind == EventKind.DEVICE_ERROR:
                session.stop_reason = StopReason.ERROR
                error = event.error or DeviceError(DEVICE_UNAVAILABLE)
                self._fail(session, error.code, error.message)
                return False
            if event.kind == EventKind.TIMER_FIRED:
                session.stop_reason = StopReason.TIMEOUT
            else:
                session.stop_reason = StopReason.MANUAL
            break

        with self._lock:
            if session.cancelled.is_set() or self._session is not session:
                return False
            self._transition(SessionState.STOPPING)
        self._cancel_timer(session)
        self._release_device(session)
        self._drain_chunks(session)
        elapsed = time.monotonic() - session.started_at
        logger.info(
            "Session %d stopped (%s) after %.2fs with %d chunk(s), %d bytes",
            session.session_id,
            session.stop_reason.value,
            elapsed,
            len(session.chunks),
            session.byte_length,
        )
        return True

    def _process(self, session: CaptureSession) -> None:
        with self._lock:
            if session.cancelled.is_set() or self._session is not session:
                return
            self._transition(SessionState.PROCESSING)

        data = b"".join(chunk.data for chunk in session.chunks)
        try:
            pcm = self._to_pcm(session, data)
        except VoiceInputError as exc:
            self._fail(session, exc.code, exc.message)
            return
        except ValueError as exc:
            self._fail(session, DECODE_FAILED, f"audio could not be encoded: {exc}")
            return

        validation = validate_pcm(pcm, session.sample_rate, session.channel_count)
        if not validation.ok:
            self._fail(session, validation.code, validation.message)
            return
        if session.cancelled.is_set():
            logger.info("Session %d cancelled before recognition, skipping request", session.session_id)
            return

        result = self._run_recognition(session, pcm)

        with self._lock:
            if session.cancelled.is_set() or self._session is not session:
                logger.info("Discarding recognition result of cancelled session %d", session.session_id)
                return
            if not result.success:
                self._fail(session, result.code, result.message)
                return
            self._transcript = result.text
            self._transition(SessionState.COMPLETED)
            if self._on_result:
                self._on_result(result.text)

    def _to_pcm(self, session: CaptureSession, data: bytes) -> bytes:
        container = sniff(data)
        if container == AudioFormat.WAV:
            return extract_pcm(data)
        if container in (AudioFormat.WEBM, AudioFormat.OGG):
            if self._decoder is None:
                raise FormatError(UNSUPPORTED_CONTAINER, f"No decoder is available for {container.value} audio.")
            samples = self._decoder.decode(data, session.sample_rate, session.channel_count)
            wav = encode_wav(samples, session.sample_rate, session.channel_count)
            logger.debug("Session %d: %s decoded to %d byte WAV", session.session_id, container.value, len(wav))
            return extract_pcm(wav)
        if session.encoding == PCM_ENCODING or not data:
            return data
        raise FormatError(UNSUPPORTED_CONTAINER)

    def _run_recognition(self, session: CaptureSession, pcm: bytes) -> RecognitionResult:
        try:
            return self._recognizer.recognize(pcm, session.sample_rate, session.channel_count)
        except Exception:
            logger.exception("Session %d: recognizer raised", session.session_id)
            return RecognitionResult.failure(UNKNOWN, message_for(UNKNOWN))

    def _negotiate_encoding(self) -> Optional[str]:
        for encoding in self._candidate_encodings:
            try:
                if self._device.supports(encoding):
                    return encoding
            except Exception as exc:
                logger.debug("supports(%s) raised: %s", encoding, exc)
        return None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fail(self, session: CaptureSession, code: str, message: str) -> None:
        with self._lock:
            if session.cancelled.is_set() or self._session is not session:
                logger.info("Session %d error %s after cancellation: %s", session.session_id, code, message)
                return
            logger.warning("Session %d failed with %s: %s", session.session_id, code, message)
            self._last_error = (code, message)
            self._transition(SessionState.ERRORED)
            self._emit_error(code, message)

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _emit_volume(self, session: CaptureSession, level: float) -> None:
        if self._on_volume and self._session is session:
            self._on_volume(level)

    def _drain_chunks(self, session: CaptureSession) -> None:
        while True:
            try:
                event = session.events.get_nowait()
            except Empty:
                return
            if event.kind == EventKind.CHUNK_RECEIVED and event.chunk is not None:
                session.chunks.append(event.chunk)

    def _cancel_timer(self, session: CaptureSession) -> None:
        timer, session.timer = session.timer, None
        if timer is not None:
            timer.cancel()

    def _release_device(self, session: CaptureSession) -> None:
        if session.device_started and not session.device_released.is_set():
            try:
                self._device.stop()
            except Exception as exc:
                logger.warning("Session %d: device stop failed: %s", session.session_id, exc)
        session.device_released.set()

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug("%s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
