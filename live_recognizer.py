"""Streaming dictation recognizer using DashScope qwen3-asr-flash.

The model takes a complete clip and streams back progressively longer
transcripts with ``stream=True``. Audio is captured from a
:class:`interfaces.CaptureDevice` until :meth:`stop`, wrapped as WAV and sent
once; every streamed chunk becomes a ``partial`` event, the last text becomes
the ``final`` event, and an ``end`` event always closes the run.

Each :meth:`start` creates a :class:`DictationRun` with its own audio queue
and abort flag, so a worker left over from an aborted run can neither
consume the next run's audio nor silence its events.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from queue import Queue
from typing import Callable, Optional

from audio_format import wrap_pcm
from errors import AUTH_FAILED, NETWORK_ERROR, NO_SPEECH, UNAVAILABLE, UNKNOWN, message_for
from interfaces import CaptureDevice
from models import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    PCM_ENCODING,
    AudioChunk,
    CaptureConstraints,
    RecognitionEvent,
    RecognitionKind,
)
from transport import encode_payload

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)


def pcm_to_data_uri(pcm: bytes, sample_rate: int, channel_count: int) -> str:
    return "data:audio/wav;base64," + encode_payload(wrap_pcm(pcm, sample_rate, channel_count))


@dataclass
class DictationRun:
    run_id: int
    on_event: Callable[[RecognitionEvent], None]
    audio: "Queue[AudioChunk | None]" = field(default_factory=Queue)
    aborted: threading.Event = field(default_factory=threading.Event)
    capturing: bool = True
    thread: Optional[threading.Thread] = None


class DashscopeStreamingRecognizer:
    def __init__(
        self,
        device: CaptureDevice,
        api_key: str = "",
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channel_count: int = DEFAULT_CHANNELS,
    ) -> None:
        self._device = device
        self._api_key = api_key
        self._model = model
        self._request_timeout_s = request_timeout_s
        self._sample_rate = sample_rate
        self._channel_count = channel_count
        self._lock = threading.Lock()
        self._run_counter = 0
        self._run: Optional[DictationRun] = None

    def start(self, on_event: Callable[[RecognitionEvent], None]) -> None:
        """Begin capturing for a new run.

        Raises ``RuntimeError`` while the previous run is still capturing and
        lets ``DeviceError`` from the device propagate; no worker is started
        in either case.
        """
        with self._lock:
            current = self._run
            if current is not None and current.capturing:
                raise RuntimeError(f"dictation run {current.run_id} is still capturing")
            self._run_counter += 1
            run = DictationRun(run_id=self._run_counter, on_event=on_event)
            constraints = CaptureConstraints(
                sample_rate=self._sample_rate,
                channel_count=self._channel_count,
                encoding=PCM_ENCODING,
            )
            self._device.start(constraints, on_chunk=run.audio.put)
            self._run = run
            run.thread = threading.Thread(
                target=self._worker,
                args=(run,),
                name=f"dictation-recognizer-{run.run_id}",
                daemon=True,
            )
            run.thread.start()

    def stop(self) -> None:
        """Stop capturing and let the captured audio be recognised."""
        with self._lock:
            run = self._run
            if run is None or not run.capturing:
                return
            self._release_input(run)

    def abort(self) -> None:
        """Stop capturing and drop any pending or in-flight result."""
        with self._lock:
            run = self._run
            if run is None:
                return
            run.aborted.set()
            if run.capturing:
                self._release_input(run)
        if run.thread and run.thread.is_alive():
            run.thread.join(timeout=0.5)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _release_input(self, run: DictationRun) -> None:
        run.capturing = False
        try:
            self._device.stop()
        finally:
            run.audio.put(None)

    def _emit(self, run: DictationRun, event: RecognitionEvent) -> None:
        if not run.aborted.is_set():
            run.on_event(event)

    def _worker(self, run: DictationRun) -> None:
        pcm = bytearray()
        while True:
            chunk = run.audio.get()
            if chunk is None:
                break
            pcm.extend(chunk.data)

        if run.aborted.is_set():
            logger.debug("Dictation run %d aborted before recognition", run.run_id)
            return
        try:
            if not pcm:
                self._emit(run, RecognitionEvent(kind=RecognitionKind.ERROR.value, code=NO_SPEECH, message=message_for(NO_SPEECH)))
                return
            self._recognize_stream(run, pcm_to_data_uri(bytes(pcm), self._sample_rate, self._channel_count))
        finally:
            self._emit(run, RecognitionEvent(kind=RecognitionKind.END.value))

    def _recognize_stream(self, run: DictationRun, audio_uri: str) -> None:
        if dashscope is None:
            self._emit(
                run,
                RecognitionEvent(
                    kind=RecognitionKind.ERROR.value,
                    code=UNAVAILABLE,
                    message="dashscope is not installed",
                )
            )
            return

        api_key = self._api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not api_key:
            self._emit(
                run,
                RecognitionEvent(
                    kind=RecognitionKind.ERROR.value,
                    code=AUTH_FAILED,
                    message="No DashScope API key configured",
                )
            )
            return

        try:
            response = dashscope.MultiModalConversation.call(
                api_key=api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": audio_uri}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
        except Exception as exc:
            self._emit(run, self._to_error_event(exc))
            return

        latest_text = ""
        try:
            for chunk in response:
                if run.aborted.is_set():
                    return
                status = chunk.get("status_code") if isinstance(chunk, dict) else None
                if status is not None and status != 200:
                    self._emit(
                        run,
                        RecognitionEvent(
                            kind=RecognitionKind.ERROR.value,
                            code=str(chunk.get("code") or UNKNOWN),
                            message=str(chunk.get("message") or f"HTTP {status}"),
                        )
                    )
                    return
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
                    self._emit(run, RecognitionEvent(kind=RecognitionKind.PARTIAL.value, text=text))
        except Exception as exc:
            self._emit(run, self._to_error_event(exc))
            return

        logger.info("Dictation segment recognised: %d chars", len(latest_text))
        self._emit(run, RecognitionEvent(kind=RecognitionKind.FINAL.value, text=latest_text))

    def _extract_text(self, chunk: object) -> str:
        if not isinstance(chunk, dict):
            return ""
        choices = (chunk.get("output") or {}).get("choices") or []
        if not choices:
            return ""
        content = (choices[0].get("message") or {}).get("content") or []
        if not content or not isinstance(content[0], dict):
            return ""
        return str(content[0].get("text", ""))

    def _to_error_event(self, exc: Exception) -> RecognitionEvent:
        message = str(exc)
        low = message.lower()
        if "401" in low or "auth" in low or "api key" in low:
            code, retryable = AUTH_FAILED, False
        elif "timeout" in low or "network" in low or "connection" in low:
            code, retryable = NETWORK_ERROR, True
        else:
            code, retryable = UNAVAILABLE, True
        logger.error("Dictation request failed (%s): %s", code, message)
        return RecognitionEvent(
            kind=RecognitionKind.ERROR.value,
            code=code,
            message=message,
            retryable=retryable,
        )
