"""Merging of interim/final events from a streaming recognizer into one transcript."""

from __future__ import annotations

import functools
import logging
import threading
from typing import Callable, Optional

from errors import (
    DEVICE_UNAVAILABLE,
    NETWORK_ERROR,
    NO_SPEECH,
    PERMISSION_DENIED,
    UNKNOWN,
    DeviceError,
    message_for,
)
from interfaces import PermissionChecker, StreamingRecognizer
from models import LiveOutcome, LiveState, PermissionState, RecognitionEvent, RecognitionKind

logger = logging.getLogger(__name__)

TextCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
OutcomeCallback = Callable[[LiveOutcome], None]

# Raw error names from streaming engines (browser-style names included) to
# the dictation error codes. Anything else is reported as UNKNOWN.
LIVE_ERROR_CODES = {
    "not-allowed": PERMISSION_DENIED,
    "permission-denied": PERMISSION_DENIED,
    "service-not-allowed": PERMISSION_DENIED,
    PERMISSION_DENIED: PERMISSION_DENIED,
    "no-speech": NO_SPEECH,
    NO_SPEECH: NO_SPEECH,
    "audio-capture": DEVICE_UNAVAILABLE,
    DEVICE_UNAVAILABLE: DEVICE_UNAVAILABLE,
    "network": NETWORK_ERROR,
    NETWORK_ERROR: NETWORK_ERROR,
}


def classify_live_error(raw_code: str) -> tuple[str, str]:
    code = LIVE_ERROR_CODES.get(raw_code)
    if code is None:
        return UNKNOWN, message_for(UNKNOWN)
    return code, message_for(code)


class LiveTranscriptAggregator:
    """Holds the transcript of one continuous dictation UI session.

    ``final_transcript`` only grows (space-joined on each final event) until
    :meth:`clear`; ``interim_transcript`` is replaced by every partial event
    and emptied when its segment finalizes. Events from a previous
    recognition run are ignored.
    """

    def __init__(
        self,
        recognizer: StreamingRecognizer,
        permissions: Optional[PermissionChecker] = None,
        permission_state: PermissionState = PermissionState.PROMPT,
        on_update: Optional[TextCallback] = None,
        on_commit: Optional[TextCallback] = None,
        on_end: Optional[OutcomeCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._recognizer = recognizer
        self._permissions = permissions
        self._permission_state = permission_state
        self._on_update = on_update
        self._on_commit = on_commit
        self._on_end = on_end
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = LiveState.IDLE
        self._generation = 0
        self._final = ""
        self._interim = ""
        self._last_error: Optional[tuple[str, str, str]] = None
        self._last_outcome: Optional[LiveOutcome] = None
        self._ended = threading.Event()
        self._ended.set()

    @property
    def state(self) -> LiveState:
        return self._state

    @property
    def permission_state(self) -> PermissionState:
        return self._permission_state

    @property
    def final_transcript(self) -> str:
        return self._final

    @property
    def interim_transcript(self) -> str:
        return self._interim

    @property
    def displayed(self) -> str:
        return self._final or self._interim

    @property
    def last_error(self) -> Optional[tuple[str, str, str]]:
        """``(code, message, raw_code)`` of the most recent failure."""
        return self._last_error

    @property
    def last_outcome(self) -> Optional[LiveOutcome]:
        return self._last_outcome

    def start(self) -> bool:
        with self._lock:
            if self._state in (LiveState.LISTENING, LiveState.STOPPING):
                return False
            if self._permission_state == PermissionState.DENIED:
                self._fail(PERMISSION_DENIED, message_for(PERMISSION_DENIED), PERMISSION_DENIED)
                return False

        if self._permission_state == PermissionState.PROMPT and self._permissions is not None:
            granted = self._permissions.request_permission()
            with self._lock:
                self._permission_state = granted
                if granted == PermissionState.DENIED:
                    self._fail(PERMISSION_DENIED, message_for(PERMISSION_DENIED), PERMISSION_DENIED)
                    return False

        with self._lock:
            self._generation += 1
            generation = self._generation
            self._last_error = None
            self._last_outcome = None
            self._ended.clear()
            self._state = LiveState.LISTENING
            try:
                self._recognizer.start(functools.partial(self._on_event, generation))
            except DeviceError as exc:
                self._fail(exc.code, exc.message, exc.code)
                self._ended.set()
                return False
            except Exception as exc:
                logger.error("Streaming recognizer failed to start: %s", exc)
                self._fail(UNKNOWN, message_for(UNKNOWN), "start_failed")
                self._ended.set()
                return False
            logger.info("Dictation started (run %d)", generation)
            return True

    def stop(self) -> None:
        """Ask the recognizer to finish; the session ends on its ``end`` event."""
        with self._lock:
            if self._state != LiveState.LISTENING:
                return
            self._state = LiveState.STOPPING
            self._safe_call(self._recognizer.stop)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._ended.wait(timeout)

    def clear(self) -> None:
        with self._lock:
            self._final = ""
            self._interim = ""
            self._last_error = None
            self._emit_update()

    def close(self) -> None:
        with self._lock:
            self._generation += 1
            if self._state in (LiveState.LISTENING, LiveState.STOPPING):
                self._safe_call(self._recognizer.abort)
            self._state = LiveState.IDLE
            self._final = ""
            self._interim = ""
            self._ended.set()

    def _on_event(self, generation: int, event: RecognitionEvent) -> None:
        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping %s event from stale run %d", event.kind, generation)
                return
            kind = event.kind
            if kind == RecognitionKind.PARTIAL.value:
                self._interim = event.text
                self._emit_update()
            elif kind == RecognitionKind.FINAL.value:
                text = event.text.strip()
                if text:
                    self._final = f"{self._final} {text}" if self._final else text
                self._interim = ""
                self._emit_update()
            elif kind == RecognitionKind.ERROR.value:
                code, message = classify_live_error(event.code)
                if code == PERMISSION_DENIED:
                    self._permission_state = PermissionState.DENIED
                if event.message:
                    logger.info("Recognizer reported %s: %s", event.code or "error", event.message)
                self._fail(code, message, event.code)
            elif kind == RecognitionKind.END.value:
                self._finish()

    def _finish(self) -> None:
        if self._final:
            outcome = LiveOutcome(text=self._final, committed=True)
        else:
            # Interim text is surfaced but never committed.
            outcome = LiveOutcome(text=self._interim, committed=False)
        self._last_outcome = outcome
        if self._state != LiveState.ERROR:
            self._state = LiveState.IDLE
        self._ended.set()
        logger.info(
            "Dictation ended: %d chars, committed=%s", len(outcome.text), outcome.committed
        )
        if outcome.committed and self._on_commit:
            self._on_commit(outcome.text)
        if self._on_end:
            self._on_end(outcome)

    def _fail(self, code: str, message: str, raw_code: str) -> None:
        logger.warning("Dictation error %s (%s): %s", code, raw_code, message)
        self._state = LiveState.ERROR
        self._last_error = (code, message, raw_code)
        if self._on_error:
            self._on_error(code, message)

    def _emit_update(self) -> None:
        if self._on_update:
            self._on_update(self.displayed)

    def _safe_call(self, fn: Callable[[], None]) -> None:
        try:
            fn()
        except Exception as exc:
            logger.warning("Streaming recognizer call failed: %s", exc)
