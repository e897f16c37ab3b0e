"""Short-speech recognition client for the Baidu ``server_api`` endpoint.

One request per utterance: raw 16-bit PCM is base64-encoded into a JSON body
together with a token, a fresh ``cuid`` and the raw byte length. The response
carries a numeric ``err_no`` which is mapped through
:data:`errors.REMOTE_ERROR_CODES`. Requests are never retried here; a failed
result goes back to the caller, who decides whether to try again.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Optional

import httpx

from errors import (
    AUTH_FAILED,
    NO_SPEECH,
    UNAVAILABLE,
    VoiceInputError,
    describe_remote_error,
    message_for,
)
from interfaces import CredentialProvider
from models import (
    DEFAULT_CHANNELS,
    DEFAULT_SAMPLE_RATE,
    SAMPLE_WIDTH,
    RecognitionRequest,
    RecognitionResult,
)
from transport import encode_payload

logger = logging.getLogger(__name__)

RECOGNITION_URL = "https://vop.baidu.com/server_api"
MANDARIN_DEV_PID = 1537


def new_cuid(prefix: str = "voice_input") -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class BaiduRecognizer:
    def __init__(
        self,
        credentials: CredentialProvider,
        endpoint: str = RECOGNITION_URL,
        request_timeout_s: float = 15.0,
        dev_pid: int = MANDARIN_DEV_PID,
        cuid_prefix: str = "voice_input",
        client: Optional[httpx.Client] = None,
        error_table: Optional[dict[int, str]] = None,
    ) -> None:
        self._credentials = credentials
        self._endpoint = endpoint
        self._request_timeout_s = request_timeout_s
        self._dev_pid = dev_pid
        self._cuid_prefix = cuid_prefix
        self._client = client
        self._error_table = error_table

    def build_request(
        self,
        pcm: bytes,
        token: str,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channel_count: int = DEFAULT_CHANNELS,
    ) -> RecognitionRequest:
        return RecognitionRequest(
            token=token,
            cuid=new_cuid(self._cuid_prefix),
            speech=encode_payload(pcm),
            length=len(pcm),
            rate=sample_rate,
            channel=channel_count,
            dev_pid=self._dev_pid,
        )

    def recognize(
        self,
        pcm: bytes,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        channel_count: int = DEFAULT_CHANNELS,
    ) -> RecognitionResult:
        try:
            token = self._credentials.get_token()
        except VoiceInputError as exc:
            logger.error("Could not obtain speech token: %s", exc)
            return RecognitionResult.failure(exc.code, exc.message)

        request = self.build_request(pcm, token, sample_rate, channel_count)
        metadata: dict[str, Any] = {
            "cuid": request.cuid,
            "format": request.format,
            "size": request.length,
            "duration_s": round(len(pcm) / float(sample_rate * channel_count * SAMPLE_WIDTH), 2),
        }
        logger.debug(
            "Sending recognition request cuid=%s pcm=%d bytes base64=%d chars",
            request.cuid,
            request.length,
            len(request.speech),
        )

        try:
            response = self._post(request.to_payload())
        except httpx.TimeoutException as exc:
            logger.error("Recognition request timed out after %.1fs: %s", self._request_timeout_s, exc)
            return RecognitionResult.failure(
                UNAVAILABLE, "Speech recognition service did not respond in time.", metadata=metadata
            )
        except httpx.HTTPError as exc:
            logger.error("Recognition request failed: %s", exc)
            return RecognitionResult.failure(UNAVAILABLE, message_for(UNAVAILABLE), metadata=metadata)

        return self._classify(response, metadata)

    def _post(self, payload: dict[str, Any]) -> httpx.Response:
        headers = {"Content-Type": "application/json"}
        if self._client is not None:
            return self._client.post(
                self._endpoint, json=payload, headers=headers, timeout=self._request_timeout_s
            )
        with httpx.Client(timeout=self._request_timeout_s) as client:
            return client.post(self._endpoint, json=payload, headers=headers)

    def _classify(self, response: httpx.Response, metadata: dict[str, Any]) -> RecognitionResult:
        try:
            data = response.json()
        except ValueError:
            data = None
        err_no = data.get("err_no") if isinstance(data, dict) else None
        if not isinstance(err_no, int) or isinstance(err_no, bool):
            logger.error("Unreadable recognition response (HTTP %d)", response.status_code)
            return RecognitionResult.failure(
                UNAVAILABLE,
                "Speech recognition service returned an unreadable response.",
                metadata=metadata,
            )

        for key in ("sn", "corpus_no"):
            if key in data:
                metadata[key] = data[key]

        if err_no == 0:
            results = data.get("result") or []
            text = str(results[0]) if isinstance(results, list) and results else ""
            if not text.strip():
                logger.info("Recognition succeeded with an empty transcript")
                return RecognitionResult.failure(NO_SPEECH, message_for(NO_SPEECH), raw_code=0, metadata=metadata)
            logger.info("Recognition succeeded: %d chars", len(text))
            return RecognitionResult.ok(text, metadata)

        code, message = describe_remote_error(err_no, self._error_table)
        metadata["err_msg"] = str(data.get("err_msg", ""))
        logger.warning("Recognition failed err_no=%d (%s): %s", err_no, code, metadata["err_msg"])
        if code == AUTH_FAILED:
            self._credentials.invalidate()
        return RecognitionResult.failure(code, message, raw_code=err_no, metadata=metadata)
