"""
HTTP upload endpoint for one-shot speech recognition.

Handles:
- Multipart upload of a recorded clip (field ``audio``, 10 MB cap)
- WAV header stripping / raw PCM pass-through
- Local duration validation before any call to the recognition service
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, File, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from audio_format import extract_pcm, sniff
from audio_validator import validate_pcm
from errors import TOO_LONG, message_for
from interfaces import Recognizer
from models import DEFAULT_CHANNELS, DEFAULT_SAMPLE_RATE, SAMPLE_WIDTH, RecognitionResult

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

router = APIRouter(prefix="/api/speech", tags=["speech"])


class AudioInfo(BaseModel):
    duration: str
    size: int
    format: str = "pcm"


class RecognitionResponse(BaseModel):
    success: bool = True
    text: str
    result: str
    audioInfo: AudioInfo


def _failure(status_code: int, code: str, message: str, detail: str = "", err_no: Optional[int] = None) -> JSONResponse:
    body: Dict[str, Any] = {
        "success": False,
        "error": message,
        "code": code,
        "detail": detail,
        "err_no": err_no,
    }
    return JSONResponse(status_code=status_code, content=body)


def _status_for(result: RecognitionResult) -> int:
    # A remote err_no means the service answered and rejected the audio;
    # no err_no means the token or transport step failed upstream.
    return 400 if result.raw_code is not None else 502


@router.post("/recognize", response_model=RecognitionResponse)
async def recognize_upload(request: Request, audio: UploadFile = File(...)) -> Any:
    """
    Recognise an uploaded clip.

    The whole upload is read into memory (bounded by ``max_upload_bytes``);
    WAV input is unwrapped to PCM, anything else is treated as raw 16 kHz
    mono PCM.
    """
    state = request.app.state
    limit: int = state.max_upload_bytes
    content = await audio.read(limit + 1)
    if len(content) > limit:
        logger.info("Rejected audio upload over %d bytes", limit)
        return _failure(413, TOO_LONG, message_for(TOO_LONG), detail=f"upload exceeds {limit} bytes")

    logger.info(
        "Received audio upload: %d bytes, %s, container=%s",
        len(content),
        audio.content_type,
        sniff(content).value,
    )

    pcm = extract_pcm(content)
    validation = validate_pcm(pcm, state.sample_rate, state.channel_count)
    if not validation.ok:
        return _failure(400, validation.code, validation.message, detail=f"{validation.byte_length} bytes")

    recognizer: Recognizer = state.recognizer
    result = await asyncio.to_thread(recognizer.recognize, pcm, state.sample_rate, state.channel_count)
    if not result.success:
        return _failure(
            _status_for(result),
            result.code,
            result.message,
            detail=str(result.metadata.get("err_msg", "")),
            err_no=result.raw_code,
        )

    duration = len(pcm) / float(state.sample_rate * state.channel_count * SAMPLE_WIDTH)
    return RecognitionResponse(
        text=result.text,
        result=result.text,
        audioInfo=AudioInfo(duration=f"{duration:.2f}s", size=len(pcm)),
    )


def create_app(
    recognizer: Recognizer,
    sample_rate: int = DEFAULT_SAMPLE_RATE,
    channel_count: int = DEFAULT_CHANNELS,
    max_upload_bytes: int = MAX_UPLOAD_BYTES,
) -> FastAPI:
    app = FastAPI(title="voice-input")
    app.state.recognizer = recognizer
    app.state.sample_rate = sample_rate
    app.state.channel_count = channel_count
    app.state.max_upload_bytes = max_upload_bytes
    app.include_router(router)
    return app
