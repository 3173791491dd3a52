"""FastAPI server exposing one whisper context.

Accepts PCM16 audio over HTTP or WebSocket and returns transcribed
segments. Pipeline runs are blocking native calls, so they are moved to
the default executor; the context's own lock serialises them.
"""

import asyncio
import logging

import numpy as np
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from whispergate.audio import bytes_to_samples, pcm16_to_float32, validate_audio_format
from whispergate.constants import (
    CENTISECONDS_PER_SECOND,
    DEFAULT_THREADS,
    MIN_AUDIO_BYTES,
    SAMPLE_RATE,
    STREAM_CHUNK_BYTES,
)
from whispergate.context import WhisperContext
from whispergate.errors import WhisperError
from whispergate.models import FullParams, Segment

logger = logging.getLogger(__name__)


class StreamSession:
    """Manages audio buffer state for a single WebSocket connection."""

    def __init__(self, session_id: str, chunk_threshold: int = STREAM_CHUNK_BYTES):
        """Initialize a stream session.

        Args:
            session_id: Unique identifier for this session.
            chunk_threshold: Byte threshold before triggering transcription.
        """
        self.session_id = session_id
        self.chunk_threshold = chunk_threshold
        self._buffer = bytearray()
        self._flushed_samples = 0

    @property
    def buffer_bytes(self) -> int:
        """Current buffer size in bytes."""
        return len(self._buffer)

    @property
    def buffer_samples(self) -> int:
        """Current buffer size in samples."""
        return bytes_to_samples(len(self._buffer))

    @property
    def offset_centiseconds(self) -> int:
        """Stream time at which the current buffer starts."""
        return self._flushed_samples * CENTISECONDS_PER_SECOND // SAMPLE_RATE

    def append(self, data: bytes) -> None:
        """Append audio data to the buffer."""
        self._buffer.extend(data)

    def flush(self) -> np.ndarray:
        """Return buffer as float32 array and clear."""
        audio = pcm16_to_float32(bytes(self._buffer))
        self._flushed_samples += len(audio)
        self._buffer.clear()
        return audio

    def has_enough_data(self) -> bool:
        """Check if buffer has enough data for transcription."""
        return len(self._buffer) >= self.chunk_threshold

    def has_minimum_audio(self, min_bytes: int = MIN_AUDIO_BYTES) -> bool:
        """Check if buffer holds enough audio to be worth a pipeline run."""
        return len(self._buffer) >= min_bytes


def segment_payload(segment: Segment, offset: int = 0) -> dict:
    """JSON form of a segment, times in seconds."""
    return {
        "start": (segment.start + offset) / CENTISECONDS_PER_SECOND,
        "end": (segment.end + offset) / CENTISECONDS_PER_SECOND,
        "text": segment.text,
    }


def error_payload(error: WhisperError) -> dict:
    return {"error": type(error).__name__, "detail": str(error)}


def create_app(
    context: WhisperContext,
    params: FullParams | None = None,
    stream_chunk_bytes: int = STREAM_CHUNK_BYTES,
) -> FastAPI:
    """Create a FastAPI application serving the given context.

    Args:
        context: Loaded whisper context. The app does not close it.
        params: Decoding configuration for every run.
        stream_chunk_bytes: Buffered stream audio that triggers a
            mid-stream transcription.

    Returns:
        Configured FastAPI application.
    """
    run_params = params if params is not None else FullParams(n_threads=DEFAULT_THREADS)
    app = FastAPI(title="whispergate")

    # Read once: queries block on the context lock while a run holds it.
    model_info = {"n_vocab": context.n_vocab, "multilingual": context.is_multilingual}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "sample_rate": SAMPLE_RATE, **model_info}

    @app.post("/v1/transcribe")
    async def transcribe(request: Request):
        """Transcribe a complete PCM16 mono 16kHz body."""
        data = await request.body()
        if not validate_audio_format(data):
            return JSONResponse(
                status_code=400, content={"error": "Invalid audio format (must be PCM16)"}
            )

        try:
            segments = await _transcribe(context, run_params, pcm16_to_float32(data))
        except WhisperError as e:
            logger.warning("Transcription failed: %s", e)
            return JSONResponse(status_code=422, content=error_payload(e))
        return {"segments": [segment_payload(s) for s in segments]}

    @app.websocket("/v1/stream")
    async def stream_transcribe(websocket: WebSocket):
        """WebSocket endpoint for streaming audio transcription.

        Protocol:
        - Client sends binary PCM16 audio chunks (16kHz mono)
        - Client sends b"EOS" to signal end of stream
        - Server responds with JSON: {"text", "start", "end", "final": bool}
        - Server sends {"status": "complete"} when done
        """
        await websocket.accept()
        session = StreamSession(str(id(websocket)), chunk_threshold=stream_chunk_bytes)

        try:
            while True:
                data = await websocket.receive_bytes()

                # Handle end-of-stream signal
                if data == b"EOS":
                    if session.has_minimum_audio():
                        await _send_segments(websocket, context, run_params, session, final=True)
                    await websocket.send_json({"status": "complete"})
                    break

                if not validate_audio_format(data):
                    await websocket.send_json(
                        {"error": "Invalid audio format (must be PCM16)"}
                    )
                    continue

                session.append(data)

                # Process when buffer reaches threshold
                if session.has_enough_data():
                    await _send_segments(websocket, context, run_params, session, final=False)

        except WebSocketDisconnect:
            logger.debug("Stream %s disconnected", session.session_id)

    return app


async def _transcribe(
    context: WhisperContext, params: FullParams, audio: np.ndarray
) -> list[Segment]:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, context.transcribe, params, audio)


async def _send_segments(
    websocket: WebSocket,
    context: WhisperContext,
    params: FullParams,
    session: StreamSession,
    final: bool,
) -> None:
    """Transcribe the buffered audio and send one message per segment."""
    offset = session.offset_centiseconds
    audio = session.flush()
    try:
        segments = await _transcribe(context, params, audio)
    except WhisperError as e:
        logger.warning("Stream %s transcription failed: %s", session.session_id, e)
        await websocket.send_json(error_payload(e))
        return

    for segment in segments:
        if segment.text.strip():
            await websocket.send_json({**segment_payload(segment, offset), "final": final})
