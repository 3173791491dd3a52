"""Unit tests for the FastAPI server with FakeEngine."""

import asyncio
import time

import numpy as np
import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from whispergate.constants import GGML_MAGIC, MIN_AUDIO_BYTES
from whispergate.context import WhisperContext
from whispergate.engine.fake import FakeEngine
from whispergate.errors import EncodeFailedError
from whispergate.models import Segment
from whispergate.server import StreamSession, create_app, error_payload, segment_payload


def make_context(engine: FakeEngine | None = None, **engine_options) -> WhisperContext:
    return WhisperContext.from_buffer(
        GGML_MAGIC + bytes(16), engine or FakeEngine(**engine_options)
    )


def to_pcm16(audio: np.ndarray) -> bytes:
    """Float32 audio as the PCM16 bytes a client would send."""
    return (np.clip(audio, -1.0, 1.0) * 32767.0).astype("<i2").tobytes()


def receive_until_complete(ws) -> list[dict]:
    messages = []
    while True:
        msg = ws.receive_json()
        messages.append(msg)
        if msg.get("status") == "complete":
            return messages


class TestStreamSession:
    """Tests for StreamSession buffer management."""

    def test_initial_state(self):
        """Session should start with empty buffer."""
        session = StreamSession("test-id")
        assert session.buffer_bytes == 0
        assert session.buffer_samples == 0
        assert session.offset_centiseconds == 0
        assert not session.has_enough_data()

    def test_append_data(self):
        """Appending data should grow the buffer."""
        session = StreamSession("test-id", chunk_threshold=100)
        session.append(bytes(50))
        assert session.buffer_bytes == 50
        assert session.buffer_samples == 25

    def test_has_enough_data(self):
        """Buffer should report ready once the threshold is reached."""
        session = StreamSession("test-id", chunk_threshold=100)
        session.append(bytes(50))
        assert not session.has_enough_data()
        session.append(bytes(50))
        assert session.has_enough_data()

    def test_has_minimum_audio(self):
        """Less than one second of audio is not worth a pipeline run."""
        session = StreamSession("test-id")
        session.append(bytes(MIN_AUDIO_BYTES - 2))
        assert not session.has_minimum_audio()
        session.append(bytes(2))
        assert session.has_minimum_audio()

    def test_flush_clears_buffer(self):
        """Flush should return float32 audio and clear the buffer."""
        session = StreamSession("test-id")
        audio = np.array([0.5, -0.5], dtype=np.float32)
        session.append(to_pcm16(audio))

        result = session.flush()

        assert session.buffer_bytes == 0
        np.testing.assert_allclose(result, audio, atol=0.0001)

    def test_flush_advances_stream_offset(self):
        """Segments of later flushes are shifted by the audio already sent."""
        session = StreamSession("test-id")
        session.append(bytes(MIN_AUDIO_BYTES))
        session.flush()
        session.append(bytes(MIN_AUDIO_BYTES // 2))
        session.flush()
        assert session.offset_centiseconds == 150


class TestPayloads:
    """Tests for JSON payload helpers."""

    def test_segment_payload_in_seconds(self):
        """Centisecond times should be reported in seconds."""
        segment = Segment(index=0, start=150, end=275, text=" hello")
        assert segment_payload(segment) == {"start": 1.5, "end": 2.75, "text": " hello"}

    def test_segment_payload_with_offset(self):
        """The stream offset should shift both times."""
        segment = Segment(index=0, start=0, end=100, text=" hello")
        payload = segment_payload(segment, offset=3000)
        assert payload["start"] == 30.0
        assert payload["end"] == 31.0

    def test_error_payload_names_the_error(self):
        """Error payloads should carry the exception class and message."""
        payload = error_payload(EncodeFailedError("full: encoder failed"))
        assert payload == {"error": "EncodeFailedError", "detail": "full: encoder failed"}


class TestHealthEndpoint:
    """Tests for the /health endpoint."""

    def test_health_returns_ok(self):
        """Health check should return ok status and model attributes."""
        context = make_context(multilingual=False)
        client = TestClient(create_app(context))

        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["sample_rate"] == 16000
        assert data["n_vocab"] == context.n_vocab
        assert data["multilingual"] is False

    @pytest.mark.asyncio
    async def test_health_responds_during_transcription(self, speech):
        """Health polls should not wait for a running transcription."""
        engine = FakeEngine(latency_ms=1000)
        app = create_app(make_context(engine))

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            run = asyncio.create_task(
                client.post("/v1/transcribe", content=to_pcm16(speech(1)))
            )
            while "full" not in engine.calls:
                await asyncio.sleep(0.01)

            start = time.monotonic()
            health = await client.get("/health")
            elapsed = time.monotonic() - start

            assert not run.done()
            transcribed = await run

        assert health.status_code == 200
        assert elapsed < 0.5
        assert transcribed.status_code == 200


class TestTranscribeEndpoint:
    """Tests for POST /v1/transcribe."""

    def test_transcribes_pcm_body(self, speech):
        """A PCM16 body should yield one segment per second of speech."""
        client = TestClient(create_app(make_context()))

        response = client.post("/v1/transcribe", content=to_pcm16(speech(2)))

        assert response.status_code == 200
        segments = response.json()["segments"]
        assert len(segments) == 2
        assert segments[0]["start"] == 0.0
        assert segments[0]["end"] == 1.0
        assert segments[1]["start"] == 1.0
        assert all(s["text"].strip() for s in segments)

    def test_silence_yields_no_segments(self):
        """Silence should transcribe to an empty segment list."""
        client = TestClient(create_app(make_context()))
        response = client.post("/v1/transcribe", content=bytes(MIN_AUDIO_BYTES))
        assert response.status_code == 200
        assert response.json() == {"segments": []}

    def test_odd_byte_count_rejected(self):
        """Odd byte count should be rejected before any pipeline run."""
        client = TestClient(create_app(make_context()))
        response = client.post("/v1/transcribe", content=bytes(101))
        assert response.status_code == 400
        assert "error" in response.json()

    @pytest.mark.parametrize(
        "status,error",
        [(-1, "SpectrogramComputationError"), (7, "EncodeFailedError"), (8, "DecodeFailedError")],
    )
    def test_engine_failure_maps_to_422(self, status, error, speech):
        """Each engine failure should surface as 422 with its error kind."""
        client = TestClient(create_app(make_context(status_overrides={"full": status})))
        response = client.post("/v1/transcribe", content=to_pcm16(speech(1)))
        assert response.status_code == 422
        assert response.json()["error"] == error

    def test_empty_body_is_an_engine_failure(self):
        """The engine cannot compute a spectrogram of zero samples."""
        client = TestClient(create_app(make_context()))
        response = client.post("/v1/transcribe", content=b"")
        assert response.status_code == 422
        assert response.json()["error"] == "SpectrogramComputationError"

    @pytest.mark.asyncio
    async def test_transcribe_async_client(self, speech):
        """Transcription should work through an async ASGI client."""
        app = create_app(make_context())
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.post("/v1/transcribe", content=to_pcm16(speech(1)))
        assert response.status_code == 200
        assert len(response.json()["segments"]) == 1


class TestWebSocketEndpoint:
    """Tests for the WebSocket /v1/stream endpoint."""

    @pytest.fixture
    def app(self):
        return create_app(make_context())

    def test_websocket_accept(self, app):
        """WebSocket should accept connections and complete on EOS."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(b"EOS")
                assert ws.receive_json() == {"status": "complete"}

    def test_websocket_eos_transcribes_remaining_buffer(self, app, speech):
        """EOS should transcribe buffered audio as final segments."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(to_pcm16(speech(2)))
                ws.send_bytes(b"EOS")
                messages = receive_until_complete(ws)

        text_msgs = [m for m in messages if "text" in m]
        assert len(text_msgs) == 2
        assert all(m["final"] is True for m in text_msgs)
        assert [m["start"] for m in text_msgs] == [0.0, 1.0]

    def test_websocket_multiple_chunks_accumulate(self, app, speech):
        """Small chunks should accumulate into one buffer."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                audio = to_pcm16(speech(1))
                quarter = len(audio) // 4
                for i in range(4):
                    ws.send_bytes(audio[i * quarter : (i + 1) * quarter])
                ws.send_bytes(b"EOS")
                messages = receive_until_complete(ws)

        assert len([m for m in messages if "text" in m]) == 1

    def test_websocket_mid_stream_transcription(self, speech):
        """Reaching the chunk threshold transcribes without waiting for EOS."""
        app = create_app(make_context(), stream_chunk_bytes=MIN_AUDIO_BYTES)
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(to_pcm16(speech(1, seed=1)))
                first = ws.receive_json()
                ws.send_bytes(to_pcm16(speech(1, seed=2)))
                second = ws.receive_json()
                ws.send_bytes(b"EOS")
                assert ws.receive_json() == {"status": "complete"}

        assert first["final"] is False
        assert (first["start"], first["end"]) == (0.0, 1.0)
        assert (second["start"], second["end"]) == (1.0, 2.0)

    def test_websocket_invalid_audio(self, app):
        """Odd byte count should return error and keep the stream open."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(bytes(101))
                assert "error" in ws.receive_json()

                ws.send_bytes(b"EOS")
                assert ws.receive_json()["status"] == "complete"

    def test_websocket_short_audio_skipped(self, app, speech):
        """Audio below the minimum length is not transcribed."""
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(to_pcm16(speech(0.1)))
                ws.send_bytes(b"EOS")
                messages = receive_until_complete(ws)

        assert [m for m in messages if "text" in m] == []

    def test_websocket_engine_failure_reported(self, speech):
        """Engine failures should be sent as error messages before completion."""
        app = create_app(make_context(status_overrides={"full": 8}))
        with TestClient(app) as tc:
            with tc.websocket_connect("/v1/stream") as ws:
                ws.send_bytes(to_pcm16(speech(1)))
                ws.send_bytes(b"EOS")
                messages = receive_until_complete(ws)

        assert messages[0]["error"] == "DecodeFailedError"
        assert messages[-1] == {"status": "complete"}
