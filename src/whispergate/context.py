"""Safe wrapper around one whisper.cpp context.

``WhisperContext`` is the only object application code talks to. It owns
the native handle, orders the pipeline stages through a ``PipelineGate``,
serialises mutation with a reader/writer lock and hands back owned values
only.

Typical use::

    with whispergate.create("ggml-base.en.bin") as ctx:
        ctx.run_full(FullParams(n_threads=4), samples)
        for segment in ctx.segments():
            print(segment.start_seconds, segment.text)
"""

import logging
import os
from collections.abc import Sequence

import numpy as np

from whispergate.audio import as_samples
from whispergate.constants import (
    N_MEL,
    STATUS_DECODE_FAILED,
    STATUS_ENCODE_FAILED,
    STATUS_FAILURE,
    STATUS_OK,
)
from whispergate.engine.native import NativeEngine
from whispergate.engine.protocol import Engine, Handle
from whispergate.errors import (
    DecodeFailedError,
    EncodeFailedError,
    EvaluationError,
    InitializationError,
    InvalidMelBandsError,
    InvalidTextError,
    NativeCallError,
    SpectrogramComputationError,
)
from whispergate.gate import PipelineGate, PipelineStage
from whispergate.handle import ContextHandle
from whispergate.marshal import (
    check_non_negative,
    check_status,
    check_threads,
    checked_vector,
    copy_matrix,
    fixed_vector,
    new_token_buffer,
    owned_bytes,
    owned_text,
    owned_tokens,
)
from whispergate.models import FullParams, FullRunResult, Segment, Token
from whispergate.results import ResultAccessors

logger = logging.getLogger(__name__)

ModelSource = str | os.PathLike | bytes | bytearray | memoryview


class WhisperContext(ResultAccessors):
    """Owned handle to one loaded model.

    Mutating operations (feature extraction, spectrogram injection, encode,
    decode, language detection, full runs) take the context exclusively.
    Queries share it. Independent contexts share nothing and may be used
    from different threads freely.

    Create instances with ``from_file``, ``from_buffer`` or ``create``.
    """

    def __init__(self, engine: Engine, raw: Handle):
        self._engine = engine
        self._handle = ContextHandle(engine, raw)
        self._gate = PipelineGate()
        self._decoded_tokens = 0

    @classmethod
    def from_file(cls, path: str | os.PathLike, engine: Engine | None = None) -> "WhisperContext":
        """Load a model from a file.

        Raises:
            InitializationError: The path is unusable or the engine could not
                load the model.
        """
        engine = engine if engine is not None else NativeEngine()
        encoded = os.fsencode(path)
        if b"\0" in encoded:
            raise InitializationError(f"model path contains a NUL byte: {path!r}")

        raw = engine.init_from_file(encoded)
        if raw is None:
            raise InitializationError(f"failed to load model from {os.fsdecode(encoded)}")
        logger.info("Loaded model from %s", os.fsdecode(encoded))
        return cls(engine, raw)

    @classmethod
    def from_buffer(
        cls, buffer: bytes | bytearray | memoryview, engine: Engine | None = None
    ) -> "WhisperContext":
        """Load a model from an in-memory buffer."""
        engine = engine if engine is not None else NativeEngine()
        data = bytes(buffer)
        raw = engine.init_from_buffer(data)
        if raw is None:
            raise InitializationError(f"failed to load model from a {len(data)}-byte buffer")
        logger.info("Loaded model from a %d-byte buffer", len(data))
        return cls(engine, raw)

    # Lifecycle

    def close(self) -> None:
        """Release the native context. Further use raises ``ContextClosedError``."""
        self._handle.close()

    @property
    def closed(self) -> bool:
        return self._handle.closed

    def __enter__(self) -> "WhisperContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def stage(self) -> PipelineStage:
        """How far the pipeline has progressed on this context."""
        return self._gate.stage

    @property
    def gate(self) -> PipelineGate:
        return self._gate

    # Stage operations

    def featurize(self, samples: np.ndarray, threads: int = 1) -> None:
        """Compute the log mel spectrogram of 16kHz mono float32 audio.

        The spectrogram stays inside the engine; on success the context is
        ready to encode.

        Raises:
            InvalidThreadCountError: ``threads`` < 1.
            SpectrogramComputationError: The engine reported failure.
            NativeCallError: Any other non-zero status.
        """
        threads = check_threads(threads)
        samples = as_samples(samples)
        with self._handle.writing() as raw:
            status = self._engine.pcm_to_mel(raw, samples, len(samples), threads)
            check_status(status, "pcm_to_mel", SpectrogramComputationError)
            self._gate.advance(PipelineStage.SPECTROGRAM_READY)

    def inject_spectrogram(self, data: np.ndarray, n_mel: int = N_MEL) -> None:
        """Install a precomputed log mel spectrogram instead of featurizing.

        Args:
            data: ``(n_mel, n_frames)`` array, or flat row-major data of
                ``n_mel * n_frames`` values.
            n_mel: Band count of flat data; ignored for 2-D input.

        Raises:
            InvalidMelBandsError: Flat data does not split into ``n_mel``
                bands, or the engine rejected the band count.
        """
        mel = np.ascontiguousarray(data, dtype=np.float32)
        if mel.ndim == 2:
            n_mel, n_len = mel.shape
        elif mel.ndim == 1:
            if n_mel < 1 or len(mel) % n_mel:
                raise InvalidMelBandsError(
                    f"{len(mel)} values do not split into {n_mel} mel bands"
                )
            n_len = len(mel) // n_mel
        else:
            raise ValueError(f"expected a 1-D or 2-D spectrogram, got shape {mel.shape}")

        flat = mel.reshape(-1)
        with self._handle.writing() as raw:
            status = self._engine.set_mel(raw, flat, n_len, n_mel)
            check_status(status, "set_mel", InvalidMelBandsError)
            self._gate.advance(PipelineStage.SPECTROGRAM_READY)

    def encode(self, offset: int = 0, threads: int = 1) -> None:
        """Run the encoder on the stored spectrogram, from frame ``offset``.

        Raises:
            SpectrogramNotReadyError: No spectrogram yet.
            EvaluationError: The encoder failed.
        """
        threads = check_threads(threads)
        offset = check_non_negative(offset, "offset")
        with self._handle.writing() as raw:
            self._gate.require(PipelineStage.SPECTROGRAM_READY)
            status = self._engine.encode(raw, offset, threads)
            check_status(status, "encode", EvaluationError)
            self._gate.advance(PipelineStage.ENCODED)

    def decode(self, tokens: Sequence[Token] | np.ndarray, n_past: int = 0, threads: int = 1) -> None:
        """Run one decoder step over ``tokens``.

        ``n_past`` is the number of tokens already in the decoder's cache.
        May be called repeatedly; fetch the step's scores with
        ``get_logits()`` before the next call overwrites them.

        Raises:
            EncodeNotCompleteError: ``encode`` has not succeeded yet.
            EvaluationError: The decoder failed.
        """
        threads = check_threads(threads)
        n_past = check_non_negative(n_past, "n_past")
        ids = np.ascontiguousarray(tokens, dtype=np.int32).reshape(-1)
        if len(ids) == 0:
            raise ValueError("decode needs at least one token")

        with self._handle.writing() as raw:
            self._gate.require(PipelineStage.ENCODED)
            status = self._engine.decode(raw, ids, len(ids), n_past, threads)
            check_status(status, "decode", EvaluationError)
            self._decoded_tokens = len(ids)
            self._gate.advance(PipelineStage.DECODED)

    def tokenize(self, text: str, max_tokens: int) -> list[Token]:
        """Convert text to token ids using the model's vocabulary.

        Raises:
            InvalidTextError: The text does not fit in ``max_tokens`` tokens
                or cannot be passed to the engine.
        """
        max_tokens = check_non_negative(max_tokens, "max_tokens")
        encoded = text.encode("utf-8")
        if b"\0" in encoded:
            raise InvalidTextError("text contains a NUL character")

        buffer = new_token_buffer(max_tokens)
        with self._handle.reading() as raw:
            count = self._engine.tokenize(raw, encoded, buffer, max_tokens)
        if count < 0:
            raise InvalidTextError(f"cannot tokenize text within {max_tokens} tokens")
        return owned_tokens(buffer, count)

    def detect_language(self, offset_ms: int = 0, threads: int = 1) -> np.ndarray:
        """Probability of each language id for the audio at ``offset_ms``.

        Returns:
            float32 vector of length ``lang_max_id() + 1``.

        Raises:
            SpectrogramNotReadyError: No spectrogram yet.
            EvaluationError: The engine could not evaluate the audio.
        """
        threads = check_threads(threads)
        offset_ms = check_non_negative(offset_ms, "offset_ms")
        with self._handle.writing() as raw:
            self._gate.require(PipelineStage.SPECTROGRAM_READY)
            probs = fixed_vector(self._engine.lang_max_id() + 1)
            reported = self._engine.lang_auto_detect(raw, offset_ms, threads, probs)
            if reported == STATUS_FAILURE:
                raise EvaluationError("lang_auto_detect failed")
            if reported < 0:
                raise NativeCallError(reported, "lang_auto_detect")
            return checked_vector(probs, reported, "language probabilities")

    def get_logits(self) -> np.ndarray:
        """Scores of the last ``decode`` call, one row per decoded token.

        The matrix is copied out of the engine on every call. Logits of a
        full-pipeline run are deliberately not exposed: the engine does not
        report how many rows its buffer holds after a run, so the result has
        zero rows until ``decode`` is called again.
        """
        with self._handle.reading() as raw:
            self._gate.require(PipelineStage.SPECTROGRAM_READY)
            pointer = self._engine.get_logits(raw)
            n_vocab = int(self._engine.n_vocab(raw))
            return copy_matrix(pointer, self._decoded_tokens, n_vocab)

    # Vocabulary

    def token_to_str(self, token: Token) -> str:
        with self._handle.reading() as raw:
            return owned_text(self._engine.token_to_str(raw, token), "token_to_str")

    def token_to_bytes(self, token: Token) -> bytes:
        """Raw bytes of a token; byte-level tokens need not be valid UTF-8."""
        with self._handle.reading() as raw:
            return owned_bytes(self._engine.token_to_str(raw, token), "token_to_str")

    def token_eot(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_eot(raw))

    def token_sot(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_sot(raw))

    def token_prev(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_prev(raw))

    def token_solm(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_solm(raw))

    def token_not(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_not(raw))

    def token_beg(self) -> Token:
        with self._handle.reading() as raw:
            return int(self._engine.token_beg(raw))

    def token_lang(self, lang_id: int) -> Token:
        self._check_language_id(lang_id)
        with self._handle.reading() as raw:
            return int(self._engine.token_lang(raw, lang_id))

    # Languages

    def lang_max_id(self) -> int:
        return int(self._engine.lang_max_id())

    def language_code(self, lang_id: int) -> str:
        """Short code ("en", "de", ...) of a language id."""
        self._check_language_id(lang_id)
        return owned_text(self._engine.lang_str(lang_id), "lang_str")

    def language_id(self, code: str) -> int:
        lang_id = self._engine.lang_id(code.encode("utf-8"))
        if lang_id < 0:
            raise InvalidTextError(f"unknown language {code!r}")
        return int(lang_id)

    def _check_language_id(self, lang_id: int) -> None:
        max_id = self.lang_max_id()
        if not 0 <= lang_id <= max_id:
            raise IndexError(f"language id {lang_id} out of range (max {max_id})")

    # Model attributes

    @property
    def n_len(self) -> int:
        """Length of the stored spectrogram, in frames."""
        with self._handle.reading() as raw:
            return int(self._engine.n_len(raw))

    @property
    def n_vocab(self) -> int:
        with self._handle.reading() as raw:
            return int(self._engine.n_vocab(raw))

    @property
    def n_text_ctx(self) -> int:
        with self._handle.reading() as raw:
            return int(self._engine.n_text_ctx(raw))

    @property
    def n_audio_ctx(self) -> int:
        with self._handle.reading() as raw:
            return int(self._engine.n_audio_ctx(raw))

    @property
    def is_multilingual(self) -> bool:
        with self._handle.reading() as raw:
            return self._engine.is_multilingual(raw) != 0

    # Timings

    def print_timings(self) -> None:
        """Have the engine print its performance counters to stderr."""
        with self._handle.reading() as raw:
            self._engine.print_timings(raw)

    def reset_timings(self) -> None:
        with self._handle.writing() as raw:
            self._engine.reset_timings(raw)

    # Full pipeline

    def run_full(self, params: FullParams, samples: np.ndarray) -> FullRunResult:
        """Run feature extraction, encoding and decoding in one call.

        This is usually the only pipeline call an application needs; read
        the output with ``segments()`` or the per-segment accessors.

        Raises:
            SpectrogramComputationError, EncodeFailedError, DecodeFailedError,
            NativeCallError: The stage that failed inside the engine.
        """
        check_threads(params.n_threads)
        samples = as_samples(samples)
        with self._handle.writing() as raw:
            status = self._engine.full(raw, params, samples, len(samples))
            self._finish_full(raw, status, "full")
            n_segments = int(self._engine.full_n_segments(raw))
        return FullRunResult(n_segments=n_segments)

    def run_full_parallel(
        self, params: FullParams, samples: np.ndarray, partitions: int
    ) -> FullRunResult:
        """Run the full pipeline over ``partitions`` slices of the audio.

        The engine transcribes each slice on its own sub-context and merges
        the segments. Accuracy may drop at slice boundaries.

        Caveat: if a sub-context fails to initialise, the engine skips that
        slice and still reports success, so part of the audio may never be
        transcribed. The result flags this with ``coverage_guaranteed``,
        which is only True for a single partition.
        """
        partitions = check_threads(partitions)
        check_threads(params.n_threads)
        samples = as_samples(samples)
        with self._handle.writing() as raw:
            status = self._engine.full_parallel(raw, params, samples, len(samples), partitions)
            self._finish_full(raw, status, "full_parallel")
            n_segments = int(self._engine.full_n_segments(raw))

        coverage_guaranteed = partitions == 1
        if not coverage_guaranteed:
            logger.warning(
                "Parallel run over %d partitions: audio of partitions that failed "
                "to initialise is silently skipped",
                partitions,
            )
        return FullRunResult(
            n_segments=n_segments,
            partitions=partitions,
            coverage_guaranteed=coverage_guaranteed,
        )

    def transcribe(
        self, params: FullParams, samples: np.ndarray, with_tokens: bool = False
    ) -> list[Segment]:
        """Run the full pipeline and copy out its segments atomically.

        Unlike ``run_full`` followed by ``segments()``, no other run can
        replace the results in between.
        """
        check_threads(params.n_threads)
        samples = as_samples(samples)
        with self._handle.writing() as raw:
            status = self._engine.full(raw, params, samples, len(samples))
            self._finish_full(raw, status, "full")
            n_segments = int(self._engine.full_n_segments(raw))
            return [self._read_segment(raw, i, with_tokens) for i in range(n_segments)]

    def _finish_full(self, raw: Handle, status: int, call: str) -> None:
        if status != STATUS_OK:
            logger.debug("%s returned status %d", call, status)
        if status == STATUS_FAILURE:
            raise SpectrogramComputationError(f"{call}: failed to compute log mel spectrogram")
        if status == STATUS_ENCODE_FAILED:
            raise EncodeFailedError(f"{call}: encoder failed")
        if status == STATUS_DECODE_FAILED:
            raise DecodeFailedError(f"{call}: decoder failed")
        if status != STATUS_OK:
            raise NativeCallError(status, call)

        # The engine ran every stage internally; its logits buffer now has
        # an unknown number of rows.
        self._decoded_tokens = 0
        self._gate.advance(PipelineStage.DECODED)

    def __repr__(self) -> str:
        return f"WhisperContext({self._handle!r}, stage={self._gate.stage.name})"


def create(model_source: ModelSource, engine: Engine | None = None) -> WhisperContext:
    """Load a model from a path or an in-memory buffer.

    Args:
        model_source: Filesystem path (``str`` / ``PathLike``) or model bytes.
        engine: Engine to load with; a ``NativeEngine`` by default.
    """
    if isinstance(model_source, (bytes, bytearray, memoryview)):
        return WhisperContext.from_buffer(model_source, engine)
    return WhisperContext.from_file(model_source, engine)
