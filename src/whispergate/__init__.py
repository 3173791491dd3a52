"""Safety layer around the whisper.cpp speech-recognition engine."""

from whispergate.constants import N_MEL, SAMPLE_RATE
from whispergate.context import WhisperContext, create
from whispergate.errors import (
    ContextClosedError,
    DecodeFailedError,
    EncodeFailedError,
    EncodeNotCompleteError,
    EvaluationError,
    InitializationError,
    InvalidMelBandsError,
    InvalidTextError,
    InvalidThreadCountError,
    NativeCallError,
    NullResultError,
    PreconditionError,
    SpectrogramComputationError,
    SpectrogramNotReadyError,
    TextEncodingError,
    WhisperError,
)
from whispergate.gate import PipelineStage
from whispergate.models import (
    FullParams,
    FullRunResult,
    SamplingStrategy,
    Segment,
    SegmentToken,
    Token,
    TokenData,
)

__all__ = [
    "SAMPLE_RATE",
    "N_MEL",
    "WhisperContext",
    "create",
    "PipelineStage",
    "FullParams",
    "FullRunResult",
    "SamplingStrategy",
    "Segment",
    "SegmentToken",
    "Token",
    "TokenData",
    "WhisperError",
    "InitializationError",
    "ContextClosedError",
    "PreconditionError",
    "InvalidThreadCountError",
    "SpectrogramNotReadyError",
    "EncodeNotCompleteError",
    "SpectrogramComputationError",
    "EvaluationError",
    "EncodeFailedError",
    "DecodeFailedError",
    "InvalidMelBandsError",
    "InvalidTextError",
    "NullResultError",
    "TextEncodingError",
    "NativeCallError",
]
