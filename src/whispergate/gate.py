"""Pipeline state gate.

Tracks how far a context has progressed through spectrogram -> encode ->
decode. whisper.cpp does not check this ordering itself; calling encode
without a spectrogram, or decode without an encoding, reads uninitialised
native memory.
"""

from enum import IntEnum

from whispergate.errors import EncodeNotCompleteError, SpectrogramNotReadyError


class PipelineStage(IntEnum):
    """Ordered pipeline stages. Later stages imply the earlier ones."""

    FRESH = 0
    SPECTROGRAM_READY = 1
    ENCODED = 2
    DECODED = 3


_NOT_READY_ERRORS = {
    PipelineStage.SPECTROGRAM_READY: SpectrogramNotReadyError,
    PipelineStage.ENCODED: EncodeNotCompleteError,
    PipelineStage.DECODED: EncodeNotCompleteError,
}


class PipelineGate:
    """Monotonic stage tracker consulted by every stage-specific operation.

    ``DECODED`` means "decode has run at least once"; decoding again from
    that stage is allowed and leaves the gate where it is.
    """

    def __init__(self):
        self._stage = PipelineStage.FRESH

    @property
    def stage(self) -> PipelineStage:
        return self._stage

    @property
    def spectrogram_ready(self) -> bool:
        return self._stage >= PipelineStage.SPECTROGRAM_READY

    @property
    def encode_complete(self) -> bool:
        return self._stage >= PipelineStage.ENCODED

    @property
    def decode_performed(self) -> bool:
        return self._stage >= PipelineStage.DECODED

    def require(self, stage: PipelineStage) -> None:
        """Raise the matching precondition error unless ``stage`` was reached."""
        if self._stage >= stage:
            return
        error = _NOT_READY_ERRORS[stage]
        raise error(
            f"operation requires stage {stage.name}, context is at {self._stage.name}"
        )

    def advance(self, stage: PipelineStage) -> None:
        """Record a successful transition. Never moves backwards."""
        if stage > self._stage:
            self._stage = stage

    def __repr__(self) -> str:
        return f"PipelineGate(stage={self._stage.name})"
