"""Value types produced by the safety layer.

All of these are owned copies of native data: none of them refers back to a
context, and they stay valid after further context operations.
"""

from dataclasses import dataclass
from enum import IntEnum

from whispergate.constants import CENTISECONDS_PER_SECOND

Token = int


@dataclass(frozen=True)
class TokenData:
    """A decoded token with its selection probability and timing."""

    id: Token
    tid: Token  # forced timestamp token id
    p: float
    plog: float
    pt: float
    ptsum: float
    t0: int
    t1: int
    vlen: float


@dataclass(frozen=True)
class SegmentToken:
    """Raw token bytes paired with its token data.

    ``piece`` is not decoded: a byte-level token can hold part of a UTF-8
    sequence, and only the joined pieces of a segment form valid text.
    """

    piece: bytes
    data: TokenData


@dataclass(frozen=True)
class Segment:
    """A contiguous span of recognized speech.

    ``start`` and ``end`` are in centiseconds, as reported by the engine.
    """

    index: int
    start: int
    end: int
    text: str
    tokens: tuple[SegmentToken, ...] = ()

    @property
    def start_seconds(self) -> float:
        return self.start / CENTISECONDS_PER_SECOND

    @property
    def end_seconds(self) -> float:
        return self.end / CENTISECONDS_PER_SECOND


class SamplingStrategy(IntEnum):
    """Decoding search strategy, numbered as in whisper.h."""

    GREEDY = 0
    BEAM_SEARCH = 1


@dataclass
class FullParams:
    """Decoding configuration for a full-pipeline run.

    The safety layer does not interpret these values; the engine maps them
    onto its own parameter struct.
    """

    strategy: SamplingStrategy = SamplingStrategy.GREEDY
    n_threads: int = 1
    n_max_text_ctx: int = 16384  # past text tokens used as prompt
    offset_ms: int = 0
    duration_ms: int = 0  # 0 = whole input
    translate: bool = False
    no_context: bool = True


@dataclass(frozen=True)
class FullRunResult:
    """Outcome of a successful full-pipeline run.

    ``coverage_guaranteed`` is False for parallel runs over more than one
    partition: the engine reports success even when a partition's
    sub-context failed to initialise and its audio was never transcribed.
    """

    n_segments: int
    partitions: int = 1
    coverage_guaranteed: bool = True
