"""Read-only queries over the most recent full-pipeline run."""

from whispergate.engine.protocol import Engine, Handle
from whispergate.handle import ContextHandle
from whispergate.marshal import owned_bytes, owned_text, owned_token_data
from whispergate.models import Segment, SegmentToken, Token, TokenData


class ResultAccessors:
    """Result queries, mixed into ``WhisperContext``.

    Every query takes the shared side of the context lock, so queries can
    run concurrently with each other but never alongside a pipeline run.
    Indices are checked against the engine's own counts before any native
    getter sees them. Results are replaced by the next run.
    """

    _handle: ContextHandle
    _engine: Engine

    def segment_count(self) -> int:
        """Number of segments produced by the last run (0 before any run)."""
        with self._handle.reading() as raw:
            return int(self._engine.full_n_segments(raw))

    def segment_start(self, segment: int) -> int:
        """Start time of a segment, in centiseconds."""
        with self._handle.reading() as raw:
            self._check_segment(raw, segment)
            return int(self._engine.full_get_segment_t0(raw, segment))

    def segment_end(self, segment: int) -> int:
        """End time of a segment, in centiseconds."""
        with self._handle.reading() as raw:
            self._check_segment(raw, segment)
            return int(self._engine.full_get_segment_t1(raw, segment))

    def segment_text(self, segment: int) -> str:
        with self._handle.reading() as raw:
            self._check_segment(raw, segment)
            return owned_text(
                self._engine.full_get_segment_text(raw, segment), "full_get_segment_text"
            )

    def segment_token_count(self, segment: int) -> int:
        with self._handle.reading() as raw:
            self._check_segment(raw, segment)
            return int(self._engine.full_n_tokens(raw, segment))

    def token_text(self, segment: int, token: int) -> str:
        with self._handle.reading() as raw:
            self._check_token(raw, segment, token)
            return owned_text(
                self._engine.full_get_token_text(raw, segment, token), "full_get_token_text"
            )

    def token_id(self, segment: int, token: int) -> Token:
        with self._handle.reading() as raw:
            self._check_token(raw, segment, token)
            return int(self._engine.full_get_token_id(raw, segment, token))

    def token_data(self, segment: int, token: int) -> TokenData:
        with self._handle.reading() as raw:
            self._check_token(raw, segment, token)
            return owned_token_data(self._engine.full_get_token_data(raw, segment, token))

    def token_probability(self, segment: int, token: int) -> float:
        with self._handle.reading() as raw:
            self._check_token(raw, segment, token)
            return float(self._engine.full_get_token_p(raw, segment, token))

    def segments(self, with_tokens: bool = True) -> list[Segment]:
        """Copy every segment of the last run out of the engine.

        Args:
            with_tokens: Also copy per-token bytes and data.

        Returns:
            Owned segments in engine order.
        """
        with self._handle.reading() as raw:
            n_segments = int(self._engine.full_n_segments(raw))
            return [self._read_segment(raw, i, with_tokens) for i in range(n_segments)]

    def _read_segment(self, raw: Handle, index: int, with_tokens: bool) -> Segment:
        engine = self._engine
        tokens: tuple[SegmentToken, ...] = ()
        if with_tokens:
            tokens = tuple(
                SegmentToken(
                    piece=owned_bytes(
                        engine.full_get_token_text(raw, index, j), "full_get_token_text"
                    ),
                    data=owned_token_data(engine.full_get_token_data(raw, index, j)),
                )
                for j in range(int(engine.full_n_tokens(raw, index)))
            )
        return Segment(
            index=index,
            start=int(engine.full_get_segment_t0(raw, index)),
            end=int(engine.full_get_segment_t1(raw, index)),
            text=owned_text(engine.full_get_segment_text(raw, index), "full_get_segment_text"),
            tokens=tokens,
        )

    def _check_segment(self, raw: Handle, segment: int) -> None:
        n_segments = int(self._engine.full_n_segments(raw))
        if not 0 <= segment < n_segments:
            raise IndexError(f"segment {segment} out of range ({n_segments} segments)")

    def _check_token(self, raw: Handle, segment: int, token: int) -> None:
        self._check_segment(raw, segment)
        n_tokens = int(self._engine.full_n_tokens(raw, segment))
        if not 0 <= token < n_tokens:
            raise IndexError(
                f"token {token} out of range ({n_tokens} tokens in segment {segment})"
            )
