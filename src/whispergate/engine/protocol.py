"""Engine protocol defining the raw interface of a whisper.cpp-style library.

This is the "sealed boundary" between the safety layer and native code.
Everything on the other side speaks in handles, status integers, nullable
pointers and caller-allocated buffers; nothing returned here is safe to
hand to application code without going through ``whispergate.marshal``.
"""

import ctypes
from typing import Any, Protocol

import numpy as np

from whispergate.engine.abi import TokenDataStruct
from whispergate.models import FullParams

# Opaque context handle. None is the null handle.
Handle = Any


class Engine(Protocol):
    """Protocol for native speech-recognition engines.

    Implementations mirror the C API one call per method. This allows
    swapping the real shared library for a fake in-memory engine in tests.
    """

    # Initialization
    def init_from_file(self, path: bytes) -> Handle | None:
        """Load a model from a NUL-free, encoded filesystem path."""
        ...

    def init_from_buffer(self, buffer: bytes) -> Handle | None:
        """Load a model from an in-memory buffer."""
        ...

    def free(self, handle: Handle) -> None:
        """Release a context. Must be called exactly once per handle."""
        ...

    # Stage operations
    def pcm_to_mel(
        self, handle: Handle, samples: np.ndarray, n_samples: int, n_threads: int
    ) -> int:
        """Compute the log mel spectrogram of float32 samples.

        Returns:
            0 on success, -1 on failure, any other value is a generic error.
        """
        ...

    def set_mel(self, handle: Handle, data: np.ndarray, n_len: int, n_mel: int) -> int:
        """Install a precomputed (n_mel, n_len) spectrogram.

        Returns:
            0 on success, -1 on a wrong band count.
        """
        ...

    def encode(self, handle: Handle, offset: int, n_threads: int) -> int: ...

    def decode(
        self,
        handle: Handle,
        tokens: np.ndarray,
        n_tokens: int,
        n_past: int,
        n_threads: int,
    ) -> int: ...

    def tokenize(
        self, handle: Handle, text: bytes, tokens: ctypes.Array, n_max_tokens: int
    ) -> int:
        """Write up to ``n_max_tokens`` ids into ``tokens``.

        Returns:
            Number of tokens written, or a negative value on failure.
        """
        ...

    # Language
    def lang_max_id(self) -> int: ...

    def lang_id(self, lang: bytes) -> int: ...

    def lang_str(self, lang_id: int) -> bytes | None: ...

    def lang_auto_detect(
        self, handle: Handle, offset_ms: int, n_threads: int, lang_probs: ctypes.Array
    ) -> int:
        """Fill ``lang_probs`` (lang_max_id() + 1 floats).

        Returns:
            Number of probabilities written, or a negative value on failure.
        """
        ...

    # Model attributes
    def n_len(self, handle: Handle) -> int: ...

    def n_vocab(self, handle: Handle) -> int: ...

    def n_text_ctx(self, handle: Handle) -> int: ...

    def n_audio_ctx(self, handle: Handle) -> int: ...

    def is_multilingual(self, handle: Handle) -> int: ...

    # Tokens and logits
    def get_logits(self, handle: Handle) -> Any:
        """Pointer to the float logits of the last decode, possibly null.

        The buffer is owned by the engine and overwritten by the next decode.
        """
        ...

    def token_to_str(self, handle: Handle, token: int) -> bytes | None: ...

    def token_eot(self, handle: Handle) -> int: ...

    def token_sot(self, handle: Handle) -> int: ...

    def token_prev(self, handle: Handle) -> int: ...

    def token_solm(self, handle: Handle) -> int: ...

    def token_not(self, handle: Handle) -> int: ...

    def token_beg(self, handle: Handle) -> int: ...

    def token_lang(self, handle: Handle, lang_id: int) -> int: ...

    # Timings
    def print_timings(self, handle: Handle) -> None: ...

    def reset_timings(self, handle: Handle) -> None: ...

    # Full pipeline
    def full(
        self, handle: Handle, params: FullParams, samples: np.ndarray, n_samples: int
    ) -> int:
        """Run the whole pipeline.

        Returns:
            0 on success, -1 spectrogram failure, 7 encode failure,
            8 decode failure, anything else is a generic error.
        """
        ...

    def full_parallel(
        self,
        handle: Handle,
        params: FullParams,
        samples: np.ndarray,
        n_samples: int,
        n_processors: int,
    ) -> int:
        """Run the whole pipeline over ``n_processors`` audio partitions.

        Returns 0 even when some partitions were skipped.
        """
        ...

    def full_n_segments(self, handle: Handle) -> int: ...

    def full_get_segment_t0(self, handle: Handle, i_segment: int) -> int: ...

    def full_get_segment_t1(self, handle: Handle, i_segment: int) -> int: ...

    def full_get_segment_text(self, handle: Handle, i_segment: int) -> bytes | None: ...

    def full_n_tokens(self, handle: Handle, i_segment: int) -> int: ...

    def full_get_token_text(
        self, handle: Handle, i_segment: int, i_token: int
    ) -> bytes | None: ...

    def full_get_token_id(self, handle: Handle, i_segment: int, i_token: int) -> int: ...

    def full_get_token_data(
        self, handle: Handle, i_segment: int, i_token: int
    ) -> TokenDataStruct: ...

    def full_get_token_p(self, handle: Handle, i_segment: int, i_token: int) -> float: ...
