"""Real engine backed by the whisper.cpp shared library via ctypes.

This module needs a ``libwhisper`` build (1.4 series ABI). It is only a
thin declaration layer: every call returns exactly what the C function
returns, and all checking happens in the safety layer above it.
"""

import ctypes
import ctypes.util
import logging
import os

import numpy as np

from whispergate.constants import WHISPER_LIBRARY_ENV
from whispergate.engine.abi import FloatPointer, FullParamsStruct, TokenDataStruct
from whispergate.errors import InitializationError
from whispergate.models import FullParams

logger = logging.getLogger(__name__)

_c_ctx = ctypes.c_void_p
_c_int = ctypes.c_int
_c_float = ctypes.c_float
_c_samples = np.ctypeslib.ndpointer(dtype=np.float32, ndim=1, flags="C_CONTIGUOUS")
_c_tokens = np.ctypeslib.ndpointer(dtype=np.int32, ndim=1, flags="C_CONTIGUOUS")
_c_token_array = ctypes.POINTER(ctypes.c_int)

# name: (restype, argtypes)
_SIGNATURES = {
    "whisper_init_from_file": (_c_ctx, [ctypes.c_char_p]),
    "whisper_init_from_buffer": (_c_ctx, [ctypes.c_void_p, ctypes.c_size_t]),
    "whisper_free": (None, [_c_ctx]),
    "whisper_pcm_to_mel": (_c_int, [_c_ctx, _c_samples, _c_int, _c_int]),
    "whisper_set_mel": (_c_int, [_c_ctx, _c_samples, _c_int, _c_int]),
    "whisper_encode": (_c_int, [_c_ctx, _c_int, _c_int]),
    "whisper_decode": (_c_int, [_c_ctx, _c_tokens, _c_int, _c_int, _c_int]),
    "whisper_tokenize": (_c_int, [_c_ctx, ctypes.c_char_p, _c_token_array, _c_int]),
    "whisper_lang_max_id": (_c_int, []),
    "whisper_lang_id": (_c_int, [ctypes.c_char_p]),
    "whisper_lang_str": (ctypes.c_char_p, [_c_int]),
    "whisper_lang_auto_detect": (_c_int, [_c_ctx, _c_int, _c_int, FloatPointer]),
    "whisper_n_len": (_c_int, [_c_ctx]),
    "whisper_n_vocab": (_c_int, [_c_ctx]),
    "whisper_n_text_ctx": (_c_int, [_c_ctx]),
    "whisper_n_audio_ctx": (_c_int, [_c_ctx]),
    "whisper_is_multilingual": (_c_int, [_c_ctx]),
    "whisper_get_logits": (FloatPointer, [_c_ctx]),
    "whisper_token_to_str": (ctypes.c_char_p, [_c_ctx, _c_int]),
    "whisper_token_eot": (_c_int, [_c_ctx]),
    "whisper_token_sot": (_c_int, [_c_ctx]),
    "whisper_token_prev": (_c_int, [_c_ctx]),
    "whisper_token_solm": (_c_int, [_c_ctx]),
    "whisper_token_not": (_c_int, [_c_ctx]),
    "whisper_token_beg": (_c_int, [_c_ctx]),
    "whisper_token_lang": (_c_int, [_c_ctx, _c_int]),
    "whisper_print_timings": (None, [_c_ctx]),
    "whisper_reset_timings": (None, [_c_ctx]),
    "whisper_full_default_params": (FullParamsStruct, [_c_int]),
    "whisper_full": (_c_int, [_c_ctx, FullParamsStruct, _c_samples, _c_int]),
    "whisper_full_parallel": (_c_int, [_c_ctx, FullParamsStruct, _c_samples, _c_int, _c_int]),
    "whisper_full_n_segments": (_c_int, [_c_ctx]),
    "whisper_full_get_segment_t0": (ctypes.c_int64, [_c_ctx, _c_int]),
    "whisper_full_get_segment_t1": (ctypes.c_int64, [_c_ctx, _c_int]),
    "whisper_full_get_segment_text": (ctypes.c_char_p, [_c_ctx, _c_int]),
    "whisper_full_n_tokens": (_c_int, [_c_ctx, _c_int]),
    "whisper_full_get_token_text": (ctypes.c_char_p, [_c_ctx, _c_int, _c_int]),
    "whisper_full_get_token_id": (_c_int, [_c_ctx, _c_int, _c_int]),
    "whisper_full_get_token_data": (TokenDataStruct, [_c_ctx, _c_int, _c_int]),
    "whisper_full_get_token_p": (_c_float, [_c_ctx, _c_int, _c_int]),
}


def find_library(library_path: str | os.PathLike | None = None) -> str:
    """Resolve the whisper.cpp shared library.

    Order: explicit argument, ``$WHISPER_CPP_LIB``, then the system search
    path.
    """
    if library_path is not None:
        return os.fspath(library_path)
    from_env = os.environ.get(WHISPER_LIBRARY_ENV)
    if from_env:
        return from_env
    found = ctypes.util.find_library("whisper")
    if found is None:
        raise InitializationError(
            f"libwhisper not found; set {WHISPER_LIBRARY_ENV} to its path"
        )
    return found


def _bind(lib: ctypes.CDLL) -> None:
    for name, (restype, argtypes) in _SIGNATURES.items():
        fn = getattr(lib, name)
        fn.restype = restype
        fn.argtypes = argtypes


class NativeEngine:
    """whisper.cpp engine loaded from a shared library.

    The library is loaded and its signatures declared once per instance;
    contexts created through the same instance share it.
    """

    def __init__(self, library_path: str | os.PathLike | None = None):
        path = find_library(library_path)
        try:
            self._lib = ctypes.CDLL(path)
            _bind(self._lib)
        except (OSError, AttributeError) as e:
            raise InitializationError(f"cannot load whisper library {path}: {e}") from e
        self._path = path
        logger.info("Loaded whisper library from %s", path)

    @property
    def library_path(self) -> str:
        return self._path

    # Initialization

    def init_from_file(self, path: bytes):
        return self._lib.whisper_init_from_file(path)

    def init_from_buffer(self, buffer: bytes):
        # ctypes keeps the bytes object alive for the duration of the call;
        # whisper.cpp copies the model out of it before returning.
        return self._lib.whisper_init_from_buffer(buffer, len(buffer))

    def free(self, handle) -> None:
        self._lib.whisper_free(handle)

    # Stage operations

    def pcm_to_mel(self, handle, samples: np.ndarray, n_samples: int, n_threads: int) -> int:
        return self._lib.whisper_pcm_to_mel(handle, samples, n_samples, n_threads)

    def set_mel(self, handle, data: np.ndarray, n_len: int, n_mel: int) -> int:
        return self._lib.whisper_set_mel(handle, data, n_len, n_mel)

    def encode(self, handle, offset: int, n_threads: int) -> int:
        return self._lib.whisper_encode(handle, offset, n_threads)

    def decode(self, handle, tokens: np.ndarray, n_tokens: int, n_past: int, n_threads: int) -> int:
        return self._lib.whisper_decode(handle, tokens, n_tokens, n_past, n_threads)

    def tokenize(self, handle, text: bytes, tokens: ctypes.Array, n_max_tokens: int) -> int:
        return self._lib.whisper_tokenize(handle, text, tokens, n_max_tokens)

    # Language

    def lang_max_id(self) -> int:
        return self._lib.whisper_lang_max_id()

    def lang_id(self, lang: bytes) -> int:
        return self._lib.whisper_lang_id(lang)

    def lang_str(self, lang_id: int) -> bytes | None:
        return self._lib.whisper_lang_str(lang_id)

    def lang_auto_detect(self, handle, offset_ms: int, n_threads: int, lang_probs: ctypes.Array) -> int:
        return self._lib.whisper_lang_auto_detect(
            handle, offset_ms, n_threads, ctypes.cast(lang_probs, FloatPointer)
        )

    # Model attributes

    def n_len(self, handle) -> int:
        return self._lib.whisper_n_len(handle)

    def n_vocab(self, handle) -> int:
        return self._lib.whisper_n_vocab(handle)

    def n_text_ctx(self, handle) -> int:
        return self._lib.whisper_n_text_ctx(handle)

    def n_audio_ctx(self, handle) -> int:
        return self._lib.whisper_n_audio_ctx(handle)

    def is_multilingual(self, handle) -> int:
        return self._lib.whisper_is_multilingual(handle)

    # Tokens and logits

    def get_logits(self, handle):
        return self._lib.whisper_get_logits(handle)

    def token_to_str(self, handle, token: int) -> bytes | None:
        return self._lib.whisper_token_to_str(handle, token)

    def token_eot(self, handle) -> int:
        return self._lib.whisper_token_eot(handle)

    def token_sot(self, handle) -> int:
        return self._lib.whisper_token_sot(handle)

    def token_prev(self, handle) -> int:
        return self._lib.whisper_token_prev(handle)

    def token_solm(self, handle) -> int:
        return self._lib.whisper_token_solm(handle)

    def token_not(self, handle) -> int:
        return self._lib.whisper_token_not(handle)

    def token_beg(self, handle) -> int:
        return self._lib.whisper_token_beg(handle)

    def token_lang(self, handle, lang_id: int) -> int:
        return self._lib.whisper_token_lang(handle, lang_id)

    # Timings

    def print_timings(self, handle) -> None:
        self._lib.whisper_print_timings(handle)

    def reset_timings(self, handle) -> None:
        self._lib.whisper_reset_timings(handle)

    # Full pipeline

    def full(self, handle, params: FullParams, samples: np.ndarray, n_samples: int) -> int:
        return self._lib.whisper_full(handle, self._native_params(params), samples, n_samples)

    def full_parallel(
        self, handle, params: FullParams, samples: np.ndarray, n_samples: int, n_processors: int
    ) -> int:
        return self._lib.whisper_full_parallel(
            handle, self._native_params(params), samples, n_samples, n_processors
        )

    def full_n_segments(self, handle) -> int:
        return self._lib.whisper_full_n_segments(handle)

    def full_get_segment_t0(self, handle, i_segment: int) -> int:
        return self._lib.whisper_full_get_segment_t0(handle, i_segment)

    def full_get_segment_t1(self, handle, i_segment: int) -> int:
        return self._lib.whisper_full_get_segment_t1(handle, i_segment)

    def full_get_segment_text(self, handle, i_segment: int) -> bytes | None:
        return self._lib.whisper_full_get_segment_text(handle, i_segment)

    def full_n_tokens(self, handle, i_segment: int) -> int:
        return self._lib.whisper_full_n_tokens(handle, i_segment)

    def full_get_token_text(self, handle, i_segment: int, i_token: int) -> bytes | None:
        return self._lib.whisper_full_get_token_text(handle, i_segment, i_token)

    def full_get_token_id(self, handle, i_segment: int, i_token: int) -> int:
        return self._lib.whisper_full_get_token_id(handle, i_segment, i_token)

    def full_get_token_data(self, handle, i_segment: int, i_token: int) -> TokenDataStruct:
        return self._lib.whisper_full_get_token_data(handle, i_segment, i_token)

    def full_get_token_p(self, handle, i_segment: int, i_token: int) -> float:
        return self._lib.whisper_full_get_token_p(handle, i_segment, i_token)

    def _native_params(self, params: FullParams) -> FullParamsStruct:
        """Engine defaults for the strategy, with the known prefix overlaid."""
        native = self._lib.whisper_full_default_params(int(params.strategy))
        native.n_threads = params.n_threads
        native.n_max_text_ctx = params.n_max_text_ctx
        native.offset_ms = params.offset_ms
        native.duration_ms = params.duration_ms
        native.translate = params.translate
        native.no_context = params.no_context
        return native
