"""ctypes layouts shared by every engine implementation.

Targets the whisper.cpp 1.4 ABI. Only the leading fields of
``whisper_full_params`` are declared; they have kept their position across
releases. The rest of the struct is carried as an opaque tail so the
engine's own defaults pass through untouched.
"""

import ctypes

FloatPointer = ctypes.POINTER(ctypes.c_float)

# Larger than any released whisper_full_params. Passing a bigger struct by
# value is harmless: it is copied to memory and the callee reads its prefix.
_FULL_PARAMS_TAIL_BYTES = 1024


class TokenDataStruct(ctypes.Structure):
    """``whisper_token_data``."""

    _fields_ = [
        ("id", ctypes.c_int),
        ("tid", ctypes.c_int),
        ("p", ctypes.c_float),
        ("plog", ctypes.c_float),
        ("pt", ctypes.c_float),
        ("ptsum", ctypes.c_float),
        ("t0", ctypes.c_int64),
        ("t1", ctypes.c_int64),
        ("vlen", ctypes.c_float),
    ]


class FullParamsStruct(ctypes.Structure):
    """``whisper_full_params``: stable prefix plus opaque tail."""

    _fields_ = [
        ("strategy", ctypes.c_int),
        ("n_threads", ctypes.c_int),
        ("n_max_text_ctx", ctypes.c_int),
        ("offset_ms", ctypes.c_int),
        ("duration_ms", ctypes.c_int),
        ("translate", ctypes.c_bool),
        ("no_context", ctypes.c_bool),
        ("_tail", ctypes.c_ubyte * _FULL_PARAMS_TAIL_BYTES),
    ]


def float_buffer(length: int) -> ctypes.Array:
    """Allocate a zeroed native float array of ``length`` elements."""
    return (ctypes.c_float * length)()


def token_buffer(length: int) -> ctypes.Array:
    """Allocate a zeroed native token array of ``length`` elements."""
    return (ctypes.c_int * length)()
