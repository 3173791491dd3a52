"""Buffer marshaling between the native engine and Python values.

Every pointer, raw array or sentinel integer coming back from the engine
passes through here. What leaves this module is either an owned Python /
numpy value or a typed exception; native buffers are never retained past
the copy, because the engine reuses them on the next call.
"""

import ctypes
import logging
import os
import sys
from typing import Any, NoReturn

import numpy as np

from whispergate.constants import STATUS_FAILURE, STATUS_OK
from whispergate.engine.abi import TokenDataStruct, float_buffer, token_buffer
from whispergate.errors import (
    InvalidThreadCountError,
    NativeCallError,
    NullResultError,
    TextEncodingError,
    WhisperError,
)
from whispergate.models import TokenData

logger = logging.getLogger(__name__)


def check_threads(threads: int) -> int:
    """Reject thread / processor counts below 1."""
    if threads < 1:
        raise InvalidThreadCountError(threads)
    return int(threads)


def check_non_negative(value: int, name: str) -> int:
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {value}")
    return int(value)


def check_status(code: int, call: str, failure: type[WhisperError]) -> None:
    """Translate a three-way native status into an exception.

    Args:
        code: Status returned by the engine.
        call: Name of the native call, for diagnostics.
        failure: Error raised for the ``-1`` failure sentinel.

    Raises:
        ``failure`` for -1, ``NativeCallError`` for any other non-zero code.
    """
    if code == STATUS_OK:
        return
    logger.debug("%s returned status %d", call, code)
    if code == STATUS_FAILURE:
        raise failure(f"{call} failed")
    raise NativeCallError(code, call)


def owned_bytes(raw: bytes | None, what: str) -> bytes:
    """Copy a nullable C string into owned bytes."""
    if raw is None:
        raise NullResultError(f"{what} returned a null pointer")
    return bytes(raw)


def owned_text(raw: bytes | None, what: str) -> str:
    """Copy a nullable C string into an owned, UTF-8 validated ``str``."""
    data = owned_bytes(raw, what)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise TextEncodingError(f"{what} returned invalid UTF-8: {data!r}") from e


def copy_matrix(pointer: Any, rows: int, cols: int, what: str = "logits") -> np.ndarray:
    """Copy a row-major float buffer into a fresh ``(rows, cols)`` array.

    Args:
        pointer: ctypes float pointer owned by the engine, possibly null.
        rows: Row count, reported by a separate engine call.
        cols: Column count, reported by a separate engine call.

    Returns:
        An independent float32 array; later engine calls cannot change it.
    """
    if not pointer:
        raise NullResultError(f"{what} returned a null pointer")
    if rows < 0 or cols < 0:
        raise NativeCallError(min(rows, cols), f"{what} dimensions")
    if rows == 0 or cols == 0:
        return np.zeros((rows, cols), dtype=np.float32)

    view = np.ctypeslib.as_array(pointer, shape=(rows * cols,))
    return np.array(view, dtype=np.float32, copy=True).reshape(rows, cols)


def fixed_vector(length: int) -> ctypes.Array:
    """Pre-size an output buffer the engine is contracted to fill exactly."""
    return float_buffer(length)


def checked_vector(buffer: ctypes.Array, reported: int, what: str) -> np.ndarray:
    """Copy a fixed-length output buffer after checking the reported length.

    A mismatch means the engine broke its own contract and may already have
    written past the buffer; the process is aborted rather than continuing.
    """
    if reported != len(buffer):
        contract_violation(
            f"{what} length mismatch: engine reported {reported}, "
            f"buffer holds {len(buffer)}"
        )
    return np.ctypeslib.as_array(buffer).astype(np.float32, copy=True)


def contract_violation(message: str) -> NoReturn:
    """Report a native contract violation and abort the process."""
    logger.critical("%s; aborting", message)
    print(f"whispergate: {message}: this is a bug in the native engine, aborting",
          file=sys.stderr)
    sys.stderr.flush()
    os.abort()


def new_token_buffer(max_tokens: int) -> ctypes.Array:
    return token_buffer(max_tokens)


def owned_tokens(buffer: ctypes.Array, count: int) -> list[int]:
    """Copy the first ``count`` ids out of a tokenization buffer."""
    if count > len(buffer):
        contract_violation(
            f"tokenize wrote {count} tokens into a buffer of {len(buffer)}"
        )
    return [int(token) for token in buffer[:count]]


def owned_token_data(raw: TokenDataStruct) -> TokenData:
    """Copy a native ``whisper_token_data`` struct into a frozen value."""
    return TokenData(
        id=int(raw.id),
        tid=int(raw.tid),
        p=float(raw.p),
        plog=float(raw.plog),
        pt=float(raw.pt),
        ptsum=float(raw.ptsum),
        t0=int(raw.t0),
        t1=int(raw.t1),
        vlen=float(raw.vlen),
    )
