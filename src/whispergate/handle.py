"""Ownership of one native engine context."""

import logging
import weakref
from collections.abc import Iterator
from contextlib import contextmanager

from whispergate.engine.protocol import Engine, Handle
from whispergate.errors import ContextClosedError, InitializationError
from whispergate.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)


def _release(engine: Engine, raw: Handle) -> None:
    logger.info("Releasing native context %r", raw)
    engine.free(raw)


class ContextHandle:
    """Sole owner of a non-null native handle.

    The handle is freed exactly once: by ``close()``, or by the finalizer
    when the owner is garbage collected, whichever comes first. Access goes
    through ``reading()`` / ``writing()``, which take the shared or the
    exclusive side of the context's lock.
    """

    def __init__(self, engine: Engine, raw: Handle):
        if raw is None:
            raise InitializationError("engine returned a null context")
        self._engine = engine
        self._raw = raw
        self._lock = ReadWriteLock()
        self._finalizer = weakref.finalize(self, _release, engine, raw)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    @property
    def closed(self) -> bool:
        return not self._finalizer.alive

    def close(self) -> None:
        """Release the native handle. Safe to call more than once."""
        with self._lock.write_locked():
            self._finalizer()

    @contextmanager
    def reading(self) -> Iterator[Handle]:
        """Yield the raw handle under shared access."""
        with self._lock.read_locked():
            yield self._checked()

    @contextmanager
    def writing(self) -> Iterator[Handle]:
        """Yield the raw handle under exclusive access."""
        with self._lock.write_locked():
            yield self._checked()

    def _checked(self) -> Handle:
        if self.closed:
            raise ContextClosedError("native context has already been released")
        return self._raw

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"ContextHandle({self._raw!r}, {state})"
