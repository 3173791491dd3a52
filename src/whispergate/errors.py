"""Error types raised by the safety layer.

Every native sentinel is translated into one of these at the call site.
The one failure that is not an exception, a native buffer-length contract
violation, aborts the process instead (see ``whispergate.marshal``).
"""


class WhisperError(Exception):
    """Base class for every error raised by whispergate."""


class InitializationError(WhisperError):
    """The engine could not create a context (bad path, corrupt model, OOM)."""


class ContextClosedError(WhisperError):
    """The context was used after its native handle was released."""


class PreconditionError(WhisperError):
    """An operation was rejected before reaching the native engine."""


class InvalidThreadCountError(PreconditionError):
    """A thread / processor count below 1 was supplied."""

    def __init__(self, threads: int):
        super().__init__(f"thread count must be at least 1, got {threads}")
        self.threads = threads


class SpectrogramNotReadyError(PreconditionError):
    """No spectrogram has been computed or injected yet."""


class EncodeNotCompleteError(PreconditionError):
    """Decode was requested before a successful encode."""


class SpectrogramComputationError(WhisperError):
    """The engine failed to compute the log mel spectrogram."""


class EvaluationError(WhisperError):
    """The engine failed to evaluate the encoder or decoder."""


class EncodeFailedError(WhisperError):
    """The full pipeline failed in its encoder stage."""


class DecodeFailedError(WhisperError):
    """The full pipeline failed in its decoder stage."""


class InvalidMelBandsError(WhisperError):
    """An injected spectrogram had the wrong number of mel bands."""


class InvalidTextError(WhisperError):
    """The engine could not tokenize the text within the token budget."""


class NullResultError(WhisperError):
    """The engine returned a null pointer where a value was expected."""


class TextEncodingError(WhisperError):
    """The engine returned text that is not valid UTF-8."""


class NativeCallError(WhisperError):
    """The engine returned an unexpected non-zero status code."""

    def __init__(self, code: int, call: str = "native call"):
        super().__init__(f"{call} failed with status {code}")
        self.code = code
        self.call = call
