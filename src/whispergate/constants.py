"""Core constants for the whisper.cpp safety layer.

whisper.cpp models consume 16kHz mono float32 audio, turned into an 80-band
log mel spectrogram with a 10ms hop. Segment and token times come back in
centiseconds.
"""

# Audio format requirements
SAMPLE_RATE: int = 16000  # Hz - required by the Whisper feature extractor
BYTES_PER_SAMPLE: int = 2  # 16-bit PCM on the wire

# Feature extraction
N_MEL: int = 80
HOP_LENGTH: int = 160  # 10ms at 16kHz
CHUNK_SECONDS: int = 30  # encoder window

# Engine time unit for segment / token timestamps
CENTISECONDS_PER_SECOND: int = 100

# Native status sentinels
STATUS_OK: int = 0
STATUS_FAILURE: int = -1
STATUS_ENCODE_FAILED: int = 7  # whisper_full / whisper_full_parallel only
STATUS_DECODE_FAILED: int = 8

# Magic prefix of ggml model files ("ggml" as little-endian uint32)
GGML_MAGIC: bytes = b"lmgg"

# Environment configuration
WHISPER_LIBRARY_ENV: str = "WHISPER_CPP_LIB"
WHISPER_MODEL_ENV: str = "WHISPER_MODEL"

# Service defaults
DEFAULT_THREADS: int = 4
MIN_AUDIO_SECONDS: int = 1
MIN_AUDIO_BYTES: int = SAMPLE_RATE * MIN_AUDIO_SECONDS * BYTES_PER_SAMPLE
STREAM_CHUNK_BYTES: int = SAMPLE_RATE * CHUNK_SECONDS * BYTES_PER_SAMPLE
