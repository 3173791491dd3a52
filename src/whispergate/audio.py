"""Audio conversion and partitioning utilities.

All functions work with 16kHz mono audio, either PCM16 bytes or float32
numpy arrays.
"""

import numpy as np

from whispergate.constants import BYTES_PER_SAMPLE


def pcm16_to_float32(data: bytes) -> np.ndarray:
    """Convert PCM16 bytes to float32 array normalized to [-1, 1].

    Args:
        data: Raw PCM16 little-endian audio bytes.

    Returns:
        Float32 numpy array with values in [-1, 1].
    """
    audio = np.frombuffer(data, dtype="<i2").astype(np.float32)
    audio /= 32768.0
    return audio


def as_samples(audio: np.ndarray) -> np.ndarray:
    """Return audio as the contiguous 1-D float32 array the engine expects."""
    samples = np.ascontiguousarray(audio, dtype=np.float32)
    if samples.ndim != 1:
        raise ValueError(f"expected mono 1-D audio, got shape {samples.shape}")
    return samples


def partition_samples(samples: np.ndarray, n_partitions: int) -> list[tuple[int, np.ndarray]]:
    """Split samples into ``n_partitions`` contiguous parts.

    Every part gets ``len(samples) // n_partitions`` samples and the last one
    also takes the remainder, which is how whisper.cpp partitions audio for
    its parallel pipeline.

    Returns:
        ``(start_sample, part)`` pairs in audio order.
    """
    if n_partitions < 1:
        raise ValueError(f"n_partitions must be at least 1, got {n_partitions}")

    share = len(samples) // n_partitions
    parts = []
    for i in range(n_partitions):
        start = i * share
        end = len(samples) if i == n_partitions - 1 else start + share
        parts.append((start, samples[start:end]))
    return parts


def validate_audio_format(data: bytes) -> bool:
    """Check if audio data has valid PCM16 format (even byte count)."""
    return len(data) % BYTES_PER_SAMPLE == 0


def bytes_to_samples(num_bytes: int) -> int:
    """Convert byte count to sample count for PCM16."""
    return num_bytes // BYTES_PER_SAMPLE
