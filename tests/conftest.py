"""Shared fixtures: a fake engine, a fake model file and test audio."""

import numpy as np
import pytest

from whispergate.constants import GGML_MAGIC, SAMPLE_RATE
from whispergate.context import WhisperContext
from whispergate.engine.fake import FakeEngine

MODEL_BYTES = GGML_MAGIC + bytes(60)


def make_speech(seconds: float, seed: int = 0) -> np.ndarray:
    """Deterministic non-silent audio."""
    rng = np.random.default_rng(seed)
    return (rng.standard_normal(int(SAMPLE_RATE * seconds)) * 0.1).astype(np.float32)


def make_silence(seconds: float) -> np.ndarray:
    return np.zeros(int(SAMPLE_RATE * seconds), dtype=np.float32)


@pytest.fixture
def speech():
    return make_speech


@pytest.fixture
def silence():
    return make_silence


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def model_path(tmp_path):
    path = tmp_path / "ggml-fake.bin"
    path.write_bytes(MODEL_BYTES)
    return path


@pytest.fixture
def context(engine, model_path):
    ctx = WhisperContext.from_file(model_path, engine=engine)
    yield ctx
    ctx.close()
