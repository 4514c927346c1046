"""Pytest configuration and fixtures"""

import logging

import numpy as np
import pytest
from hypothesis import Verbosity, settings

from audio2afan import PipelineConfig

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100, deadline=None, verbosity=Verbosity.normal)
settings.register_profile("dev", max_examples=20, deadline=None, verbosity=Verbosity.normal)
settings.register_profile("debug", max_examples=10, deadline=None, verbosity=Verbosity.verbose)

# Use CI profile by default
settings.load_profile("ci")


# Output layout used by the small test config: 52 skin + 2 tongue + 15 jaw + 4 eyes
SMALL_OUTPUT_SIZE = 52 + 2 + 15 + 4


class FakeEngine:
    """
    Deterministic stand-in for an ONNX session.

    Every output value equals the mean of the audio window times `gain`,
    so tests can steer decoded weights through the input audio. Calls and
    feeds are recorded for inspection.
    """

    def __init__(self, inputs=("audio", "emotion"), output_size=SMALL_OUTPUT_SIZE, gain=1.0, fail=False):
        self._inputs = list(inputs)
        self._outputs = ["output"]
        self.output_size = output_size
        self.gain = gain
        self.fail = fail
        self.calls = []
        self.released = False

    @property
    def input_names(self):
        return list(self._inputs)

    @property
    def output_names(self):
        return list(self._outputs)

    def run(self, feeds):
        if self.fail:
            raise RuntimeError("engine failure")
        self.calls.append({k: np.array(v, copy=True) for k, v in feeds.items()})
        audio = next(iter(feeds.values())) if "audio" not in feeds else feeds["audio"]
        value = float(np.mean(audio)) * self.gain
        return {"output": np.full((1, self.output_size), value, dtype=np.float32)}

    def release(self):
        self.released = True


@pytest.fixture
def small_config():
    """A pipeline config with short windows so tests stay fast."""
    return PipelineConfig(
        buffer_len=120,
        buffer_ofs=60,
        skin_size=52,
        tongue_size=2,
        jaw_size=15,
        eyes_size=4,
        upper_face_smoothing=0.0,
        lower_face_smoothing=0.0,
    )


@pytest.fixture
def make_engine():
    """Factory for FakeEngine instances."""
    return FakeEngine


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def restore_root_level():
    """Put the root logger level back after a test changes it."""
    root = logging.getLogger()
    level = root.level
    yield root
    root.setLevel(level)
