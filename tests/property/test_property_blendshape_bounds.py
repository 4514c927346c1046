"""Property-based tests for blendshape output bounds

Decoded and smoothed weights stay inside [0, 1] whatever the network
emits, and smoothing a frame with itself changes nothing.
"""

import numpy as np
from hypothesis import given, settings
from hypothesis import strategies as st

from audio2afan import BlendshapeDecoder, BlendshapeFrame, PipelineConfig, SolveData, smooth_blendshapes


SMALL_LAYOUT = PipelineConfig(skin_size=52, tongue_size=2, jaw_size=15, eyes_size=4)
OUTPUT_SIZE = SMALL_LAYOUT.eyes_offset + SMALL_LAYOUT.eyes_size


@st.composite
def raw_output_strategy(draw):
    """Generate raw network output vectors, including extreme and non-finite values."""
    length = draw(st.integers(min_value=0, max_value=OUTPUT_SIZE + 8))
    values = draw(
        st.lists(
            st.floats(allow_nan=True, allow_infinity=False, width=32),
            min_size=length,
            max_size=length,
        )
    )
    return np.array(values, dtype=np.float32)


@st.composite
def frame_strategy(draw):
    """Generate valid BlendshapeFrames."""
    values = draw(st.lists(st.floats(min_value=0.0, max_value=1.0, width=32), min_size=52, max_size=52))
    return BlendshapeFrame(values)


def _solve_data():
    rng = np.random.RandomState(3)
    return SolveData(
        pca_basis=rng.uniform(-1, 1, (4, 15)).astype(np.float32),
        pca_mean=rng.uniform(-1, 1, 15).astype(np.float32),
        d_pinv=rng.uniform(-1, 1, (52, 9)).astype(np.float32),
        neutral=rng.uniform(-1, 1, 15).astype(np.float32),
        frontal_mask=np.array([0, 2, 4]),
    )


SOLVE_DATA = _solve_data()


@settings(max_examples=100, deadline=None)
@given(raw=raw_output_strategy())
def test_direct_decoding_is_bounded(raw):
    with np.errstate(over="ignore"):
        result = BlendshapeDecoder(SMALL_LAYOUT).decode(raw)
    weights = result.blendshapes.weights
    assert weights.shape == (52,)
    assert np.all((weights >= 0.0) & (weights <= 1.0))
    assert 0.0 <= result.jaw <= 1.0


@settings(max_examples=100, deadline=None)
@given(raw=raw_output_strategy())
def test_pca_decoding_is_bounded(raw):
    with np.errstate(over="ignore", invalid="ignore"):
        result = BlendshapeDecoder(SMALL_LAYOUT, SOLVE_DATA).decode(raw)
    weights = result.blendshapes.weights
    assert np.all((weights >= 0.0) & (weights <= 1.0))
    assert 0.0 <= result.jaw <= 1.0


@settings(max_examples=100, deadline=None)
@given(
    prev=frame_strategy(),
    curr=frame_strategy(),
    upper=st.floats(min_value=0.0, max_value=1.0),
    lower=st.floats(min_value=0.0, max_value=1.0),
)
def test_smoothing_stays_between_inputs(prev, curr, upper, lower):
    out = smooth_blendshapes(prev, curr, upper, lower).weights
    lo = np.minimum(prev.weights, curr.weights)
    hi = np.maximum(prev.weights, curr.weights)
    assert np.all(out >= lo - 1e-6)
    assert np.all(out <= hi + 1e-6)


@settings(max_examples=50, deadline=None)
@given(frame=frame_strategy(), factor=st.floats(min_value=0.0, max_value=1.0))
def test_smoothing_identity(frame, factor):
    assert smooth_blendshapes(frame, frame, factor, factor) == frame
