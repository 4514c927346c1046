"""
Temporal post-processing: per-region exponential smoothing, linear audio
resampling, and interpolation of windowed results onto a fixed frame rate.
"""

import math
from typing import Optional, Sequence

import numpy as np

from .types import BlendshapeFrame, InferenceResult
from .utils import NUM_BLENDSHAPES, UPPER_FACE_MAX

# Per-channel selector: True for upper-face channels.
_UPPER_FACE_MASK = np.arange(NUM_BLENDSHAPES) <= UPPER_FACE_MAX


def smooth_blendshapes(
    previous: Optional[BlendshapeFrame],
    current: Optional[BlendshapeFrame],
    upper: float,
    lower: float,
) -> Optional[BlendshapeFrame]:
    """
    Blend the current frame with the previous one.

    value = previous * factor + current * (1 - factor), where factor is
    `upper` for channels 0..UPPER_FACE_MAX and `lower` otherwise. A factor
    of 0 passes `current` through; 1 freezes the previous value.

    Returns `current` unchanged when either frame is missing or the two
    frames differ in length.
    """
    if previous is None or current is None or len(previous) != len(current):
        return current
    factors = np.where(_UPPER_FACE_MASK, upper, lower).astype(np.float32)
    prev, curr = previous.weights, current.weights
    # Written as prev + (curr - prev) * (1 - f) so equal frames and f == 1 are exact
    blended = prev + (curr - prev) * (np.float32(1.0) - factors)
    blended = np.where(factors == 0.0, curr, blended)
    return BlendshapeFrame(blended)


def smooth_results(results: Sequence[InferenceResult], upper: float, lower: float) -> list[InferenceResult]:
    """Smooth a time-ordered result sequence in place, returning it as a list."""
    ordered = list(results)
    previous: Optional[BlendshapeFrame] = None
    for result in ordered:
        result.blendshapes = smooth_blendshapes(previous, result.blendshapes, upper, lower)
        previous = result.blendshapes
    return ordered


def resample_audio(signal, from_rate: float, to_rate: float) -> np.ndarray:
    """
    Linear-interpolation resampler.

    Output length is floor(len(signal) * to_rate / from_rate). Positions
    at or past the last input sample repeat that sample.
    """
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError(f"Sample rates must be positive, got {from_rate} -> {to_rate}")

    signal = np.asarray(signal, dtype=np.float32).ravel()
    if from_rate == to_rate:
        return signal.copy()

    new_len = int(math.floor(signal.shape[0] * to_rate / from_rate))
    if new_len == 0 or signal.shape[0] == 0:
        return np.zeros(new_len, dtype=np.float32)

    pos = np.arange(new_len, dtype=np.float64) * from_rate / to_rate
    idx = np.floor(pos).astype(np.int64)
    frac = (pos - idx).astype(np.float32)

    last = signal.shape[0] - 1
    past_end = idx >= last
    lo = np.minimum(idx, last)
    hi = np.minimum(idx + 1, last)
    out = signal[lo] * (1.0 - frac) + signal[hi] * frac
    out[past_end] = signal[last]
    return out.astype(np.float32)


def interpolate_to_frame_rate(
    results: Sequence[InferenceResult],
    target_fps: float,
    duration: Optional[float] = None,
) -> np.ndarray:
    """
    Resample time-stamped results onto a uniform frame grid.

    Args:
        results: Results ordered by timestamp (seconds from session start)
        target_fps: Output frame rate
        duration: Session length in seconds; defaults to the last timestamp

    Returns:
        (n_frames, 52) float32 array, n_frames = ceil(duration * fps).
        Frames before the first timestamp are all zero; frames after the
        last timestamp repeat the last result.
    """
    if target_fps <= 0:
        raise ValueError(f"target_fps must be positive, got {target_fps}")
    if not results:
        return np.zeros((0, NUM_BLENDSHAPES), dtype=np.float32)

    times = np.array([r.timestamp for r in results], dtype=np.float64)
    weights = np.stack([r.blendshapes.weights for r in results]).astype(np.float32)
    if duration is None:
        duration = float(times[-1])

    n_frames = int(math.ceil(duration * target_fps - 1e-9))
    frames = np.zeros((max(n_frames, 0), NUM_BLENDSHAPES), dtype=np.float32)

    for i in range(frames.shape[0]):
        t = i / target_fps
        if t < times[0]:
            continue
        lo = int(np.searchsorted(times, t, side="right")) - 1
        if lo >= len(times) - 1:
            frames[i] = weights[-1]
            continue
        t0, t1 = times[lo], times[lo + 1]
        frac = (t - t0) / (t1 - t0) if t1 > t0 else 0.0
        frames[i] = weights[lo] + (weights[lo + 1] - weights[lo]) * np.float32(frac)

    return frames


def aggregate_results(results: Sequence[InferenceResult]) -> dict:
    """
    Average a batch of results into one summary.

    Returns:
        Dict with the mean 'blendshapes' frame, mean 'jaw', the last
        result's 'eyes' and the 'frame_count'. Empty input yields zeros.
    """
    if not results:
        return {"blendshapes": BlendshapeFrame.zeros(), "jaw": 0.0, "eyes": None, "frame_count": 0}

    mean = np.mean([r.blendshapes.weights for r in results], axis=0)
    return {
        "blendshapes": BlendshapeFrame(mean),
        "jaw": float(np.mean([r.jaw for r in results])),
        "eyes": results[-1].eyes,
        "frame_count": len(results),
    }
