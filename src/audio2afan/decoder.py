"""
Conversion of raw network output into ARKit blendshape weights.

Two strategies, picked by whether solve data was loaded:

- direct:    the skin region holds per-blendshape logits, squashed with
             a scaled sigmoid.
- pca_solve: the skin region holds PCA coefficients; the mesh is rebuilt
             and solved against the 52 blendshape directions.

Both run the same multiplier / offset / active-pose chain afterwards.
"""

from typing import Optional

import numpy as np

from core.logger import get_logger

from .config import PipelineConfig
from .solve import SolveData
from .types import BlendshapeFrame, EyeGaze, InferenceResult
from .utils import LOGIT_SCALE, NUM_BLENDSHAPES, BlendshapeIndex, clamp, read_or_zero, sigmoid

logger = get_logger(__name__)

# Jaw region layout: five vertices (left back, right back, left front,
# right front, center front) with xyz each.
JAW_REGION_VALUES = 15
JAW_CENTER_FRONT_Y = 13
JAW_CENTER_FRONT_Z = 14
JAW_OPEN_GAIN = 0.8
JAW_FORWARD_GAIN = 0.5
JAW_FORWARD_BIAS = 0.5


def _padded_slice(data: np.ndarray, offset: int, count: int) -> np.ndarray:
    out = np.zeros(count, dtype=np.float32)
    available = data[offset : offset + count]
    out[: available.shape[0]] = available
    return np.nan_to_num(out, nan=0.0)


class BlendshapeDecoder:
    """Turns one flattened output tensor into an InferenceResult."""

    def __init__(self, config: PipelineConfig, solve_data: Optional[SolveData] = None):
        self.config = config
        self.solve_data = solve_data

        self._multipliers = self._as_array(config.weight_multipliers, np.float32)
        self._offsets = self._as_array(config.weight_offsets, np.float32)
        self._active = self._as_array(config.solve_active_poses, bool)

    @staticmethod
    def _as_array(values, dtype) -> Optional[np.ndarray]:
        if values is None:
            return None
        return np.asarray(values, dtype=dtype)

    @property
    def strategy(self) -> str:
        return "pca_solve" if self.solve_data is not None else "direct"

    def decode(self, raw: np.ndarray, timestamp: float = 0.0) -> InferenceResult:
        """
        Decode a raw output tensor.

        Args:
            raw: Network output, any shape; it is flattened
            timestamp: Result time in seconds from session start

        Returns:
            InferenceResult with 52 weights, jaw-open value and eye gaze
        """
        data = np.asarray(raw, dtype=np.float32).ravel()
        if self.solve_data is not None:
            weights, jaw = self._decode_pca(data)
        else:
            weights, jaw = self._decode_direct(data)

        return InferenceResult(
            blendshapes=BlendshapeFrame(weights),
            jaw=jaw,
            eyes=self._read_eyes(data),
            timestamp=timestamp,
        )

    def _decode_direct(self, data: np.ndarray) -> tuple[np.ndarray, float]:
        cfg = self.config
        count = min(NUM_BLENDSHAPES, cfg.skin_size)

        weights = np.zeros(NUM_BLENDSHAPES, dtype=np.float32)
        logits = _padded_slice(data, cfg.skin_offset, count)
        weights[:count] = clamp(sigmoid(logits * LOGIT_SCALE))
        weights[:count] = self._adjust(weights[:count], count)

        jaw = clamp(float(sigmoid(read_or_zero(data, cfg.jaw_offset) * LOGIT_SCALE)))
        return weights, jaw

    def _decode_pca(self, data: np.ndarray) -> tuple[np.ndarray, float]:
        cfg = self.config
        coeffs = _padded_slice(data, cfg.skin_offset, cfg.skin_size)
        vertices = self.solve_data.reconstruct_vertices(coeffs, max_coeffs=cfg.skin_size)
        weights = self._adjust(self.solve_data.solve(vertices), NUM_BLENDSHAPES)

        # Jaw comes from the jaw region vertices, not from the solve
        jaw_values = _padded_slice(data, cfg.jaw_offset, JAW_REGION_VALUES)
        center_front_y = float(jaw_values[JAW_CENTER_FRONT_Y])
        center_front_z = float(jaw_values[JAW_CENTER_FRONT_Z])
        jaw_open = clamp(-center_front_y * JAW_OPEN_GAIN)
        jaw_forward = clamp(center_front_z * JAW_FORWARD_GAIN + JAW_FORWARD_BIAS)

        weights[BlendshapeIndex.jawOpen] = jaw_open
        weights[BlendshapeIndex.jawForward] = jaw_forward
        return weights, jaw_open

    def _adjust(self, weights: np.ndarray, count: int) -> np.ndarray:
        """Apply clamp, multiplier, offset, active-pose gate, clamp."""
        values = np.clip(np.nan_to_num(np.asarray(weights, dtype=np.float32), nan=0.0), 0.0, 1.0)
        if self._multipliers is not None:
            values = values * self._multipliers[:count]
        if self._offsets is not None:
            values = values + self._offsets[:count]
        if self._active is not None:
            values = np.where(self._active[:count], values, 0.0)
        return np.clip(values, 0.0, 1.0).astype(np.float32)

    def _read_eyes(self, data: np.ndarray) -> EyeGaze:
        eo = self.config.eyes_offset
        return EyeGaze(
            left_x=read_or_zero(data, eo),
            left_y=read_or_zero(data, eo + 1),
            right_x=read_or_zero(data, eo + 2),
            right_y=read_or_zero(data, eo + 3),
        )
