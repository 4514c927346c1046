"""
Data types produced by the pipeline for each inference window.
"""

from dataclasses import dataclass
from typing import Dict, Iterator, Mapping, Optional, Tuple, Union

import numpy as np

from .utils import NUM_BLENDSHAPES, ARKitBlendShape, BlendshapeIndex


class BlendshapeFrame:
    """
    One set of 52 ARKit blendshape weights in the fixed channel order.

    Backed by a read-only float32 vector; index it with a BlendshapeIndex,
    a plain int or a channel name.
    """

    __slots__ = ("_weights",)

    def __init__(self, weights):
        weights = np.array(weights, dtype=np.float32).ravel()
        if weights.shape[0] != NUM_BLENDSHAPES:
            raise ValueError(f"Expected {NUM_BLENDSHAPES} weights, got {weights.shape[0]}")
        weights.flags.writeable = False
        self._weights = weights

    @classmethod
    def zeros(cls) -> "BlendshapeFrame":
        return cls(np.zeros(NUM_BLENDSHAPES, dtype=np.float32))

    @classmethod
    def from_dict(cls, weights: Mapping[str, float]) -> "BlendshapeFrame":
        """Build a frame from a name->weight mapping; missing names are 0."""
        return cls([float(weights.get(name, 0.0)) for name in ARKitBlendShape])

    @property
    def weights(self) -> np.ndarray:
        return self._weights

    def __len__(self) -> int:
        return NUM_BLENDSHAPES

    def __getitem__(self, key: Union[int, str]) -> float:
        if isinstance(key, str):
            key = BlendshapeIndex[key]
        return float(self._weights[key])

    def __iter__(self) -> Iterator[float]:
        return iter(self._weights.tolist())

    def __eq__(self, other) -> bool:
        if not isinstance(other, BlendshapeFrame):
            return NotImplemented
        return bool(np.array_equal(self._weights, other._weights))

    def __repr__(self) -> str:
        active = {n: round(v, 3) for n, v in self.items() if v > 0.01}
        return f"BlendshapeFrame({active})"

    def items(self) -> Iterator[Tuple[str, float]]:
        for name, value in zip(ARKitBlendShape, self._weights.tolist()):
            yield name, value

    def to_dict(self) -> Dict[str, float]:
        return dict(self.items())


@dataclass(frozen=True)
class EyeGaze:
    """Raw eye rotation outputs for both eyes."""

    left_x: float = 0.0
    left_y: float = 0.0
    right_x: float = 0.0
    right_y: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "leftX": self.left_x,
            "leftY": self.left_y,
            "rightX": self.right_x,
            "rightY": self.right_y,
        }


@dataclass
class InferenceResult:
    """Decoded output of one audio window."""

    blendshapes: BlendshapeFrame
    jaw: float = 0.0
    eyes: Optional[EyeGaze] = None
    timestamp: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "blendshapes": self.blendshapes.to_dict(),
            "jaw": self.jaw,
            "eyes": self.eyes.to_dict() if self.eyes else None,
            "timestamp": self.timestamp,
        }
