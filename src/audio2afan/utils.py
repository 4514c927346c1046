"""
Shared constants and small numeric helpers for audio2afan.
"""

from enum import IntEnum

import numpy as np

# ARKit blendshape names in the network's fixed output order.
ARKitBlendShape = [
    "browInnerUp", "browDownLeft", "browDownRight", "browOuterUpLeft", "browOuterUpRight",
    "eyeLookUpLeft", "eyeLookUpRight", "eyeLookDownLeft", "eyeLookDownRight",
    "eyeLookInLeft", "eyeLookInRight", "eyeLookOutLeft", "eyeLookOutRight",
    "eyeBlinkLeft", "eyeBlinkRight", "eyeSquintLeft", "eyeSquintRight",
    "eyeWideLeft", "eyeWideRight", "cheekPuff", "cheekSquintLeft", "cheekSquintRight",
    "noseSneerLeft", "noseSneerRight", "jawOpen", "jawForward", "jawLeft", "jawRight",
    "mouthFunnel", "mouthPucker", "mouthLeft", "mouthRight",
    "mouthRollUpper", "mouthRollLower", "mouthShrugUpper", "mouthShrugLower",
    "mouthOpen", "mouthClose", "mouthSmileLeft", "mouthSmileRight",
    "mouthFrownLeft", "mouthFrownRight", "mouthDimpleLeft", "mouthDimpleRight",
    "mouthUpperUpLeft", "mouthUpperUpRight", "mouthLowerDownLeft", "mouthLowerDownRight",
    "mouthPressLeft", "mouthPressRight", "mouthStretchLeft", "mouthStretchRight",
]

NUM_BLENDSHAPES = len(ARKitBlendShape)

# Channel enumeration, so frames can be indexed by name without lookups.
BlendshapeIndex = IntEnum(
    "BlendshapeIndex",
    [(name, i) for i, name in enumerate(ARKitBlendShape)],
)

# Named emotions occupy the leading slots of the emotion control vector.
EXPLICIT_EMOTIONS = [
    "amazement", "anger", "cheekiness", "disgust", "fear",
    "grief", "joy", "outofbreath", "pain", "sadness",
]
EMOTION_VECTOR_SIZE = 26

# Channels 0..UPPER_FACE_MAX (brows, eyes, cheekPuff) use the upper-face smoothing.
UPPER_FACE_MAX = 19

# Ring buffer capacity floor: 4 seconds at 16kHz.
RING_CAPACITY = 16000 * 4

# Logit scale applied before the sigmoid in direct decoding.
LOGIT_SCALE = 0.1


def sigmoid(x):
    """Logistic function; works on scalars and numpy arrays."""
    return 1.0 / (1.0 + np.exp(-np.asarray(x, dtype=np.float64)))


def clamp(value, lo: float = 0.0, hi: float = 1.0):
    """Clamp a scalar or array into [lo, hi]."""
    if isinstance(value, np.ndarray):
        return np.clip(value, lo, hi)
    return max(lo, min(hi, float(value)))


def read_or_zero(data: np.ndarray, index: int) -> float:
    """Read data[index], treating out-of-range and NaN as 0."""
    if index < 0 or index >= data.shape[0]:
        return 0.0
    value = float(data[index])
    if value != value:
        return 0.0
    return value
