"""
Audio2Afan - audio to ARKit blendshape animation.

Streams speech audio through an opaque inference engine, decodes the
network output into 52 ARKit blendshape weights, smooths them over time
and serializes the result into the AFAN animation format.
"""

from .afan import AFAN_MAGIC, AfanAnimation, AfanStreamWriter, decode_afan, encode_afan
from .config import PipelineConfig, load_pipeline_config
from .decoder import BlendshapeDecoder
from .engine import InferenceAdapter, InferenceEngine, OnnxEngine, load_engine
from .errors import Audio2AfanError, ConfigError, FormatError, RangeError, UninitializedError
from .npz import NpyArray, load_npz, parse_npy
from .pipeline import Audio2AfanPipeline
from .ring_buffer import AudioRingBuffer
from .smoothing import aggregate_results, interpolate_to_frame_rate, resample_audio, smooth_blendshapes
from .solve import SolveData, load_solve_data
from .types import BlendshapeFrame, EyeGaze, InferenceResult
from .utils import EXPLICIT_EMOTIONS, ARKitBlendShape, BlendshapeIndex

__all__ = [
    "AFAN_MAGIC",
    "AfanAnimation",
    "AfanStreamWriter",
    "ARKitBlendShape",
    "Audio2AfanError",
    "Audio2AfanPipeline",
    "AudioRingBuffer",
    "BlendshapeDecoder",
    "BlendshapeFrame",
    "BlendshapeIndex",
    "ConfigError",
    "EXPLICIT_EMOTIONS",
    "EyeGaze",
    "FormatError",
    "InferenceAdapter",
    "InferenceEngine",
    "InferenceResult",
    "NpyArray",
    "OnnxEngine",
    "PipelineConfig",
    "RangeError",
    "SolveData",
    "UninitializedError",
    "aggregate_results",
    "decode_afan",
    "encode_afan",
    "interpolate_to_frame_rate",
    "load_engine",
    "load_npz",
    "load_pipeline_config",
    "load_solve_data",
    "parse_npy",
    "resample_audio",
    "smooth_blendshapes",
]
