"""
Inference engine boundary.

The network itself is opaque: anything with declared input/output names
and a synchronous run() can drive the pipeline. OnnxEngine is the
production implementation backed by ONNX Runtime; tests substitute
lightweight fakes.
"""

import os
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union, runtime_checkable

import numpy as np

from core.logger import get_logger

from .errors import UninitializedError
from .utils import EMOTION_VECTOR_SIZE

logger = get_logger(__name__)

AUDIO_INPUT_CANDIDATES = ("audio", "input")
EMOTION_INPUT_NAME = "emotion"

CPU_PROVIDER = "CPUExecutionProvider"
CUDA_PROVIDER = "CUDAExecutionProvider"


@runtime_checkable
class InferenceEngine(Protocol):
    """Anything that maps named input arrays to named output arrays."""

    @property
    def input_names(self) -> List[str]: ...

    @property
    def output_names(self) -> List[str]: ...

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]: ...


class OnnxEngine:
    """InferenceEngine over an onnxruntime.InferenceSession."""

    def __init__(self, session):
        self.session = session
        self._input_names = [i.name for i in session.get_inputs()]
        self._output_names = [o.name for o in session.get_outputs()]

    @property
    def input_names(self) -> List[str]:
        return list(self._input_names)

    @property
    def output_names(self) -> List[str]:
        return list(self._output_names)

    @property
    def providers(self) -> List[str]:
        return self.session.get_providers() if self.session else []

    def run(self, feeds: Dict[str, np.ndarray]) -> Dict[str, np.ndarray]:
        if self.session is None:
            raise UninitializedError("ONNX session has been released")
        outputs = self.session.run(self._output_names, feeds)
        return dict(zip(self._output_names, outputs))

    def release(self) -> None:
        self.session = None


def _session_options(ort, threads: int):
    opts = ort.SessionOptions()
    opts.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    opts.enable_cpu_mem_arena = True
    opts.enable_mem_pattern = True
    opts.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    opts.intra_op_num_threads = threads
    opts.inter_op_num_threads = 1
    return opts


def load_engine(
    model: Union[str, Path, bytes],
    use_gpu: bool = False,
    threads: Optional[int] = None,
) -> OnnxEngine:
    """
    Create an ONNX Runtime session for the model.

    With use_gpu the CUDA provider is tried first; if session creation
    fails the model is loaded again on the CPU provider alone.

    Args:
        model: Path to the .onnx file or its raw bytes
        use_gpu: Try CUDA before CPU
        threads: Intra-op thread count (default: half the cores)

    Returns:
        OnnxEngine wrapping the created session
    """
    import onnxruntime as ort

    threads = threads or max(1, (os.cpu_count() or 2) // 2)
    source = model if isinstance(model, bytes) else str(model)
    providers = [CUDA_PROVIDER, CPU_PROVIDER] if use_gpu else [CPU_PROVIDER]

    if not isinstance(model, bytes):
        logger.info(f"Loading ONNX model from {model}...")

    try:
        session = ort.InferenceSession(source, sess_options=_session_options(ort, threads), providers=providers)
    except Exception as e:
        if not use_gpu:
            raise
        logger.warning(f"GPU session failed, falling back to CPU: {e}")
        session = ort.InferenceSession(source, sess_options=_session_options(ort, threads), providers=[CPU_PROVIDER])

    engine = OnnxEngine(session)
    logger.info(
        f"ONNX model loaded (providers: {', '.join(engine.providers)}, threads: {threads}, "
        f"inputs: {engine.input_names}, outputs: {engine.output_names})"
    )
    return engine


class InferenceAdapter:
    """
    Binds pipeline tensors to an engine's named inputs.

    Input names are inspected once in prepare(); the audio and emotion
    input arrays are allocated there and reused by every infer() call
    whose window matches the configured length.
    """

    def __init__(self, window_length: int, emotion_width: int = EMOTION_VECTOR_SIZE):
        self.window_length = window_length
        self.emotion_width = emotion_width

        self.engine: Optional[InferenceEngine] = None
        self._audio_key: Optional[str] = None
        self._output_key: Optional[str] = None
        self._has_emotion = False
        self._audio_buf: Optional[np.ndarray] = None
        self._emotion_buf: Optional[np.ndarray] = None

    @property
    def is_prepared(self) -> bool:
        return self.engine is not None

    @property
    def audio_input_name(self) -> Optional[str]:
        return self._audio_key

    @property
    def has_emotion_input(self) -> bool:
        return self._has_emotion

    def prepare(self, engine: InferenceEngine) -> None:
        names = list(engine.input_names)
        outputs = list(engine.output_names)
        if not names or not outputs:
            raise ValueError("Engine must declare at least one input and one output")

        self._audio_key = next((c for c in AUDIO_INPUT_CANDIDATES if c in names), names[0])
        self._has_emotion = EMOTION_INPUT_NAME in names
        self._output_key = outputs[0]
        self._audio_buf = np.zeros((1, 1, self.window_length), dtype=np.float32)
        self._emotion_buf = (
            np.zeros((1, 1, self.emotion_width), dtype=np.float32) if self._has_emotion else None
        )
        self.engine = engine

        logger.debug(
            f"Engine bound: audio input '{self._audio_key}', "
            f"emotion input {'present' if self._has_emotion else 'absent'}, output '{self._output_key}'"
        )

    def infer(
        self,
        window: np.ndarray,
        emotion: Optional[np.ndarray] = None,
        reuse_buffers: bool = True,
    ) -> np.ndarray:
        """
        Run the engine on one audio window.

        Args:
            window: Mono float32 samples
            emotion: Emotion control vector, used when the engine takes one
            reuse_buffers: Copy into the cached input arrays; pass False when
                calls may run concurrently

        Returns:
            The first declared output, flattened

        Raises:
            UninitializedError: prepare() has not been called
        """
        if self.engine is None:
            raise UninitializedError("No engine loaded. Call load_model() first.")

        window = np.asarray(window, dtype=np.float32).ravel()
        if reuse_buffers and window.shape[0] == self.window_length:
            self._audio_buf[0, 0, :] = window
            audio = self._audio_buf
        else:
            audio = window.reshape(1, 1, -1).copy()

        feeds = {self._audio_key: audio}
        if self._has_emotion:
            emotion_buf = self._emotion_buf if reuse_buffers else np.zeros_like(self._emotion_buf)
            if emotion is not None:
                values = np.asarray(emotion, dtype=np.float32).ravel()[: self.emotion_width]
                emotion_buf[0, 0, : values.shape[0]] = values
            feeds[EMOTION_INPUT_NAME] = emotion_buf

        outputs = self.engine.run(feeds)
        return np.asarray(outputs[self._output_key], dtype=np.float32).ravel()
