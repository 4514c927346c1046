"""
Streaming audio-to-blendshape pipeline.

One Audio2AfanPipeline instance serves one audio session. It accumulates
pushed audio in a ring buffer, cuts overlapping windows, runs them through
the engine, decodes blendshapes and smooths each result against the
previous one.

Streaming calls are serialized by an asyncio.Lock (FIFO, released on every
exit path) so two pushes never race on the ring buffer or on the cached
input tensors. Batch processing of a whole utterance uses its own thread
pool and fresh tensors, and smooths after all windows return.
"""

import asyncio
import concurrent.futures
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union

import numpy as np

from core.logger import get_logger

from .afan import AFAN_VERSION_ARKIT, encode_afan
from .config import PipelineConfig, load_pipeline_config
from .decoder import BlendshapeDecoder
from .engine import InferenceAdapter, InferenceEngine, load_engine
from .errors import RangeError, UninitializedError
from .ring_buffer import AudioRingBuffer
from .smoothing import interpolate_to_frame_rate, smooth_blendshapes, smooth_results
from .solve import SolveData, load_solve_data
from .types import BlendshapeFrame, InferenceResult
from .utils import EXPLICIT_EMOTIONS, clamp

logger = get_logger(__name__)

SMOOTHING_REGIONS = ("upper", "lower")


class Audio2AfanPipeline:
    """
    Audio to ARKit blendshape pipeline around an opaque inference engine.

    Typical streaming use:
        pipeline = Audio2AfanPipeline()
        pipeline.load_config_file("models/audio2afan/config.json")
        pipeline.load_model("models/audio2afan/model.onnx")
        pipeline.load_solve_data("models/audio2afan")
        result = await pipeline.process_audio_chunk(samples_16k)
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        solve_data: Optional[SolveData] = None,
    ):
        self.config = config or PipelineConfig()
        self.engine: Optional[InferenceEngine] = None
        self.solve_data = solve_data
        self.last_result: Optional[InferenceResult] = None

        self._emotion = np.array(self.config.emotion, dtype=np.float32)
        self.smoothing_upper = self.config.upper_face_smoothing
        self.smoothing_lower = self.config.lower_face_smoothing

        self._ring = AudioRingBuffer()
        self._samples_consumed = 0
        self._adapter = InferenceAdapter(self.config.buffer_len)
        self._decoder = BlendshapeDecoder(self.config, solve_data)

        self._chunk_lock = asyncio.Lock()
        self._executor: Optional[concurrent.futures.ThreadPoolExecutor] = None

    # ==================== Loading ====================

    def load_config(self, config: Union[PipelineConfig, Mapping[str, Any]]) -> PipelineConfig:
        """
        Replace the configuration wholesale.

        A mapping is layered on top of the current config; a PipelineConfig
        is used as-is. Do not call while a process_* call is in flight.
        """
        new_config = config if isinstance(config, PipelineConfig) else self.config.merge(config)
        self._apply_config(new_config)
        return new_config

    def load_config_file(self, path: Union[str, Path]) -> PipelineConfig:
        """Load a JSON configuration file on top of the current config."""
        logger.info(f"Loading pipeline config from {path}")
        config = load_pipeline_config(path, base=self.config)
        self._apply_config(config)
        return config

    def _apply_config(self, config: PipelineConfig) -> None:
        window_changed = config.buffer_len != self.config.buffer_len
        self.config = config
        self._emotion = np.array(config.emotion, dtype=np.float32)
        self.smoothing_upper = config.upper_face_smoothing
        self.smoothing_lower = config.lower_face_smoothing
        self._decoder = BlendshapeDecoder(config, self.solve_data)

        if window_changed:
            self._adapter = InferenceAdapter(config.buffer_len)
            if self.engine is not None:
                self._adapter.prepare(self.engine)

    def load_model(
        self,
        model: Union[str, Path, bytes],
        use_gpu: bool = False,
        threads: Optional[int] = None,
    ) -> InferenceEngine:
        """Create an ONNX Runtime engine for the model and attach it."""
        engine = load_engine(model, use_gpu=use_gpu, threads=threads)
        self.attach_engine(engine)
        return engine

    def attach_engine(self, engine: InferenceEngine) -> None:
        """Attach an already-loaded engine; its input names are inspected once here."""
        self._adapter.prepare(engine)
        self.engine = engine

    def load_solve_data(self, path: Union[str, Path]) -> Optional[SolveData]:
        """
        Load solve data from a file or model directory.

        A missing file leaves the pipeline on direct decoding.
        """
        data = load_solve_data(path)
        self.set_solve_data(data)
        return data

    def set_solve_data(self, solve_data: Optional[SolveData]) -> None:
        self.solve_data = solve_data
        self._decoder = BlendshapeDecoder(self.config, solve_data)
        logger.info(f"Blendshape strategy: {self._decoder.strategy}")

    # ==================== Properties ====================

    @property
    def is_ready(self) -> bool:
        return self.engine is not None

    @property
    def strategy(self) -> str:
        return self._decoder.strategy

    @property
    def buffered_samples(self) -> int:
        return len(self._ring)

    @property
    def emotion_vector(self) -> np.ndarray:
        return self._emotion.copy()

    # ==================== Runtime controls ====================

    def set_emotion(self, name: str, value: float) -> None:
        """
        Set one named emotion control, clamped to [0,1].

        Raises:
            RangeError: Unknown emotion name
        """
        try:
            index = EXPLICIT_EMOTIONS.index(name)
        except ValueError:
            raise RangeError(f"Unknown emotion: {name}. Valid: {', '.join(EXPLICIT_EMOTIONS)}") from None
        self._emotion[index] = clamp(value)

    def set_emotions(self, emotions: Mapping[str, float]) -> None:
        for name, value in emotions.items():
            self.set_emotion(name, value)

    def set_smoothing(self, factor: float) -> None:
        self.smoothing_upper = self.smoothing_lower = clamp(factor)

    def set_smoothing_region(self, region: str, factor: float) -> None:
        """
        Set the smoothing factor of one face region.

        Raises:
            RangeError: region is not 'upper' or 'lower'
        """
        if region == "upper":
            self.smoothing_upper = clamp(factor)
        elif region == "lower":
            self.smoothing_lower = clamp(factor)
        else:
            raise RangeError(f"Unknown region: {region}. Valid: {', '.join(SMOOTHING_REGIONS)}")

    # ==================== Inference ====================

    def _require_engine(self) -> None:
        if self.engine is None:
            raise UninitializedError("No engine loaded. Call load_model() first.")

    @property
    def session_time(self) -> float:
        """Seconds of audio consumed since the last reset."""
        return self._samples_consumed / self.config.sample_rate

    def empty_result(self) -> InferenceResult:
        return InferenceResult(blendshapes=BlendshapeFrame.zeros(), jaw=0.0, eyes=None, timestamp=self.session_time)

    def _window_timestamp(self, start: int) -> float:
        """Centre of the window starting at sample `start`, minus the prediction delay."""
        cfg = self.config
        return max(0.0, (start + cfg.buffer_len / 2) / cfg.sample_rate - cfg.prediction_delay)

    def _worker(self) -> concurrent.futures.ThreadPoolExecutor:
        # One worker: streaming inference for an instance is strictly sequential
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="audio2afan")
        return self._executor

    def run_inference(self, window: np.ndarray, timestamp: float = 0.0) -> InferenceResult:
        """Run one window through the engine and decoder (synchronous, cached tensors)."""
        self._require_engine()
        raw = self._adapter.infer(window, self._emotion)
        return self._decoder.decode(raw, timestamp)

    def _infer_detached(self, window: np.ndarray, emotion: np.ndarray, timestamp: float) -> InferenceResult:
        raw = self._adapter.infer(window, emotion, reuse_buffers=False)
        return self._decoder.decode(raw, timestamp)

    async def process_audio(
        self,
        samples,
        emotion: Optional[Mapping[str, float]] = None,
    ) -> list[InferenceResult]:
        """
        Push audio and run every window that became available.

        Args:
            samples: Mono float32 samples at config.sample_rate
            emotion: Optional named emotion overrides applied first

        Returns:
            Smoothed results, one per window run (possibly empty), stamped
            with the window centre in seconds since the last reset

        Raises:
            UninitializedError: No engine loaded
        """
        self._require_engine()
        async with self._chunk_lock:
            if emotion:
                self.set_emotions(emotion)

            samples = np.asarray(samples, dtype=np.float32).ravel()
            if samples.shape[0]:
                self._ring.append(samples)

            loop = asyncio.get_running_loop()
            window_len, stride = self.config.buffer_len, self.config.buffer_ofs
            results = []
            while self._ring.has_window(window_len):
                window = self._ring.peek_window(window_len).copy()
                timestamp = self._window_timestamp(self._samples_consumed)
                self._ring.consume(stride)
                self._samples_consumed += stride
                result = await loop.run_in_executor(self._worker(), self.run_inference, window, timestamp)

                if self.last_result is not None:
                    result.blendshapes = smooth_blendshapes(
                        self.last_result.blendshapes,
                        result.blendshapes,
                        self.smoothing_upper,
                        self.smoothing_lower,
                    )
                self.last_result = result
                results.append(result)

            if results:
                logger.debug(f"Processed {len(results)} window(s), {len(self._ring)} samples buffered")
            return results

    async def process_audio_chunk(
        self,
        samples,
        emotion: Optional[Mapping[str, float]] = None,
    ) -> InferenceResult:
        """
        Push audio and return the most recent result.

        Until the first full window is buffered this is an all-zero result.
        """
        results = await self.process_audio(samples, emotion)
        if results:
            return results[-1]
        return self.last_result or self.empty_result()

    async def process_utterance(self, audio, concurrency: int = 4) -> list[InferenceResult]:
        """
        Run a complete pre-recorded utterance in batch.

        Windows are inferred concurrently, then smoothed in time order.
        Each result is stamped with its window centre in seconds (minus the
        configured prediction delay). Audio shorter than one window is
        zero-padded to a single window.

        Args:
            audio: Mono float32 samples at config.sample_rate
            concurrency: Worker threads for engine calls

        Returns:
            Time-ordered, smoothed results
        """
        self._require_engine()
        audio = np.asarray(audio, dtype=np.float32).ravel()
        if audio.shape[0] == 0:
            return []

        cfg = self.config
        window_len, stride = cfg.buffer_len, cfg.buffer_ofs
        if audio.shape[0] < window_len:
            audio = np.pad(audio, (0, window_len - audio.shape[0]))

        starts = range(0, audio.shape[0] - window_len + 1, stride)
        emotion = self._emotion.copy()
        loop = asyncio.get_running_loop()

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, concurrency), thread_name_prefix="audio2afan-batch"
        )
        try:
            futures = [
                loop.run_in_executor(
                    pool,
                    self._infer_detached,
                    audio[start : start + window_len],
                    emotion,
                    self._window_timestamp(start),
                )
                for start in starts
            ]
            results = await asyncio.gather(*futures)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        logger.debug(f"Batch inference: {len(results)} windows over {audio.shape[0] / cfg.sample_rate:.2f}s")
        return smooth_results(results, self.smoothing_upper, self.smoothing_lower)

    def render_animation(
        self,
        results: Sequence[InferenceResult],
        duration: Optional[float] = None,
        fps: int = 30,
        version: int = AFAN_VERSION_ARKIT,
    ) -> bytes:
        """Interpolate time-stamped results to `fps` and encode them as AFAN."""
        frames = interpolate_to_frame_rate(results, fps, duration)
        return encode_afan(frames, fps=fps, version=version)

    # ==================== Lifecycle ====================

    def reset(self) -> None:
        """Forget buffered audio and the smoothing history; timestamps restart at 0."""
        self._ring.clear()
        self._samples_consumed = 0
        self.last_result = None

    def dispose(self) -> None:
        """
        Release the engine and solve data and stop the worker thread.

        The pipeline stays usable: attach a new engine to run it again.
        """
        release = getattr(self.engine, "release", None)
        if callable(release):
            release()
        self.engine = None
        self._adapter = InferenceAdapter(self.config.buffer_len)
        self.set_solve_data(None)
        self.reset()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
