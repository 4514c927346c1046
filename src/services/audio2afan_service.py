"""
Audio2Afan Service

Service layer for audio-to-blendshape animation.
Loads the model directory (config.json, model.onnx, optional
solve_data.npz) into a pipeline and turns utterances into AFAN
animations.
"""

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from audio2afan import Audio2AfanPipeline, FormatError, InferenceResult, resample_audio
from core.config import Settings, get_settings
from core.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GenerationResult:
    """Output of one offline generation."""

    animation: bytes
    results: list[InferenceResult]
    duration: float
    profile: dict[str, float] = field(default_factory=dict)

    @property
    def total_ms(self) -> float:
        return self.profile.get("total", 0.0)

    @property
    def realtime_factor(self) -> float:
        """Seconds of audio processed per second of wall time."""
        if not self.total_ms:
            return 0.0
        return self.duration / (self.total_ms / 1000)


class Profiler:
    """Accumulates wall-clock milliseconds per named stage."""

    def __init__(self):
        self.timings: dict[str, float] = {}

    @contextmanager
    def stage(self, name: str):
        start = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - start) * 1000
            self.timings[name] = self.timings.get(name, 0.0) + elapsed

    def report(self) -> str:
        stages = {k: v for k, v in self.timings.items() if k != "total"}
        total = sum(stages.values()) or 1.0
        lines = [
            f"  {name}: {ms:.0f}ms ({ms / total * 100:.1f}%)"
            for name, ms in sorted(stages.items(), key=lambda kv: kv[1], reverse=True)
        ]
        return "\n".join(lines)


class Audio2AfanService:
    """
    Service for audio-to-AFAN inference.

    Wraps an Audio2AfanPipeline loaded from the configured model directory.
    A missing or broken model leaves the service unavailable instead of
    failing application startup.
    """

    def __init__(self, settings: Settings):
        """
        Initialize the Audio2Afan service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._pipeline: Optional[Audio2AfanPipeline] = None
        self._available = False

        self._initialize_model()

    def _initialize_model(self) -> None:
        """Build the pipeline from the model directory."""
        model_path = self.settings.model_path
        if not model_path.exists():
            logger.warning(f"Audio2Afan model not found at: {model_path}")
            logger.warning("Audio2Afan will be unavailable")
            return

        try:
            pipeline = Audio2AfanPipeline()
            if self.settings.config_path.exists():
                pipeline.load_config_file(self.settings.config_path)
            else:
                logger.warning(f"No config at {self.settings.config_path}, using defaults")

            pipeline.load_model(
                model_path,
                use_gpu=self.settings.use_gpu,
                threads=self.settings.resolved_threads,
            )
        except ImportError as e:
            logger.warning(f"ONNX Runtime not available: {e}")
            logger.warning("Install onnxruntime: pip install onnxruntime")
            return
        except Exception as e:
            logger.warning(f"Failed to load Audio2Afan model: {e}")
            return

        try:
            pipeline.load_solve_data(self.settings.solve_data_path)
        except FormatError as e:
            logger.warning(f"Ignoring unreadable solve data, using direct inference: {e}")

        self._pipeline = pipeline
        self._available = True
        logger.info(f"Audio2Afan model loaded (strategy: {pipeline.strategy})")

        self._warmup_model()

    def _warmup_model(self) -> None:
        """
        Run one window of silence through the engine.

        This moves ONNX Runtime's first-run setup out of the first request.
        """
        if not self._pipeline:
            return

        try:
            logger.info("Running model warmup pass...")
            dummy = np.zeros(self._pipeline.config.buffer_len, dtype=np.float32)
            self._pipeline.run_inference(dummy)
            logger.info("Model warmup complete - ready for inference")
        except Exception as e:
            logger.warning(f"Model warmup failed (non-critical): {e}")

    @property
    def is_available(self) -> bool:
        """Check if inference is available."""
        return self._available and self._pipeline is not None

    @property
    def pipeline(self) -> Optional[Audio2AfanPipeline]:
        return self._pipeline

    @property
    def strategy(self) -> Optional[str]:
        return self._pipeline.strategy if self._pipeline else None

    def _require_pipeline(self) -> Audio2AfanPipeline:
        if not self.is_available:
            raise RuntimeError("Audio2Afan model not available")
        return self._pipeline

    async def generate(self, audio: np.ndarray, sample_rate: int) -> GenerationResult:
        """
        Convert a complete utterance into an AFAN animation.

        Args:
            audio: Mono float32 samples
            sample_rate: Sample rate of `audio`

        Returns:
            GenerationResult with the encoded animation, per-window results,
            audio duration and stage timings in ms
        """
        pipeline = self._require_pipeline()
        prof = Profiler()
        audio = np.asarray(audio, dtype=np.float32).ravel()
        duration = audio.shape[0] / sample_rate

        with prof.stage("total"):
            with prof.stage("resample"):
                model_audio = resample_audio(audio, sample_rate, pipeline.config.sample_rate)

            with prof.stage("a2f"):
                results = await pipeline.process_utterance(
                    model_audio, concurrency=self.settings.batch_concurrency
                )

            with prof.stage("build_output"):
                animation = pipeline.render_animation(
                    results,
                    duration=duration,
                    fps=self.settings.blendshape_fps,
                    version=self.settings.afan_version,
                )

        result = GenerationResult(animation=animation, results=results, duration=duration, profile=prof.timings)
        logger.info(
            f"Generated {len(results)} windows for {duration:.1f}s of audio in "
            f"{result.total_ms:.0f}ms (RTFx {result.realtime_factor:.2f}x)"
        )
        logger.debug(f"Profile:\n{prof.report()}")
        return result

    async def stream(self, audio: np.ndarray, sample_rate: int) -> InferenceResult:
        """
        Push a live audio chunk and return the latest blendshape result.

        Args:
            audio: Mono float32 samples
            sample_rate: Sample rate of `audio`
        """
        pipeline = self._require_pipeline()
        if sample_rate != pipeline.config.sample_rate:
            audio = resample_audio(audio, sample_rate, pipeline.config.sample_rate)
        return await pipeline.process_audio_chunk(audio)

    def reset_context(self) -> None:
        """Reset streaming state for a new speech session."""
        if self._pipeline:
            self._pipeline.reset()


# Singleton instance (created on first use)
_audio2afan_service: Audio2AfanService | None = None


def get_audio2afan_service(settings: Settings | None = None) -> Audio2AfanService:
    """
    Get or create the Audio2AfanService singleton.

    Args:
        settings: Application settings (uses defaults if not provided)

    Returns:
        Audio2AfanService instance
    """
    global _audio2afan_service

    if _audio2afan_service is None:
        settings = settings or get_settings()
        _audio2afan_service = Audio2AfanService(settings)

    return _audio2afan_service
