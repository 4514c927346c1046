"""
Pipeline Configuration

Parses the model's JSON tuning document (audio_params, face_params,
network_params, blendshape_params) into an immutable PipelineConfig.

Unspecified fields keep their previous values, so a partial document can
be layered on top of the defaults or an earlier config. Reloading always
produces a new PipelineConfig; an existing one is never edited in place.
"""

from pathlib import Path
from typing import Any, Mapping, Optional, Tuple, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.logger import get_logger

from .errors import ConfigError
from .utils import EMOTION_VECTOR_SIZE, NUM_BLENDSHAPES

logger = get_logger(__name__)


# ==================== Document sections ====================


class _Section(BaseModel):
    # Model configs carry extra tuning keys this pipeline does not use
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class AudioParams(_Section):
    buffer_len: Optional[int] = None
    buffer_ofs: Optional[int] = None
    samplerate: Optional[int] = None


class FaceParams(_Section):
    emotion: Optional[list[float]] = Field(default=None, max_length=EMOTION_VECTOR_SIZE)
    upper_face_smoothing: Optional[float] = None
    lower_face_smoothing: Optional[float] = None
    prediction_delay: Optional[float] = None


class NetworkParams(_Section):
    num_shapes_skin: Optional[int] = None
    num_shapes_tongue: Optional[int] = None
    result_jaw_size: Optional[int] = None
    result_eyes_size: Optional[int] = None


class BlendshapeParams(_Section):
    weight_multipliers: Optional[list[float]] = Field(default=None, alias="bsWeightMultipliers")
    weight_offsets: Optional[list[float]] = Field(default=None, alias="bsWeightOffsets")
    solve_active_poses: Optional[list[bool]] = Field(default=None, alias="bsSolveActivePoses")


class ConfigDocument(_Section):
    audio_params: Optional[AudioParams] = None
    face_params: Optional[FaceParams] = None
    network_params: Optional[NetworkParams] = None
    blendshape_params: Optional[BlendshapeParams] = None


# ==================== Resolved configuration ====================


class PipelineConfig(BaseModel):
    """
    Resolved, immutable pipeline parameters.

    Output region offsets are derived from the region sizes: the skin
    region starts at 0 and tongue, jaw and eyes follow back to back.
    """

    model_config = ConfigDict(frozen=True)

    sample_rate: int = Field(default=16000, gt=0)
    buffer_len: int = Field(default=8320, gt=0)
    buffer_ofs: int = Field(default=4160, gt=0)

    skin_size: int = Field(default=140, ge=0)
    tongue_size: int = Field(default=10, ge=0)
    jaw_size: int = Field(default=15, ge=0)
    eyes_size: int = Field(default=4, ge=0)

    emotion: Tuple[float, ...] = (0.0,) * EMOTION_VECTOR_SIZE
    upper_face_smoothing: float = Field(default=0.3, ge=0.0, le=1.0)
    lower_face_smoothing: float = Field(default=0.3, ge=0.0, le=1.0)
    prediction_delay: float = Field(default=0.0, ge=0.0)

    weight_multipliers: Optional[Tuple[float, ...]] = None
    weight_offsets: Optional[Tuple[float, ...]] = None
    solve_active_poses: Optional[Tuple[bool, ...]] = None

    @model_validator(mode="before")
    @classmethod
    def _clamp_stride(cls, data: Any) -> Any:
        if isinstance(data, dict):
            length, stride = data.get("buffer_len"), data.get("buffer_ofs")
            if isinstance(length, int) and isinstance(stride, int) and stride > length:
                data = {**data, "buffer_ofs": length}
        return data

    @field_validator("emotion")
    @classmethod
    def _check_emotion(cls, value: Tuple[float, ...]) -> Tuple[float, ...]:
        if len(value) != EMOTION_VECTOR_SIZE:
            raise ValueError(f"emotion vector must have {EMOTION_VECTOR_SIZE} entries, got {len(value)}")
        return value

    @field_validator("weight_multipliers", "weight_offsets", "solve_active_poses")
    @classmethod
    def _check_per_blendshape(cls, value):
        if value is not None and len(value) != NUM_BLENDSHAPES:
            raise ValueError(f"per-blendshape arrays must have {NUM_BLENDSHAPES} entries, got {len(value)}")
        return value

    # Derived layout

    @property
    def stride(self) -> int:
        return self.buffer_ofs

    @property
    def overlap(self) -> int:
        return self.buffer_len - self.buffer_ofs

    @property
    def skin_offset(self) -> int:
        return 0

    @property
    def tongue_offset(self) -> int:
        return self.skin_size

    @property
    def jaw_offset(self) -> int:
        return self.tongue_offset + self.tongue_size

    @property
    def eyes_offset(self) -> int:
        return self.jaw_offset + self.jaw_size

    @property
    def window_seconds(self) -> float:
        return self.buffer_len / self.sample_rate

    def merge(self, document: Mapping[str, Any]) -> "PipelineConfig":
        """
        Layer a configuration document on top of this config.

        Args:
            document: Parsed JSON object with any of the four sections

        Returns:
            New PipelineConfig; self is unchanged

        Raises:
            ConfigError: The document is malformed or yields invalid values
        """
        if not isinstance(document, Mapping):
            raise ConfigError(f"Configuration must be a JSON object, got {type(document).__name__}")

        try:
            sections = ConfigDocument.model_validate(document)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration document: {e}") from e

        updates: dict[str, Any] = {}

        ap = sections.audio_params
        if ap:
            _put(updates, "buffer_len", ap.buffer_len)
            _put(updates, "buffer_ofs", ap.buffer_ofs)
            _put(updates, "sample_rate", ap.samplerate)

        fp = sections.face_params
        if fp:
            _put(updates, "upper_face_smoothing", fp.upper_face_smoothing)
            _put(updates, "lower_face_smoothing", fp.lower_face_smoothing)
            _put(updates, "prediction_delay", fp.prediction_delay)
            if fp.emotion is not None:
                emotion = list(self.emotion)
                emotion[: len(fp.emotion)] = fp.emotion
                updates["emotion"] = tuple(emotion)

        nparams = sections.network_params
        if nparams:
            _put(updates, "skin_size", nparams.num_shapes_skin)
            _put(updates, "tongue_size", nparams.num_shapes_tongue)
            _put(updates, "jaw_size", nparams.result_jaw_size)
            _put(updates, "eyes_size", nparams.result_eyes_size)

        bp = sections.blendshape_params
        if bp:
            _put(updates, "weight_multipliers", bp.weight_multipliers and tuple(bp.weight_multipliers))
            _put(updates, "weight_offsets", bp.weight_offsets and tuple(bp.weight_offsets))
            _put(updates, "solve_active_poses", bp.solve_active_poses and tuple(bp.solve_active_poses))

        data = self.model_dump()
        data.update(updates)
        try:
            return PipelineConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e


def _put(updates: dict, key: str, value: Any) -> None:
    if value is not None:
        updates[key] = value


def load_pipeline_config(
    source: Union[str, Path, bytes],
    base: Optional[PipelineConfig] = None,
) -> PipelineConfig:
    """
    Read a JSON configuration file (or raw JSON bytes) onto a base config.

    Raises:
        ConfigError: Invalid JSON or invalid values
    """
    raw = source if isinstance(source, bytes) else Path(source).read_bytes()
    try:
        document = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"Configuration is not valid JSON: {e}") from e

    config = (base or PipelineConfig()).merge(document)
    logger.debug(
        f"Pipeline config: window={config.buffer_len}, stride={config.buffer_ofs}, "
        f"rate={config.sample_rate}, skin={config.skin_size}"
    )
    return config
