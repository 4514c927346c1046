"""
AFAN animation container.

Layout (little-endian):

    uint32  magic        0x4146414E
    uint8   version      1 or 2
    uint8   fps
    uint8   channel count C
    uint8   reserved (0)
    uint32  frame count N
    [v1 only] C x (uint8 length, UTF-8 name)
    N x C   uint8 weights, round(clamp(w, 0, 1) * 255)

Version 2 carries no names and implies the ARKit channel order.
"""

import math
import struct
from dataclasses import dataclass, field
from typing import BinaryIO, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from core.logger import get_logger

from .errors import FormatError
from .types import BlendshapeFrame
from .utils import NUM_BLENDSHAPES, ARKitBlendShape

logger = get_logger(__name__)

AFAN_MAGIC = 0x4146414E
AFAN_VERSION_NAMED = 1
AFAN_VERSION_ARKIT = 2
SUPPORTED_VERSIONS = (AFAN_VERSION_NAMED, AFAN_VERSION_ARKIT)

_HEADER = struct.Struct("<IBBBBI")
HEADER_SIZE = _HEADER.size

FrameLike = Union[BlendshapeFrame, Mapping[str, float], Sequence[float], np.ndarray]


def quantize(weights) -> np.ndarray:
    """Map weights in [0,1] to bytes; out-of-range values are clamped."""
    values = np.nan_to_num(np.asarray(weights, dtype=np.float64), nan=0.0)
    return np.round(np.clip(values, 0.0, 1.0) * 255.0).astype(np.uint8)


def _frames_to_matrix(frames: Iterable[FrameLike], names: Sequence[str]) -> np.ndarray:
    if isinstance(frames, np.ndarray):
        if not frames.size:
            return np.zeros((0, len(names)), dtype=np.float32)
        matrix = np.atleast_2d(frames).astype(np.float32)
    else:
        rows = []
        for frame in frames:
            if isinstance(frame, BlendshapeFrame):
                frame = frame.to_dict()
            if isinstance(frame, Mapping):
                rows.append([float(frame.get(name, 0.0)) for name in names])
            else:
                rows.append(np.asarray(frame, dtype=np.float32).ravel())
        if not rows:
            return np.zeros((0, len(names)), dtype=np.float32)
        matrix = np.atleast_2d(np.array(rows, dtype=np.float32))
    if matrix.ndim != 2 or matrix.shape[1] != len(names):
        raise ValueError(f"Frames have {matrix.shape[1]} channels, expected {len(names)}")
    return matrix


def _check_header_args(fps: int, version: int, names: Sequence[str]) -> None:
    if version not in SUPPORTED_VERSIONS:
        raise ValueError(f"Unsupported AFAN version: {version}")
    if not 1 <= fps <= 255:
        raise ValueError(f"fps must be in 1..255, got {fps}")
    if len(names) > 255:
        raise ValueError(f"At most 255 channels are supported, got {len(names)}")
    if version == AFAN_VERSION_ARKIT and list(names) != ARKitBlendShape[: len(names)]:
        raise ValueError("Version 2 requires the ARKit channel order; use version 1 for custom channels")


def _encode_names(names: Sequence[str]) -> bytes:
    out = bytearray()
    for name in names:
        encoded = name.encode("utf-8")
        if len(encoded) > 255:
            raise ValueError(f"Channel name too long ({len(encoded)} bytes): {name[:32]}...")
        out.append(len(encoded))
        out += encoded
    return bytes(out)


def encode_afan(
    frames: Iterable[FrameLike],
    fps: int = 30,
    version: int = AFAN_VERSION_ARKIT,
    names: Optional[Sequence[str]] = None,
) -> bytes:
    """
    Encode frames into an AFAN buffer.

    Args:
        frames: (N, C) array, BlendshapeFrames, or name->weight mappings
            (missing names encode as 0)
        fps: Playback frame rate (1..255)
        version: 1 writes channel names, 2 assumes ARKit order
        names: Channel names; defaults to the 52 ARKit names

    Returns:
        Encoded bytes
    """
    names = list(names) if names is not None else list(ARKitBlendShape)
    _check_header_args(fps, version, names)
    matrix = _frames_to_matrix(frames, names)

    parts = [_HEADER.pack(AFAN_MAGIC, version, fps, len(names), 0, matrix.shape[0])]
    if version == AFAN_VERSION_NAMED:
        parts.append(_encode_names(names))
    parts.append(quantize(matrix).tobytes())
    return b"".join(parts)


@dataclass
class AfanAnimation:
    """Decoded AFAN animation; frames hold weights as byte / 255."""

    fps: int
    version: int
    names: List[str]
    frames: np.ndarray = field(repr=False)

    @property
    def num_frames(self) -> int:
        return self.frames.shape[0]

    @property
    def num_channels(self) -> int:
        return len(self.names)

    @property
    def duration(self) -> float:
        return self.num_frames / self.fps

    def frame_index_at(self, time: float) -> int:
        """floor(time * fps), clamped to the valid frame range."""
        if self.num_frames == 0:
            raise IndexError("Animation has no frames")
        index = math.floor(time * self.fps)
        return max(0, min(index, self.num_frames - 1))

    def frame_at_time(self, time: float) -> Dict[str, float]:
        row = self.frames[self.frame_index_at(time)]
        return {name: float(v) for name, v in zip(self.names, row)}

    def to_dicts(self) -> List[Dict]:
        return [
            {"time": i / self.fps, "blendshapes": {n: float(v) for n, v in zip(self.names, row)}}
            for i, row in enumerate(self.frames)
        ]


def decode_afan(data: bytes) -> AfanAnimation:
    """
    Decode an AFAN buffer.

    Raises:
        FormatError: Bad magic, unsupported version, bad channel count or
            truncated data
    """
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise FormatError(f"AFAN buffer too short for header ({len(data)} bytes)")

    magic, version, fps, channels, _reserved, num_frames = _HEADER.unpack_from(data, 0)
    if magic != AFAN_MAGIC:
        raise FormatError(f"Invalid animation file: magic 0x{magic:08X}")
    if version not in SUPPORTED_VERSIONS:
        raise FormatError(f"Unsupported AFAN version: {version}")
    if fps == 0:
        raise FormatError("AFAN frame rate is 0")

    offset = HEADER_SIZE
    if version == AFAN_VERSION_NAMED:
        names = []
        for _ in range(channels):
            if offset >= len(data):
                raise FormatError("Truncated AFAN channel name table")
            length = data[offset]
            offset += 1
            if offset + length > len(data):
                raise FormatError("Truncated AFAN channel name table")
            try:
                names.append(data[offset : offset + length].decode("utf-8"))
            except UnicodeDecodeError as e:
                raise FormatError(f"Channel name is not valid UTF-8: {e}") from e
            offset += length
    else:
        if channels > NUM_BLENDSHAPES:
            raise FormatError(f"Version 2 supports at most {NUM_BLENDSHAPES} channels, got {channels}")
        names = list(ARKitBlendShape[:channels])

    expected = num_frames * channels
    if len(data) - offset < expected:
        raise FormatError(f"Truncated AFAN frame data: need {expected} bytes, have {len(data) - offset}")

    raw = np.frombuffer(data, dtype=np.uint8, count=expected, offset=offset)
    frames = raw.reshape(num_frames, channels).astype(np.float32) / 255.0
    return AfanAnimation(fps=fps, version=version, names=names, frames=frames)


class AfanStreamWriter:
    """
    Incremental AFAN writer for live playback.

    The header is written up front with a frame count of 0; close()
    patches in the real count when the stream is seekable.
    """

    def __init__(
        self,
        stream: BinaryIO,
        fps: int = 30,
        version: int = AFAN_VERSION_ARKIT,
        names: Optional[Sequence[str]] = None,
    ):
        self.names = list(names) if names is not None else list(ARKitBlendShape)
        _check_header_args(fps, version, self.names)
        self.stream = stream
        self.fps = fps
        self.version = version
        self.frame_count = 0
        self._closed = False

        self._header_pos = stream.tell() if stream.seekable() else None
        stream.write(_HEADER.pack(AFAN_MAGIC, version, fps, len(self.names), 0, 0))
        if version == AFAN_VERSION_NAMED:
            stream.write(_encode_names(self.names))

    def write_frame(self, frame: FrameLike) -> None:
        if self._closed:
            raise ValueError("AfanStreamWriter is closed")
        row = _frames_to_matrix([frame], self.names)
        self.stream.write(quantize(row[0]).tobytes())
        self.frame_count += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._header_pos is None:
            logger.debug("AFAN stream is not seekable; frame count left at 0")
            return
        end = self.stream.tell()
        self.stream.seek(self._header_pos + HEADER_SIZE - 4)
        self.stream.write(struct.pack("<I", self.frame_count))
        self.stream.seek(end)

    def __enter__(self) -> "AfanStreamWriter":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
