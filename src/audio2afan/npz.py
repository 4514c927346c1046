"""
Reader for NumPy .npy records and zip-compressed .npz archives.

The solve data shipped with the model (PCA basis, mean, pseudo-inverse,
neutral pose, frontal mask) is stored as an .npz archive. Each entry is
parsed independently so one corrupt record does not hide the others.
"""

import io
import re
import struct
import zipfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Tuple, Union

import numpy as np

from core.logger import get_logger

from .errors import FormatError

logger = get_logger(__name__)

NPY_MAGIC = b"\x93NUMPY"
ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06")
NPY_SUFFIX = ".npy"

_DESCR_RE = re.compile(r"'descr':\s*'([<>|=])([a-z])(\d+)'", re.IGNORECASE)
_SHAPE_RE = re.compile(r"'shape':\s*\(([^)]*)\)")
_FORTRAN_RE = re.compile(r"'fortran_order':\s*(True|False)")

_WIDTHS = {
    "f": (2, 4, 8),
    "i": (1, 2, 4, 8),
    "u": (1, 2, 4, 8),
}


@dataclass
class NpyArray:
    """A flat typed array plus the shape recorded in its header."""

    data: np.ndarray
    shape: Tuple[int, ...]

    def array(self) -> np.ndarray:
        """Return the data reshaped to the recorded shape (flat if none)."""
        if not self.shape:
            return self.data
        return self.data.reshape(self.shape)

    def __len__(self) -> int:
        return self.data.shape[0]


def _parse_dtype(header: str) -> np.dtype:
    match = _DESCR_RE.search(header)
    if not match:
        raise FormatError(f"Cannot parse numpy dtype from header: {header.strip()!r}")

    endian, category, width_str = match.groups()
    category = category.lower()
    width = int(width_str)
    byte_order = ">" if endian == ">" else "<"

    if category not in _WIDTHS:
        # Unknown element categories are read as 4-byte floats
        return np.dtype(f"{byte_order}f4")
    if width not in _WIDTHS[category]:
        raise FormatError(f"Unsupported element width {width} for dtype category '{category}'")
    return np.dtype(f"{byte_order}{category}{width}")


def _parse_shape(header: str) -> Tuple[int, ...]:
    match = _SHAPE_RE.search(header)
    if not match:
        return ()
    dims = []
    for part in match.group(1).split(","):
        part = part.strip()
        if not part:
            continue
        try:
            dims.append(int(part))
        except ValueError:
            return ()
    return tuple(dims)


def _parse_fortran_order(header: str) -> bool:
    match = _FORTRAN_RE.search(header)
    return bool(match) and match.group(1) == "True"


def parse_npy(buffer: bytes) -> NpyArray:
    """
    Parse a single .npy record.

    Args:
        buffer: Raw bytes of the record

    Returns:
        NpyArray with native-endian, C-ordered flat data

    Raises:
        FormatError: Missing magic, truncated header or unparseable dtype
    """
    buffer = bytes(buffer)
    if not buffer.startswith(NPY_MAGIC):
        raise FormatError("Missing .npy magic signature")
    if len(buffer) < 10:
        raise FormatError("Truncated .npy header")

    major = buffer[6]
    offset = 8
    if major >= 2:
        if len(buffer) < 12:
            raise FormatError("Truncated .npy header")
        (header_len,) = struct.unpack_from("<I", buffer, offset)
        offset += 4
    else:
        (header_len,) = struct.unpack_from("<H", buffer, offset)
        offset += 2

    header_end = offset + header_len
    if header_end > len(buffer):
        raise FormatError("Truncated .npy header")
    encoding = "utf-8" if major >= 3 else "latin-1"
    header = buffer[offset:header_end].decode(encoding)

    dtype = _parse_dtype(header)
    shape = _parse_shape(header)

    payload = buffer[header_end:]
    if len(payload) % dtype.itemsize:
        raise FormatError(
            f"Payload of {len(payload)} bytes is not a whole number of {dtype.itemsize}-byte elements"
        )

    # Convert to native byte order; astype always copies out of the read-only buffer
    data = np.frombuffer(payload, dtype=dtype).astype(dtype.newbyteorder("="))

    if shape and _parse_fortran_order(header) and int(np.prod(shape)) == data.shape[0]:
        data = data.reshape(shape, order="F").ravel(order="C")

    return NpyArray(data=data, shape=shape)


def load_npz(source: Union[str, Path, bytes]) -> Dict[str, NpyArray]:
    """
    Load every .npy entry from an .npz archive.

    Args:
        source: Path to the archive, or its raw bytes

    Returns:
        Mapping from entry base name (without .npy) to NpyArray

    Raises:
        FormatError: The bytes are not a zip archive
    """
    if isinstance(source, (bytes, bytearray, memoryview)):
        raw = bytes(source)
    else:
        raw = Path(source).read_bytes()

    if not raw.startswith(ZIP_MAGICS):
        raise FormatError("Missing .npz (zip) magic signature")

    try:
        archive = zipfile.ZipFile(io.BytesIO(raw))
    except zipfile.BadZipFile as e:
        raise FormatError(f"Corrupt .npz archive: {e}") from e

    result: Dict[str, NpyArray] = {}
    with archive:
        for name in archive.namelist():
            if not name.endswith(NPY_SUFFIX):
                continue
            key = Path(name).name[: -len(NPY_SUFFIX)]
            try:
                result[key] = parse_npy(archive.read(name))
            except (FormatError, zipfile.BadZipFile, zlib.error, OSError) as e:
                logger.warning(f"Skipping malformed archive entry '{name}': {e}")
                continue
            logger.debug(f"Loaded {key}: dtype={result[key].data.dtype}, shape={result[key].shape}")

    return result
