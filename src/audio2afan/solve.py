"""
PCA vertex reconstruction and pseudo-inverse blendshape solve.

When the model directory ships solve_data.npz, the network's skin output
is treated as PCA coefficients over a full-resolution face mesh. The mesh
is rebuilt, the frontal vertices are compared against the neutral pose,
and the displacement is projected onto the 52 ARKit directions.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

import numpy as np

from core.logger import get_logger

from .errors import FormatError
from .npz import load_npz
from .utils import NUM_BLENDSHAPES

logger = get_logger(__name__)

SOLVE_DATA_FILENAME = "solve_data.npz"
REQUIRED_KEYS = ("pca_basis", "pca_mean", "D_pinv", "neutral", "frontal_mask")


@dataclass(frozen=True)
class SolveData:
    """
    Read-only solve arrays; safe to share between pipeline instances.

    Shapes (V vertices, F frontal vertices, K PCA components):
        pca_basis:    (K, 3V)
        pca_mean:     (3V,)
        d_pinv:       (52, 3F)
        neutral:      (3V,)
        frontal_mask: (F,) vertex indices
    """

    pca_basis: np.ndarray
    pca_mean: np.ndarray
    d_pinv: np.ndarray
    neutral: np.ndarray
    frontal_mask: np.ndarray

    def __post_init__(self):
        coords = self.pca_mean.shape[0]
        if coords % 3:
            raise FormatError(f"pca_mean length {coords} is not a multiple of 3")
        if self.pca_basis.ndim != 2 or self.pca_basis.shape[1] != coords:
            raise FormatError(f"pca_basis shape {self.pca_basis.shape} does not match pca_mean length {coords}")
        if self.neutral.shape[0] != coords:
            raise FormatError(f"neutral length {self.neutral.shape[0]} does not match pca_mean length {coords}")
        expected_cols = 3 * self.frontal_mask.shape[0]
        if self.d_pinv.shape != (NUM_BLENDSHAPES, expected_cols):
            raise FormatError(
                f"D_pinv shape {self.d_pinv.shape} does not match ({NUM_BLENDSHAPES}, {expected_cols})"
            )
        if self.frontal_mask.size and int(self.frontal_mask.max()) >= self.num_vertices:
            raise FormatError("frontal_mask indexes past the end of the vertex array")
        for arr in (self.pca_basis, self.pca_mean, self.d_pinv, self.neutral, self.frontal_mask):
            arr.flags.writeable = False

    @property
    def num_vertices(self) -> int:
        return self.pca_mean.shape[0] // 3

    @property
    def num_components(self) -> int:
        return self.pca_basis.shape[0]

    @property
    def num_frontal(self) -> int:
        return self.frontal_mask.shape[0]

    def reconstruct_vertices(self, coeffs: np.ndarray, max_coeffs: Optional[int] = None) -> np.ndarray:
        """
        Rebuild flat (3V,) vertex positions from PCA coefficients.

        Only the first min(len(coeffs), max_coeffs, K) coefficients are used.
        """
        coeffs = np.asarray(coeffs, dtype=np.float32).ravel()
        k = min(coeffs.shape[0], self.num_components)
        if max_coeffs is not None:
            k = min(k, max_coeffs)
        vertices = self.pca_mean.astype(np.float32, copy=True)
        if k > 0:
            vertices += coeffs[:k] @ self.pca_basis[:k]
        return vertices

    def solve(self, vertices: np.ndarray) -> np.ndarray:
        """Project frontal displacement onto the 52 blendshapes, clamped to [0,1]."""
        verts = np.asarray(vertices, dtype=np.float32).reshape(-1, 3)
        neutral = self.neutral.reshape(-1, 3)
        target = (verts[self.frontal_mask] - neutral[self.frontal_mask]).ravel()
        weights = np.nan_to_num(self.d_pinv @ target, nan=0.0)
        return np.clip(weights, 0.0, 1.0).astype(np.float32)


def load_solve_data(path: Union[str, Path]) -> Optional[SolveData]:
    """
    Load solve data from an .npz file or a model directory containing one.

    Returns:
        SolveData, or None when the file does not exist

    Raises:
        FormatError: The archive is unreadable, incomplete or inconsistent
    """
    path = Path(path)
    if path.is_dir():
        path = path / SOLVE_DATA_FILENAME

    if not path.exists():
        logger.warning(f"{path.name} not found, using direct inference")
        return None

    logger.info(f"Loading solve data from {path}...")
    arrays = load_npz(path)

    missing = [key for key in REQUIRED_KEYS if key not in arrays]
    if missing:
        raise FormatError(f"Solve data is missing required arrays: {', '.join(missing)}")

    mean = arrays["pca_mean"].data.astype(np.float32)
    basis = arrays["pca_basis"].array().astype(np.float32)
    if basis.ndim != 2:
        if not mean.shape[0] or basis.size % mean.shape[0]:
            raise FormatError(f"pca_basis of {basis.size} values cannot be split into rows of {mean.shape[0]}")
        basis = basis.reshape(-1, mean.shape[0])
    d_pinv = arrays["D_pinv"].array().astype(np.float32)
    if d_pinv.ndim != 2:
        if d_pinv.size % NUM_BLENDSHAPES:
            raise FormatError(f"D_pinv of {d_pinv.size} values cannot be split into {NUM_BLENDSHAPES} rows")
        d_pinv = d_pinv.reshape(NUM_BLENDSHAPES, -1)

    # A forward "D" matrix may ship alongside D_pinv; the solve only needs the inverse
    solve_data = SolveData(
        pca_basis=basis,
        pca_mean=mean,
        d_pinv=d_pinv,
        neutral=arrays["neutral"].data.astype(np.float32),
        frontal_mask=arrays["frontal_mask"].data.astype(np.int64),
    )

    logger.info(
        f"Solve data loaded: {solve_data.num_components} components, "
        f"{solve_data.num_vertices} vertices, {solve_data.num_frontal} frontal, "
        f"D_pinv shape {solve_data.d_pinv.shape}"
    )
    return solve_data
