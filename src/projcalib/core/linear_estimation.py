from __future__ import annotations

import logging

import numpy as np

from projcalib.errors import DegenerateInputError

logger = logging.getLogger(__name__)

MIN_CORRESPONDENCES = 6


def dlt_equations(img: np.ndarray, real: np.ndarray) -> np.ndarray:
    """
    Homogeneous DLT system A p = 0 for the 12 entries of P (row-major).

    Each correspondence (x, y) <-> (X, Y, Z) contributes two rows:

        [0, 0, 0, 0, -X, -Y, -Z, -1,  yX,  yY,  yZ,  y]
        [X, Y, Z, 1,  0,  0,  0,  0, -xX, -xY, -xZ, -x]
    """
    img = np.asarray(img, dtype=np.float64).reshape(-1, 2)
    real = np.asarray(real, dtype=np.float64).reshape(-1, 3)
    if img.shape[0] != real.shape[0]:
        raise ValueError("img and real must have the same number of points")

    n = img.shape[0]
    Xh = np.concatenate([real, np.ones((n, 1), dtype=np.float64)], axis=1)
    x = img[:, 0:1]
    y = img[:, 1:2]
    zeros = np.zeros((n, 4), dtype=np.float64)

    A = np.empty((2 * n, 12), dtype=np.float64)
    A[0::2] = np.concatenate([zeros, -Xh, y * Xh], axis=1)
    A[1::2] = np.concatenate([Xh, zeros, -x * Xh], axis=1)
    return A


def estimate_camera_matrix(img: np.ndarray, real: np.ndarray) -> np.ndarray:
    """
    Closed-form camera estimate from >= 6 correspondences.

    Returns the (3,4) matrix with unit Frobenius norm spanning the (approximate)
    null space of the DLT system. Points should be normalized beforehand for a
    well-conditioned solve. A rank-deficient system (for example all points on
    one plane) does not raise; the result is then not unique.
    """
    img = np.asarray(img, dtype=np.float64).reshape(-1, 2)
    real = np.asarray(real, dtype=np.float64).reshape(-1, 3)
    if img.shape[0] < MIN_CORRESPONDENCES:
        raise DegenerateInputError(
            f"need at least {MIN_CORRESPONDENCES} correspondences, got {img.shape[0]}"
        )

    A = dlt_equations(img, real)
    _u, s, vt = np.linalg.svd(A, full_matrices=False)
    p = vt[-1]

    if s.size >= 2 and s[0] > 0.0:
        logger.debug(f"DLT singular values: smallest={s[-1]:.3e} second={s[-2]:.3e} ratio={s[-2] / s[0]:.3e}")

    P = p.reshape(3, 4)
    return P / np.linalg.norm(P)
