from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.linalg import rq
from scipy.spatial.transform import Rotation


@dataclass(eq=False)
class Camera:
    """
    Projective camera P = K R [I | -C].

    K is upper triangular with K[2,2] = 1 and positive focal lengths, R is a
    proper rotation and C is the camera center in real coordinates. `matrix` is
    the 3x4 projection; `K`, `R`, `C` are filled by `decompose()`.
    """

    matrix: np.ndarray = field(default_factory=lambda: np.zeros((3, 4), dtype=np.float64))
    K: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    R: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float64))
    C: np.ndarray = field(default_factory=lambda: np.zeros((3,), dtype=np.float64))
    image_width: int = 0
    image_height: int = 0

    @property
    def is_calibrated(self) -> bool:
        return bool(abs(float(self.matrix[0, 0])) > 1e-12)

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def skew(self) -> float:
        return float(self.K[0, 1])

    @property
    def principal_point(self) -> tuple[float, float]:
        return float(self.K[0, 2]), float(self.K[1, 2])

    @classmethod
    def from_matrix(cls, matrix: np.ndarray) -> "Camera":
        cam = cls(matrix=np.asarray(matrix, dtype=np.float64).reshape(3, 4).copy())
        cam.decompose()
        return cam

    @classmethod
    def from_decomposition(cls, K: np.ndarray, R: np.ndarray, C: np.ndarray) -> "Camera":
        K = np.asarray(K, dtype=np.float64).reshape(3, 3)
        R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        C = np.asarray(C, dtype=np.float64).reshape(3)
        return cls(matrix=compose_camera_matrix(K, R, C), K=K.copy(), R=R.copy(), C=C.copy())

    def decompose(self) -> None:
        """Split `matrix` into K, R, C in place; `matrix` is rescaled so K[2,2] = 1."""
        self.matrix, self.K, self.R, self.C = decompose_camera_matrix(self.matrix)

    def normalized(self, norm_image: np.ndarray, norm_real: np.ndarray) -> "Camera":
        return Camera.from_matrix(normalized_camera_matrix(self.matrix, norm_image, norm_real))

    def denormalized(self, norm_image: np.ndarray, norm_real: np.ndarray) -> "Camera":
        cam = Camera.from_matrix(denormalized_camera_matrix(self.matrix, norm_image, norm_real))
        cam.image_width = self.image_width
        cam.image_height = self.image_height
        return cam

    def project(self, real: np.ndarray) -> np.ndarray:
        return project_points(self.matrix, real)

    def reprojection_errors(self, img: np.ndarray, real: np.ndarray) -> np.ndarray:
        img = np.asarray(img, dtype=np.float64).reshape(-1, 2)
        return np.linalg.norm(self.project(real) - img, axis=1)

    def euler_angles(self) -> np.ndarray:
        return rotation_to_euler(self.R)

    def copy(self) -> "Camera":
        return Camera(
            matrix=self.matrix.copy(),
            K=self.K.copy(),
            R=self.R.copy(),
            C=self.C.copy(),
            image_width=self.image_width,
            image_height=self.image_height,
        )


def project_points(P: np.ndarray, real: np.ndarray) -> np.ndarray:
    """Project (N,3) real points through a (3,4) camera matrix, returns (N,2)."""
    P = np.asarray(P, dtype=np.float64).reshape(3, 4)
    real = np.asarray(real, dtype=np.float64).reshape(-1, 3)
    x = real @ P[:, :3].T + P[:, 3][None, :]
    return x[:, :2] / x[:, 2:3]


def compose_camera_matrix(K: np.ndarray, R: np.ndarray, C: np.ndarray) -> np.ndarray:
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    C = np.asarray(C, dtype=np.float64).reshape(3)
    Rt = np.concatenate([R, (-R @ C).reshape(3, 1)], axis=1)
    return np.asarray(K, dtype=np.float64).reshape(3, 3) @ Rt


def decompose_camera_matrix(P: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    RQ decomposition of a camera matrix.

    Returns (P_scaled, K, R, C) where P_scaled = K R [I | -C] is `P` rescaled
    (possibly with a sign change) so that K[2,2] = 1. The diagonal of K is made
    positive by flipping columns of K together with the matching rows of R,
    which leaves K R unchanged. If R then is a reflection the whole matrix is
    negated, which describes the same projective camera.
    """
    P = np.asarray(P, dtype=np.float64).reshape(3, 4)
    M = P[:, :3]

    K, R = rq(M)
    signs = np.sign(np.diag(K))
    signs[signs == 0.0] = 1.0
    D = np.diag(signs)
    K = K @ D
    R = D @ R

    scale = float(K[2, 2])
    K = K / scale
    if np.linalg.det(R) < 0.0:
        R = -R
        scale = -scale

    C = np.linalg.solve(M, -P[:, 3])
    return P / scale, K, R, C


def normalized_camera_matrix(P: np.ndarray, norm_image: np.ndarray, norm_real: np.ndarray) -> np.ndarray:
    """Camera acting on normalized points: T_img P T_real^-1."""
    return np.asarray(norm_image, dtype=np.float64) @ np.asarray(P, dtype=np.float64) @ np.linalg.inv(norm_real)


def denormalized_camera_matrix(P: np.ndarray, norm_image: np.ndarray, norm_real: np.ndarray) -> np.ndarray:
    """Inverse of `normalized_camera_matrix`: T_img^-1 P T_real."""
    return np.linalg.inv(norm_image) @ np.asarray(P, dtype=np.float64) @ np.asarray(norm_real, dtype=np.float64)


def euler_to_rotation(euler: np.ndarray) -> np.ndarray:
    """
    Intrinsic XYZ Euler angles (radians) -> rotation matrix R = Rx Ry Rz.
    """
    euler = np.asarray(euler, dtype=np.float64).reshape(3)
    return Rotation.from_euler("XYZ", euler).as_matrix()


def rotation_to_euler(R: np.ndarray) -> np.ndarray:
    R = np.asarray(R, dtype=np.float64).reshape(3, 3)
    return Rotation.from_matrix(R).as_euler("XYZ")
