from __future__ import annotations

from dataclasses import dataclass, replace

import numpy as np


@dataclass(frozen=True)
class CalibrationPoint:
    """
    One 2D<->3D correspondence.

    - `img`: observed image coordinate (x, y) in pixels
    - `real`: real-world coordinate (X, Y, Z)
    - `grid`, `row`, `col`: optional cell of a calibration grid the point lies on
    """

    img: tuple[float, float]
    real: tuple[float, float, float]
    grid: int | None = None
    row: int = 0
    col: int = 0

    @classmethod
    def from_arrays(
        cls,
        img: np.ndarray,
        real: np.ndarray,
        grid: int | None = None,
        row: int = 0,
        col: int = 0,
    ) -> "CalibrationPoint":
        img = np.asarray(img, dtype=np.float64).reshape(2)
        real = np.asarray(real, dtype=np.float64).reshape(3)
        return cls(
            img=(float(img[0]), float(img[1])),
            real=(float(real[0]), float(real[1]), float(real[2])),
            grid=None if grid is None else int(grid),
            row=int(row),
            col=int(col),
        )

    def with_img(self, img: np.ndarray) -> "CalibrationPoint":
        img = np.asarray(img, dtype=np.float64).reshape(2)
        return replace(self, img=(float(img[0]), float(img[1])))

    def with_real(self, real: np.ndarray) -> "CalibrationPoint":
        real = np.asarray(real, dtype=np.float64).reshape(3)
        return replace(self, real=(float(real[0]), float(real[1]), float(real[2])))


@dataclass(frozen=True)
class RealGridData:
    """
    Four 3D corners of a calibration grid with `rows` x `columns` cells.

    Cell (0, 0) is the top-left corner and cell (rows-1, columns-1) the
    bottom-right one. Cells in between are bilinearly interpolated, so the grid
    does not have to be planar.
    """

    top_left: tuple[float, float, float]
    top_right: tuple[float, float, float]
    bot_left: tuple[float, float, float]
    bot_right: tuple[float, float, float]
    rows: int
    columns: int

    def __post_init__(self) -> None:
        if int(self.rows) < 2 or int(self.columns) < 2:
            raise ValueError("grid must have at least 2 rows and 2 columns")

    def corners(self) -> np.ndarray:
        """Corners as a (4,3) array in TL, TR, BL, BR order."""
        return np.array([self.top_left, self.top_right, self.bot_left, self.bot_right], dtype=np.float64)

    def with_corners(self, corners: np.ndarray) -> "RealGridData":
        c = np.asarray(corners, dtype=np.float64).reshape(4, 3)
        return replace(
            self,
            top_left=tuple(float(v) for v in c[0]),
            top_right=tuple(float(v) for v in c[1]),
            bot_left=tuple(float(v) for v in c[2]),
            bot_right=tuple(float(v) for v in c[3]),
        )

    def transformed(self, T: np.ndarray) -> "RealGridData":
        """Apply a (4,4) homogeneous transform to the corners."""
        T = np.asarray(T, dtype=np.float64).reshape(4, 4)
        c = self.corners()
        ch = np.concatenate([c, np.ones((4, 1), dtype=np.float64)], axis=1) @ T.T
        return self.with_corners(ch[:, :3] / ch[:, 3:4])

    def real_from_cell(self, row: float, col: float) -> np.ndarray:
        return real_from_cells(self.corners(), self.rows, self.columns, np.asarray([row]), np.asarray([col]))[0]


def real_from_cells(
    corners: np.ndarray,
    rows: int,
    columns: int,
    row: np.ndarray,
    col: np.ndarray,
) -> np.ndarray:
    """
    Vectorized cell -> real mapping for corners given as a (4,3) array.
    Returns (N,3).
    """
    c = np.asarray(corners, dtype=np.float64).reshape(4, 3)
    v = np.asarray(row, dtype=np.float64).reshape(-1, 1) / float(int(rows) - 1)
    u = np.asarray(col, dtype=np.float64).reshape(-1, 1) / float(int(columns) - 1)
    return (
        (1.0 - u) * (1.0 - v) * c[0][None, :]
        + u * (1.0 - v) * c[1][None, :]
        + (1.0 - u) * v * c[2][None, :]
        + u * v * c[3][None, :]
    )


def image_points_array(points: list[CalibrationPoint]) -> np.ndarray:
    return np.asarray([p.img for p in points], dtype=np.float64).reshape(-1, 2)


def real_points_array(points: list[CalibrationPoint]) -> np.ndarray:
    return np.asarray([p.real for p in points], dtype=np.float64).reshape(-1, 3)
