import numpy as np
import pytest

from projcalib.core.calibration_data import (
    CalibrationPoint,
    RealGridData,
    image_points_array,
    real_points_array,
    real_from_cells,
)


def _grid(rows: int = 5, columns: int = 3) -> RealGridData:
    return RealGridData(
        top_left=(0.0, 10.0, 100.0),
        top_right=(20.0, 10.0, 110.0),
        bot_left=(0.0, 0.0, 100.0),
        bot_right=(20.0, 0.0, 110.0),
        rows=rows,
        columns=columns,
    )


def test_real_from_cell_hits_corners_and_center():
    g = _grid()
    assert np.allclose(g.real_from_cell(0, 0), g.top_left)
    assert np.allclose(g.real_from_cell(0, 2), g.top_right)
    assert np.allclose(g.real_from_cell(4, 0), g.bot_left)
    assert np.allclose(g.real_from_cell(4, 2), g.bot_right)
    assert np.allclose(g.real_from_cell(2, 1), [10.0, 5.0, 105.0])


def test_real_from_cells_vectorized_matches_scalar():
    g = _grid()
    rows = np.array([0, 1, 3, 4])
    cols = np.array([2, 0, 1, 1])
    pts = real_from_cells(g.corners(), g.rows, g.columns, rows, cols)
    for i in range(rows.shape[0]):
        assert np.allclose(pts[i], g.real_from_cell(rows[i], cols[i]))


def test_grid_transformed_applies_homogeneous_transform():
    g = _grid()
    T = np.eye(4)
    T[:3, :3] *= 2.0
    T[:3, 3] = [1.0, -2.0, 3.0]
    g2 = g.transformed(T)
    assert np.allclose(g2.corners(), 2.0 * g.corners() + np.array([1.0, -2.0, 3.0]))
    assert g2.rows == g.rows and g2.columns == g.columns


def test_grid_requires_two_rows_and_columns():
    with pytest.raises(ValueError):
        _grid(rows=1)


def test_calibration_point_arrays():
    pts = [
        CalibrationPoint.from_arrays(np.array([1.0, 2.0]), np.array([3.0, 4.0, 5.0]), grid=0, row=1, col=2),
        CalibrationPoint(img=(6.0, 7.0), real=(8.0, 9.0, 10.0)),
    ]
    assert image_points_array(pts).shape == (2, 2)
    assert np.allclose(real_points_array(pts)[1], [8.0, 9.0, 10.0])
    assert pts[0].grid == 0 and pts[0].row == 1 and pts[0].col == 2
    moved = pts[0].with_img(np.array([0.5, 0.25]))
    assert moved.img == (0.5, 0.25)
    assert moved.real == pts[0].real
