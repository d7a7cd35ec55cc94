from __future__ import annotations

import numpy as np
import pytest

from projcalib.calibration.orchestrator import CalibrationResult, CameraCalibrator
from projcalib.config import CalibrationConfig
from projcalib.core.calibration_data import CalibrationPoint
from projcalib.core.camera import Camera
from projcalib.errors import DegenerateInputError
from projcalib.sim.synthetic import (
    add_grid_noise,
    add_point_noise,
    make_calibration_grids,
    make_calibration_points,
    make_test_camera,
)


def _scene(seed_noise: float = 0.0, seed: int = 0):
    cam = make_test_camera()
    grids = make_calibration_grids()
    points = make_calibration_points(cam, grids)
    if seed_noise > 0.0:
        points = add_point_noise(points, seed_noise, seed=seed)
    return cam, grids, points


def _matrix_close(A: np.ndarray, B: np.ndarray, tol: float) -> bool:
    a = A / np.linalg.norm(A)
    b = B / np.linalg.norm(B)
    return bool(np.max(np.abs(a - b)) < tol)


@pytest.mark.integration
@pytest.mark.parametrize("explicit", [False, True])
def test_noiseless_recovery(explicit: bool) -> None:
    cam, _grids, points = _scene()
    calib = CameraCalibrator(CalibrationConfig(use_explicit_parametrization=explicit))
    res = calib.calibrate(points)

    assert np.max(res.reprojection_errors) < 1e-6
    assert _matrix_close(res.camera.matrix, cam.matrix, 1e-7)
    assert np.allclose(res.camera.K, cam.K, atol=1e-5)
    assert np.allclose(res.camera.C, cam.C, atol=1e-5)
    assert res.camera.K[2, 2] == pytest.approx(1.0)
    assert res.minimum_residual <= res.base_residual


@pytest.mark.integration
def test_noiseless_recovery_with_grids_and_raw_refinement() -> None:
    cam, grids, points = _scene()
    calib = CameraCalibrator(CalibrationConfig(normalize_iterative=False))
    res = calib.calibrate(points, grids)
    assert np.max(res.reprojection_errors) < 1e-6
    assert _matrix_close(res.camera.matrix, cam.matrix, 1e-7)
    assert res.grids is not None and len(res.grids) == 2
    for g_in, g_out in zip(grids, res.grids):
        assert np.allclose(g_out.corners(), g_in.corners(), atol=1e-6)


@pytest.mark.integration
def test_linear_only_skips_refinement() -> None:
    cam, _grids, points = _scene(seed_noise=0.3)
    res = CameraCalibrator(CalibrationConfig(linear_only=True)).calibrate(points)
    assert res.iterations == 0
    assert res.camera.fx == pytest.approx(cam.fx, rel=0.05)
    assert res.skew_residuals is None


@pytest.mark.integration
def test_refinement_with_noise() -> None:
    cam, _grids, points = _scene(seed_noise=0.5, seed=4)
    history: list[float] = []
    calib = CameraCalibrator(callback=lambda engine: history.append(engine.minimum_residual))
    res = calib.calibrate(points)

    assert res.iterations == len(history) > 0
    assert np.all(np.diff(history) <= 0.0)
    assert res.minimum_residual <= res.base_residual
    assert res.camera.fx == pytest.approx(cam.fx, rel=0.02)
    assert res.camera.fy == pytest.approx(cam.fy, rel=0.02)
    assert np.allclose(res.camera.C, cam.C, atol=10.0)
    assert 0.2 < res.rms_error < 1.0
    assert res.camera.K[0, 0] > 0.0 and res.camera.K[1, 1] > 0.0


@pytest.mark.integration
def test_grid_refinement_moves_noisy_corners_towards_truth() -> None:
    cam, grids, _points = _scene()
    noisy_grids = add_grid_noise(grids, 3.0, seed=1)
    points = [
        p.with_real(noisy_grids[p.grid].real_from_cell(p.row, p.col))
        for p in make_calibration_points(cam, grids)
    ]

    res = CameraCalibrator(CalibrationConfig(max_iterations=200)).calibrate(points, noisy_grids)
    assert res.grids is not None

    before = np.concatenate([g.corners() - t.corners() for g, t in zip(noisy_grids, grids)])
    after = np.concatenate([g.corners() - t.corners() for g, t in zip(res.grids, grids)])
    assert np.linalg.norm(after) < np.linalg.norm(before)
    assert res.rms_error < 3.0


@pytest.mark.integration
def test_outlier_elimination_removes_exactly_the_outlier() -> None:
    _cam, _grids, points = _scene(seed_noise=0.2, seed=2)
    bad = points[17]
    points[17] = bad.with_img(np.asarray(bad.img) + np.array([30.0, -25.0]))

    cfg = CalibrationConfig(eliminate_outliers=True, outlier_coefficient=8.0)
    res = CameraCalibrator(cfg).calibrate(points)

    assert res.eliminated_counts == [1, 0]
    assert res.outliers == [points[17]]
    assert len(res.points) == len(points) - 1
    assert res.reprojection_errors.shape == (len(points) - 1,)
    assert np.max(res.reprojection_errors) < 2.0


@pytest.mark.integration
def test_outlier_elimination_keeps_minimum_point_count() -> None:
    cam = make_test_camera()
    grids = make_calibration_grids(rows=2, columns=2)
    points = add_point_noise(make_calibration_points(cam, grids), 1.0, seed=5)
    assert len(points) == 8

    cfg = CalibrationConfig(eliminate_outliers=True, outlier_coefficient=0.1, max_outlier_rounds=10)
    res = CameraCalibrator(cfg).calibrate(points)
    assert len(res.points) >= 6
    assert sum(res.eliminated_counts) == len(res.outliers)


@pytest.mark.integration
def test_outlier_elimination_keeps_every_point_of_a_noiseless_scene() -> None:
    _cam, _grids, points = _scene()
    res = CameraCalibrator(CalibrationConfig(eliminate_outliers=True)).calibrate(points)

    assert res.eliminated_counts == [0]
    assert res.outliers == []
    assert len(res.points) == len(points)


@pytest.mark.integration
def test_outlier_elimination_keeps_gaussian_inliers_with_wide_threshold() -> None:
    _cam, _grids, points = _scene(seed_noise=0.5, seed=4)
    cfg = CalibrationConfig(eliminate_outliers=True, outlier_coefficient=4.0)
    res = CameraCalibrator(cfg).calibrate(points)

    assert res.eliminated_counts == [0]
    assert len(res.points) == len(points)


@pytest.mark.integration
def test_outlier_counts_strictly_decrease() -> None:
    _cam, _grids, points = _scene(seed_noise=0.5, seed=4)
    cfg = CalibrationConfig(eliminate_outliers=True, outlier_coefficient=1.5, max_outlier_rounds=10)
    res = CameraCalibrator(cfg).calibrate(points)

    counts = res.eliminated_counts
    assert counts
    assert all(b < a for a, b in zip(counts, counts[1:]))
    assert counts[0] < len(points) // 3
    assert sum(counts) == len(res.outliers)
    assert len(res.points) + len(res.outliers) == len(points)


def test_outlier_round_not_applied_when_count_does_not_decrease(monkeypatch) -> None:
    _cam, _grids, points = _scene()
    points = points[:10]
    rounds = iter(
        [
            np.r_[np.ones(8), 20.0, 20.0],
            np.r_[np.ones(5), 10.0, 10.0, 10.0],
        ]
    )

    def fit(self, pts, grids):
        return CalibrationResult(
            camera=Camera(),
            linear_camera=Camera(),
            base_residual=0.0,
            minimum_residual=0.0,
            iterations=0,
            skew_residuals=None,
            points=pts,
            reprojection_errors=next(rounds),
        )

    monkeypatch.setattr(CameraCalibrator, "_calibrate_once", fit)
    cfg = CalibrationConfig(eliminate_outliers=True, outlier_coefficient=1.5, max_outlier_rounds=5)
    res = CameraCalibrator(cfg).calibrate(points)

    assert res.eliminated_counts == [2]
    assert res.outliers == points[8:]
    assert res.points == points[:8]


@pytest.mark.integration
def test_minimize_skew_pulls_skew_towards_zero() -> None:
    _cam, _grids, points = _scene(seed_noise=1.0, seed=7)
    plain = CameraCalibrator().calibrate(points)
    res = CameraCalibrator(CalibrationConfig(minimize_skew=True)).calibrate(points)

    assert res.skew_residuals is not None
    assert {"reprojection", "skew", "skew_value", "skew_weight"} <= set(res.skew_residuals)
    assert abs(res.camera.skew) < abs(plain.camera.skew)
    assert res.iterations > plain.iterations


@pytest.mark.integration
def test_request_termination_stops_after_current_iteration() -> None:
    _cam, _grids, points = _scene(seed_noise=0.5)
    calib = CameraCalibrator()
    calib.callback = lambda engine: calib.request_termination()
    res = calib.calibrate(points)
    assert res.iterations == 1


def test_too_few_points_raise() -> None:
    _cam, _grids, points = _scene()
    with pytest.raises(DegenerateInputError):
        CameraCalibrator().calibrate(points[:5])


def test_unknown_grid_reference_raises() -> None:
    _cam, grids, points = _scene()
    points = list(points)
    points[0] = CalibrationPoint(img=points[0].img, real=points[0].real, grid=4, row=0, col=0)
    with pytest.raises(DegenerateInputError):
        CameraCalibrator().calibrate(points, grids)
