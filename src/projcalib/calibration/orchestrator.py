from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from projcalib.calibration.problems import (
    CameraGridProblem,
    CameraParametrization,
    ZeroSkewProblem,
    parameters_to_camera,
    point_cells,
)
from projcalib.config import CalibrationConfig
from projcalib.core.calibration_data import (
    CalibrationPoint,
    RealGridData,
    image_points_array,
    real_points_array,
)
from projcalib.core.camera import Camera, denormalized_camera_matrix
from projcalib.core.linear_estimation import MIN_CORRESPONDENCES, estimate_camera_matrix
from projcalib.core.normalization import (
    denormalize_points,
    normalization_matrix_2d,
    normalization_matrix_3d,
    normalization_scale,
    normalize_points,
)
from projcalib.errors import DegenerateInputError
from projcalib.optim.engine import LeastSquaresProblem, MinimizationEngine
from projcalib.optim.levenberg_marquardt import LevenbergMarquardtSolver

logger = logging.getLogger(__name__)


@dataclass
class CalibrationResult:
    """
    Outcome of `CameraCalibrator.calibrate`.

    Residuals are the ones minimized by the main refinement pass, in the
    frame refinement ran in (normalized by default). `reprojection_errors`
    are per inlier in input image units, measured against the refined grids
    when grids were refined.
    """

    camera: Camera
    linear_camera: Camera
    base_residual: float
    minimum_residual: float
    iterations: int
    skew_residuals: dict[str, float] | None
    points: list[CalibrationPoint]
    outliers: list[CalibrationPoint] = field(default_factory=list)
    eliminated_counts: list[int] = field(default_factory=list)
    grids: list[RealGridData] | None = None
    reprojection_errors: np.ndarray = field(default_factory=lambda: np.zeros((0,), dtype=np.float64))
    rms_error: float = float("nan")


class CameraCalibrator:
    """
    Camera matrix estimation from 2D<->3D correspondences:
    normalization, DLT, Levenberg-Marquardt refinement (optionally with grid
    corners as unknowns), optional zero-skew pass, outlier elimination, then
    denormalization and decomposition into K, R, C.

    Not reentrant: one instance runs one calibration at a time.
    """

    def __init__(
        self,
        config: CalibrationConfig | None = None,
        *,
        callback: Callable[[MinimizationEngine], None] | None = None,
    ) -> None:
        self.config = config if config is not None else CalibrationConfig()
        self.callback = callback
        self._terminate = False
        self._engine: MinimizationEngine | None = None

    @property
    def parametrization(self) -> CameraParametrization:
        if self.config.use_explicit_parametrization:
            return CameraParametrization.EXPLICIT
        return CameraParametrization.MATRIX

    def request_termination(self) -> None:
        """Ask the running (and any further) minimization to stop between iterations."""
        self._terminate = True
        if self._engine is not None:
            self._engine.request_termination()

    def calibrate(
        self,
        points: list[CalibrationPoint],
        grids: list[RealGridData] | None = None,
    ) -> CalibrationResult:
        cfg = self.config
        self._terminate = False
        inliers = list(points)
        _check_points(inliers, grids)
        logger.info(
            f"calibrating camera from {len(inliers)} points"
            f"{'' if not grids else f' and {len(grids)} grids'}"
        )

        result = self._calibrate_once(inliers, grids)
        outliers: list[CalibrationPoint] = []
        counts: list[int] = []

        if cfg.eliminate_outliers:
            for round_idx in range(int(cfg.max_outlier_rounds)):
                if self._terminate:
                    break
                errors = result.reprojection_errors
                mean_error = float(np.mean(errors))
                if mean_error <= _error_floor(inliers):
                    counts.append(0)
                    logger.info(
                        f"outlier round {round_idx + 1}: mean error {mean_error:.3g} is at rounding level, "
                        "no points removed"
                    )
                    break
                threshold = float(cfg.outlier_coefficient) * mean_error
                bad = errors > threshold
                n_bad = int(np.sum(bad))
                if n_bad == 0:
                    counts.append(0)
                    logger.info(f"outlier round {round_idx + 1}: no points removed")
                    break
                if counts and n_bad >= counts[-1]:
                    logger.warning(
                        f"outlier round {round_idx + 1}: {n_bad} points above threshold after removing "
                        f"{counts[-1]} in the previous round; stopping elimination"
                    )
                    break
                if len(inliers) - n_bad < MIN_CORRESPONDENCES:
                    logger.warning(
                        f"outlier round {round_idx + 1}: removing {n_bad} points would leave fewer than "
                        f"{MIN_CORRESPONDENCES}; stopping elimination"
                    )
                    break

                outliers.extend(p for p, b in zip(inliers, bad) if b)
                inliers = [p for p, b in zip(inliers, bad) if not b]
                counts.append(n_bad)
                logger.info(
                    f"outlier round {round_idx + 1}: removed {n_bad} points "
                    f"(threshold {threshold:.4g}), {len(inliers)} left"
                )
                result = self._calibrate_once(inliers, grids)

        result.points = inliers
        result.outliers = outliers
        result.eliminated_counts = counts
        logger.info(
            f"calibration done: residual {result.base_residual:.6e} -> {result.minimum_residual:.6e} "
            f"in {result.iterations} iterations, rms reprojection error {result.rms_error:.4g}"
        )
        return result

    def _make_engine(
        self,
        problem: LeastSquaresProblem,
        parameters: np.ndarray,
        measurements: np.ndarray,
        inverse_variances: np.ndarray | None,
    ) -> MinimizationEngine:
        cfg = self.config
        engine = MinimizationEngine(
            problem,
            parameters,
            measurements,
            step=LevenbergMarquardtSolver(numerical_step=cfg.numerical_derivative_step),
            max_iterations=cfg.max_iterations,
            convergence_residual=cfg.convergence_residual,
            inverse_variances=inverse_variances,
            callback=self.callback,
        )
        if self._terminate:
            engine.request_termination()
        self._engine = engine
        return engine

    def _calibrate_once(
        self,
        points: list[CalibrationPoint],
        grids: list[RealGridData] | None,
    ) -> CalibrationResult:
        cfg = self.config
        param = self.parametrization
        img = image_points_array(points)
        real = real_points_array(points)
        if img.shape[0] < MIN_CORRESPONDENCES:
            raise DegenerateInputError(
                f"need at least {MIN_CORRESPONDENCES} correspondences, got {img.shape[0]}"
            )

        if cfg.normalize_linear:
            T_img = normalization_matrix_2d(img)
            T_real = normalization_matrix_3d(real)
        else:
            T_img = np.eye(3, dtype=np.float64)
            T_real = np.eye(4, dtype=np.float64)

        P_lin_n = estimate_camera_matrix(normalize_points(img, T_img), normalize_points(real, T_real))
        P_lin = denormalized_camera_matrix(P_lin_n, T_img, T_real)
        linear_camera = Camera.from_matrix(P_lin)

        if cfg.linear_only:
            errors = linear_camera.reprojection_errors(img, real)
            r = float(errors @ errors)
            return CalibrationResult(
                camera=linear_camera,
                linear_camera=linear_camera.copy(),
                base_residual=r,
                minimum_residual=r,
                iterations=0,
                skew_residuals=None,
                points=points,
                grids=list(grids) if grids else None,
                reprojection_errors=errors,
                rms_error=_rms(errors),
            )

        if cfg.normalize_linear and cfg.normalize_iterative:
            N_img, N_real, P0 = T_img, T_real, P_lin_n
        else:
            N_img, N_real = np.eye(3, dtype=np.float64), np.eye(4, dtype=np.float64)
            P0 = linear_camera.matrix

        refine = bool(grids) and cfg.refine_grids
        problem = CameraGridProblem(
            normalize_points(img, N_img),
            normalize_points(real, N_real),
            parametrization=param,
            grids=[g.transformed(N_real) for g in grids] if refine else None,
            cells=point_cells(points),
        )

        s_img = normalization_scale(N_img)
        s_real = normalization_scale(N_real)
        image_variances = tuple(v * s_img**2 for v in cfg.image_variances())
        real_variances = tuple(v * s_real**2 for v in cfg.real_variances())
        weights = problem.inverse_variances(image_variances, real_variances) if cfg.use_covariance_matrix else None

        engine = self._make_engine(problem, problem.initial_parameters(P0), problem.measurements(), weights)
        best = engine.process()
        iterations = engine.current_iteration

        n_cam = problem.n_camera_parameters
        skew_residuals = None
        if cfg.minimize_skew:
            skew_problem = ZeroSkewProblem(
                problem.image_points,
                problem.real_points(best),
                parametrization=param,
            )
            skew_weights = skew_problem.inverse_variances(image_variances) if cfg.use_covariance_matrix else None
            skew_engine = self._make_engine(
                skew_problem, best[:n_cam], skew_problem.measurements(), skew_weights
            )
            cam_best = skew_engine.process()
            best = np.concatenate([cam_best, best[n_cam:]])
            iterations += skew_engine.current_iteration
            skew_residuals = skew_problem.sub_residuals(cam_best, skew_weights)
            skew_residuals["base"] = float(skew_engine.base_residual)
            skew_residuals["minimum"] = float(skew_engine.minimum_residual)
            logger.info(
                f"zero-skew pass: skew {skew_residuals['skew_value']:.4g}, "
                f"reprojection residual {skew_residuals['reprojection']:.6e}"
            )
        self._engine = None

        P = denormalized_camera_matrix(parameters_to_camera(best[:n_cam], param), N_img, N_real)
        camera = Camera.from_matrix(P)

        refined_grids = None
        if refine:
            inv_real = np.linalg.inv(N_real)
            refined_grids = [g.transformed(inv_real) for g in problem.refined_grids(best)]
        elif grids:
            refined_grids = list(grids)

        real_fit = denormalize_points(problem.real_points(best), N_real)
        errors = camera.reprojection_errors(img, real_fit)

        return CalibrationResult(
            camera=camera,
            linear_camera=linear_camera,
            base_residual=float(engine.base_residual),
            minimum_residual=float(engine.minimum_residual),
            iterations=int(iterations),
            skew_residuals=skew_residuals,
            points=points,
            grids=refined_grids,
            reprojection_errors=errors,
            rms_error=_rms(errors),
        )


def _rms(errors: np.ndarray) -> float:
    if errors.size == 0:
        return float("nan")
    return float(np.sqrt(np.mean(errors**2)))


def _error_floor(points: list[CalibrationPoint]) -> float:
    # Reprojection errors below this are rounding noise of the image coordinates.
    scale = max(1.0, float(np.max(np.abs(image_points_array(points)))))
    return float(np.sqrt(np.finfo(np.float64).eps)) * scale


def _check_points(points: list[CalibrationPoint], grids: list[RealGridData] | None) -> None:
    if len(points) < MIN_CORRESPONDENCES:
        raise DegenerateInputError(
            f"need at least {MIN_CORRESPONDENCES} correspondences, got {len(points)}"
        )
    if grids:
        n_grids = len(grids)
        for p in points:
            if p.grid is not None and not 0 <= int(p.grid) < n_grids:
                raise DegenerateInputError(f"point references unknown grid {p.grid}")
