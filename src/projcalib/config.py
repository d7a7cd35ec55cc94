from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any


class ConfigValidationError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Options of one calibration run.

    Variances are per measurement axis, in input units (pixels for the image
    side, grid units for the real side). They only matter when
    `use_covariance_matrix` is enabled.

    `normalize_iterative` keeps the refinement in the normalized frame of the
    linear estimate; it has no effect when `normalize_linear` is off.
    """

    max_iterations: int = 100
    convergence_residual: float = 0.0
    use_covariance_matrix: bool = True
    image_variance_x: float = 0.25
    image_variance_y: float = 0.25
    real_variance_x: float = 1.0
    real_variance_y: float = 1.0
    real_variance_z: float = 1.0
    minimize_skew: bool = False
    use_explicit_parametrization: bool = False
    eliminate_outliers: bool = False
    outlier_coefficient: float = 1.5
    max_outlier_rounds: int = 5
    normalize_linear: bool = True
    normalize_iterative: bool = True
    linear_only: bool = False
    refine_grids: bool = True
    numerical_derivative_step: float = 1e-6

    def __post_init__(self) -> None:
        _require(int(self.max_iterations) >= 1, "max_iterations must be >= 1")
        _require(float(self.convergence_residual) >= 0.0, "convergence_residual must be >= 0")
        for name in (
            "image_variance_x",
            "image_variance_y",
            "real_variance_x",
            "real_variance_y",
            "real_variance_z",
        ):
            _require(float(getattr(self, name)) > 0.0, f"{name} must be > 0")
        _require(float(self.outlier_coefficient) > 0.0, "outlier_coefficient must be > 0")
        _require(int(self.max_outlier_rounds) >= 1, "max_outlier_rounds must be >= 1")
        step = float(self.numerical_derivative_step)
        _require(0.0 < step < 1.0, "numerical_derivative_step must be in (0, 1)")

    def image_variances(self) -> tuple[float, float]:
        return float(self.image_variance_x), float(self.image_variance_y)

    def real_variances(self) -> tuple[float, float, float]:
        return float(self.real_variance_x), float(self.real_variance_y), float(self.real_variance_z)


# Option names as exposed to host applications.
_ALIASES = {
    "MaxIterations": "max_iterations",
    "ConvergenceResidual": "convergence_residual",
    "UseCovarianceMatrix": "use_covariance_matrix",
    "ImageMeasurementVarianceX": "image_variance_x",
    "ImageMeasurementVarianceY": "image_variance_y",
    "RealMeasurementVarianceX": "real_variance_x",
    "RealMeasurementVarianceY": "real_variance_y",
    "RealMeasurementVarianceZ": "real_variance_z",
    "MinimalizeSkew": "minimize_skew",
    "UseExplicitParametrization": "use_explicit_parametrization",
    "EliminateOutliers": "eliminate_outliers",
    "OutlierCoefficient": "outlier_coefficient",
    "MaxOutlierRounds": "max_outlier_rounds",
    "NormalizeLinear": "normalize_linear",
    "NormalizeIterative": "normalize_iterative",
    "LinearOnly": "linear_only",
    "RefineGrids": "refine_grids",
    "NumericalDerivativeStep": "numerical_derivative_step",
}

_BOOL_FIELDS = {
    "use_covariance_matrix",
    "minimize_skew",
    "use_explicit_parametrization",
    "eliminate_outliers",
    "normalize_linear",
    "normalize_iterative",
    "linear_only",
    "refine_grids",
}
_INT_FIELDS = {"max_iterations", "max_outlier_rounds"}


def load_calibration_config(path: Path) -> CalibrationConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_calibration_config(data)


def parse_calibration_config(data: dict[str, Any]) -> CalibrationConfig:
    _require(isinstance(data, dict), "calibration config must be a mapping")
    known = {f.name for f in fields(CalibrationConfig)}

    values: dict[str, Any] = {}
    for key, raw in data.items():
        name = _ALIASES.get(str(key), str(key))
        _require(name in known, f"unknown calibration option: {key}")
        _require(name not in values, f"option given twice: {name}")
        if name in _BOOL_FIELDS:
            _require(isinstance(raw, bool), f"{key} must be a boolean")
            values[name] = raw
        elif name in _INT_FIELDS:
            _require(isinstance(raw, int) and not isinstance(raw, bool), f"{key} must be an integer")
            values[name] = int(raw)
        else:
            _require(
                isinstance(raw, (int, float)) and not isinstance(raw, bool),
                f"{key} must be a number",
            )
            values[name] = float(raw)

    return CalibrationConfig(**values)
