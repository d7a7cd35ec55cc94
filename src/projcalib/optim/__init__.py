from __future__ import annotations

from projcalib.optim.engine import EnginePhase, LeastSquaresProblem, MinimizationEngine
from projcalib.optim.levenberg_marquardt import (
    DampingMethod,
    LevenbergMarquardtSolver,
    LMWorkspace,
    numerical_jacobian,
    svd_least_squares,
    update_damping,
)

__all__ = [
    "DampingMethod",
    "EnginePhase",
    "LMWorkspace",
    "LeastSquaresProblem",
    "LevenbergMarquardtSolver",
    "MinimizationEngine",
    "numerical_jacobian",
    "svd_least_squares",
    "update_damping",
]
