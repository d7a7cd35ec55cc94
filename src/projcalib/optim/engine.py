"""
Generic driver for problems of the form: find P minimizing ||f(P) - X||^2.

The residual is the plain squared norm of e = f(P) - X, or the Mahalanobis
norm e^T diag(w) e when a vector w of inverse measurement variances is given.
How the correction of P is computed each iteration is delegated to a step
strategy (`LevenbergMarquardtSolver` by default).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable, Protocol

import numpy as np

logger = logging.getLogger(__name__)


class LeastSquaresProblem(ABC):
    """
    Mapping function (and optionally its Jacobian) of one minimization problem.
    """

    @abstractmethod
    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        """Return f(P) with the same length as the measurement vector."""

    def compute_error(self, params: np.ndarray, measurements: np.ndarray) -> np.ndarray:
        return self.compute_mapping(params) - measurements

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray | None:
        """
        Analytic Jacobian d f / d P with shape (len(X), len(P)).

        Returning None makes the solver differentiate numerically.
        """
        return None

    def on_iteration_start(self, engine: "MinimizationEngine") -> None:
        pass


class StepStrategy(Protocol):
    def init(self, engine: "MinimizationEngine") -> None: ...

    def compute_delta(self, engine: "MinimizationEngine") -> np.ndarray: ...

    def update(
        self,
        engine: "MinimizationEngine",
        new_residual: float,
        best_before: float,
        last_residual: float,
    ) -> None: ...


class EnginePhase(Enum):
    CREATED = "created"
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    TERMINATED = "terminated"


class MinimizationEngine:
    def __init__(
        self,
        problem: LeastSquaresProblem,
        parameters: np.ndarray,
        measurements: np.ndarray,
        *,
        step: StepStrategy | None = None,
        max_iterations: int = 100,
        convergence_residual: float = 0.0,
        inverse_variances: np.ndarray | None = None,
        callback: Callable[["MinimizationEngine"], None] | None = None,
    ) -> None:
        if step is None:
            from projcalib.optim.levenberg_marquardt import LevenbergMarquardtSolver

            step = LevenbergMarquardtSolver()

        self.problem = problem
        self.parameters = np.asarray(parameters, dtype=np.float64).reshape(-1).copy()
        self.measurements = np.asarray(measurements, dtype=np.float64).reshape(-1).copy()
        self.step = step
        self.max_iterations = int(max_iterations)
        self.convergence_residual = float(convergence_residual)
        self.callback = callback

        if inverse_variances is not None:
            w = np.asarray(inverse_variances, dtype=np.float64).reshape(-1)
            if w.shape[0] != self.measurements.shape[0]:
                raise ValueError(
                    f"inverse_variances has {w.shape[0]} entries, expected {self.measurements.shape[0]}"
                )
            if np.any(w < 0.0) or not np.all(np.isfinite(w)):
                raise ValueError("inverse_variances must be finite and non-negative")
            self.inverse_variances: np.ndarray | None = w.copy()
        else:
            self.inverse_variances = None

        self.phase = EnginePhase.CREATED
        self.terminate = False
        self.results = self.parameters.copy()
        self.best_results = self.parameters.copy()
        self.error = np.zeros_like(self.measurements)
        self.base_residual = float("nan")
        self.minimum_residual = float("nan")
        self.current_residual = float("nan")
        self.last_residual = float("nan")
        self.current_iteration = 0
        self.residual_history: list[float] = []
        self._exhausted = False

    @property
    def n_parameters(self) -> int:
        return int(self.parameters.shape[0])

    @property
    def n_measurements(self) -> int:
        return int(self.measurements.shape[0])

    @property
    def use_covariance(self) -> bool:
        return self.inverse_variances is not None

    def request_termination(self) -> None:
        """Stop after the iteration in progress (cooperative cancellation)."""
        self.terminate = True

    def exhaust_iterations(self) -> None:
        """Treat max_iterations as reached; the loop ends after this iteration."""
        self._exhausted = True

    def compute_error(self, params: np.ndarray) -> np.ndarray:
        e = np.asarray(self.problem.compute_error(params, self.measurements), dtype=np.float64).reshape(-1)
        if e.shape[0] != self.n_measurements:
            raise ValueError(f"error vector has {e.shape[0]} entries, expected {self.n_measurements}")
        return e

    def residual_of(self, error: np.ndarray) -> float:
        if self.inverse_variances is None:
            return float(error @ error)
        return float(error @ (self.inverse_variances * error))

    def compute_residual(self, params: np.ndarray) -> float:
        return self.residual_of(self.compute_error(params))

    def rebase_residual(self) -> float:
        """
        Re-evaluate the residual at the best parameters.

        Needed when the problem changes its objective between iterations, as
        residuals computed under the old objective are no longer comparable.
        """
        self.results = self.best_results.copy()
        self.minimum_residual = self.compute_residual(self.best_results)
        self.current_residual = self.minimum_residual
        self.last_residual = self.minimum_residual
        return self.minimum_residual

    def init(self) -> None:
        self.results = self.parameters.copy()
        self.best_results = self.parameters.copy()
        self.current_iteration = 0
        self.residual_history = []
        self._exhausted = False
        self.step.init(self)

        self.error = self.compute_error(self.results)
        self.current_residual = self.residual_of(self.error)
        self.base_residual = self.current_residual
        self.minimum_residual = self.current_residual
        self.last_residual = self.current_residual
        self.phase = EnginePhase.INITIALIZED

    def should_stop(self) -> bool:
        return (
            self.terminate
            or self.current_iteration >= self.max_iterations
            or self.minimum_residual < self.convergence_residual
        )

    def iterate(self) -> None:
        self.problem.on_iteration_start(self)
        self.error = self.compute_error(self.results)

        delta = self.step.compute_delta(self)
        candidate = self.results + delta
        new_residual = self.compute_residual(candidate)

        best_before = self.minimum_residual
        if new_residual < self.minimum_residual:
            self.results = candidate
            self.best_results = candidate.copy()
            self.minimum_residual = new_residual

        self.step.update(self, new_residual, best_before, self.last_residual)
        self.last_residual = new_residual
        self.current_residual = new_residual

        self.current_iteration += 1
        if self._exhausted:
            self.current_iteration = max(self.current_iteration, self.max_iterations)
        self.residual_history.append(self.minimum_residual)

    def process(self) -> np.ndarray:
        """Run the minimization and return the best parameter vector found."""
        self.init()
        logger.debug(
            f"minimization start: {self.n_parameters} parameters, {self.n_measurements} measurements, "
            f"residual={self.base_residual:.6e}"
        )

        self.phase = EnginePhase.ITERATING
        while not self.should_stop():
            self.iterate()
            logger.debug(
                f"iteration {self.current_iteration}: residual={self.current_residual:.6e} "
                f"best={self.minimum_residual:.6e}"
            )
            if self.callback is not None:
                self.callback(self)

        self.phase = EnginePhase.TERMINATED
        logger.debug(
            f"minimization done after {self.current_iteration} iterations: "
            f"{self.base_residual:.6e} -> {self.minimum_residual:.6e}"
        )
        return self.best_results.copy()
