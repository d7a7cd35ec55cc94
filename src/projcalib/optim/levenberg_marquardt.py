from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import numpy as np

from projcalib.errors import NonFiniteJacobianError
from projcalib.optim.engine import MinimizationEngine

logger = logging.getLogger(__name__)

LinearSolver = Callable[[np.ndarray, np.ndarray], np.ndarray]

_EPS = float(np.finfo(np.float64).eps)
_TINY = float(np.finfo(np.float64).tiny)


class DampingMethod(Enum):
    MULTIPLICATIVE = "multiplicative"  # diag(JtJ) *= 1 + lambda
    ADDITIVE = "additive"  # diag(JtJ) += lambda
    NONE = "none"


@dataclass
class LMWorkspace:
    """Buffers reused by every iteration of one minimization run."""

    J: np.ndarray
    Jt: np.ndarray
    JtJ: np.ndarray
    Jte: np.ndarray
    delta: np.ndarray
    error_n: np.ndarray
    error_p: np.ndarray

    @classmethod
    def allocate(cls, n_measurements: int, n_parameters: int) -> "LMWorkspace":
        m, n = int(n_measurements), int(n_parameters)
        return cls(
            J=np.zeros((m, n), dtype=np.float64),
            Jt=np.zeros((n, m), dtype=np.float64),
            JtJ=np.zeros((n, n), dtype=np.float64),
            Jte=np.zeros((n,), dtype=np.float64),
            delta=np.zeros((n,), dtype=np.float64),
            error_n=np.zeros((m,), dtype=np.float64),
            error_p=np.zeros((m,), dtype=np.float64),
        )


def svd_least_squares(A: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Minimum-norm least-squares solution of A x = b (SVD based, rank-deficient safe)."""
    x, *_ = np.linalg.lstsq(np.asarray(A, dtype=np.float64), np.asarray(b, dtype=np.float64), rcond=None)
    return x


def numerical_jacobian(
    fn: Callable[[np.ndarray], np.ndarray],
    params: np.ndarray,
    step: float = 1e-6,
    *,
    out: np.ndarray | None = None,
    buffers: tuple[np.ndarray, np.ndarray] | None = None,
) -> np.ndarray:
    """
    Central-difference Jacobian of `fn` around `params`.

    Each parameter p is moved to p(1-step) and p(1+step); a zero parameter is
    moved to -/+ 0.01*step instead. Raises `NonFiniteJacobianError` as soon as
    a column contains NaN or Inf.

    `out` and `buffers` (two vectors of the output length) are reused when
    given, so repeated calls do not allocate.
    """
    params = np.asarray(params, dtype=np.float64).reshape(-1)
    p = params.copy()
    n = p.shape[0]
    e_n, e_p = (None, None) if buffers is None else buffers

    for k in range(n):
        old = float(params[k])
        if abs(old) > _TINY:
            k_n = old * (1.0 - step)
            k_p = old * (1.0 + step)
        else:
            k_n = -step * 0.01
            k_p = step * 0.01

        p[k] = k_n
        f_n = np.asarray(fn(p), dtype=np.float64).reshape(-1)
        if e_n is None:
            e_n = np.empty_like(f_n)
            e_p = np.empty_like(f_n)
        np.copyto(e_n, f_n)
        p[k] = k_p
        np.copyto(e_p, np.asarray(fn(p), dtype=np.float64).reshape(-1))
        p[k] = old

        np.subtract(e_p, e_n, out=e_p)
        e_p /= k_p - k_n
        if not np.all(np.isfinite(e_p)):
            raise NonFiniteJacobianError(f"NaN or Inf in Jacobian column {k}")
        if out is None:
            out = np.zeros((e_p.shape[0], n), dtype=np.float64)
        out[:, k] = e_p

    if out is None:
        out = np.zeros((0, 0), dtype=np.float64)
    return out


def update_damping(lam: float, new_residual: float, best_before: float, last_residual: float) -> float:
    """
    Damping factor after a tentative step.

    - strict improvement over the best residual: lambda * 0.1
    - within 1% of the best residual: lambda * 0.5
    - no improvement over the previous tentative residual: lambda * 10
    """
    if not np.isfinite(new_residual):
        return lam * 10.0
    if new_residual < best_before:
        return lam * 0.1
    if new_residual < best_before * 1.01:
        return lam * 0.5
    if new_residual >= last_residual:
        return lam * 10.0
    return lam


def _nonzero_mask(A: np.ndarray, axis: int) -> np.ndarray:
    return np.any(np.abs(A) > _TINY, axis=axis)


class LevenbergMarquardtSolver:
    """
    Damped Gauss-Newton step: solves (JtJ)* d = -Jte, where (JtJ)* is JtJ with a
    damped diagonal. Parameters without any effect on the residual (zero
    column/row of JtJ) are excluded from the solve and get a zero correction.
    """

    def __init__(
        self,
        *,
        damping: DampingMethod = DampingMethod.MULTIPLICATIVE,
        initial_lambda: float | None = None,
        numerical_step: float = 1e-6,
        linear_solver: LinearSolver = svd_least_squares,
    ) -> None:
        self.damping = DampingMethod(damping)
        if initial_lambda is None:
            initial_lambda = 0.0 if self.damping is DampingMethod.NONE else 1e-3
        self.initial_lambda = float(initial_lambda)
        self.lam = self.initial_lambda
        self.numerical_step = float(numerical_step)
        self.linear_solver = linear_solver
        self.workspace: LMWorkspace | None = None

    def init(self, engine: MinimizationEngine) -> None:
        self.workspace = LMWorkspace.allocate(engine.n_measurements, engine.n_parameters)
        self.lam = self.initial_lambda

    def compute_jacobian(self, engine: MinimizationEngine) -> np.ndarray:
        ws = self.workspace
        J = engine.problem.compute_jacobian(engine.results)
        if J is not None:
            J = np.asarray(J, dtype=np.float64)
            if J.shape != ws.J.shape:
                raise ValueError(f"Jacobian has shape {J.shape}, expected {ws.J.shape}")
            if not np.all(np.isfinite(J)):
                raise NonFiniteJacobianError("NaN or Inf in analytic Jacobian")
            ws.J[...] = J
            return ws.J
        return numerical_jacobian(
            engine.compute_error,
            engine.results,
            self.numerical_step,
            out=ws.J,
            buffers=(ws.error_n, ws.error_p),
        )

    def compute_delta(self, engine: MinimizationEngine) -> np.ndarray:
        if self.workspace is None:
            self.init(engine)
        ws = self.workspace

        J = self.compute_jacobian(engine)
        if J.size == 0 or float(np.max(np.abs(J))) < _EPS:
            logger.debug("Jacobian vanished; stopping minimization")
            ws.delta[...] = 0.0
            engine.exhaust_iterations()
            return ws.delta.copy()

        np.copyto(ws.Jt, J.T)
        if engine.inverse_variances is not None:
            ws.Jt *= engine.inverse_variances[None, :]
        np.matmul(ws.Jt, J, out=ws.JtJ)
        np.matmul(ws.Jt, engine.error, out=ws.Jte)

        diag = np.diag(ws.JtJ).copy()
        if self.damping is DampingMethod.MULTIPLICATIVE:
            np.fill_diagonal(ws.JtJ, diag * (1.0 + self.lam))
        elif self.damping is DampingMethod.ADDITIVE:
            np.fill_diagonal(ws.JtJ, diag + self.lam)

        cols = _nonzero_mask(ws.JtJ, axis=0)
        A = ws.JtJ[:, cols]
        rows = _nonzero_mask(A, axis=1)
        A = A[rows]
        b = -ws.Jte[rows]

        ws.delta[...] = 0.0
        if A.size:
            ws.delta[cols] = self.linear_solver(A, b)
        return ws.delta.copy()

    def update(
        self,
        engine: MinimizationEngine,
        new_residual: float,
        best_before: float,
        last_residual: float,
    ) -> None:
        self.lam = update_damping(self.lam, new_residual, best_before, last_residual)
        logger.debug(f"lambda={self.lam:.3e}")
