import numpy as np
import pytest

from projcalib.errors import NonFiniteJacobianError
from projcalib.optim.engine import LeastSquaresProblem, MinimizationEngine
from projcalib.optim.levenberg_marquardt import (
    DampingMethod,
    LevenbergMarquardtSolver,
    numerical_jacobian,
    svd_least_squares,
    update_damping,
)


class LinearProblem(LeastSquaresProblem):
    def __init__(self, A: np.ndarray) -> None:
        self.A = np.asarray(A, dtype=np.float64)

    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        return self.A @ params

    def compute_jacobian(self, params: np.ndarray) -> np.ndarray:
        return self.A


class UnusedParameterProblem(LeastSquaresProblem):
    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        p0, p1, _unused = params
        return np.array([p0 + 2.0 * p1, p0 - p1, p0 * p1])


class ConstantProblem(LeastSquaresProblem):
    def compute_mapping(self, params: np.ndarray) -> np.ndarray:
        return np.array([1.0, 2.0, 3.0])


def test_update_damping_rule():
    lam = 1e-3
    assert update_damping(lam, 0.5, 1.0, 2.0) == lam * 0.1
    assert update_damping(lam, 1.005, 1.0, 2.0) == lam * 0.5
    assert update_damping(lam, 3.0, 1.0, 2.0) == lam * 10.0
    assert update_damping(lam, 1.5, 1.0, 2.0) == lam
    assert update_damping(lam, float("nan"), 1.0, 2.0) == lam * 10.0


def test_numerical_jacobian_matches_analytic():
    def fn(p):
        return np.array([p[0] ** 2, p[0] * p[1], np.sin(p[1])])

    p = np.array([1.5, -0.7])
    J = numerical_jacobian(fn, p, 1e-6)
    J_true = np.array([[2 * p[0], 0.0], [p[1], p[0]], [0.0, np.cos(p[1])]])
    assert np.allclose(J, J_true, atol=1e-7)


def test_numerical_jacobian_zero_parameter_uses_absolute_step():
    J = numerical_jacobian(lambda p: np.array([3.0 * p[0], p[0] + 1.0]), np.array([0.0]), 1e-6)
    assert np.allclose(J[:, 0], [3.0, 1.0])


def test_numerical_jacobian_rejects_nan():
    with pytest.raises(NonFiniteJacobianError):
        numerical_jacobian(lambda p: np.array([p[0], np.nan]), np.array([1.0]), 1e-6)


def test_rank_deficient_system_gives_zero_delta_for_unused_parameter():
    problem = UnusedParameterProblem()
    engine = MinimizationEngine(problem, np.array([1.0, 2.0, 5.0]), np.array([4.0, 0.5, 1.0]))
    engine.init()
    delta = engine.step.compute_delta(engine)
    assert delta[2] == 0.0
    assert np.all(np.isfinite(delta))
    assert np.any(delta[:2] != 0.0)


def test_svd_least_squares_handles_singular_matrix():
    A = np.array([[1.0, 1.0], [1.0, 1.0]])
    x = svd_least_squares(A, np.array([2.0, 2.0]))
    assert np.allclose(x, [1.0, 1.0])


def test_gauss_newton_step_solves_weighted_linear_problem():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(30, 3))
    x_true = np.array([0.5, -1.0, 2.0])
    b = A @ x_true + rng.normal(scale=0.1, size=30)
    w = rng.uniform(0.5, 4.0, size=30)

    solver = LevenbergMarquardtSolver(damping=DampingMethod.NONE)
    engine = MinimizationEngine(LinearProblem(A), np.zeros(3), b, step=solver, inverse_variances=w)
    engine.init()
    delta = solver.compute_delta(engine)

    sw = np.sqrt(w)
    expected, *_ = np.linalg.lstsq(A * sw[:, None], b * sw, rcond=None)
    assert solver.lam == 0.0
    assert np.allclose(delta, expected, atol=1e-10)


def test_lm_converges_on_linear_least_squares():
    rng = np.random.default_rng(1)
    A = rng.normal(size=(40, 4))
    b = rng.normal(size=40)
    engine = MinimizationEngine(LinearProblem(A), np.ones(4), b, max_iterations=50)
    x = engine.process()
    expected, *_ = np.linalg.lstsq(A, b, rcond=None)
    assert np.allclose(x, expected, atol=1e-8)


def test_vanishing_jacobian_ends_minimization():
    engine = MinimizationEngine(ConstantProblem(), np.array([1.0, 2.0]), np.zeros(3), max_iterations=20)
    x = engine.process()
    assert np.allclose(x, [1.0, 2.0])
    assert engine.current_iteration == 20
    assert len(engine.residual_history) == 1


def test_workspace_is_allocated_once_per_run():
    rng = np.random.default_rng(2)
    A = rng.normal(size=(10, 2))
    ids = []

    def record(engine):
        ids.append((id(engine.step.workspace), id(engine.step.workspace.J)))

    engine = MinimizationEngine(LinearProblem(A), np.ones(2), rng.normal(size=10), max_iterations=5, callback=record)
    engine.process()
    assert len(ids) == 5
    assert len(set(ids)) == 1


def test_additive_damping_still_converges():
    rng = np.random.default_rng(3)
    A = rng.normal(size=(20, 3))
    b = A @ np.array([1.0, 2.0, 3.0])
    solver = LevenbergMarquardtSolver(damping=DampingMethod.ADDITIVE, initial_lambda=1e-2)
    engine = MinimizationEngine(LinearProblem(A), np.zeros(3), b, step=solver, max_iterations=100)
    assert np.allclose(engine.process(), [1.0, 2.0, 3.0], atol=1e-8)


def test_numerical_jacobian_writes_into_given_buffers():
    def fn(p):
        return np.array([p[0] * p[1], p[1] ** 2, 2.0 * p[0]])

    out = np.zeros((3, 2))
    e_n = np.zeros(3)
    e_p = np.zeros(3)
    J = numerical_jacobian(fn, np.array([2.0, 3.0]), 1e-6, out=out, buffers=(e_n, e_p))

    assert J is out
    assert np.allclose(J, [[3.0, 2.0], [0.0, 6.0], [2.0, 0.0]], atol=1e-6)
    assert np.allclose(e_p, J[:, 1])


def test_solver_differentiates_into_workspace_buffers():
    problem = UnusedParameterProblem()
    engine = MinimizationEngine(problem, np.array([1.0, 2.0, 5.0]), np.array([4.0, 0.5, 1.0]))
    engine.init()
    ws = engine.step.workspace
    ws.error_n[...] = np.nan
    ws.error_p[...] = np.nan

    engine.step.compute_delta(engine)

    assert np.all(np.isfinite(ws.error_n))
    assert np.allclose(ws.error_p, ws.J[:, 2])
