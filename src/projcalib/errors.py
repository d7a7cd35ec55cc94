from __future__ import annotations


class DegenerateInputError(ValueError):
    """
    Input that cannot support an estimate: too few correspondences, a point set
    with zero spread, or references to grids that were not supplied.
    """


class NonFiniteJacobianError(FloatingPointError):
    """NaN or Infinity found in a Jacobian. The run must be treated as failed."""
