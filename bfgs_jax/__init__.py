"""BFGS-JAX: Quasi-Newton minimization in pure JAX.

This package provides BFGS and box-constrained L-BFGS-B solvers built on the
Optimistix framework. Objectives are written as :class:`Problem` subclasses
that implement ``value`` and may supply analytic gradients and Hessians;
missing derivatives fall back to finite differences of selectable accuracy.
"""

from bfgs_jax.differentiation import finite_gradient, finite_hessian
from bfgs_jax.hessian import (
    LBFGSHistory,
    bfgs_inverse_update,
    lbfgs_append,
    lbfgs_init,
    lbfgs_two_loop,
)
from bfgs_jax.line_search import (
    LineSearchResult,
    armijo_line_search,
    second_order_armijo_line_search,
)
from bfgs_jax.problem import IterationState, Problem
from bfgs_jax.solver import (
    BFGS,
    LBFGSB,
    AbstractQuasiNewton,
    BFGSState,
    LBFGSBState,
)
from bfgs_jax.types import ObjectiveFn, ScalarFn, TerminationStatus
from bfgs_jax.utils import problem_objective

__all__ = [
    # Solvers
    "BFGS",
    "LBFGSB",
    "AbstractQuasiNewton",
    "BFGSState",
    "LBFGSBState",
    "TerminationStatus",
    # Problem
    "Problem",
    "IterationState",
    "problem_objective",
    # Types
    "ScalarFn",
    "ObjectiveFn",
    # Finite differences
    "finite_gradient",
    "finite_hessian",
    # Line search
    "LineSearchResult",
    "armijo_line_search",
    "second_order_armijo_line_search",
    # Curvature
    "bfgs_inverse_update",
    "LBFGSHistory",
    "lbfgs_init",
    "lbfgs_append",
    "lbfgs_two_loop",
]
