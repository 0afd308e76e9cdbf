"""Optimization Problem Abstraction for BFGS-JAX.

A :class:`Problem` bundles the objective with everything the solvers need to
know about it: its value, its derivatives, optional box bounds and an optional
per-iteration callback. Only :meth:`Problem.value` has to be implemented;
the gradient and the Hessian fall back to finite differences, and the solvers
query :meth:`Problem.provides_gradient` and friends to find out which
capabilities a subclass actually overrides.

Problems are equinox Modules, so the data they close over (design matrices,
targets, bounds) are ordinary pytree leaves that flow through ``jax.jit``.

Example:
    >>> import jax.numpy as jnp
    >>> from jaxtyping import Array, Float
    >>> from bfgs_jax import Problem
    >>>
    >>> class LeastSquares(Problem):
    ...     A: Float[Array, "m n"]
    ...     b: Float[Array, " m"]
    ...
    ...     def value(self, x):
    ...         return 0.5 * jnp.sum((self.A @ x - self.b) ** 2)
    >>>
    >>> problem = LeastSquares(jnp.eye(2), jnp.ones(2), lower_bound=jnp.zeros(2))
"""

import abc
from typing import NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Bool, Float, Int

from bfgs_jax.differentiation import finite_gradient, finite_hessian
from bfgs_jax.types import Scalar

GRADIENT_CHECK_RTOL = 1e-2
HESSIAN_CHECK_RTOL = 1e-1


class IterationState(NamedTuple):
    """Progress record handed to :meth:`Problem.callback` after each step.

    Attributes:
        iteration: Number of steps taken so far.
        f_val: Objective value at the new iterate.
        grad_norm: Norm of the (projected) gradient at the new iterate.
        step_size: Step length accepted by the line search.
        f_change: Relative change of the objective over the step.
    """

    iteration: Int[Array, ""]
    f_val: Scalar
    grad_norm: Scalar
    step_size: Scalar
    f_change: Scalar


def _optional_array(value):
    return None if value is None else jnp.asarray(value)


def _check_bounds(lower, upper) -> None:
    """Validate bound shapes, and their ordering when the values are concrete."""
    for name, bound in (("lower_bound", lower), ("upper_bound", upper)):
        if bound is not None and bound.ndim != 1:
            raise ValueError(f"{name} must be one-dimensional, got shape {bound.shape}")
    if lower is None or upper is None:
        return
    if lower.shape != upper.shape:
        raise ValueError(
            f"lower_bound has shape {lower.shape} but upper_bound has shape "
            f"{upper.shape}"
        )
    try:
        crossed = np.asarray(lower) > np.asarray(upper)
    except jax.errors.TracerArrayConversionError:
        return
    if np.any(crossed):
        raise ValueError(
            "lower_bound exceeds upper_bound at indices "
            f"{np.flatnonzero(crossed).tolist()}"
        )


class Problem(eqx.Module):
    """Base class for objectives minimized by the quasi-Newton solvers.

    Subclasses must implement :meth:`value` and may override :meth:`gradient`,
    :meth:`hessian` and :meth:`callback`. Box bounds are keyword-only fields so
    that subclasses can declare their own positional data fields.

    Attributes:
        lower_bound: Optional per-coordinate lower bounds (``None`` means -inf).
        upper_bound: Optional per-coordinate upper bounds (``None`` means +inf).
    """

    lower_bound: Optional[Float[Array, " n"]] = eqx.field(
        default=None, kw_only=True, converter=_optional_array
    )
    upper_bound: Optional[Float[Array, " n"]] = eqx.field(
        default=None, kw_only=True, converter=_optional_array
    )

    def __check_init__(self):
        _check_bounds(self.lower_bound, self.upper_bound)

    @abc.abstractmethod
    def value(self, x: Float[Array, " n"]) -> Scalar:
        """Objective value f(x)."""

    def __call__(self, x: Float[Array, " n"]) -> Scalar:
        return self.value(x)

    def gradient(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        """Gradient of f at x. Override with an analytic gradient if available."""
        return finite_gradient(self.value, x, 0)

    def hessian(self, x: Float[Array, " n"]) -> Float[Array, "n n"]:
        """Hessian of f at x. Override with an analytic Hessian if available."""
        return finite_hessian(self.value, x, 0)

    def callback(self, state: IterationState, x: Float[Array, " n"]) -> bool:
        """Called on the host after every solver step; return False to stop."""
        return True

    # Capability queries

    def _overrides(self, name: str) -> bool:
        for cls in type(self).__mro__:
            if name in vars(cls):
                return cls is not Problem
        return False

    def provides_gradient(self) -> bool:
        return self._overrides("gradient")

    def provides_hessian(self) -> bool:
        return self._overrides("hessian")

    def provides_callback(self) -> bool:
        return self._overrides("callback")

    # Bounds

    def has_lower_bound(self) -> bool:
        return self.lower_bound is not None

    def has_upper_bound(self) -> bool:
        return self.upper_bound is not None

    @property
    def dim(self) -> Optional[int]:
        """Problem dimension implied by the bounds, or None when unbounded."""
        for bound in (self.lower_bound, self.upper_bound):
            if bound is not None:
                return bound.shape[0]
        return None

    def check_dimension(self, x: Float[Array, " n"]) -> None:
        """Raise ``ValueError`` if ``x`` does not match the problem dimension."""
        if x.ndim != 1:
            raise ValueError(f"Expected a one-dimensional point, got shape {x.shape}")
        dim = self.dim
        if dim is not None and dim != x.shape[0]:
            raise ValueError(
                f"Point has dimension {x.shape[0]} but the bounds have dimension {dim}"
            )

    def get_bounds(
        self, n: int, dtype=None
    ) -> tuple[Float[Array, " n"], Float[Array, " n"]]:
        """Return ``(lower, upper)`` with absent bounds filled by -inf / +inf."""
        if self.lower_bound is None:
            lower = jnp.full((n,), -jnp.inf, dtype=dtype)
        else:
            lower = jnp.asarray(self.lower_bound, dtype=dtype)
        if self.upper_bound is None:
            upper = jnp.full((n,), jnp.inf, dtype=dtype)
        else:
            upper = jnp.asarray(self.upper_bound, dtype=dtype)
        return lower, upper

    def _replace_bounds(self, lower, upper) -> "Problem":
        lower = _optional_array(lower)
        upper = _optional_array(upper)
        _check_bounds(lower, upper)
        return eqx.tree_at(
            lambda p: (p.lower_bound, p.upper_bound),
            self,
            (lower, upper),
            is_leaf=lambda node: node is None,
        )

    def with_lower_bound(self, lower: Float[Array, " n"]) -> "Problem":
        """Return a copy of this problem with the given lower bound."""
        return self._replace_bounds(lower, self.upper_bound)

    def with_upper_bound(self, upper: Float[Array, " n"]) -> "Problem":
        """Return a copy of this problem with the given upper bound."""
        return self._replace_bounds(self.lower_bound, upper)

    def with_box_constraint(
        self, lower: Float[Array, " n"], upper: Float[Array, " n"]
    ) -> "Problem":
        """Return a copy of this problem constrained to ``[lower, upper]``."""
        return self._replace_bounds(lower, upper)

    # Derivative self-checks

    def check_gradient(
        self, x: Float[Array, " n"], accuracy: int = 3
    ) -> Bool[Array, ""]:
        """Compare :meth:`gradient` with a finite-difference gradient.

        Passes iff ``|a - f| <= 1e-2 * max(|a|, |f|, 1)`` in every coordinate,
        where ``a`` is the (possibly analytic) gradient and ``f`` the finite
        difference estimate of the given accuracy.
        """
        actual = self.gradient(x)
        expected = finite_gradient(self.value, x, accuracy)
        return _within_tolerance(actual, expected, GRADIENT_CHECK_RTOL)

    def check_hessian(
        self, x: Float[Array, " n"], accuracy: int = 3
    ) -> Bool[Array, ""]:
        """Compare :meth:`hessian` with a finite-difference Hessian (tolerance 1e-1)."""
        actual = self.hessian(x)
        expected = finite_hessian(self.value, x, accuracy)
        return _within_tolerance(actual, expected, HESSIAN_CHECK_RTOL)


def _within_tolerance(actual, expected, rtol: float) -> Bool[Array, ""]:
    if actual.shape != expected.shape:
        raise ValueError(
            f"Derivative has shape {actual.shape}, expected {expected.shape}"
        )
    scale = jnp.maximum(jnp.maximum(jnp.abs(actual), jnp.abs(expected)), 1.0)
    return jnp.all(jnp.abs(actual - expected) <= rtol * scale)
