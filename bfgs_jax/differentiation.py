"""Finite-Difference Differentiation for BFGS-JAX.

This module approximates the gradient and the Hessian of a scalar function
from function values alone. It is the fallback used by :class:`Problem` when
no analytic derivative is supplied, and the oracle used to verify analytic
derivatives that are.

Gradients use central differences of increasing order. For accuracy ``k`` the
partial derivative along coordinate d is

    df/dx_d ≈ sum_s c_s * f(x + o_s * h * e_d) / (D_k * h)

with 2(k+1) evaluations per coordinate. Hessians use

- accuracy 0: the four-point forward formula
  (f(x+h e_i+h e_j) - f(x+h e_i) - f(x+h e_j) + f(x)) / h^2;
- accuracy 1: a 16-point central stencil with weights {-63, 63, 44, 74} / 600;
- accuracy 2, 3: the tensor product of the order-2 / order-3 gradient
  stencils (36 / 64 evaluations per entry).

Coordinates are processed one at a time with ``jax.lax.map`` so only a single
perturbed copy of x per stencil point is alive; the points of one stencil are
evaluated with ``jax.vmap``.
"""

import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from bfgs_jax.types import ScalarFn

# Step for gradient stencils, tuned for double precision
GRADIENT_STEP = 2.2204e-6

# Per accuracy order: (coefficients, offsets, divisor)
_CENTRAL_STENCILS = (
    ((1.0, -1.0), (1.0, -1.0), 2.0),
    ((1.0, -8.0, 8.0, -1.0), (-2.0, -1.0, 1.0, 2.0), 12.0),
    (
        (-1.0, 9.0, -45.0, 45.0, -9.0, 1.0),
        (-3.0, -2.0, -1.0, 1.0, 2.0, 3.0),
        60.0,
    ),
    (
        (3.0, -32.0, 168.0, -672.0, 672.0, -168.0, 32.0, -3.0),
        (-4.0, -3.0, -2.0, -1.0, 1.0, 2.0, 3.0, 4.0),
        840.0,
    ),
)

# (offset_i, offset_j, weight) of the 16-point mixed stencil, scaled by 1/600
_MIXED_STENCIL = (
    (1.0, -2.0, -63.0),
    (2.0, -1.0, -63.0),
    (-2.0, 1.0, -63.0),
    (-1.0, 2.0, -63.0),
    (-1.0, -2.0, 63.0),
    (-2.0, -1.0, 63.0),
    (1.0, 2.0, 63.0),
    (2.0, 1.0, 63.0),
    (2.0, -2.0, 44.0),
    (-2.0, 2.0, 44.0),
    (-2.0, -2.0, -44.0),
    (2.0, 2.0, -44.0),
    (-1.0, -1.0, 74.0),
    (1.0, 1.0, 74.0),
    (1.0, -1.0, -74.0),
    (-1.0, 1.0, -74.0),
)
_MIXED_DIVISOR = 600.0

ACCURACY_ORDERS = tuple(range(len(_CENTRAL_STENCILS)))


def _check_accuracy(accuracy: int) -> None:
    if accuracy not in ACCURACY_ORDERS:
        raise ValueError(
            f"accuracy must be one of {ACCURACY_ORDERS}, got {accuracy!r}"
        )


def default_hessian_step(x: Float[Array, " n"]) -> float:
    """Hessian step for the dtype of ``x``: ``eps ** 0.25`` (≈1.2e-4 for float64).

    This replaces the fixed ``eps * 1e8`` step (≈2.2e-8 for float64) on purpose.
    A forward second difference divides by h², so at 2.2e-8 the rounding error
    is of order eps / h² ≈ 0.5 and swamps the result. ``eps ** 0.25`` balances
    that rounding against the O(h) truncation error and works for float32 too.
    Pass ``step=`` to :func:`finite_hessian` to choose another value.
    """
    return float(jnp.finfo(x.dtype).eps) ** 0.25


@jaxtyped(typechecker=beartype)
def finite_gradient(
    fn: ScalarFn,
    x: Float[Array, " n"],
    accuracy: int = 0,
    step: float = GRADIENT_STEP,
) -> Float[Array, " n"]:
    """Approximate the gradient of ``fn`` at ``x`` by central differences.

    Args:
        fn: Scalar function f(x).
        x: Point at which to differentiate.
        accuracy: Stencil order in {0, 1, 2, 3}, using 2, 4, 6 or 8
            evaluations of ``fn`` per coordinate.
        step: Finite-difference step h.

    Returns:
        Approximation of nabla f(x).
    """
    _check_accuracy(accuracy)
    coefficients, offsets, divisor = _CENTRAL_STENCILS[accuracy]
    coefficients = jnp.asarray(coefficients, dtype=x.dtype)
    shifts = jnp.asarray(offsets, dtype=x.dtype) * step

    def weighted_sum(d):
        values = jax.vmap(lambda h: fn(x.at[d].add(h)))(shifts)
        return jnp.dot(coefficients, values)

    sums = jax.lax.map(weighted_sum, jnp.arange(x.shape[0]))
    return sums / (divisor * step)


def _forward_hessian(fn: ScalarFn, x: Float[Array, " n"], step: float):
    n = x.shape[0]
    f_x = fn(x)
    f_single = jax.vmap(lambda d: fn(x.at[d].add(step)))(jnp.arange(n))

    def pair_row(i):
        x_i = x.at[i].add(step)
        return jax.vmap(lambda j: fn(x_i.at[j].add(step)))(jnp.arange(n))

    f_pair = jax.lax.map(pair_row, jnp.arange(n))
    return (f_pair - f_single[:, None] - f_single[None, :] + f_x) / (step * step)


def _stencil_hessian(fn, x, step, offsets_i, offsets_j, weights, divisor):
    n = x.shape[0]
    shifts_i = jnp.asarray(offsets_i, dtype=x.dtype) * step
    shifts_j = jnp.asarray(offsets_j, dtype=x.dtype) * step
    weights = jnp.asarray(weights, dtype=x.dtype)

    def entry(i, j):
        values = jax.vmap(lambda hi, hj: fn(x.at[i].add(hi).at[j].add(hj)))(
            shifts_i, shifts_j
        )
        return jnp.dot(weights, values)

    def row(i):
        return jax.vmap(lambda j: entry(i, j))(jnp.arange(n))

    rows = jax.lax.map(row, jnp.arange(n))
    return rows / (divisor * step * step)


@jaxtyped(typechecker=beartype)
def finite_hessian(
    fn: ScalarFn,
    x: Float[Array, " n"],
    accuracy: int = 0,
    step: float | None = None,
) -> Float[Array, "n n"]:
    """Approximate the Hessian of ``fn`` at ``x`` by finite differences.

    Args:
        fn: Scalar function f(x).
        x: Point at which to differentiate.
        accuracy: Stencil order in {0, 1, 2, 3}. Order 0 is the forward
            four-point formula (n^2 + n + 1 evaluations in total); order 1 is
            the 16-point central stencil; orders 2 and 3 are tensor products of
            the matching gradient stencils.
        step: Finite-difference step h. Defaults to ``eps ** 0.25`` of the
            dtype of ``x``.

    Returns:
        Approximation of the Hessian of f at x.
    """
    _check_accuracy(accuracy)
    if step is None:
        step = default_hessian_step(x)

    if accuracy == 0:
        return _forward_hessian(fn, x, step)

    if accuracy == 1:
        offsets_i, offsets_j, weights = zip(*_MIXED_STENCIL)
        return _stencil_hessian(
            fn, x, step, offsets_i, offsets_j, weights, _MIXED_DIVISOR
        )

    coefficients, offsets, divisor = _CENTRAL_STENCILS[accuracy]
    k = len(offsets)
    offsets_i = np.repeat(offsets, k)
    offsets_j = np.tile(offsets, k)
    weights = np.outer(coefficients, coefficients).ravel()
    return _stencil_hessian(
        fn, x, step, offsets_i, offsets_j, weights, divisor * divisor
    )
