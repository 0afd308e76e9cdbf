"""Curvature Information for the Quasi-Newton Solvers.

This module holds the two ways the solvers remember curvature:

1. A dense approximation H ≈ ∇²f⁻¹ for BFGS, refreshed each iteration by the
   rank-two inverse update

       H⁺ = (I - ρ s yᵀ) H (I - ρ y sᵀ) + ρ s sᵀ,    ρ = 1 / (yᵀ s)

2. A limited-memory history of the last m (s, y) pairs for L-BFGS-B, stored
   in a circular buffer and applied through the two-loop recursion
   (Nocedal & Wright, Algorithm 7.4) in O(mn) time and memory.

In both cases a pair that violates the curvature condition sᵀy > 0 is
skipped, which keeps the approximation positive definite.
"""

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from bfgs_jax.types import Matrix


@jaxtyped(typechecker=beartype)
def bfgs_inverse_update(
    inv_hessian: Matrix,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
) -> Matrix:
    """Apply the BFGS update to an inverse Hessian approximation.

    Args:
        inv_hessian: Current approximation H of the inverse Hessian.
        s: Step vector s = x_{k+1} - x_k.
        y: Gradient difference y = ∇f_{k+1} - ∇f_k.

    Returns:
        The updated approximation, or ``inv_hessian`` unchanged when
        sᵀy <= 0.
    """
    sTy = jnp.dot(s, y)
    curvature_ok = sTy > 0
    rho = 1.0 / jnp.where(curvature_ok, sTy, 1.0)

    n = s.shape[0]
    left = jnp.eye(n, dtype=inv_hessian.dtype) - rho * jnp.outer(s, y)
    updated = left @ inv_hessian @ left.T + rho * jnp.outer(s, s)

    return jnp.where(curvature_ok, updated, inv_hessian)


class LBFGSHistory(eqx.Module):
    """L-BFGS history buffer for the limited-memory inverse Hessian.

    Stores the last m (s, y) pairs in a circular buffer.

    Attributes:
        s_history: Stored step vectors s_i = x_{i+1} - x_i.
        y_history: Stored gradient differences y_i = ∇f_{i+1} - ∇f_i.
        gamma: Initial inverse Hessian scaling (H_0 = gamma * I).
        count: Number of valid pairs stored (0 to memory size).
        next_idx: Next write position in the circular buffer.
    """

    s_history: Float[Array, "memory n"]
    y_history: Float[Array, "memory n"]
    gamma: Float[Array, ""]
    count: Int[Array, ""]
    next_idx: Int[Array, ""]


def lbfgs_init(n: int, memory: int, dtype=None) -> LBFGSHistory:
    """Initialize an empty L-BFGS history buffer.

    Args:
        n: Dimension of the parameter space.
        memory: Maximum number of (s, y) pairs to store (typically 5-20).
        dtype: Floating point dtype of the stored vectors.

    Returns:
        An initialized LBFGSHistory with no stored pairs and gamma=1.
    """
    return LBFGSHistory(
        s_history=jnp.zeros((memory, n), dtype=dtype),
        y_history=jnp.zeros((memory, n), dtype=dtype),
        gamma=jnp.array(1.0, dtype=dtype),
        count=jnp.array(0),
        next_idx=jnp.array(0),
    )


@jaxtyped(typechecker=beartype)
def lbfgs_append(
    history: LBFGSHistory,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
) -> LBFGSHistory:
    """Append a new (s, y) pair to the L-BFGS history.

    Once the buffer is full the oldest pair is overwritten. The pair is
    dropped when sᵀy <= 0 or when any value is non-finite. After appending,
    gamma is set to sᵀy / yᵀy, the usual scaling of the initial matrix.

    Args:
        history: Current L-BFGS history.
        s: Step vector s = x_{k+1} - x_k.
        y: Gradient difference y = ∇f_{k+1} - ∇f_k.

    Returns:
        Updated L-BFGS history.
    """
    sTy = jnp.dot(s, y)
    yTy = jnp.dot(y, y)
    should_skip = ~(sTy > 0) | ~(yTy > 0) | ~jnp.isfinite(sTy / yTy)

    def do_append():
        k = history.s_history.shape[0]
        idx = history.next_idx
        return LBFGSHistory(
            s_history=history.s_history.at[idx].set(s),
            y_history=history.y_history.at[idx].set(y),
            gamma=(sTy / yTy).astype(history.gamma.dtype),
            count=jnp.minimum(history.count + 1, k),
            next_idx=(idx + 1) % k,
        )

    def skip():
        return history

    return jax.lax.cond(should_skip, skip, do_append)


@jaxtyped(typechecker=beartype)
def lbfgs_two_loop(
    history: LBFGSHistory,
    grad: Float[Array, " n"],
    free: Bool[Array, " n"] | None = None,
) -> Float[Array, " n"]:
    """Compute H @ grad with the L-BFGS two-loop recursion.

    When ``free`` is given, the recursion is restricted to the free
    coordinates: the gradient and every stored pair are masked to them, and
    pairs whose masked curvature sᵀy is not positive are ignored. The result
    is zero on the fixed coordinates.

    Args:
        history: L-BFGS history buffer.
        grad: Vector to multiply by the inverse Hessian approximation.
        free: Optional mask of coordinates the recursion may use.

    Returns:
        H @ grad (negate it for the quasi-Newton direction).
    """
    k = history.s_history.shape[0]
    if free is None:
        mask = jnp.ones_like(grad)
    else:
        mask = free.astype(grad.dtype)

    def pair(j):
        """The j-th newest stored pair, masked, with its ρ (0 if unusable)."""
        idx = (history.next_idx - 1 - j) % k
        s = history.s_history[idx] * mask
        y = history.y_history[idx] * mask
        sTy = jnp.dot(s, y)
        valid = (j < history.count) & (sTy > 0)
        rho = jnp.where(valid, 1.0 / jnp.where(valid, sTy, 1.0), 0.0)
        return s, y, rho

    def newest_to_oldest(j, carry):
        q, alphas = carry
        s, y, rho = pair(j)
        alpha = rho * jnp.dot(s, q)
        return q - alpha * y, alphas.at[j].set(alpha)

    q, alphas = jax.lax.fori_loop(
        0, k, newest_to_oldest, (grad * mask, jnp.zeros((k,), dtype=grad.dtype))
    )

    def oldest_to_newest(i, r):
        j = k - 1 - i
        s, y, rho = pair(j)
        beta = rho * jnp.dot(y, r)
        return r + (alphas[j] - beta) * s

    r = jax.lax.fori_loop(0, k, oldest_to_newest, history.gamma * q)
    return r * mask
