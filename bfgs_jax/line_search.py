"""Backtracking Armijo Line Search for BFGS-JAX.

Given a point x, a descent direction d and a :class:`Problem`, the line search
shrinks a trial step α until the sufficient decrease condition

    f(x + α*d) <= f(x) + α * slope

holds. Two models of the decrease are available:

- first order:  slope = c * ∇f(x)·d
- second order: slope = c * ∇f(x)·d + ½ c² * dᵀ ∇²f(x) d

When ``lower``/``upper`` bounds are given the search is projected: each trial
point is clamped into the box, x_α = clip(x + α*d), and the model decrease is
measured along the actual step s = x_α - x (α * ∇f·d becomes ∇f·s). Without
clamping the two forms coincide.

The loop is a ``jax.lax.while_loop`` and is capped at ``max_steps``
evaluations. A direction with ∇f(x)·d >= 0 is rejected up front without any
evaluation of the objective.
"""

from collections.abc import Callable
from typing import TYPE_CHECKING, NamedTuple, Optional

import jax
import jax.numpy as jnp
from jaxtyping import Array, Bool, Int

from bfgs_jax.types import Matrix, Scalar, Vector

if TYPE_CHECKING:
    from bfgs_jax.problem import Problem

ARMIJO_C = 0.2
ARMIJO_RHO = 0.9
MAX_LINE_SEARCH_STEPS = 100


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        alpha: The last step size tried (the accepted one on success).
        f_val: Function value at x + alpha * d.
        success: Whether the sufficient decrease condition was met.
        n_evals: Number of objective evaluations.
    """

    alpha: Scalar
    f_val: Scalar
    success: Bool[Array, ""]
    n_evals: Int[Array, ""]


class _LSState(NamedTuple):
    alpha: Scalar
    f_val: Scalar
    n_evals: Int[Array, ""]
    accepted: Bool[Array, ""]


def _check_parameters(alpha_init, c, rho, max_steps: int) -> None:
    if isinstance(alpha_init, (int, float)) and not alpha_init > 0:
        raise ValueError(f"alpha_init must be positive, got {alpha_init}")
    if isinstance(c, (int, float)) and not 0 < c < 1:
        raise ValueError(f"Armijo constant c must lie in (0, 1), got {c}")
    if isinstance(rho, (int, float)) and not 0 < rho < 1:
        raise ValueError(f"rho must lie in (0, 1), got {rho}")
    if max_steps <= 0:
        raise ValueError(f"max_steps must be positive, got {max_steps}")


def _check_shapes(x, direction, grad, hessian=None) -> None:
    if direction.shape != x.shape:
        raise ValueError(
            f"direction has shape {direction.shape}, expected {x.shape}"
        )
    if grad.shape != x.shape:
        raise ValueError(f"gradient has shape {grad.shape}, expected {x.shape}")
    if hessian is not None and hessian.shape != (x.shape[0], x.shape[0]):
        raise ValueError(
            f"Hessian has shape {hessian.shape}, expected {(x.shape[0],) * 2}"
        )


def _backtrack(
    problem: "Problem",
    x: Vector,
    direction: Vector,
    threshold: Callable[[Scalar, Vector], Scalar],
    is_descent: Bool[Array, ""],
    f_in: Scalar,
    alpha_init,
    rho: float,
    max_steps: int,
    lower: Optional[Vector],
    upper: Optional[Vector],
) -> LineSearchResult:
    projected = lower is not None or upper is not None

    def trial_point(alpha):
        point = x + alpha * direction
        return jnp.clip(point, lower, upper) if projected else point

    def cond_fn(state: _LSState) -> Bool[Array, ""]:
        """Continue while unaccepted and under the evaluation limit."""
        return is_descent & ~state.accepted & (state.n_evals < max_steps)

    def body_fn(state: _LSState) -> _LSState:
        """Try one step; shrink it first unless this is the initial trial."""
        alpha = jnp.where(state.n_evals == 0, state.alpha, rho * state.alpha)
        point = trial_point(alpha)
        f_new = jnp.asarray(problem.value(point), dtype=x.dtype)
        # Written as <= so that NaN trial values are rejected
        accepted = f_new <= threshold(alpha, point - x)
        return _LSState(
            alpha=alpha,
            f_val=f_new,
            n_evals=state.n_evals + 1,
            accepted=accepted,
        )

    init_state = _LSState(
        alpha=jnp.asarray(alpha_init, dtype=x.dtype),
        f_val=jnp.asarray(f_in, dtype=x.dtype),
        n_evals=jnp.array(0),
        accepted=jnp.array(False),
    )
    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)

    return LineSearchResult(
        alpha=final_state.alpha,
        f_val=final_state.f_val,
        success=is_descent & final_state.accepted,
        n_evals=final_state.n_evals,
    )


def _check_box(x, lower, upper) -> None:
    for name, bound in (("lower", lower), ("upper", upper)):
        if bound is not None and bound.shape != x.shape:
            raise ValueError(f"{name} has shape {bound.shape}, expected {x.shape}")


def armijo_line_search(
    problem: "Problem",
    x: Vector,
    direction: Vector,
    alpha_init: float | Scalar = 1.0,
    *,
    f_val: Optional[Scalar] = None,
    grad: Optional[Vector] = None,
    c: float = ARMIJO_C,
    rho: float = ARMIJO_RHO,
    max_steps: int = MAX_LINE_SEARCH_STEPS,
    lower: Optional[Vector] = None,
    upper: Optional[Vector] = None,
) -> LineSearchResult:
    """Backtracking line search with the first-order Armijo condition.

    Finds α such that:
        f(x + α*d) <= f(x) + α * c * ∇f(x)·d

    Args:
        problem: Problem providing ``value`` and ``gradient``.
        x: Current point.
        direction: Search direction; must satisfy ∇f(x)·d < 0.
        alpha_init: Initial step size (default 1.0).
        f_val: f(x), if already known.
        grad: ∇f(x), if already known.
        c: Sufficient decrease constant (default 0.2).
        rho: Step reduction factor (default 0.9).
        max_steps: Maximum number of objective evaluations.
        lower: Optional lower bounds; trial points are clamped when given.
        upper: Optional upper bounds; trial points are clamped when given.

    Returns:
        LineSearchResult with the step size found. With bounds, the accepted
        point is ``clip(x + alpha * direction, lower, upper)``.
    """
    _check_parameters(alpha_init, c, rho, max_steps)
    if f_val is None:
        f_val = problem.value(x)
    if grad is None:
        grad = problem.gradient(x)
    _check_shapes(x, direction, grad)
    _check_box(x, lower, upper)

    grad_dot_d = jnp.dot(grad, direction)
    if lower is None and upper is None:
        slope = c * grad_dot_d

        def threshold(alpha, step):
            return f_val + alpha * slope

    else:

        def threshold(alpha, step):
            # Never accept an increase, even if clamping turned the step uphill
            return f_val + jnp.minimum(c * jnp.dot(grad, step), 0.0)

    return _backtrack(
        problem,
        x,
        direction,
        threshold,
        grad_dot_d < 0,
        f_val,
        alpha_init,
        rho,
        max_steps,
        lower,
        upper,
    )


def second_order_armijo_line_search(
    problem: "Problem",
    x: Vector,
    direction: Vector,
    alpha_init: float | Scalar = 1.0,
    *,
    f_val: Optional[Scalar] = None,
    grad: Optional[Vector] = None,
    hessian: Optional[Matrix] = None,
    c: float = ARMIJO_C,
    rho: float = ARMIJO_RHO,
    max_steps: int = MAX_LINE_SEARCH_STEPS,
    lower: Optional[Vector] = None,
    upper: Optional[Vector] = None,
) -> LineSearchResult:
    """Backtracking line search with a curvature-corrected Armijo condition.

    Finds α such that:
        f(x + α*d) <= f(x) + α * (c * ∇f(x)·d + ½ c² * dᵀ H d)

    where H is ``problem.hessian(x)`` unless given. With bounds the step
    s = clip(x + α*d) - x replaces α*d, so the right-hand side becomes
    f(x) + c * ∇f·s + ½ c² * sᵀ H s / α, capped at f(x). The remaining
    arguments are as for :func:`armijo_line_search`.
    """
    _check_parameters(alpha_init, c, rho, max_steps)
    if f_val is None:
        f_val = problem.value(x)
    if grad is None:
        grad = problem.gradient(x)
    if hessian is None:
        hessian = problem.hessian(x)
    _check_shapes(x, direction, grad, hessian)
    _check_box(x, lower, upper)

    grad_dot_d = jnp.dot(grad, direction)
    if lower is None and upper is None:
        curvature = jnp.dot(direction, hessian @ direction)
        slope = c * grad_dot_d + 0.5 * c * c * curvature

        def threshold(alpha, step):
            return f_val + alpha * slope

    else:

        def threshold(alpha, step):
            curvature = jnp.dot(step, hessian @ step) / alpha
            decrease = c * jnp.dot(grad, step) + 0.5 * c * c * curvature
            return f_val + jnp.minimum(decrease, 0.0)

    return _backtrack(
        problem,
        x,
        direction,
        threshold,
        grad_dot_d < 0,
        f_val,
        alpha_init,
        rho,
        max_steps,
        lower,
        upper,
    )
