"""BFGS and L-BFGS-B Solvers implemented as Optimistix minimisers.

Both solvers extend ``optimistix.AbstractMinimiser`` and receive the
:class:`Problem` as the ``args`` pytree of the solve, so they can be run either
through :meth:`AbstractQuasiNewton.minimize` or directly with
``optimistix.minimise(problem_objective, solver, x0, problem, has_aux=True)``.

Each iteration:

1. Forms a search direction from the curvature information: the dense
   inverse Hessian approximation for BFGS, or the masked two-loop recursion
   over the free coordinates for L-BFGS-B.
2. Runs a backtracking Armijo line search (first or second order).
3. Moves to the new iterate (L-BFGS-B clamps it into the box) and updates the
   curvature information, skipping pairs with sᵀy <= 0.
4. Hands an :class:`IterationState` to ``Problem.callback`` when the problem
   overrides it, and classifies the new state into a
   :class:`TerminationStatus`.

A failed line search leaves the iterate unchanged and ends the solve with
``LINE_SEARCH_FAILED``; it is reported through the status code, never raised.
"""

import functools
import logging
from collections.abc import Callable
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
from jax.experimental import io_callback
from jaxtyping import Array, Bool, Float, Int

from bfgs_jax.hessian import (
    LBFGSHistory,
    bfgs_inverse_update,
    lbfgs_append,
    lbfgs_init,
    lbfgs_two_loop,
)
from bfgs_jax.line_search import (
    ARMIJO_C,
    ARMIJO_RHO,
    MAX_LINE_SEARCH_STEPS,
    LineSearchResult,
    armijo_line_search,
    second_order_armijo_line_search,
)
from bfgs_jax.problem import IterationState, Problem
from bfgs_jax.types import Matrix, ObjectiveFn, TerminationStatus
from bfgs_jax.utils import problem_objective, project_onto_box, projected_gradient

logger = logging.getLogger(__name__)


class BFGSState(eqx.Module):
    """State for the BFGS solver.

    Attributes:
        step_count: Current iteration number.
        f_val: Objective value f(x_k).
        grad: Gradient of the objective at x_k.
        grad_norm: Norm of ``grad``.
        f_change: Relative change of f over the last step (inf before any step).
        step_size: Step length accepted by the last line search.
        status: A :class:`TerminationStatus` code.
        inv_hessian: Dense approximation of the inverse Hessian.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, " n"]
    grad_norm: Float[Array, ""]
    f_change: Float[Array, ""]
    step_size: Float[Array, ""]
    status: Int[Array, ""]
    inv_hessian: Matrix


class LBFGSBState(eqx.Module):
    """State for the L-BFGS-B solver.

    Attributes:
        step_count: Current iteration number.
        f_val: Objective value f(x_k).
        grad: Gradient of the objective at x_k.
        grad_norm: Norm of the projected gradient at x_k.
        f_change: Relative change of f over the last step (inf before any step).
        step_size: Step length accepted by the last line search.
        status: A :class:`TerminationStatus` code.
        history: Circular buffer of the last (s, y) pairs.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, " n"]
    grad_norm: Float[Array, ""]
    f_change: Float[Array, ""]
    step_size: Float[Array, ""]
    status: Int[Array, ""]
    history: LBFGSHistory


def _as_problem(args: Any) -> Problem:
    if not isinstance(args, Problem):
        raise TypeError(
            f"Quasi-Newton solvers expect a Problem as args, got {type(args).__name__}"
        )
    return args


def _relative_change(f_new, f_old):
    scale = jnp.maximum(jnp.abs(f_new), jnp.abs(f_old))
    tiny = jnp.finfo(jnp.result_type(f_new)).tiny
    return jnp.abs(f_new - f_old) / jnp.maximum(scale, tiny)


def _log_iteration(solver_name, iteration, f_val, grad_norm, step_size):
    logger.info(
        "%s iteration %d: f=%.6e |g|=%.3e alpha=%.3e",
        solver_name,
        int(iteration),
        float(f_val),
        float(grad_norm),
        float(step_size),
    )


def _log_termination(solver_name, status, num_steps):
    status = int(status)
    name = TerminationStatus.name(status)
    if status in (TerminationStatus.CONVERGED, TerminationStatus.STOPPED_BY_CALLBACK):
        logger.info("%s finished after %d steps: %s", solver_name, int(num_steps), name)
    else:
        logger.warning(
            "%s finished after %d steps: %s", solver_name, int(num_steps), name
        )


class AbstractQuasiNewton(optx.AbstractMinimiser):
    """Shared configuration and bookkeeping for :class:`BFGS` and :class:`LBFGSB`.

    Convergence is declared when ``norm(grad) <= atol`` (the projected gradient
    for L-BFGS-B) or when the relative change of the objective over a step is
    at most ``rtol``.

    Attributes:
        rtol: Tolerance on the relative change of the objective.
        atol: Tolerance on the gradient norm.
        norm: Norm used for the gradient test.
        max_steps: Maximum number of iterations.
        line_search_c: Armijo sufficient decrease constant, in (0, 1).
        line_search_rho: Backtracking reduction factor, in (0, 1).
        line_search_max_steps: Maximum objective evaluations per line search.
        line_search_order: 1 for the first-order Armijo condition, 2 for the
            curvature-corrected one (evaluates ``Problem.hessian`` each step).
        verbose: Log every iteration at INFO level.
    """

    rtol: float = 1e-10
    atol: float = 1e-6
    norm: Callable = eqx.field(static=True, default=optx.two_norm)

    max_steps: int = eqx.field(static=True, default=1000)

    line_search_c: float = ARMIJO_C
    line_search_rho: float = ARMIJO_RHO
    line_search_max_steps: int = eqx.field(static=True, default=MAX_LINE_SEARCH_STEPS)
    line_search_order: int = eqx.field(static=True, default=1)

    verbose: bool = eqx.field(static=True, default=False)

    def __check_init__(self):
        if self.rtol < 0 or self.atol < 0:
            raise ValueError(
                f"Tolerances must be non-negative, got rtol={self.rtol}, "
                f"atol={self.atol}"
            )
        if self.max_steps <= 0:
            raise ValueError(f"max_steps must be positive, got {self.max_steps}")
        if not 0 < self.line_search_c < 1:
            raise ValueError(
                f"line_search_c must lie in (0, 1), got {self.line_search_c}"
            )
        if not 0 < self.line_search_rho < 1:
            raise ValueError(
                f"line_search_rho must lie in (0, 1), got {self.line_search_rho}"
            )
        if self.line_search_max_steps <= 0:
            raise ValueError(
                "line_search_max_steps must be positive, got "
                f"{self.line_search_max_steps}"
            )
        if self.line_search_order not in (1, 2):
            raise ValueError(
                f"line_search_order must be 1 or 2, got {self.line_search_order}"
            )

    def minimize(
        self,
        problem: Problem,
        y0: Float[Array, " n"],
        *,
        throw: bool = False,
    ) -> optx.Solution:
        """Minimize ``problem`` starting from ``y0``.

        Args:
            problem: The problem to solve.
            y0: Starting point.
            throw: Raise if the solve does not succeed (see ``optimistix``).

        Returns:
            The ``optimistix.Solution``. ``solution.stats["status"]`` holds the
            :class:`TerminationStatus` code.
        """
        problem = _as_problem(problem)
        y0 = jnp.asarray(y0)
        y0 = y0.astype(jnp.result_type(y0, float))
        problem.check_dimension(y0)
        solution = optx.minimise(
            problem_objective,
            self,
            y0,
            problem,
            has_aux=True,
            max_steps=self.max_steps,
            throw=throw,
        )
        jax.debug.callback(
            functools.partial(_log_termination, type(self).__name__),
            solution.stats["status"],
            solution.stats["num_steps"],
        )
        return solution

    # Helpers shared by the concrete solvers

    def _line_search(
        self,
        problem: Problem,
        y: Float[Array, " n"],
        direction: Float[Array, " n"],
        alpha_init,
        f_val: Float[Array, ""],
        grad: Float[Array, " n"],
        lower=None,
        upper=None,
    ) -> LineSearchResult:
        kwargs = dict(
            f_val=f_val,
            grad=grad,
            lower=lower,
            upper=upper,
            c=self.line_search_c,
            rho=self.line_search_rho,
            max_steps=self.line_search_max_steps,
        )
        if self.line_search_order == 2:
            return second_order_armijo_line_search(
                problem, y, direction, alpha_init, **kwargs
            )
        return armijo_line_search(problem, y, direction, alpha_init, **kwargs)

    def _initial_values(self, problem: Problem, y: Float[Array, " n"]):
        problem.check_dimension(y)
        f_val = jnp.asarray(problem.value(y), dtype=y.dtype)
        grad = jnp.asarray(problem.gradient(y), dtype=y.dtype)
        if grad.shape != y.shape:
            raise ValueError(
                f"Problem.gradient returned shape {grad.shape}, expected {y.shape}"
            )
        return f_val, grad

    def _ask_callback(
        self, problem: Problem, iteration_state: IterationState, y: Float[Array, " n"]
    ) -> Bool[Array, ""]:
        """Run ``problem.callback`` on the host; True means keep iterating."""
        if not problem.provides_callback():
            return jnp.array(True)

        dynamic, static = eqx.partition(problem, eqx.is_array)

        def host_callback(dynamic, iteration_state, y):
            keep_going = eqx.combine(dynamic, static).callback(
                IterationState(*iteration_state), y
            )
            return np.asarray(bool(keep_going))

        return io_callback(
            host_callback,
            jax.ShapeDtypeStruct((), jnp.bool_),
            dynamic,
            iteration_state,
            y,
        )

    def _classify(
        self,
        line_search_failed: Bool[Array, ""],
        grad_norm: Float[Array, ""],
        f_change: Float[Array, ""],
        keep_going: Bool[Array, ""],
    ) -> Int[Array, ""]:
        """Map the outcome of a step to a status code.

        A failed line search takes precedence over convergence, which takes
        precedence over a callback stop.
        """
        converged = (grad_norm <= self.atol) | (f_change <= self.rtol)
        status = jnp.where(
            keep_going, TerminationStatus.RUNNING, TerminationStatus.STOPPED_BY_CALLBACK
        )
        status = jnp.where(converged, TerminationStatus.CONVERGED, status)
        status = jnp.where(
            line_search_failed, TerminationStatus.LINE_SEARCH_FAILED, status
        )
        return status.astype(jnp.int32)

    def _report(
        self,
        problem: Problem,
        y_new: Float[Array, " n"],
        step_count: Int[Array, ""],
        f_val: Float[Array, ""],
        grad_norm: Float[Array, ""],
        step_size: Float[Array, ""],
        f_change: Float[Array, ""],
    ) -> Bool[Array, ""]:
        """Log the iteration if verbose and consult the problem callback."""
        if self.verbose:
            jax.debug.callback(
                functools.partial(_log_iteration, type(self).__name__),
                step_count,
                f_val,
                grad_norm,
                step_size,
            )
        iteration_state = IterationState(
            iteration=step_count,
            f_val=f_val,
            grad_norm=grad_norm,
            step_size=step_size,
            f_change=f_change,
        )
        return self._ask_callback(problem, iteration_state, y_new)

    # optimistix.AbstractMinimiser interface shared by both solvers

    def terminate(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: BFGSState | LBFGSBState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], optx.RESULTS]:
        """Stop on any terminal status or when ``max_steps`` is reached.

        Returns:
            Tuple of (done, result). A failed line search maps to
            ``nonlinear_divergence``, running out of steps to
            ``max_steps_reached`` and every other status to ``successful``.
        """
        out_of_steps = state.step_count >= self.max_steps
        done = (state.status != TerminationStatus.RUNNING) | out_of_steps

        result = optx.RESULTS.where(
            state.status == TerminationStatus.LINE_SEARCH_FAILED,
            optx.RESULTS.nonlinear_divergence,
            optx.RESULTS.where(
                (state.status == TerminationStatus.RUNNING) & out_of_steps,
                optx.RESULTS.max_steps_reached,
                optx.RESULTS.successful,
            ),
        )
        return done, result

    def postprocess(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: BFGSState | LBFGSBState,
        tags: frozenset[object],
        result: optx.RESULTS,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Collect solver statistics.

        A solve that stops while still running has hit the step limit, so its
        status is reported as ``MAX_ITERATIONS``.
        """
        status = jnp.where(
            state.status == TerminationStatus.RUNNING,
            TerminationStatus.MAX_ITERATIONS,
            state.status,
        ).astype(jnp.int32)
        stats = {
            "num_steps": state.step_count,
            "final_objective": state.f_val,
            "final_grad_norm": state.grad_norm,
            "status": status,
        }
        return y, aux, stats


class BFGS(AbstractQuasiNewton):
    """Unconstrained BFGS with a dense inverse Hessian approximation.

    The search direction is d = -H ∇f with H initialised to the identity and
    refreshed by the BFGS inverse update after every accepted step. Bounds
    on the problem are ignored (a warning is logged).

    Example:
        >>> import jax.numpy as jnp
        >>> from bfgs_jax import BFGS, Problem
        >>>
        >>> class Quadratic(Problem):
        ...     def value(self, x):
        ...         return jnp.sum((x - 1.0) ** 2)
        >>>
        >>> solution = BFGS().minimize(Quadratic(), jnp.zeros(3))
    """

    def init(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> BFGSState:
        """Evaluate the starting point and set H to the identity."""
        problem = _as_problem(args)
        if problem.has_lower_bound() or problem.has_upper_bound():
            logger.warning(
                "BFGS ignores the bounds of %s; use LBFGSB for box constraints",
                type(problem).__name__,
            )
        f_val, grad = self._initial_values(problem, y)
        grad_norm = self.norm(grad)
        f_change = jnp.asarray(jnp.inf, dtype=y.dtype)

        return BFGSState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            grad_norm=grad_norm,
            f_change=f_change,
            step_size=jnp.asarray(0.0, dtype=y.dtype),
            status=self._classify(
                jnp.array(False), grad_norm, f_change, jnp.array(True)
            ),
            inv_hessian=jnp.eye(y.shape[0], dtype=y.dtype),
        )

    def step(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: BFGSState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], BFGSState, Any]:
        """Perform one BFGS iteration.

        1. d = -H g.
        2. Line search along d; on failure keep y.
        3. Re-evaluate the gradient and apply the inverse update.
        4. Report the iteration and classify the new state.
        """
        problem = _as_problem(args)
        direction = -state.inv_hessian @ state.grad

        ls_result = self._line_search(
            problem, y, direction, 1.0, state.f_val, state.grad
        )
        failed = ~ls_result.success
        y_new = jnp.where(failed, y, y + ls_result.alpha * direction)
        f_new = jnp.where(failed, state.f_val, ls_result.f_val)
        step_size = jnp.where(failed, 0.0, ls_result.alpha)

        grad_new = jnp.asarray(problem.gradient(y_new), dtype=y.dtype)
        # A failed step gives s = 0, which the update skips
        inv_hessian = bfgs_inverse_update(
            state.inv_hessian, y_new - y, grad_new - state.grad
        )

        step_count = state.step_count + 1
        grad_norm = self.norm(grad_new)
        f_change = _relative_change(f_new, state.f_val)
        keep_going = self._report(
            problem, y_new, step_count, f_new, grad_norm, step_size, f_change
        )
        _, aux = fn(y_new, args)

        new_state = BFGSState(
            step_count=step_count,
            f_val=f_new,
            grad=grad_new,
            grad_norm=grad_norm,
            f_change=f_change,
            step_size=step_size,
            status=self._classify(failed, grad_norm, f_change, keep_going),
            inv_hessian=inv_hessian,
        )
        return y_new, new_state, aux


class LBFGSB(AbstractQuasiNewton):
    """Limited-memory BFGS with box constraints.

    Bounds are read from the problem; absent bounds are infinite. Iterates are
    kept feasible by clamping, and the direction is computed by a two-loop
    recursion restricted to the free variables, i.e. the coordinates that are
    not sitting on a bound with the gradient pushing outwards.

    Attributes:
        memory: Number of (s, y) pairs kept in the history (default 10).
    """

    memory: int = eqx.field(static=True, default=10)

    def __check_init__(self):
        if self.memory <= 0:
            raise ValueError(f"memory must be positive, got {self.memory}")

    def _bounds(self, problem: Problem, y: Float[Array, " n"]):
        return problem.get_bounds(y.shape[0], dtype=y.dtype)

    def init(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> LBFGSBState:
        """Evaluate the clamped starting point and start an empty history."""
        problem = _as_problem(args)
        problem.check_dimension(y)
        lower, upper = self._bounds(problem, y)
        y = project_onto_box(y, lower, upper)
        f_val, grad = self._initial_values(problem, y)
        grad_norm = self.norm(projected_gradient(y, grad, lower, upper))
        f_change = jnp.asarray(jnp.inf, dtype=y.dtype)

        return LBFGSBState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            grad_norm=grad_norm,
            f_change=f_change,
            step_size=jnp.asarray(0.0, dtype=y.dtype),
            status=self._classify(
                jnp.array(False), grad_norm, f_change, jnp.array(True)
            ),
            history=lbfgs_init(y.shape[0], self.memory, dtype=y.dtype),
        )

    def _direction(self, y, grad, history, lower, upper):
        """Search direction over the free variables."""
        at_lower = y <= lower
        at_upper = y >= upper
        free = ~((at_lower & (grad > 0)) | (at_upper & (grad < 0)))

        direction = -lbfgs_two_loop(history, grad, free)
        leaves_box = (at_lower & (direction < 0)) | (at_upper & (direction > 0))
        direction = jnp.where(leaves_box, 0.0, direction)

        steepest = -jnp.where(free, grad, 0.0)
        return jnp.where(jnp.dot(direction, grad) < 0, direction, steepest)

    def step(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: LBFGSBState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], LBFGSBState, Any]:
        """Perform one L-BFGS-B iteration.

        1. Compute the free-variable direction.
        2. Projected line search from alpha = 1: every trial point is clamped
           into the box, and on failure y is kept.
        3. Take the clamped point as the new iterate and append (s, y) to the
           history.
        4. Report the iteration and classify the new state.
        """
        problem = _as_problem(args)
        lower, upper = self._bounds(problem, y)
        y = project_onto_box(y, lower, upper)

        direction = self._direction(y, state.grad, state.history, lower, upper)
        ls_result = self._line_search(
            problem, y, direction, 1.0, state.f_val, state.grad, lower, upper
        )
        failed = ~ls_result.success
        candidate = project_onto_box(y + ls_result.alpha * direction, lower, upper)
        y_new = jnp.where(failed, y, candidate)
        f_new = jnp.where(failed, state.f_val, ls_result.f_val)
        step_size = jnp.where(failed, 0.0, ls_result.alpha)

        grad_new = jnp.asarray(problem.gradient(y_new), dtype=y.dtype)
        history = lbfgs_append(state.history, y_new - y, grad_new - state.grad)

        step_count = state.step_count + 1
        grad_norm = self.norm(projected_gradient(y_new, grad_new, lower, upper))
        f_change = _relative_change(f_new, state.f_val)
        keep_going = self._report(
            problem, y_new, step_count, f_new, grad_norm, step_size, f_change
        )
        _, aux = fn(y_new, args)

        new_state = LBFGSBState(
            step_count=step_count,
            f_val=f_new,
            grad=grad_new,
            grad_norm=grad_norm,
            f_change=f_change,
            step_size=step_size,
            status=self._classify(failed, grad_norm, f_change, keep_going),
            history=history,
        )
        return y_new, new_state, aux

    def postprocess(
        self,
        fn: ObjectiveFn,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: LBFGSBState,
        tags: frozenset[object],
        result: optx.RESULTS,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """As for :class:`AbstractQuasiNewton`, with ``y`` clamped into the box.

        The clamp matters when the starting point converges without a step.
        """
        y, aux, stats = super().postprocess(
            fn, y, aux, args, options, state, tags, result
        )
        lower, upper = self._bounds(_as_problem(args), y)
        return project_onto_box(y, lower, upper), aux, stats
