"""Tests for the backtracking Armijo line searches."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jaxtyping import Array, Float

from bfgs_jax import Problem
from bfgs_jax.line_search import (
    ARMIJO_C,
    armijo_line_search,
    second_order_armijo_line_search,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


class Quadratic(Problem):
    """f(x) = 0.5 x^T Q x - b^T x"""

    Q: Float[Array, "n n"]
    b: Float[Array, " n"]

    def value(self, x):
        return 0.5 * x @ self.Q @ x - self.b @ x

    def gradient(self, x):
        return self.Q @ x - self.b

    def hessian(self, x):
        return self.Q


class Quartic(Problem):
    def value(self, x):
        return jnp.sum(x**4)

    def gradient(self, x):
        return 4 * x**3


@pytest.fixture
def quadratic():
    Q = jnp.array([[4.0, 1.0], [1.0, 3.0]])
    b = jnp.array([1.0, 2.0])
    return Quadratic(Q, b)


class TestArmijoLineSearch:
    """Tests for the first-order Armijo condition."""

    def test_steepest_descent_sufficient_decrease(self, quadratic):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        direction = -grad
        result = armijo_line_search(quadratic, x, direction)

        assert result.success
        assert result.alpha > 0
        f_x = quadratic.value(x)
        f_new = quadratic.value(x + result.alpha * direction)
        np.testing.assert_allclose(result.f_val, f_new)
        assert f_new <= f_x + ARMIJO_C * result.alpha * jnp.dot(grad, direction)

    def test_accepts_unit_step_when_possible(self, quadratic):
        """A Newton step on a quadratic satisfies the condition immediately."""
        x = jnp.array([2.0, -1.0])
        direction = -jnp.linalg.solve(quadratic.Q, quadratic.gradient(x))
        result = armijo_line_search(quadratic, x, direction)
        assert result.success
        assert result.alpha == 1.0
        assert result.n_evals == 1

    def test_backtracks_on_long_step(self):
        problem = Quartic()
        x = jnp.array([1.0, 1.0])
        direction = -10.0 * problem.gradient(x)
        result = armijo_line_search(problem, x, direction)
        assert result.success
        assert result.alpha < 1.0
        assert result.n_evals > 1
        np.testing.assert_allclose(result.alpha, 0.9 ** (int(result.n_evals) - 1))

    def test_uses_supplied_values(self, quadratic):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        result = armijo_line_search(
            quadratic, x, -grad, f_val=quadratic.value(x), grad=grad
        )
        assert result.success

    def test_non_descent_direction_fails(self, quadratic):
        x = jnp.array([2.0, -1.0])
        direction = quadratic.gradient(x)
        result = armijo_line_search(quadratic, x, direction)
        assert not result.success
        assert result.n_evals == 0

    def test_exhausts_max_steps(self):
        problem = Quartic()
        x = jnp.array([1.0])
        result = armijo_line_search(problem, x, jnp.array([-1e6]), max_steps=5)
        assert not result.success
        assert result.n_evals == 5

    def test_custom_constants(self, quadratic):
        x = jnp.array([2.0, -1.0])
        direction = -quadratic.gradient(x)
        result = armijo_line_search(quadratic, x, direction, c=1e-4, rho=0.5)
        assert result.success
        assert float(result.alpha) in [0.5**k for k in range(10)]

    def test_jittable(self, quadratic):
        x = jnp.array([2.0, -1.0])

        @jax.jit
        def search(problem, x):
            return armijo_line_search(problem, x, -problem.gradient(x))

        result = search(quadratic, x)
        assert result.success

    @pytest.mark.parametrize(
        "kwargs, match",
        [
            ({"c": 1.5}, "Armijo constant"),
            ({"rho": 0.0}, "rho"),
            ({"max_steps": 0}, "max_steps"),
        ],
    )
    def test_invalid_parameters(self, quadratic, kwargs, match):
        x = jnp.array([2.0, -1.0])
        with pytest.raises(ValueError, match=match):
            armijo_line_search(quadratic, x, -quadratic.gradient(x), **kwargs)

    def test_invalid_initial_step(self, quadratic):
        x = jnp.array([2.0, -1.0])
        with pytest.raises(ValueError, match="alpha_init"):
            armijo_line_search(quadratic, x, -quadratic.gradient(x), 0.0)

    @pytest.mark.parametrize("alpha_init", [1e-3, 0.5, 1.0, 50.0])
    def test_sufficient_decrease_from_any_initial_step(self, quadratic, alpha_init):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        direction = -grad
        result = armijo_line_search(quadratic, x, direction, alpha_init)

        assert result.success
        assert 0 < result.alpha <= alpha_init
        f_new = quadratic.value(x + result.alpha * direction)
        slope = ARMIJO_C * jnp.dot(grad, direction)
        assert f_new <= quadratic.value(x) + result.alpha * slope

    def test_direction_shape_mismatch(self, quadratic):
        with pytest.raises(ValueError, match="direction"):
            armijo_line_search(quadratic, jnp.array([2.0, -1.0]), jnp.ones(3))


class TestSecondOrderArmijoLineSearch:
    """Tests for the curvature-corrected Armijo condition."""

    def test_sufficient_decrease(self, quadratic):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        direction = -grad
        result = second_order_armijo_line_search(quadratic, x, direction)

        assert result.success
        assert result.alpha > 0
        c = ARMIJO_C
        slope = c * jnp.dot(grad, direction) + 0.5 * c * c * (
            direction @ quadratic.Q @ direction
        )
        f_new = quadratic.value(x + result.alpha * direction)
        assert f_new <= quadratic.value(x) + result.alpha * slope

    @pytest.mark.parametrize("alpha_init", [1e-3, 0.5, 1.0, 50.0])
    def test_sufficient_decrease_from_any_initial_step(self, quadratic, alpha_init):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        direction = -grad
        result = second_order_armijo_line_search(quadratic, x, direction, alpha_init)

        assert result.success
        assert 0 < result.alpha <= alpha_init
        c = ARMIJO_C
        slope = c * jnp.dot(grad, direction) + 0.5 * c * c * (
            direction @ quadratic.Q @ direction
        )
        f_new = quadratic.value(x + result.alpha * direction)
        assert f_new <= quadratic.value(x) + result.alpha * slope

    def test_newton_step_accepted(self, quadratic):
        x = jnp.array([2.0, -1.0])
        direction = -jnp.linalg.solve(quadratic.Q, quadratic.gradient(x))
        result = second_order_armijo_line_search(quadratic, x, direction)
        assert result.success
        assert result.alpha == 1.0

    def test_finite_difference_hessian(self):
        """Without an analytic Hessian the problem falls back to finite differences."""
        problem = Quartic()
        x = jnp.array([1.0, -0.5])
        direction = -problem.gradient(x)
        result = second_order_armijo_line_search(problem, x, direction)
        assert result.success

    def test_non_descent_direction_fails(self, quadratic):
        x = jnp.array([2.0, -1.0])
        result = second_order_armijo_line_search(
            quadratic, x, quadratic.gradient(x)
        )
        assert not result.success

    def test_hessian_shape_mismatch(self, quadratic):
        x = jnp.array([2.0, -1.0])
        with pytest.raises(ValueError, match="Hessian"):
            second_order_armijo_line_search(
                quadratic, x, -quadratic.gradient(x), hessian=jnp.eye(3)
            )


class TestProjectedLineSearch:
    """With bounds every trial point is clamped into the box."""

    def test_clamped_step_is_not_shortened(self, quadratic):
        x = jnp.array([2.0, -1.0])
        grad = quadratic.gradient(x)
        direction = -grad
        lower = jnp.array([1.9, -10.0])
        upper = jnp.array([10.0, 10.0])

        result = armijo_line_search(
            quadratic, x, direction, lower=lower, upper=upper
        )

        assert result.success
        # Coordinate 0 reaches its bound at alpha = 1/60; the search goes past it
        assert result.alpha > 0.1
        x_new = jnp.clip(x + result.alpha * direction, lower, upper)
        assert x_new[0] == 1.9
        np.testing.assert_allclose(result.f_val, quadratic.value(x_new))
        assert result.f_val <= quadratic.value(x) + ARMIJO_C * jnp.dot(
            grad, x_new - x
        )

    def test_matches_unprojected_search_inside_the_box(self, quadratic):
        x = jnp.array([2.0, -1.0])
        direction = -quadratic.gradient(x)
        big = 1e3 * jnp.ones(2)

        plain = armijo_line_search(quadratic, x, direction)
        boxed = armijo_line_search(quadratic, x, direction, lower=-big, upper=big)

        np.testing.assert_allclose(boxed.alpha, plain.alpha)
        np.testing.assert_allclose(boxed.f_val, plain.f_val)

    def test_second_order(self, quadratic):
        x = jnp.array([2.0, -1.0])
        direction = -quadratic.gradient(x)
        lower = jnp.array([1.9, -10.0])

        result = second_order_armijo_line_search(
            quadratic, x, direction, lower=lower
        )

        assert result.success
        x_new = jnp.maximum(x + result.alpha * direction, lower)
        assert result.f_val < quadratic.value(x)
        np.testing.assert_allclose(result.f_val, quadratic.value(x_new))

    def test_bound_shape_mismatch(self, quadratic):
        x = jnp.array([2.0, -1.0])
        with pytest.raises(ValueError, match="lower"):
            armijo_line_search(
                quadratic, x, -quadratic.gradient(x), lower=jnp.zeros(3)
            )
