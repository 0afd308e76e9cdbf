from typing import TYPE_CHECKING, Any

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

if TYPE_CHECKING:
    from bfgs_jax.problem import Problem


def problem_objective(x: jnp.ndarray, problem: "Problem") -> tuple[jnp.ndarray, Any]:
    return problem.value(x), None


@jaxtyped(typechecker=beartype)
def project_onto_box(
    x: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    return jnp.clip(x, lower, upper)


@jaxtyped(typechecker=beartype)
def projected_gradient(
    x: Float[Array, " n"],
    grad: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Projected gradient ``P(x - g) - x``; zero at a box-constrained stationary point."""
    return jnp.clip(x - grad, lower, upper) - x
