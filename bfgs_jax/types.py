"""Type definitions for BFGS-JAX.

This module contains type aliases and custom types used throughout the package.
All types use jaxtyping for runtime type checking with beartype.
"""

from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]
Matrix = Float[Array, "n n"]

# Scalar function of a parameter vector: f(x) -> f
ScalarFn = Callable[[Vector], Scalar]

# Objective in optimistix form: takes parameters and args, returns (value, aux)
ObjectiveFn = Callable[[Vector, Any], tuple[Scalar, Any]]


# Status codes for solver termination
class TerminationStatus:
    """Constants for solver termination status."""

    RUNNING = -1
    CONVERGED = 0
    MAX_ITERATIONS = 1
    LINE_SEARCH_FAILED = 2
    STOPPED_BY_CALLBACK = 3

    @classmethod
    def name(cls, code: int) -> str:
        """Return the human-readable name of a status code."""
        for key, value in vars(cls).items():
            if key.isupper() and value == code:
                return key
        raise ValueError(f"Unknown termination status {code}")
