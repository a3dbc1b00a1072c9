"""Pytest fixtures and benchmark residuals for gbroyden testing.

This module provides:
- Benchmark residual functions in out-of-place form f(u, p) and in-place form
  f(out, u, p)
- Known roots and starting points for each benchmark
- Problem factories used by several test modules

Broyden's method starts from the identity as inverse Jacobian, so the
multi-dimensional benchmarks either are linear (finite termination) or have a
Jacobian close to the identity.
"""

from typing import Any, Tuple

import numpy as np
import pytest
from numpy.typing import NDArray

from gbroyden import NonlinearProblem


# =============================================================================
# Pytest Configuration
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "robustness: mark test as robustness/edge case test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow (run on limited CI matrix)"
    )


# =============================================================================
# Benchmark Residual Functions
# =============================================================================


def sqrt2_residual(u: NDArray[np.float64], p: Any) -> NDArray[np.float64]:
    """Scalar F(u) = u^2 - 2, root sqrt(2)."""
    return u**2 - 2.0


def sqrt2_residual_inplace(out: NDArray[np.float64], u: NDArray[np.float64], p: Any) -> None:
    """In-place form of sqrt2_residual."""
    out[...] = u**2 - 2.0


def shifted_identity_residual(u: NDArray[np.float64], p: NDArray[np.float64]) -> NDArray[np.float64]:
    """F(u) = u - p. The identity is the exact inverse Jacobian."""
    return u - p


def linear_residual(
    u: NDArray[np.float64], p: Tuple[NDArray[np.float64], NDArray[np.float64]]
) -> NDArray[np.float64]:
    """F(u) = A u - b with p = (A, b). Root A^-1 b."""
    A, b = p
    return A @ u - b


def mild_residual(u: NDArray[np.float64], p: NDArray[np.float64]) -> NDArray[np.float64]:
    """F(u) = u + 0.1 sin(roll(u, 1)) - p.

    The Jacobian is I + 0.1 diag(cos(roll(u, 1))) P for a cyclic permutation
    P, so the identity is a contracting inverse Jacobian guess.
    """
    return u + 0.1 * np.sin(np.roll(u, 1)) - p


def mild_residual_inplace(
    out: NDArray[np.float64], u: NDArray[np.float64], p: NDArray[np.float64]
) -> None:
    """In-place form of mild_residual."""
    out[...] = u + 0.1 * np.sin(np.roll(u, 1)) - p


def constant_residual(u: NDArray[np.float64], p: Any) -> NDArray[np.float64]:
    """F(u) = 1 everywhere: no root exists."""
    return np.ones_like(u)


def constant_residual_inplace(out: NDArray[np.float64], u: NDArray[np.float64], p: Any) -> None:
    """In-place form of constant_residual."""
    out.fill(1.0)


def rotation_residual_inplace(out: NDArray[np.float64], u: NDArray[np.float64], p: Any) -> None:
    """F(u) = R u with R a quarter turn.

    From u0 = (1, 0) the first residual change is orthogonal to the first
    step, so the first secant denominator is exactly zero.
    """
    out[0] = u[1]
    out[1] = -u[0]


# =============================================================================
# Known Roots and Starting Points
# =============================================================================

SQRT2 = np.sqrt(2.0)
SQRT2_U0 = 1.0

LINEAR_A = np.array([[2.0, 1.0], [0.5, 3.0]])
LINEAR_B = np.array([1.0, -2.0])
LINEAR_SOLUTION = np.linalg.solve(LINEAR_A, LINEAR_B)
LINEAR_U0 = np.array([0.0, 0.0])

MILD_P = np.array([1.0, 2.0, 0.5])
MILD_U0 = np.zeros(3)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(params=[False, True], ids=["out-of-place", "in-place"])
def iip(request):
    """Run a test once per execution shape."""
    return request.param


@pytest.fixture
def mild_problem(iip):
    f = mild_residual_inplace if iip else mild_residual
    return NonlinearProblem(f, MILD_U0.copy(), p=MILD_P)


@pytest.fixture
def constant_problem(iip):
    f = constant_residual_inplace if iip else constant_residual
    return NonlinearProblem(f, np.array([1.0, -1.0]), p=None)
