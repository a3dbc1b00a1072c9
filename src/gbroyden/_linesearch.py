"""Line search collaborators.

A line search is any callable search(u, du) -> alpha returning the step length
used for the update u <- u - alpha * du. This module provides the trivial
strategies and the conversion from user configuration.
"""

import numbers
from typing import Any, Callable

from numpy.typing import NDArray

LineSearchFn = Callable[[NDArray[Any], NDArray[Any]], float]


class NoLineSearch:
    """Full Broyden step: always returns a step length of exactly 1.0."""

    def __call__(self, u: NDArray[Any], du: NDArray[Any]) -> float:
        return 1.0

    def __repr__(self) -> str:
        return "NoLineSearch()"


class StaticLineSearch:
    """Fixed step length, independent of the iterate."""

    def __init__(self, alpha: float) -> None:
        if not alpha > 0:
            raise ValueError(f"step length must be positive, got {alpha!r}")
        self.alpha = float(alpha)

    def __call__(self, u: NDArray[Any], du: NDArray[Any]) -> float:
        return self.alpha

    def __repr__(self) -> str:
        return f"StaticLineSearch(alpha={self.alpha!r})"


def init_linesearch(linesearch: Any) -> LineSearchFn:
    """Convert a line search configuration into a collaborator.

    Args:
        linesearch: None for no line search, a positive real number for a
            fixed step length, or a callable search(u, du) -> alpha.

    Returns:
        Callable search(u, du) -> alpha.

    Raises:
        TypeError: If linesearch is none of the accepted forms.
    """
    if linesearch is None:
        return NoLineSearch()
    if isinstance(linesearch, numbers.Real) and not isinstance(linesearch, bool):
        return StaticLineSearch(float(linesearch))
    if callable(linesearch):
        return linesearch
    raise TypeError(
        "linesearch must be None, a step length, or a callable search(u, du) -> alpha, "
        f"got {type(linesearch).__name__}"
    )
