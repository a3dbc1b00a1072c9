"""Termination checks for the Broyden iteration.

The update engine calls TerminationCache.check(u_old, u_new, fu_new) once per
iteration. The cache owns the absolute and relative tolerances and, for the
safe-best modes, remembers the best residual norm seen so far so that
stagnating or diverging solves can be stopped early.
"""

import math
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

from gbroyden._types import ReturnCode

NormFn = Callable[[NDArray[Any]], float]

TERMINATION_MODES = (
    "abs",
    "rel",
    "abs_norm",
    "rel_norm",
    "abs_safe_best",
    "rel_safe_best",
)
SAFE_BEST_MODES = ("abs_safe_best", "rel_safe_best")


def default_norm(x: ArrayLike) -> float:
    """RMS norm: ||x||_2 / sqrt(len(x)). Works for real and complex arrays."""
    x = np.asarray(x).ravel()
    if x.size == 0:
        return 0.0
    return float(np.linalg.norm(x)) / math.sqrt(x.size)


def default_tolerance(dtype: Any) -> float:
    """eps ** (4/5) of the real part of dtype, about 3e-13 for float64."""
    return float(np.finfo(dtype).eps ** 0.8)


@dataclass(frozen=True)
class TerminationCondition:
    """Configuration of the termination check.

    Attributes:
        mode: One of TERMINATION_MODES. Default "abs_safe_best".
        max_stalled_steps: Safe-best modes stop with ReturnCode.STALLED after
            this many consecutive checks without a new best residual norm.
        protective_threshold: Safe-best modes stop with ReturnCode.UNSTABLE
            once the residual norm exceeds this multiple of the initial norm.
    """

    mode: str = "abs_safe_best"
    max_stalled_steps: int = 32
    protective_threshold: float = 1e3

    def __post_init__(self) -> None:
        if self.mode not in TERMINATION_MODES:
            raise ValueError(
                f"unknown termination mode {self.mode!r}, expected one of {TERMINATION_MODES}"
            )
        if self.max_stalled_steps < 1:
            raise ValueError(f"max_stalled_steps must be >= 1, got {self.max_stalled_steps}")

    @classmethod
    def from_value(cls, value: Union[None, str, "TerminationCondition"]) -> "TerminationCondition":
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(mode=value)
        if isinstance(value, cls):
            return value
        raise TypeError(
            f"termination_condition must be a mode name or TerminationCondition, got {type(value).__name__}"
        )


class TerminationCache:
    """Stateful termination check for one solve.

    Attributes:
        condition: The TerminationCondition in effect.
        abstol: Absolute tolerance.
        reltol: Relative tolerance.
        retcode: ReturnCode of the last check that signalled a stop, or
            ReturnCode.DEFAULT.
        best_objective: Smallest residual norm seen (safe-best modes).
        u_best: Iterate at which best_objective was seen (safe-best modes).
    """

    def __init__(
        self,
        condition: TerminationCondition,
        abstol: float,
        reltol: float,
        internalnorm: NormFn,
        fu: NDArray[Any],
        u: NDArray[Any],
    ) -> None:
        self.condition = condition
        self.abstol = abstol
        self.reltol = reltol
        self.internalnorm = internalnorm
        self.reinit(fu, u)

    @property
    def mode(self) -> str:
        return self.condition.mode

    def reinit(
        self,
        fu: NDArray[Any],
        u: NDArray[Any],
        abstol: Optional[float] = None,
        reltol: Optional[float] = None,
    ) -> None:
        """Forget all state from a previous solve."""
        if abstol is not None:
            self.abstol = abstol
        if reltol is not None:
            self.reltol = reltol
        self.retcode = ReturnCode.DEFAULT
        self.initial_objective = self.internalnorm(fu)
        self.best_objective = self.initial_objective
        self.u_best = np.array(u, copy=True)
        self.nstalled = 0

    def _converged(self, fu: NDArray[Any], u: NDArray[Any]) -> bool:
        mode = self.mode
        if mode == "abs":
            return bool(np.all(np.abs(fu) <= self.abstol))
        if mode == "rel":
            return bool(np.all(np.abs(fu) <= self.reltol * np.abs(fu + u)))
        objective = self.internalnorm(fu)
        if mode in ("abs_norm", "abs_safe_best"):
            return objective <= self.abstol
        return objective <= self.reltol * self.internalnorm(fu + u)

    def check(self, u_old: NDArray[Any], u_new: NDArray[Any], fu_new: NDArray[Any]) -> bool:
        """Return True if the iteration should stop after reaching u_new.

        u_old is the iterate before the step; it is part of the check
        signature but none of the current modes depends on it.
        """
        if self._converged(fu_new, u_new):
            self.retcode = ReturnCode.SUCCESS
            return True

        if self.mode not in SAFE_BEST_MODES:
            return False

        objective = self.internalnorm(fu_new)
        if objective < self.best_objective:
            self.best_objective = objective
            self.u_best = np.array(u_new, copy=True)
            self.nstalled = 0
        else:
            self.nstalled += 1

        if not np.isfinite(objective) or (
            objective > self.condition.protective_threshold * self.initial_objective
        ):
            self.retcode = ReturnCode.UNSTABLE
            return True
        if self.nstalled >= self.condition.max_stalled_steps:
            self.retcode = ReturnCode.STALLED
            return True
        return False


def init_termination_cache(
    abstol: Optional[float],
    reltol: Optional[float],
    fu: NDArray[Any],
    u: NDArray[Any],
    termination_condition: Union[None, str, TerminationCondition] = None,
    internalnorm: Optional[NormFn] = None,
) -> Tuple[float, float, TerminationCache]:
    """Resolve default tolerances and build the termination cache.

    Returns:
        Tuple of:
            - abstol: Absolute tolerance in effect.
            - reltol: Relative tolerance in effect.
            - tc_cache: TerminationCache primed with fu and u.
    """
    condition = TerminationCondition.from_value(termination_condition)
    dtype = np.result_type(np.asarray(u).dtype, np.asarray(fu).dtype)
    abstol = default_tolerance(dtype) if abstol is None else float(abstol)
    reltol = default_tolerance(dtype) if reltol is None else float(reltol)
    if abstol < 0 or reltol < 0:
        raise ValueError(f"tolerances must be non-negative, got abstol={abstol}, reltol={reltol}")
    norm = default_norm if internalnorm is None else internalnorm
    return abstol, reltol, TerminationCache(condition, abstol, reltol, norm, fu, u)
