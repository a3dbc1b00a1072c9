"""Public type definitions for the gbroyden nonlinear solver package.

This module defines the core data structures shared by init(), step(),
reinit() and solve():
- NonlinearProblem: Immutable problem description (residual, u0, p)
- GeneralBroyden: Algorithm options (reset budget, reset tolerance, line search)
- ReturnCode: Status of a solve
- NLStats: Mutable evaluation/step counters
- SolverResult: Immutable result container returned by solve()
"""

import enum
import inspect
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Iterator, List, Optional

from numpy.typing import ArrayLike, NDArray


class ReturnCode(enum.Enum):
    """Status of a Broyden solve.

    DEFAULT means the solve is still in progress; every other code is terminal.
    """

    DEFAULT = "Default"
    SUCCESS = "Success"
    CONVERGENCE_FAILURE = "ConvergenceFailure"
    MAX_ITERS = "MaxIters"
    STALLED = "Stalled"
    UNSTABLE = "Unstable"

    @property
    def is_terminal(self) -> bool:
        return self is not ReturnCode.DEFAULT


@dataclass
class NLStats:
    """Counters accumulated over one solve.

    Attributes:
        nf: Number of residual function evaluations.
        nsteps: Number of iterations performed.
        njacs: Number of Jacobian evaluations (always 0 for Broyden).
        nfactors: Number of matrix factorizations (always 0 for Broyden).
        nsolve: Number of linear solves (always 0 for Broyden).
        ndenom_guards: Number of secant updates whose denominator was exactly
            zero and was replaced by a small constant.
    """

    nf: int = 1
    nsteps: int = 0
    njacs: int = 0
    nfactors: int = 0
    nsolve: int = 0
    ndenom_guards: int = 0

    def reset(self) -> None:
        """Return to the counts of a freshly initialized solve."""
        self.nf = 1
        self.nsteps = 0
        self.njacs = 0
        self.nfactors = 0
        self.nsolve = 0
        self.ndenom_guards = 0


def _detect_inplace(f: Callable[..., Any]) -> bool:
    try:
        params = inspect.signature(f).parameters.values()
    except (TypeError, ValueError):
        return False
    positional = [
        p
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) == 3


@dataclass(frozen=True)
class NonlinearProblem:
    """A nonlinear system F(u, p) = 0.

    Attributes:
        f: Residual function. Either f(u, p) -> residual (out-of-place) or
            f(out, u, p) -> None writing the residual into out (in-place).
        u0: Initial iterate. Any array shape, including 0-d scalars.
        p: Parameter passed through to f unchanged. Default None.
        iip: True for the in-place form, False for the out-of-place form.
            Default None detects it from the number of positional
            parameters of f.
    """

    f: Callable[..., Any]
    u0: ArrayLike
    p: Any = None
    iip: Optional[bool] = None

    def __post_init__(self) -> None:
        if not callable(self.f):
            raise TypeError(f"f must be callable, got {type(self.f).__name__}")
        if self.iip is None:
            object.__setattr__(self, "iip", _detect_inplace(self.f))


@dataclass(frozen=True)
class GeneralBroyden:
    """Options of Broyden's method with resetting and line search.

    Attributes:
        max_resets: Maximum number of inverse Jacobian resets before the solve
            is declared a convergence failure. Default 3.
        reset_tolerance: Threshold of the reset check. Default None uses
            sqrt(eps) of the working dtype.
        linesearch: Line search collaborator search(u, du) -> step length, a
            fixed step length, or None for no line search (step length 1).
    """

    max_resets: int = 3
    reset_tolerance: Optional[float] = None
    linesearch: Any = None

    def __post_init__(self) -> None:
        if int(self.max_resets) != self.max_resets or self.max_resets < 0:
            raise ValueError(f"max_resets must be a non-negative integer, got {self.max_resets!r}")
        if self.reset_tolerance is not None and not self.reset_tolerance > 0:
            raise ValueError(f"reset_tolerance must be positive, got {self.reset_tolerance!r}")


@dataclass(frozen=True)
class SolverResult:
    """Result of gbroyden.solve() - immutable container with dict-like access.

    Attributes:
        u: Final iterate, same shape as u0.
        fu: Residual at u.
        retcode: ReturnCode describing the outcome.
        success: True if retcode is ReturnCode.SUCCESS.
        message: Human-readable status message describing the outcome.
        nf: Number of residual function evaluations performed.
        nsteps: Number of iterations performed.
        resets: Number of inverse Jacobian resets performed.
        residual_norm: Internal norm of the residual at u.
        stats: Full statistics record of the solve.
    """

    u: NDArray[Any]
    fu: NDArray[Any]
    retcode: ReturnCode
    success: bool
    message: str
    nf: int
    nsteps: int
    resets: int = field(default=0)
    residual_norm: float = field(default=0.0)
    stats: Optional[NLStats] = None

    def __getitem__(self, key: str) -> object:
        """Enable dict-style access: result['u']."""
        return getattr(self, key)

    def keys(self) -> List[str]:
        """Return list of field names for dict-like iteration."""
        return [f.name for f in fields(self)]

    def __iter__(self) -> Iterator[str]:
        """Iterate over field names."""
        return iter(self.keys())

    def __contains__(self, key: str) -> bool:
        """Check if key is a valid field name."""
        return key in self.keys()
