"""gbroyden: Broyden's quasi-Newton method with resets for nonlinear systems."""

try:
    from gbroyden._version import __version__
except ImportError:
    __version__ = "0.1.0"

from gbroyden._cache import BroydenCache, init
from gbroyden._core import solve, solve_cache
from gbroyden._linesearch import NoLineSearch, StaticLineSearch
from gbroyden._termination import TerminationCondition
from gbroyden._types import GeneralBroyden, NLStats, NonlinearProblem, ReturnCode, SolverResult

__all__ = [
    "__version__",
    "init",
    "solve",
    "solve_cache",
    "BroydenCache",
    "GeneralBroyden",
    "NonlinearProblem",
    "NLStats",
    "ReturnCode",
    "SolverResult",
    "NoLineSearch",
    "StaticLineSearch",
    "TerminationCondition",
]
