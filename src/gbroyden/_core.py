"""Core solve() function driving the Broyden iteration.

This module is the outer loop around BroydenCache.step():
1. Build the cache (one residual evaluation at u0)
2. Step until the cache stops itself or the iteration budget runs out
3. Package the final state into a SolverResult

The solve() function is the main public API of the gbroyden package.
"""

import dataclasses
from typing import Any, Optional

import numpy as np

from gbroyden._cache import BroydenCache, init
from gbroyden._types import GeneralBroyden, NonlinearProblem, ReturnCode, SolverResult

_MESSAGES = {
    ReturnCode.SUCCESS: "Converged",
    ReturnCode.CONVERGENCE_FAILURE: "Inverse Jacobian reset budget exhausted",
    ReturnCode.MAX_ITERS: "Maximum number of iterations reached",
    ReturnCode.STALLED: "Residual norm stopped improving",
    ReturnCode.UNSTABLE: "Residual norm grew beyond the protective threshold",
    ReturnCode.DEFAULT: "Solve in progress",
}


def solve_cache(cache: BroydenCache) -> SolverResult:
    """Iterate an initialized cache to completion.

    Calls cache.step() until the cache sets force_stop or cache.maxiters
    steps have been taken, in which case the return code becomes
    ReturnCode.MAX_ITERS.

    Args:
        cache: Cache from gbroyden.init(), possibly after reinit().

    Returns:
        SolverResult describing the final iterate.
    """
    verbose = cache.verbose

    if verbose >= 1:
        print(
            f"[Broyden] Solving n={cache.u.size} system "
            f"(max_resets={cache.max_resets}, maxiters={cache.maxiters}, "
            f"abstol={cache.abstol:.1e}, reltol={cache.reltol:.1e})"
        )

    while not cache.force_stop and cache.stats.nsteps < cache.maxiters:
        cache.step()
        if verbose >= 1 and cache.stats.nsteps % 10 == 0:
            print(
                f"    [Broyden] Iteration {cache.stats.nsteps:4d}: "
                f"|f|={cache.internalnorm(cache.fu):.4e}, resets={cache.resets}"
            )

    if not cache.force_stop:
        cache.retcode = ReturnCode.MAX_ITERS
        cache.force_stop = True

    residual_norm = float(cache.internalnorm(cache.fu))
    success = cache.retcode is ReturnCode.SUCCESS

    if success:
        message = f"Converged: residual norm {residual_norm:.2e} after {cache.stats.nsteps} steps"
    else:
        message = f"Not converged: {_MESSAGES[cache.retcode]}"

    if verbose >= 0:
        status = "CONVERGED" if success else "NOT CONVERGED"
        print(f"[Broyden] {status} ({cache.retcode.value})")
        print(f"    Residual norm: {residual_norm:.4e}")
        print(
            f"    Evaluations: {cache.stats.nf} function, "
            f"{cache.stats.nsteps} steps, {cache.resets} resets"
        )

    return SolverResult(
        u=np.array(cache.u, copy=True),
        fu=np.array(cache.fu, copy=True),
        retcode=cache.retcode,
        success=success,
        message=message,
        nf=cache.stats.nf,
        nsteps=cache.stats.nsteps,
        resets=cache.resets,
        residual_norm=residual_norm,
        stats=dataclasses.replace(cache.stats),
    )


def solve(
    prob: NonlinearProblem,
    alg: Optional[GeneralBroyden] = None,
    *,
    verbose: int = 0,
    **kwargs: Any,
) -> SolverResult:
    """Solve a nonlinear system with Broyden's method.

    Broyden's method maintains an approximation of the inverse Jacobian and
    corrects it with a rank-1 secant update after every step, so the true
    Jacobian is never computed. When a step or the residual change becomes
    negligible the approximation is reset to the identity; once alg.max_resets
    resets have been used, the next one ends the solve with
    ReturnCode.CONVERGENCE_FAILURE.

    Args:
        prob: The nonlinear problem F(u, p) = 0.
        alg: Algorithm options. Default GeneralBroyden().
        verbose: Verbosity level:
            -1: Silent (no output)
             0: Final summary only (default)
             1: Start banner and every 10th iteration
             2: Also resets and zero-denominator guards
        **kwargs: Forwarded to gbroyden.init() (alias_u0, maxiters, abstol,
            reltol, termination_condition, internalnorm).

    Returns:
        SolverResult with fields:
            u: Final iterate
            fu: Residual at u
            retcode: ReturnCode of the solve
            success: True if retcode is ReturnCode.SUCCESS
            message: Status message
            nf: Residual evaluations
            nsteps: Iterations performed
            resets: Inverse Jacobian resets performed
            residual_norm: Internal norm of fu
            stats: Full NLStats record

    Raises:
        ValueError: If u0 is empty, the residual shape does not match u0, or
            an option is out of range.

    Example:
        >>> import numpy as np
        >>> from gbroyden import NonlinearProblem, solve
        >>> prob = NonlinearProblem(lambda u, p: u ** 2 - p, np.array([1.0, 1.0]), p=2.0)
        >>> result = solve(prob, verbose=-1)
        >>> print(result.u)  # [1.41421356 1.41421356]
        >>> print(result.success)  # True
    """
    cache = init(prob, alg, verbose=verbose, **kwargs)
    return solve_cache(cache)
