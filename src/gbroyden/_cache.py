"""Solver state and the Broyden iteration step.

BroydenCache owns every mutable quantity of a solve: the iterate, the
residuals, the inverse Jacobian approximation, scratch buffers, counters and
the status code. The iteration itself is written once in BroydenCache.step();
the array work is delegated to one of two engines chosen at construction:

- InPlaceEngine: residual f(out, u, p), all buffers are mutated in place
- OutOfPlaceEngine: residual f(u, p), every quantity is rebuilt each step

Both engines use the same secant update routine from gbroyden._jacobian.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
from numpy.typing import ArrayLike, NDArray

from gbroyden._jacobian import init_identity_jacobian, reset_identity_jacobian, secant_update
from gbroyden._linesearch import LineSearchFn, init_linesearch
from gbroyden._reset import ResetCheck
from gbroyden._termination import (
    NormFn,
    TerminationCache,
    TerminationCondition,
    default_norm,
    init_termination_cache,
)
from gbroyden._types import GeneralBroyden, NLStats, NonlinearProblem, ReturnCode

_UNSET = object()


def _vec(x: NDArray[Any]) -> NDArray[Any]:
    return x.reshape(-1)


class InPlaceEngine:
    """Array primitives for residual functions of the form f(out, u, p)."""

    inplace = True

    def search_direction(self, cache: "BroydenCache") -> None:
        np.matmul(cache.J_inv, _vec(cache.fu), out=_vec(cache.du))

    def advance(self, cache: "BroydenCache", alpha: float) -> None:
        np.copyto(cache.u_prev, cache.u)
        cache.u -= alpha * cache.du

    def evaluate_trial(self, cache: "BroydenCache") -> None:
        cache.prob.f(cache.fu2, cache.u, cache.p)

    def residual_delta(self, cache: "BroydenCache") -> None:
        np.subtract(cache.fu2, cache.fu, out=cache.dfu)

    def commit_residual(self, cache: "BroydenCache") -> None:
        np.copyto(cache.fu, cache.fu2)

    def reset_jacobian(self, cache: "BroydenCache") -> None:
        reset_identity_jacobian(cache.J_inv)

    def update_jacobian(self, cache: "BroydenCache") -> bool:
        update = secant_update(
            cache.J_inv,
            _vec(cache.du),
            _vec(cache.dfu),
            cache.J_inv_df,
            cache.J_inv_row,
            inplace=True,
        )
        return update.denom_guarded

    def restart(self, cache: "BroydenCache", u0: NDArray[Any]) -> None:
        np.copyto(cache.u, u0)
        np.copyto(cache.u_prev, cache.u)
        cache.prob.f(cache.fu, cache.u, cache.p)


class OutOfPlaceEngine:
    """Array primitives for residual functions of the form f(u, p) -> fu."""

    inplace = False

    def search_direction(self, cache: "BroydenCache") -> None:
        cache.du = (cache.J_inv @ _vec(cache.fu)).reshape(cache.u.shape)

    def advance(self, cache: "BroydenCache", alpha: float) -> None:
        cache.u_prev = cache.u
        cache.u = np.asarray(cache.u - alpha * cache.du)

    def evaluate_trial(self, cache: "BroydenCache") -> None:
        cache.fu2 = np.asarray(cache.prob.f(cache.u, cache.p))

    def residual_delta(self, cache: "BroydenCache") -> None:
        cache.dfu = np.asarray(cache.fu2 - cache.fu)

    def commit_residual(self, cache: "BroydenCache") -> None:
        cache.fu = cache.fu2

    def reset_jacobian(self, cache: "BroydenCache") -> None:
        cache.J_inv = init_identity_jacobian(cache.u, cache.fu)

    def update_jacobian(self, cache: "BroydenCache") -> bool:
        update = secant_update(cache.J_inv, _vec(cache.du), _vec(cache.dfu))
        cache.J_inv = update.J_inv
        cache.du = update.du.reshape(cache.u.shape)
        cache.J_inv_df = update.J_inv_df
        cache.J_inv_row = update.J_inv_row
        return update.denom_guarded

    def restart(self, cache: "BroydenCache", u0: NDArray[Any]) -> None:
        cache.u = np.array(u0, dtype=cache.u.dtype, copy=True)
        cache.u_prev = cache.u
        cache.fu = np.asarray(cache.prob.f(cache.u, cache.p))


Engine = Union[InPlaceEngine, OutOfPlaceEngine]


def _initial_state(
    prob: NonlinearProblem, u0: ArrayLike, p: Any, alias_u0: bool = False
) -> Tuple[NDArray[Any], NDArray[Any]]:
    """Prepare the starting iterate and evaluate the residual there.

    Raises:
        ValueError: If u0 is empty or the residual shape differs from u0's.
    """
    u = np.asarray(u0)
    if u.size == 0:
        raise ValueError("u0 must be non-empty")
    if not np.issubdtype(u.dtype, np.inexact):
        u = u.astype(np.float64)
    elif not (alias_u0 and u is u0 and u.flags.c_contiguous and u.flags.writeable):
        u = np.array(u, copy=True, order="C")

    if prob.iip:
        fu = np.zeros_like(u)
        prob.f(fu, u, p)
    else:
        fu = np.asarray(prob.f(u, p))

    if fu.shape != u.shape:
        raise ValueError(
            f"residual function returned shape {fu.shape}, expected {u.shape} to match u0"
        )

    dtype = np.result_type(u.dtype, fu.dtype)
    if u.dtype != dtype:
        u = u.astype(dtype)
    if fu.dtype != dtype:
        fu = fu.astype(dtype)
    return u, fu


def _allocate_buffers(u: NDArray[Any], fu: NDArray[Any]) -> Dict[str, NDArray[Any]]:
    J_inv = init_identity_jacobian(u, fu)
    n = J_inv.shape[0]
    return {
        "u": u,
        "u_prev": np.array(u, copy=True),
        "du": np.zeros_like(u),
        "fu": fu,
        "fu2": np.zeros_like(fu),
        "dfu": np.zeros_like(fu),
        "J_inv": J_inv,
        "J_inv_row": np.zeros(n, dtype=J_inv.dtype),
        "J_inv_df": np.zeros(n, dtype=J_inv.dtype),
    }


@dataclass(eq=False)
class BroydenCache:
    """Mutable state of one Broyden solve.

    Create with gbroyden.init(); advance with step(); restart with reinit().
    A cache must not be stepped from several threads at once.
    """

    prob: NonlinearProblem
    alg: GeneralBroyden
    engine: Engine
    u: NDArray[Any]
    u_prev: NDArray[Any]
    du: NDArray[Any]
    fu: NDArray[Any]
    fu2: NDArray[Any]
    dfu: NDArray[Any]
    p: Any
    J_inv: NDArray[Any]
    J_inv_row: NDArray[Any]
    J_inv_df: NDArray[Any]
    reset_check: ResetCheck
    linesearch: LineSearchFn
    tc_cache: TerminationCache
    abstol: float
    reltol: float
    maxiters: int
    internalnorm: NormFn
    max_resets: int
    resets: int = 0
    force_stop: bool = False
    retcode: ReturnCode = ReturnCode.DEFAULT
    stats: NLStats = field(default_factory=NLStats)
    verbose: int = -1

    @property
    def iip(self) -> bool:
        return self.engine.inplace

    def get_fu(self) -> NDArray[Any]:
        return self.fu

    def set_fu(self, fu: ArrayLike) -> None:
        if self.iip:
            np.copyto(self.fu, fu)
        else:
            self.fu = np.asarray(fu)

    def _log(self, message: str) -> None:
        if self.verbose >= 2:
            print(f"    [Broyden] Step {self.stats.nsteps:4d}: {message}")

    def _check_and_update(self) -> bool:
        if not self.tc_cache.check(self.u_prev, self.u, self.fu2):
            return False
        self.retcode = self.tc_cache.retcode
        self.force_stop = True
        self.engine.commit_residual(self)
        if self.retcode in (ReturnCode.STALLED, ReturnCode.UNSTABLE):
            # Safe-best stop: fall back to the best iterate seen
            self.engine.restart(self, self.tc_cache.u_best)
            self.stats.nf += 1
            self._log(
                f"{self.retcode.value}, restored best iterate "
                f"(|f|={self.tc_cache.best_objective:.4e})"
            )
        return True

    def step(self) -> None:
        """Perform one Broyden iteration.

        Evaluates the residual exactly once, then either stops (termination
        check), resets the inverse Jacobian, or applies the secant update.
        A stalled or unstable stop restores the best iterate seen and
        evaluates the residual there once more.
        Never raises for numerical reasons: failure is reported through
        retcode and force_stop. Does nothing once force_stop is set.
        """
        if self.force_stop:
            return
        engine = self.engine
        self.stats.nsteps += 1

        engine.search_direction(self)
        alpha = self.linesearch(self.u, self.du)
        engine.advance(self, alpha)
        engine.evaluate_trial(self)
        self.stats.nf += 1

        if self._check_and_update():
            return

        engine.residual_delta(self)
        engine.commit_residual(self)

        if self.reset_check.all(self.du) or self.reset_check.all(self.dfu):
            if self.resets >= self.max_resets:
                self.retcode = ReturnCode.CONVERGENCE_FAILURE
                self.force_stop = True
                self._log(f"reset budget of {self.max_resets} exhausted")
                return
            engine.reset_jacobian(self)
            self.resets += 1
            self._log(f"inverse Jacobian reset ({self.resets}/{self.max_resets})")
        elif engine.update_jacobian(self):
            self.stats.ndenom_guards += 1
            self._log("zero secant denominator replaced by 1e-5")

    def reinit(
        self,
        u0: Optional[ArrayLike] = None,
        *,
        p: Any = _UNSET,
        abstol: Optional[float] = None,
        reltol: Optional[float] = None,
        maxiters: Optional[int] = None,
        termination_condition: Union[None, str, TerminationCondition] = None,
    ) -> "BroydenCache":
        """Restart the solve from u0 without reallocating storage.

        Buffers and the inverse Jacobian are reused when u0 has the shape of
        the current iterate and reallocated otherwise. The inverse Jacobian
        is reset to the identity, the residual is re-evaluated, and the
        counters, status and termination state are cleared.

        Args:
            u0: New starting iterate. Default None restarts from the current u.
            p: New parameter. Default keeps the current one.
            abstol: New absolute tolerance. Default keeps the current one.
            reltol: New relative tolerance. Default keeps the current one.
            maxiters: New iteration budget. Default keeps the current one.
            termination_condition: New termination mode. Default keeps the
                current one.

        Returns:
            The cache itself.
        """
        if p is not _UNSET:
            self.p = p
        if maxiters is not None:
            if maxiters < 1:
                raise ValueError(f"maxiters must be >= 1, got {maxiters}")
            self.maxiters = maxiters

        u0 = self.u if u0 is None else np.asarray(u0)
        if u0.shape == self.u.shape:
            self.engine.restart(self, u0)
            reset_identity_jacobian(self.J_inv)
        else:
            u, fu = _initial_state(self.prob, u0, self.p)
            for name, value in _allocate_buffers(u, fu).items():
                setattr(self, name, value)
            self.reset_check = ResetCheck.for_dtype(self.J_inv.dtype, self.alg.reset_tolerance)

        if termination_condition is None:
            self.tc_cache.reinit(self.fu, self.u, abstol, reltol)
        else:
            _, _, self.tc_cache = init_termination_cache(
                self.abstol if abstol is None else abstol,
                self.reltol if reltol is None else reltol,
                self.fu,
                self.u,
                termination_condition,
                self.internalnorm,
            )
        self.abstol = self.tc_cache.abstol
        self.reltol = self.tc_cache.reltol

        self.stats.reset()
        self.resets = 0
        self.force_stop = False
        self.retcode = ReturnCode.DEFAULT
        return self


def init(
    prob: NonlinearProblem,
    alg: Optional[GeneralBroyden] = None,
    *,
    alias_u0: bool = False,
    maxiters: int = 1000,
    abstol: Optional[float] = None,
    reltol: Optional[float] = None,
    termination_condition: Union[None, str, TerminationCondition] = None,
    internalnorm: Optional[Callable[[NDArray[Any]], float]] = None,
    verbose: int = -1,
) -> BroydenCache:
    """Build the cache for solving prob with Broyden's method.

    Evaluates the residual once at u0.

    Args:
        prob: The nonlinear problem.
        alg: Algorithm options. Default GeneralBroyden().
        alias_u0: If True and u0 is a writeable C-contiguous floating array,
            the solver iterates in u0's storage instead of a copy.
        maxiters: Iteration budget enforced by solve_cache(). Default 1000.
        abstol: Absolute tolerance. Default eps ** (4/5) of the working dtype.
        reltol: Relative tolerance. Default eps ** (4/5) of the working dtype.
        termination_condition: Termination mode name or TerminationCondition.
            Default "abs_safe_best".
        internalnorm: Norm used by termination checks. Default RMS norm.
        verbose: Verbosity level. >=2 prints resets and denominator guards.

    Returns:
        BroydenCache ready for step() or solve_cache().

    Raises:
        ValueError: If u0 is empty, the residual has a different shape than
            u0, or maxiters < 1.
    """
    alg = GeneralBroyden() if alg is None else alg
    if maxiters < 1:
        raise ValueError(f"maxiters must be >= 1, got {maxiters}")

    engine: Engine = InPlaceEngine() if prob.iip else OutOfPlaceEngine()
    u, fu = _initial_state(prob, prob.u0, prob.p, alias_u0=alias_u0)
    buffers = _allocate_buffers(u, fu)

    norm = default_norm if internalnorm is None else internalnorm
    abstol, reltol, tc_cache = init_termination_cache(
        abstol, reltol, fu, u, termination_condition, norm
    )

    return BroydenCache(
        prob=prob,
        alg=alg,
        engine=engine,
        p=prob.p,
        reset_check=ResetCheck.for_dtype(buffers["J_inv"].dtype, alg.reset_tolerance),
        linesearch=init_linesearch(alg.linesearch),
        tc_cache=tc_cache,
        abstol=abstol,
        reltol=reltol,
        maxiters=maxiters,
        internalnorm=norm,
        max_resets=alg.max_resets,
        verbose=verbose,
        **buffers,
    )
