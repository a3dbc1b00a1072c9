"""Tests of BroydenCache.reinit().

Reinitialization must restart a solve deterministically while reusing the
cache's storage, so that a sequence of related problems can be solved
without reallocation.
"""

import numpy as np
import pytest
from numpy.testing import assert_allclose

from gbroyden import NonlinearProblem, ReturnCode, init, solve_cache
from tests.conftest import (
    MILD_P,
    MILD_U0,
    constant_residual,
    mild_residual,
    mild_residual_inplace,
)


def _mild_cache(iip, **kwargs):
    f = mild_residual_inplace if iip else mild_residual
    return init(NonlinearProblem(f, MILD_U0.copy(), p=MILD_P), **kwargs)


def _trajectory(cache, n_steps=4):
    states = []
    for _ in range(n_steps):
        cache.step()
        states.append((cache.u.copy(), cache.fu.copy(), np.array(cache.J_inv, copy=True)))
    return states


def test_reinit_reproduces_iterations_bit_for_bit(iip):
    cache = _mild_cache(iip)
    first = _trajectory(cache)

    cache.reinit(MILD_U0)
    second = _trajectory(cache)

    for (u1, fu1, J1), (u2, fu2, J2) in zip(first, second):
        assert np.array_equal(u1, u2)
        assert np.array_equal(fu1, fu2)
        assert np.array_equal(J1, J2)


def test_reinit_after_solve_matches_fresh_cache(iip):
    cache = _mild_cache(iip, abstol=1e-10)
    first = solve_cache(cache)

    cache.reinit(MILD_U0)
    second = solve_cache(cache)

    assert second.success
    assert second.nsteps == first.nsteps
    assert second.nf == first.nf
    assert np.array_equal(second.u, first.u)


def test_reinit_clears_counters_and_status():
    cache = init(NonlinearProblem(constant_residual, np.array([0.0, 0.0])))
    solve_cache(cache)
    assert cache.retcode is ReturnCode.CONVERGENCE_FAILURE
    assert cache.resets == 3

    cache.reinit(np.array([1.0, 1.0]))

    assert cache.retcode is ReturnCode.DEFAULT
    assert cache.force_stop is False
    assert cache.resets == 0
    assert cache.stats.nf == 1
    assert cache.stats.nsteps == 0
    assert cache.stats.ndenom_guards == 0
    assert cache.tc_cache.retcode is ReturnCode.DEFAULT
    assert np.array_equal(cache.u, [1.0, 1.0])
    assert np.array_equal(cache.fu, [1.0, 1.0])


def test_reinit_reuses_storage_in_place():
    cache = _mild_cache(True)
    buffers = {name: getattr(cache, name) for name in ("u", "u_prev", "du", "fu", "fu2", "dfu", "J_inv")}
    _trajectory(cache)

    cache.reinit(np.ones(3))

    for name, buffer in buffers.items():
        assert getattr(cache, name) is buffer, name
    assert np.array_equal(cache.J_inv, np.eye(3))
    assert np.array_equal(cache.fu, mild_residual(np.ones(3), MILD_P))


def test_reinit_does_not_alias_new_u0(iip):
    cache = _mild_cache(iip)
    u0 = np.ones(3)
    cache.reinit(u0)
    cache.step()
    assert np.array_equal(u0, np.ones(3))


def test_reinit_with_new_shape_reallocates(iip):
    cache = _mild_cache(iip)
    old_J = cache.J_inv

    cache.reinit(np.zeros(5), p=np.linspace(0.0, 1.0, 5), abstol=1e-10)

    assert cache.J_inv is not old_J
    assert cache.J_inv.shape == (5, 5)
    assert cache.du.shape == (5,)
    assert cache.J_inv_row.shape == (5,)
    result = solve_cache(cache)
    assert result.success, result.message


def test_reinit_updates_parameters_and_options():
    cache = _mild_cache(False)
    new_p = np.array([0.5, 0.5, 0.5])

    cache.reinit(MILD_U0, p=new_p, abstol=1e-9, maxiters=50, termination_condition="abs_norm")

    assert cache.p is new_p
    assert cache.abstol == 1e-9
    assert cache.tc_cache.abstol == 1e-9
    assert cache.maxiters == 50
    assert cache.tc_cache.mode == "abs_norm"
    result = solve_cache(cache)
    assert result.success
    assert_allclose(mild_residual(result.u, new_p), 0.0, atol=1e-8)


def test_reinit_keeps_options_by_default():
    cache = _mild_cache(False, abstol=1e-9, termination_condition="rel_norm", maxiters=77)
    tc_cache = cache.tc_cache
    cache.reinit()
    assert cache.abstol == 1e-9
    assert cache.maxiters == 77
    assert cache.tc_cache is tc_cache
    assert cache.tc_cache.mode == "rel_norm"


def test_reinit_rejects_bad_maxiters():
    cache = _mild_cache(False)
    with pytest.raises(ValueError):
        cache.reinit(maxiters=0)


def test_result_stats_survive_reinit():
    cache = _mild_cache(False, abstol=1e-10)
    result = solve_cache(cache)
    assert result.stats.nsteps == result.nsteps
    assert result.stats.nf == result.nf

    cache.reinit(MILD_U0)
    cache.step()

    assert result.stats is not cache.stats
    assert result.stats.nsteps == result.nsteps
    assert result.stats.nf == result.nf
