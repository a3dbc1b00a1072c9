"""Inverse Jacobian construction and the Broyden secant update.

This module holds the linear algebra of the method: building (or resetting)
the identity inverse Jacobian and applying the rank-1 secant correction that
makes the updated inverse Jacobian map the last residual change onto the last
step. Both execution shapes of the update engine call secant_update(); the
in-place shape writes into caller-owned buffers, the out-of-place shape gets
new arrays back.
"""

from typing import Any, NamedTuple, Optional

import numpy as np
import scipy.linalg as la
from numpy.typing import NDArray

# Substituted for an exactly zero secant denominator.
DENOM_EPSILON = 1e-5


class SecantUpdate(NamedTuple):
    """Outcome of one secant update.

    Attributes:
        J_inv: Updated inverse Jacobian (the input matrix when updated in place).
        du: Rank-1 column vector (du - J_inv @ dfu) / denom.
        J_inv_df: Product J_inv @ dfu with the pre-update J_inv.
        J_inv_row: Row vector conj(du) @ J_inv with the pre-update J_inv.
        denom_guarded: True if the denominator was exactly zero and
            DENOM_EPSILON was used instead.
    """

    J_inv: NDArray[Any]
    du: NDArray[Any]
    J_inv_df: NDArray[Any]
    J_inv_row: NDArray[Any]
    denom_guarded: bool


def init_identity_jacobian(u: NDArray[Any], fu: NDArray[Any]) -> NDArray[Any]:
    """Return an identity inverse Jacobian conformal with u.

    The matrix is (u.size, u.size), has the result dtype of u and fu, and is
    allocated in Fortran order so the rank-1 update can run in place.
    """
    n = np.size(u)
    dtype = np.result_type(np.asarray(u).dtype, np.asarray(fu).dtype)
    return np.eye(n, dtype=dtype, order="F")


def reset_identity_jacobian(J_inv: NDArray[Any]) -> NDArray[Any]:
    """Overwrite J_inv with the identity without reallocating it."""
    J_inv.fill(0)
    np.fill_diagonal(J_inv, 1)
    return J_inv


def _rank1_update(A: NDArray[Any], x: NDArray[Any], y: NDArray[Any]) -> None:
    """A += outer(x, y), in place.

    Uses BLAS ?ger (?geru for complex, so y is not conjugated). f2py only
    writes into A when it is Fortran-contiguous with a matching dtype;
    otherwise the result is copied back.
    """
    name = "geru" if np.iscomplexobj(A) else "ger"
    ger = la.get_blas_funcs(name, (A, x, y))
    out = ger(1.0, x, y, a=A, overwrite_a=True)
    if out is not A:
        A[...] = out


def secant_update(
    J_inv: NDArray[Any],
    du: NDArray[Any],
    dfu: NDArray[Any],
    J_inv_df: Optional[NDArray[Any]] = None,
    J_inv_row: Optional[NDArray[Any]] = None,
    inplace: bool = False,
) -> SecantUpdate:
    """Apply the Broyden rank-1 update to an inverse Jacobian.

    With s = -du (the step actually taken for a unit step length) and
    y = dfu (the residual change), the update is

        J_inv <- J_inv + (s - J_inv y) (s^H J_inv) / (s^H J_inv y)

    so that the updated matrix satisfies the secant equation J_inv y = s.

    Args:
        J_inv: Inverse Jacobian approximation. Shape (n, n).
        du: Search direction of the step just taken, J_inv @ fu. Shape (n,).
        dfu: Residual change fu_new - fu_old. Shape (n,).
        J_inv_df: Buffer for J_inv @ dfu. Required when inplace is True.
        J_inv_row: Buffer for conj(s) @ J_inv. Required when inplace is True.
        inplace: If True, du, J_inv_df, J_inv_row and J_inv are overwritten.
            If False, none of the inputs is modified.

    Returns:
        SecantUpdate with the updated matrix, the rank-1 column vector, both
        products, and whether the zero-denominator guard fired.
    """
    if inplace:
        if J_inv_df is None or J_inv_row is None:
            raise ValueError("in-place secant update needs J_inv_df and J_inv_row buffers")
        np.negative(du, out=du)
        np.matmul(J_inv, dfu, out=J_inv_df)
        np.matmul(du.conj(), J_inv, out=J_inv_row)
    else:
        du = -du
        J_inv_df = J_inv @ dfu
        J_inv_row = du.conj() @ J_inv

    denom = np.vdot(du, J_inv_df)
    denom_guarded = bool(denom == 0)
    if denom_guarded:
        denom = J_inv.dtype.type(DENOM_EPSILON)

    if inplace:
        np.subtract(du, J_inv_df, out=du)
        du /= denom
        _rank1_update(J_inv, du, J_inv_row)
    else:
        du = (du - J_inv_df) / denom
        J_inv = np.add(J_inv, np.outer(du, J_inv_row), order="F")

    return SecantUpdate(J_inv, du, J_inv_df, J_inv_row, denom_guarded)
