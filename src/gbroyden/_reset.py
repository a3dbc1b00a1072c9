"""Reset check for the inverse Jacobian approximation.

When every component of the step, or every component of the residual change,
is within the tolerance, the secant equation is nearly singular and the
inverse Jacobian is reset to the identity instead of being updated.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Optional

import numpy as np
from numpy.typing import ArrayLike, DTypeLike


@dataclasses.dataclass(frozen=True)
class ResetCheck:
    """Component-wise threshold test.

    check(x) = |x| <= tolerance
    all(v)   = check(v_i) for every component v_i
    """

    tolerance: float

    def __post_init__(self) -> None:
        if not self.tolerance > 0:
            raise ValueError(f"reset tolerance must be positive, got {self.tolerance!r}")

    @classmethod
    def for_dtype(cls, dtype: DTypeLike, tolerance: Optional[float] = None) -> ResetCheck:
        """Build a check for arrays of the given dtype.

        Defaults the tolerance to sqrt(eps) of the real part of dtype, e.g.
        about 1.5e-8 for float64 and complex128.
        """
        if tolerance is None:
            tolerance = float(np.sqrt(np.finfo(dtype).eps))
        return cls(tolerance=tolerance)

    def check(self, x: Any) -> bool:
        return bool(abs(x) <= self.tolerance)

    def all(self, v: ArrayLike) -> bool:
        return bool(np.all(np.abs(v) <= self.tolerance))
