"""Bracketing root isolation for event functions.

The solver works on a scalar function of time only; the event machinery
builds that function by composing the user g-function with the step
interpolator.
"""

from typing import Callable, Optional

import numpy as np

from ivpkit.algorithms.utils.config import EVENT_MAX_ITER, EVENT_TOL
from ivpkit.algorithms.utils.exceptions import NoBracketingError


class _BracketingSolver:
    """Isolate a sign change with the Illinois variant of regula falsi.

    Parameters
    ----------
    tol : float, default EVENT_TOL
        Absolute width of the final bracket.
    max_iter : int, default EVENT_MAX_ITER
        Maximal number of function evaluations.

    Notes
    -----
    Every third iteration a bisection is forced if the bracket did not shrink
    by half, and trial points are kept half a tolerance away from the bracket
    ends, so the bracket shrinks even when regula falsi stagnates on one side.
    The tolerance never drops below two ulps of the bracket ends.
    """

    def __init__(self, tol: float = EVENT_TOL, max_iter: int = EVENT_MAX_ITER):
        if not tol > 0.0:
            raise ValueError(f"tol must be positive, got {tol}")
        if max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {max_iter}")
        self.tol = tol
        self.max_iter = max_iter

    def _tolerance(self, a: float, b: float) -> float:
        return max(self.tol, 2.0 * np.spacing(max(abs(a), abs(b))))

    def solve(self, g: Callable[[float], float], ta: float, tb: float,
              ga: Optional[float] = None, gb: Optional[float] = None) -> float:
        """Return a time just past the root of *g* between *ta* and *tb*.

        *ta* is the bracket end met first in integration direction, so *tb*
        may be smaller than *ta* for backward integration.

        Parameters
        ----------
        g : callable
            Scalar function of time.
        ta, tb : float
            Bracket ends, in integration order.
        ga, gb : float, optional
            Known values of *g* at the bracket ends.

        Returns
        -------
        float
            A time *x* with ``g(x) == 0``, or the end of the final bracket on
            the *tb* side, where *g* has the sign of ``g(tb)``.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.NoBracketingError`
            If ``g(ta)`` and ``g(tb)`` have the same strict sign, or if the
            bracket cannot be reduced below the tolerance within
            ``max_iter`` iterations.
        """
        a, b = float(ta), float(tb)
        fa = float(g(a)) if ga is None else float(ga)
        fb = float(g(b)) if gb is None else float(gb)

        if fb == 0.0:
            return b
        if fa == 0.0:
            return a
        if (fa > 0.0) == (fb > 0.0):
            raise NoBracketingError(
                f"Function values at bracket ends have the same sign: g({a})={fa}, g({b})={fb}"
            )

        # +1 if b was replaced last, -1 if a was
        side = 0
        window = abs(b - a)
        for it in range(1, self.max_iter + 1):
            width = abs(b - a)
            tol = self._tolerance(a, b)
            if width <= tol:
                return b

            if it % 3 == 0 and width > 0.5 * window:
                x = 0.5 * (a + b)
                side = 0
            else:
                x = b - fb * (b - a) / (fb - fa)
            if it % 3 == 0:
                window = width

            lo, hi = min(a, b), max(a, b)
            margin = 0.5 * tol
            x = min(max(x, lo + margin), hi - margin)

            fx = float(g(x))
            if fx == 0.0:
                return x
            if (fx > 0.0) == (fb > 0.0):
                b, fb = x, fx
                if side == 1:
                    fa *= 0.5
                side = 1
            else:
                a, fa = x, fx
                if side == -1:
                    fb *= 0.5
                side = -1

        if abs(b - a) <= self._tolerance(a, b):
            return b
        raise NoBracketingError(
            f"Root isolation did not converge within {self.max_iter} iterations, "
            f"bracket [{min(a, b)}, {max(a, b)}]"
        )
