"""Transform between multistep history and Nordsieck vectors for Adams methods.

The Nordsieck vector of a multistep method at time ``t_n`` holds the scaled
derivatives ``s_k(n) = h^k / k! * y^(k)(t_n)`` for ``k = 1, ..., n_steps``.
``s_1`` is kept apart as the *scaled* derivative; the higher order terms
form the matrix ``q_n`` of shape ``(n_steps - 1, dim)``.

The Adams methods are then written as

    s_1(n+1) = h f(t_{n+1}, y_{n+1})
    q_{n+1}  = (s_1(n) - s_1(n+1)) c1 + A q_n

with ``A`` a transition matrix and ``c1`` a constant vector, both
depending only on ``n_steps``. They are computed exactly with rational
arithmetic from the matrix ``P[i, j] = (j + 2) (-(i + 1))^(j + 1)`` as
``c1 = P^-1 u`` and ``A = P^-1 S`` where ``S`` is ``P`` shifted down by one
row with a zero first row.

References
----------
Nordsieck, A. (1962). "On numerical integration of ordinary differential
equations".

Hairer, E., Norsett, S. P., & Wanner, G. (1993). "Solving Ordinary
Differential Equations I: Non-stiff Problems", section III.6.
"""

from typing import Dict, Sequence

import numpy as np
import sympy as sp

from ivpkit.utils.log_config import logger


class _AdamsNordsieckTransformer:
    """Hold the exact Nordsieck update coefficients for a number of steps.

    Parameters
    ----------
    n_steps : int
        Number of steps of the multistep method, at least 2.

    Notes
    -----
    Instances are immutable and shared: use :func:`instance` to get the
    cached transformer for a given *n_steps*.
    """

    _cache: Dict[int, "_AdamsNordsieckTransformer"] = {}

    def __init__(self, n_steps: int):
        if n_steps < 2:
            raise ValueError(f"n_steps must be at least 2, got {n_steps}")
        self.n_steps = n_steps
        rows = n_steps - 1

        P = sp.Matrix(rows, rows, lambda i, j: sp.Integer(j + 2) * sp.Integer(-(i + 1)) ** (j + 1))
        P_inv = P.inv()

        shifted = sp.zeros(rows, rows)
        for i in range(1, rows):
            shifted[i, :] = P[i - 1, :]

        c1 = P_inv * sp.ones(rows, 1)
        update = P_inv * shifted

        self._P = P
        self._c1 = np.ascontiguousarray(sp.matrix2numpy(c1, dtype=np.float64).reshape(rows))
        self._update = np.ascontiguousarray(sp.matrix2numpy(update, dtype=np.float64))
        self._c1.setflags(write=False)
        self._update.setflags(write=False)

    @classmethod
    def instance(cls, n_steps: int) -> "_AdamsNordsieckTransformer":
        """Return the shared transformer for *n_steps*, building it on first use."""
        transformer = cls._cache.get(n_steps)
        if transformer is None:
            logger.debug("Building Nordsieck transformer for %d steps", n_steps)
            transformer = cls(n_steps)
            cls._cache[n_steps] = transformer
        return transformer

    @property
    def n_rows(self) -> int:
        """Number of rows of the higher order part of the Nordsieck vector."""
        return self.n_steps - 1

    @property
    def c1(self) -> np.ndarray:
        return self._c1

    @property
    def update(self) -> np.ndarray:
        return self._update

    @property
    def exact_p(self) -> sp.Matrix:
        """Exact rational ``P`` matrix the coefficients derive from."""
        return self._P.copy()

    def initialize_high_order_derivatives(self, h: float, t: Sequence[float],
                                          y: Sequence[np.ndarray],
                                          y_dot: Sequence[np.ndarray]) -> np.ndarray:
        """Estimate the higher order part of the Nordsieck vector at ``t[0]``.

        With ``d_i = t_i - t_0`` the Taylor expansions

            y(t_i) - y(t_0) - d_i y'(t_0) = sum_k (d_i / h)^k s_k
            y'(t_i) - y'(t_0)             = sum_k k d_i^(k-1) / h^k s_k

        written for the first points give a square linear system in
        ``[s_2, ..., s_n, r]`` where ``r`` absorbs the truncation remainder.
        Only ``s_2 ... s_n`` are returned.

        Parameters
        ----------
        h : float
            Step size used for the scaling.
        t : sequence of float
            Times of the starter points, ``t[0]`` being the expansion point.
        y, y_dot : sequence of numpy.ndarray
            States and derivatives at *t*.

        Returns
        -------
        numpy.ndarray
            Matrix of shape ``(n_steps - 1, dim)``.
        """
        size = self.n_rows + 1
        dim = np.asarray(y[0]).size
        a = np.zeros((size, size), dtype=np.float64)
        b = np.zeros((size, dim), dtype=np.float64)
        y0 = np.asarray(y[0], dtype=np.float64)
        y_dot0 = np.asarray(y_dot[0], dtype=np.float64)

        for i in range(1, len(t)):
            row = 2 * i - 2
            if row >= size:
                break
            di = t[i] - t[0]
            ratio = di / h
            power = 1.0 / h
            has_dot = row + 1 < size
            for j in range(size):
                power *= ratio
                a[row, j] = di * power
                if has_dot:
                    a[row + 1, j] = (j + 2) * power
            b[row] = np.asarray(y[i]) - y0 - y_dot0 * di
            if has_dot:
                b[row + 1] = np.asarray(y_dot[i]) - y_dot0

        x = np.linalg.lstsq(a, b, rcond=None)[0]
        return np.ascontiguousarray(x[:-1])

    def update_high_order_derivatives_phase_1(self, nordsieck: np.ndarray) -> np.ndarray:
        """Return ``A q_n``, the first part of the Nordsieck update."""
        return self._update @ nordsieck

    def update_high_order_derivatives_phase_2(self, start: np.ndarray, end: np.ndarray,
                                              high_order: np.ndarray) -> None:
        """Add ``(s_1(n) - s_1(n+1)) c1`` to *high_order* in place.

        Parameters
        ----------
        start : numpy.ndarray
            Scaled first derivative at the step start.
        end : numpy.ndarray
            Scaled first derivative at the step end.
        high_order : numpy.ndarray
            Output of :func:`update_high_order_derivatives_phase_1`.
        """
        high_order += np.outer(self._c1, start - end)
