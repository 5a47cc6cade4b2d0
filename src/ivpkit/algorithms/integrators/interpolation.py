"""Dense output of accepted integration steps.

An interpolator is created for every accepted step. Its *hard* range is the
step itself; the *soft* range is the part of the step currently exposed to
step handlers, which the driver narrows around event times. Interpolation is
allowed anywhere in the hard range (plus a roundoff margin) and returns the
stored states exactly at both hard boundaries.

References
----------
Hairer, E., Norsett, S. P., & Wanner, G. (1993). "Solving Ordinary
Differential Equations I: Non-stiff Problems", section II.6.

Nordsieck, A. (1962). "On numerical integration of ordinary differential
equations".
"""

import copy
from abc import ABC, abstractmethod
from typing import Callable, Tuple

import numba
import numpy as np

from ivpkit.algorithms.integrators.tableau import _DOP853Tableau
from ivpkit.algorithms.integrators.types import State
from ivpkit.algorithms.utils.config import FASTMATH


@numba.njit(cache=False, fastmath=FASTMATH)
def _rk_dense_jit_kernel(y0, h, Q, theta):
    n = Q.shape[0]
    p = Q.shape[1]
    y = y0.copy()
    y_dot = np.zeros(n, dtype=np.float64)
    power = 1.0
    for c in range(p):
        for i in range(n):
            q = Q[i, c] * power
            y[i] += h * q * theta
            y_dot[i] += (c + 1) * q
        power *= theta
    return y, y_dot


@numba.njit(cache=False, fastmath=FASTMATH)
def _dop853_dense_jit_kernel(R, h, theta):
    s = theta
    s1 = 1.0 - theta
    p7 = R[6] + s * R[7]
    dp7 = R[7]
    p6 = R[5] + s1 * p7
    dp6 = s1 * dp7 - p7
    p5 = R[4] + s * p6
    dp5 = p6 + s * dp6
    p4 = R[3] + s1 * p5
    dp4 = s1 * dp5 - p5
    p3 = R[2] + s * p4
    dp3 = p4 + s * dp4
    p2 = R[1] + s1 * p3
    dp2 = s1 * dp3 - p3
    y = R[0] + s * p2
    y_dot = (p2 + s * dp2) / h
    return y, y_dot


@numba.njit(cache=False, fastmath=FASTMATH)
def _polynomial_dense_jit_kernel(coeffs, h, theta):
    m = coeffs.shape[0]
    n = coeffs.shape[1]
    y = coeffs[m - 1].copy()
    y_dot = np.zeros(n, dtype=np.float64)
    for j in range(m - 2, -1, -1):
        for i in range(n):
            y_dot[i] = y_dot[i] * theta + y[i]
            y[i] = y[i] * theta + coeffs[j, i]
    return y, y_dot / h


@numba.njit(cache=False, fastmath=FASTMATH)
def _nordsieck_taylor_jit_kernel(y_ref, scaled, nordsieck, a, h):
    """Evaluate the Nordsieck expansion at the normalized abscissa *a*.

    Terms are accumulated from high to low order for accuracy.
    """
    n = y_ref.size
    variation = np.zeros(n, dtype=np.float64)
    y_dot = np.zeros(n, dtype=np.float64)
    for k in range(nordsieck.shape[0] - 1, -1, -1):
        order = k + 2
        power = a ** (k + 1)
        for i in range(n):
            d = nordsieck[k, i] * power
            variation[i] += d * a
            y_dot[i] += order * d
    y = np.empty(n, dtype=np.float64)
    for i in range(n):
        y[i] = y_ref[i] + variation[i] + scaled[i] * a
        y_dot[i] = (y_dot[i] + scaled[i]) / h
    return y, y_dot


class _StepInterpolator(ABC):
    """Provide dense output over one accepted step.

    Parameters
    ----------
    previous : :class:`~ivpkit.algorithms.integrators.types.State`
        State at the beginning of the step.
    current : :class:`~ivpkit.algorithms.integrators.types.State`
        State at the end of the step.
    forward : bool
        Integration direction.

    Notes
    -----
    Step handlers may query the interpolator during their callback but must
    not keep a reference to it afterwards; use :func:`copy` for that.
    """

    def __init__(self, previous: State, current: State, forward: bool):
        self._previous = previous
        self._current = current
        self._soft_previous = previous
        self._soft_current = current
        self._forward = forward
        self._h = current.t - previous.t
        eps = np.finfo(float).eps
        self._margin = 1e-8 * abs(self._h) + 4.0 * eps * max(abs(previous.t), abs(current.t))

    @property
    def global_previous_time(self) -> float:
        return self._previous.t

    @property
    def global_current_time(self) -> float:
        return self._current.t

    @property
    def previous_time(self) -> float:
        """Start of the visible (soft) part of the step."""
        return self._soft_previous.t

    @property
    def current_time(self) -> float:
        """End of the visible (soft) part of the step."""
        return self._soft_current.t

    @property
    def is_forward(self) -> bool:
        return self._forward

    @property
    def step_size(self) -> float:
        """Signed size of the whole accepted step."""
        return self._h

    @property
    def previous_state(self) -> State:
        s = self._soft_previous
        return State(s.t, s.y, s.y_dot)

    @property
    def current_state(self) -> State:
        s = self._soft_current
        return State(s.t, s.y, s.y_dot)

    def set_soft_previous_time(self, t: float) -> None:
        self._soft_previous = self.interpolate(t)

    def set_soft_current_time(self, t: float) -> None:
        self._soft_current = self.interpolate(t)

    def interpolate(self, t: float) -> State:
        """Return the interpolated state and derivative at time *t*.

        Raises
        ------
        ValueError
            If *t* lies outside the step, roundoff margin included.
        """
        t = float(t)
        if t == self._previous.t:
            return State(t, self._previous.y, self._previous.y_dot)
        if t == self._current.t:
            return State(t, self._current.y, self._current.y_dot)
        lo = min(self._previous.t, self._current.t) - self._margin
        hi = max(self._previous.t, self._current.t) + self._margin
        if t < lo or t > hi:
            raise ValueError(
                f"Interpolation time {t} outside of step "
                f"[{self._previous.t}, {self._current.t}]"
            )
        theta = (t - self._previous.t) / self._h
        y, y_dot = self._compute(t, theta)
        return State(t, y, y_dot)

    @abstractmethod
    def _compute(self, t: float, theta: float) -> Tuple[np.ndarray, np.ndarray]:
        pass

    def _finalize(self) -> None:
        """Complete any lazily computed data before the step is superseded."""
        pass

    def copy(self) -> "_StepInterpolator":
        """Return an independent snapshot, valid after the integrator moved on."""
        self._finalize()
        return copy.deepcopy(self)


class _RungeKuttaInterpolator(_StepInterpolator):
    """Polynomial continuous extension of an explicit Runge-Kutta step.

    Parameters
    ----------
    previous, current : :class:`~ivpkit.algorithms.integrators.types.State`
        Step boundaries.
    forward : bool
        Integration direction.
    K : numpy.ndarray, shape (s + 1, n)
        Stage derivatives, the last row being ``f(t + h, y_new)``.
    P : numpy.ndarray, shape (s + 1, p)
        Dense output coefficients of the tableau.
    """

    def __init__(self, previous: State, current: State, forward: bool, K: np.ndarray, P: np.ndarray):
        super().__init__(previous, current, forward)
        self._Q = np.ascontiguousarray(K.T @ P)

    def _compute(self, t, theta):
        return _rk_dense_jit_kernel(self._previous.y, self._h, self._Q, theta)


class _DOP853Interpolator(_StepInterpolator):
    """Seventh order dense output of the Dormand-Prince 8(5,3) method.

    The three extra stages are evaluated on the first interior query (or on
    :func:`copy`); they are counted like any other derivative evaluation.
    """

    def __init__(self, previous: State, current: State, forward: bool, K: np.ndarray,
                 f: Callable[[float, np.ndarray], np.ndarray], tableau: _DOP853Tableau):
        super().__init__(previous, current, forward)
        self._K = K
        self._f = f
        self._tableau = tableau
        self._R = None

    def _finalize(self):
        if self._R is not None:
            return
        tab = self._tableau
        h = self._h
        y0 = self._previous.y
        n_base = self._K.shape[0]
        n_extra = tab.c_extra.size
        K = np.empty((n_base + n_extra, y0.size), dtype=np.float64)
        K[:n_base] = self._K
        for i in range(n_extra):
            j = n_base + i
            y_stage = y0 + h * (tab.a_extra[i, :j] @ K[:j])
            K[j] = self._f(self._previous.t + tab.c_extra[i] * h, y_stage)

        R = np.empty((8, y0.size), dtype=np.float64)
        y_diff = self._current.y - y0
        bspl = h * K[0] - y_diff
        R[0] = y0
        R[1] = y_diff
        R[2] = bspl
        R[3] = y_diff - h * K[n_base - 1] - bspl
        R[4:] = h * (tab.d @ K)
        self._R = R
        self._K = None
        self._f = None

    def _compute(self, t, theta):
        self._finalize()
        return _dop853_dense_jit_kernel(self._R, self._h, theta)


class _NordsieckInterpolator(_StepInterpolator):
    """Taylor expansion of a multistep Nordsieck history around the step end.

    Parameters
    ----------
    previous, current : :class:`~ivpkit.algorithms.integrators.types.State`
        Step boundaries; the expansion is centered on *current*.
    forward : bool
        Integration direction.
    scaled : numpy.ndarray
        First scaled derivative ``h * y'`` at the step end.
    nordsieck : numpy.ndarray, shape (n_steps - 1, n)
        Higher order scaled derivatives ``h^k y^(k) / k!`` for ``k >= 2``.
    scaling_h : float
        Step size used for the scaling.
    """

    def __init__(self, previous: State, current: State, forward: bool,
                 scaled: np.ndarray, nordsieck: np.ndarray, scaling_h: float):
        super().__init__(previous, current, forward)
        self._scaled = np.array(scaled, dtype=np.float64)
        self._nordsieck = np.array(nordsieck, dtype=np.float64)
        self._scaling_h = float(scaling_h)

    def _compute(self, t, theta):
        a = (t - self._current.t) / self._scaling_h
        return _nordsieck_taylor_jit_kernel(self._current.y, self._scaled, self._nordsieck,
                                            a, self._scaling_h)


class _CenteredPolynomialInterpolator(_StepInterpolator):
    """Dense output polynomial expanded around the middle of the step.

    Parameters
    ----------
    previous, current : :class:`~ivpkit.algorithms.integrators.types.State`
        Step boundaries.
    forward : bool
        Integration direction.
    coeffs : numpy.ndarray, shape (degree + 1, n)
        Coefficients of ``y = sum_j coeffs[j] * (theta - 1/2)^j``.
    """

    def __init__(self, previous: State, current: State, forward: bool, coeffs: np.ndarray):
        super().__init__(previous, current, forward)
        self._coeffs = np.ascontiguousarray(coeffs, dtype=np.float64)

    @property
    def degree(self) -> int:
        return self._coeffs.shape[0] - 1

    def _compute(self, t, theta):
        return _polynomial_dense_jit_kernel(self._coeffs, self._h, theta - 0.5)
