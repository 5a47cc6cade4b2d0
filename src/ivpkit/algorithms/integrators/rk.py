"""Provide explicit Runge-Kutta integrators.

Both fixed and adaptive step-size variants are provided together with small
convenience factories that select an appropriate implementation given the
desired formal order of accuracy. All of them run inside the driver of
:class:`~ivpkit.algorithms.integrators.base._Integrator`, so they share the
event handling, step handlers and evaluation accounting.

References
----------
Hairer, E.; Norsett, S.; Wanner, G. (1993). "Solving Ordinary Differential
Equations I".

Dormand, J. R.; Prince, P. J. (1980). "A family of embedded Runge-Kutta
formulas".

Bogacki, P.; Shampine, L. F. (1989). "A 3(2) pair of Runge-Kutta formulas".

Higham, D. J.; Hall, G. (1990). "Embedded Runge-Kutta formulae with stable
equilibrium states".

Luther, H. A. (1968). "An explicit sixth-order Runge-Kutta formula".
"""

import math
from typing import Tuple

import numba
import numpy as np

from ivpkit.algorithms.integrators.base import (_AdaptiveStepsizeIntegrator,
                                                _Integrator)
from ivpkit.algorithms.integrators.interpolation import (
    _DOP853Interpolator, _RungeKuttaInterpolator, _StepInterpolator)
from ivpkit.algorithms.integrators.tableau import (
    BOGACKI_SHAMPINE_32, CLASSICAL_RK4, DORMAND_PRINCE_54, DORMAND_PRINCE_853,
    EULER, GILL, HIGHAM_HALL_54, LUTHER, MIDPOINT, THREE_EIGHTHS, _ButcherTableau)
from ivpkit.algorithms.integrators.types import State
from ivpkit.algorithms.utils.config import FASTMATH


@numba.njit(cache=False, fastmath=FASTMATH)
def _combine_jit_kernel(y, h, coeffs, K, n_used):
    out = y.copy()
    for j in range(n_used):
        c = coeffs[j]
        if c != 0.0:
            for i in range(out.size):
                out[i] += h * c * K[j, i]
    return out


@numba.njit(cache=False, fastmath=FASTMATH)
def _error_norm_jit_kernel(err, y, y_new, atol, rtol):
    n = atol.size
    acc = 0.0
    for i in range(n):
        scale = atol[i] + rtol[i] * max(abs(y[i]), abs(y_new[i]))
        r = err[i] / scale
        acc += r * r
    return np.sqrt(acc / n)


@numba.njit(cache=False, fastmath=FASTMATH)
def _dop853_error_norm_jit_kernel(err5, err3, y, y_new, atol, rtol):
    n = atol.size
    err5_2 = 0.0
    err3_2 = 0.0
    for i in range(n):
        scale = atol[i] + rtol[i] * max(abs(y[i]), abs(y_new[i]))
        r5 = err5[i] / scale
        r3 = err3[i] / scale
        err5_2 += r5 * r5
        err3_2 += r3 * r3
    denom = err5_2 + 0.01 * err3_2
    if denom <= 0.0:
        denom = 1.0
    return err5_2 / np.sqrt(n * denom)


class _RungeKuttaBase(_Integrator):
    """Provide shared functionality of explicit Runge-Kutta schemes.

    The class stores a Butcher tableau and provides the low level helper
    :func:`~ivpkit.algorithms.integrators.rk._RungeKuttaBase._rk_step` that
    evaluates the stages of one step.

    Attributes
    ----------
    _tableau : :class:`~ivpkit.algorithms.integrators.tableau._ButcherTableau`
        Coefficients of the method.

    Notes
    -----
    The class is **not** intended to be used directly.  Concrete subclasses
    define the specific coefficients and implement the stepping loop.
    """

    _tableau: _ButcherTableau = None

    @property
    def order(self) -> int:
        """Return the formal order of accuracy of the method.

        Returns
        -------
        int
            The order of accuracy of the Runge-Kutta method.
        """
        return self._tableau.order

    @property
    def tableau(self) -> _ButcherTableau:
        return self._tableau

    def _rk_step(self, t: float, y: np.ndarray, h: float, K: np.ndarray) -> np.ndarray:
        """Fill the stages ``K[1:s]`` and return the propagated state.

        ``K[0]`` must hold ``f(t, y)`` on entry.
        """
        tab = self._tableau
        for i in range(1, tab.n_stages):
            y_stage = _combine_jit_kernel(y, h, tab.A[i], K, i)
            K[i] = self._compute_derivatives(t + tab.c[i] * h, y_stage)
        return _combine_jit_kernel(y, h, tab.b, K, tab.n_stages)

    def _make_interpolator(self, previous: State, current: State, forward: bool,
                           K: np.ndarray) -> _StepInterpolator:
        return _RungeKuttaInterpolator(previous, current, forward, K, self._tableau.P)


class _FixedStepRK(_RungeKuttaBase):
    """Implement an explicit fixed-step Runge-Kutta scheme.

    Parameters
    ----------
    name : str
        Human readable identifier of the scheme (e.g. ``"_RK4"``).
    tableau : :class:`~ivpkit.algorithms.integrators.tableau._ButcherTableau`
        Coefficients of the method.
    step : float
        Magnitude of the step size, must be positive.
    **options
        Additional keyword options forwarded to the base :class:`~ivpkit.algorithms.integrators.base._Integrator`.

    Notes
    -----
    Steps land on the grid ``t0 + k * step``. The last step is shortened to
    reach ``t_final``; after an event truncation the integrator resumes on the
    same grid.
    """

    def __init__(self, name: str, tableau: _ButcherTableau, step: float, **options):
        if not (np.isfinite(step) and step > 0.0):
            raise ValueError(f"step must be positive and finite, got {step}")
        self._tableau = tableau
        self._step = float(step)
        super().__init__(name, **options)

    @property
    def step(self) -> float:
        return self._step

    def _next_time(self, t0: float, step_start: float, h: float, t_final: float, forward: bool) -> float:
        k = math.floor((step_start - t0) / h + 1.0e-9) + 1
        t_next = t0 + k * h
        passed = t_next >= t_final if forward else t_next <= t_final
        if passed or abs(t_final - t_next) <= 1.0e-10 * abs(h):
            t_next = t_final
        return t_next

    def _integrate_steps(self, t0, y0, t_final):
        tab = self._tableau
        s = tab.n_stages
        forward = t_final > t0
        h_grid = self._step if forward else -self._step

        step_start = t0
        y = y0.copy()
        y_dot = self._compute_derivatives(t0, y)
        self._is_last_step = False
        while not self._is_last_step:
            t_new = self._next_time(t0, step_start, h_grid, t_final, forward)
            h = t_new - step_start
            self._step_start = step_start
            self._step_size = h

            K = np.empty((s + 1, y.size), dtype=np.float64)
            K[0] = y_dot
            y_new = self._rk_step(step_start, y, h, K)
            K[s] = self._compute_derivatives(t_new, y_new)

            interpolator = self._make_interpolator(
                State(step_start, y, y_dot), State(t_new, y_new, K[s]), forward, K
            )
            step_start, y, y_dot = self._accept_step(interpolator, y_new, K[s], t_final)

        self._step_start = step_start
        return step_start, y


class _Euler(_FixedStepRK):
    """Implement the explicit Euler method with linear dense output."""

    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_Euler", EULER, step, **opts)


class _Midpoint(_FixedStepRK):
    """Implement the explicit midpoint method, order 2."""

    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_Midpoint", MIDPOINT, step, **opts)


class _RK4(_FixedStepRK):
    """Implement the classical 4th-order Runge-Kutta method.

    This is the standard 4th-order explicit Runge-Kutta method, also known
    as RK4 or the "classical" Runge-Kutta method. It uses 4 function
    evaluations per step and has order 4; its dense output is of order 3.
    """
    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_RK4", CLASSICAL_RK4, step, **opts)


class _Gill(_FixedStepRK):
    """Implement Gill's fourth order method.

    Same order and cost as :class:`_RK4`; the sqrt(2) weights were chosen to
    limit the accumulation of roundoff errors.
    """

    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_Gill", GILL, step, **opts)


class _ThreeEighths(_FixedStepRK):
    """Implement Kutta's 3/8-rule, order 4."""

    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_ThreeEighths", THREE_EIGHTHS, step, **opts)


class _Luther(_FixedStepRK):
    """Implement Luther's sixth order method.

    Seven evaluations per step. The continuous extension is of order 5.
    """

    def __init__(self, step: float = 1.0e-3, **opts):
        super().__init__("_Luther", LUTHER, step, **opts)


class _AdaptiveStepRK(_RungeKuttaBase, _AdaptiveStepsizeIntegrator):
    """Implement an embedded adaptive Runge-Kutta integrator.

    Every trial step produces a propagated state and an error estimate from
    the embedded weights. A step is accepted when the weighted RMS norm of
    the error is at most one; the next step size follows
    ``h * min(max_growth, max(min_reduction, safety * err^(-1/(q+1))))``
    where *q* is the order of the embedded solution.

    Parameters
    ----------
    name : str, default "AdaptiveRK"
        Identifier passed to the :class:`~ivpkit.algorithms.integrators.base._Integrator` base class.
    **options
        Step size control settings of
        :class:`~ivpkit.algorithms.integrators.base._AdaptiveStepsizeIntegrator`
        (``rtol``, ``atol``, ``min_step``, ``max_step``, ``initial_step``,
        ``safety``, ``min_reduction``, ``max_growth``) and ``max_evaluations``.

    Attributes
    ----------
    last_error : float
        Normalized error of the last accepted step, NaN before the first one.

    Raises
    ------
    :class:`~ivpkit.algorithms.utils.exceptions.StepSizeUnderflowError`
        If the step size underflows while trying to satisfy the error
        tolerance.
    """

    def __init__(self, name: str = "AdaptiveRK", **options):
        super().__init__(name, **options)
        self.last_error = math.nan

    def _estimate_error(self, y: np.ndarray, y_new: np.ndarray, h: float, K: np.ndarray,
                        atol: np.ndarray, rtol: np.ndarray) -> float:
        tab = self._tableau
        err = _combine_jit_kernel(np.zeros(y.size, dtype=np.float64), h, tab.e, K, tab.n_stages + 1)
        return _error_norm_jit_kernel(err, y, y_new, atol, rtol)

    def _attempt(self, t: float, y: np.ndarray, h: float, t_new: float, K: np.ndarray,
                 atol: np.ndarray, rtol: np.ndarray) -> Tuple[np.ndarray, float]:
        tab = self._tableau
        y_new = self._rk_step(t, y, h, K)
        if tab.fsal:
            K[tab.n_stages] = self._compute_derivatives(t_new, y_new)
        return y_new, self._estimate_error(y, y_new, h, K, atol, rtol)

    def _integrate_steps(self, t0, y0, t_final):
        tab = self._tableau
        s = tab.n_stages
        exponent = tab.error_exponent
        forward = t_final > t0
        atol, rtol = self._tolerances(self._primary_dim)

        step_start = t0
        y = y0.copy()
        y_dot = self._compute_derivatives(t0, y)
        h_new = self.initialize_step(forward, tab.order, t0, y, y_dot, atol, rtol)
        self.last_error = math.nan
        self._is_last_step = False

        while not self._is_last_step:
            self._step_start = step_start
            K = np.empty((s + 1, y.size), dtype=np.float64)
            K[0] = y_dot

            while True:
                h = h_new
                t_new = step_start + h
                if (forward and t_new >= t_final) or (not forward and t_new <= t_final):
                    h = t_final - step_start
                    t_new = t_final
                self._step_size = h

                y_new, error = self._attempt(step_start, y, h, t_new, K, atol, rtol)
                if error <= 1.0:
                    break
                factor = self._step_factor(error, exponent)
                h_new = self.filter_step(h * factor, forward, False)

            if not tab.fsal:
                K[s] = self._compute_derivatives(t_new, y_new)
            self.last_error = error

            interpolator = self._make_interpolator(
                State(step_start, y, y_dot), State(t_new, y_new, K[s]), forward, K
            )
            step_start, y, y_dot = self._accept_step(interpolator, y_new, K[s], t_final)

            if not self._is_last_step:
                factor = self._step_factor(error, exponent)
                scaled_h = h * factor
                next_t = step_start + scaled_h
                next_is_last = next_t >= t_final if forward else next_t <= t_final
                h_new = self.filter_step(scaled_h, forward, next_is_last)
                filtered_next_t = step_start + h_new
                if (forward and filtered_next_t >= t_final) or (not forward and filtered_next_t <= t_final):
                    h_new = t_final - step_start

        self._step_start = step_start
        return step_start, y


class _RK23(_AdaptiveStepRK):
    """Implement the Bogacki-Shampine 3(2) adaptive Runge-Kutta method.

    Third order propagation with a second order error estimate and FSAL
    reuse of the last stage. Suited to loose tolerances.
    """
    _tableau = BOGACKI_SHAMPINE_32

    def __init__(self, **opts):
        super().__init__("_RK23", **opts)


class _RK45(_AdaptiveStepRK):
    """Implement the Dormand-Prince 5(4) adaptive Runge-Kutta method.

    This is the Dormand-Prince 5th-order adaptive Runge-Kutta method with
    4th-order error estimation. It provides a good balance between accuracy
    and computational efficiency for most applications.
    """
    _tableau = DORMAND_PRINCE_54

    def __init__(self, **opts):
        super().__init__("_RK45", **opts)


class _HighamHall54(_AdaptiveStepRK):
    """Implement the Higham-Hall 5(4) adaptive Runge-Kutta method.

    A 5(4) FSAL pair with the same cost as :class:`_RK45`, tuned so that the
    step size sequence stays smooth when stability limits the step.
    """
    _tableau = HIGHAM_HALL_54

    def __init__(self, **opts):
        super().__init__("_HighamHall54", **opts)


class _DOP853(_AdaptiveStepRK):
    """Implement the Dormand-Prince 8(5,3) adaptive Runge-Kutta method.

    This is the Dormand-Prince 8th-order adaptive Runge-Kutta method with
    5th and 3rd-order error estimation. It provides very high accuracy
    for applications requiring precise numerical integration.
    """
    _tableau = DORMAND_PRINCE_853

    def __init__(self, **opts):
        super().__init__("_DOP853", **opts)

    def _estimate_error(self, y, y_new, h, K, atol, rtol):
        tab = self._tableau
        zeros = np.zeros(y.size, dtype=np.float64)
        err5 = _combine_jit_kernel(zeros, h, tab.e, K, tab.n_stages + 1)
        err3 = _combine_jit_kernel(zeros, h, tab.e3, K, tab.n_stages + 1)
        return _dop853_error_norm_jit_kernel(err5, err3, y, y_new, atol, rtol)

    def _make_interpolator(self, previous, current, forward, K):
        return _DOP853Interpolator(previous, current, forward, K, self._compute_derivatives, self._tableau)


class RungeKutta:
    """Implement a factory class for creating fixed-step Runge-Kutta integrators.

    This factory provides convenient access to fixed-step Runge-Kutta methods
    of different orders. The available orders are 1 (Euler), 2 (midpoint),
    4 (classical, Gill or 3/8-rule) and 6 (Luther).

    Examples
    --------
    >>> rk4 = RungeKutta(order=4, step=1e-2)
    >>> gill = RungeKutta(order=4, method="gill", step=1e-2)
    >>> euler = RungeKutta(order=1, step=1e-4)
    """
    _map = {1: _Euler, 2: _Midpoint, 4: _RK4, 6: _Luther}
    _variants = {"gill": (_Gill, 4), "three_eighths": (_ThreeEighths, 4)}

    def __new__(cls, order=4, method=None, **opts):
        """Create a fixed-step Runge-Kutta integrator of specified order.

        Parameters
        ----------
        order : int, default 4
            Order of the Runge-Kutta method. Must be 1, 2, 4 or 6.
        method : str, optional
            Alternative scheme of the requested order, ``"gill"`` or
            ``"three_eighths"``. The default scheme of the order when None.
        **opts
            Additional options passed to the integrator constructor, ``step``
            in particular.

        Returns
        -------
        :class:`~ivpkit.algorithms.integrators.rk._FixedStepRK`
            A fixed-step Runge-Kutta integrator instance.

        Raises
        ------
        ValueError
            If the specified order or method is not supported.
        """
        if method is not None:
            if method not in cls._variants:
                raise ValueError(f"Unknown fixed-step RK method {method!r}")
            variant, variant_order = cls._variants[method]
            if variant_order != order:
                raise ValueError(f"Method {method!r} is not of order {order}")
            return variant(**opts)
        if order not in cls._map:
            raise ValueError("RK order must be 1, 2, 4, or 6")
        return cls._map[order](**opts)


class AdaptiveRK:
    """Implement a factory class for creating adaptive step-size Runge-Kutta integrators.

    This factory provides convenient access to adaptive step-size Runge-Kutta
    methods. The available orders are 3 (Bogacki-Shampine 3(2)),
    5 (Dormand-Prince 5(4), or Higham-Hall 5(4) with ``method="higham_hall"``)
    and 8 (Dormand-Prince 8(5,3)).

    Examples
    --------
    >>> rk45 = AdaptiveRK(order=5)
    >>> dop853 = AdaptiveRK(order=8, rtol=1e-10, atol=1e-12)
    """
    _map = {3: _RK23, 5: _RK45, 8: _DOP853}
    _variants = {"higham_hall": (_HighamHall54, 5)}

    def __new__(cls, order=5, method=None, **opts):
        """Create an adaptive step-size Runge-Kutta integrator of specified order.

        Parameters
        ----------
        order : int, default 5
            Order of the Runge-Kutta method. Must be 3, 5 or 8.
        method : str, optional
            Alternative pair of the requested order, ``"higham_hall"``.
        **opts
            Additional options passed to the integrator constructor.

        Returns
        -------
        :class:`~ivpkit.algorithms.integrators.rk._AdaptiveStepRK`
            An adaptive step-size Runge-Kutta integrator instance.

        Raises
        ------
        ValueError
            If the specified order or method is not supported.
        """
        if method is not None:
            if method not in cls._variants:
                raise ValueError(f"Unknown adaptive RK method {method!r}")
            variant, variant_order = cls._variants[method]
            if variant_order != order:
                raise ValueError(f"Method {method!r} is not of order {order}")
            return variant(**opts)
        if order not in cls._map:
            raise ValueError("Adaptive RK order not supported")
        return cls._map[order](**opts)
