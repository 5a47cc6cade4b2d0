"""Provide Adams-Bashforth and Adams-Moulton multistep integrators.

Both methods propagate a Nordsieck vector (see
:mod:`~ivpkit.algorithms.integrators.nordsieck`) so that changing the step
size only rescales the history. The first points are computed by a starter
integrator, a Dormand-Prince 8(5,3) instance by default, which shares the
evaluation budget of the integration.

References
----------
Hairer, E., Norsett, S. P., & Wanner, G. (1993). "Solving Ordinary
Differential Equations I: Non-stiff Problems", section III.

Nordsieck, A. (1962). "On numerical integration of ordinary differential
equations".
"""

import math
from abc import abstractmethod
from typing import List, Optional, Tuple

import numba
import numpy as np

from ivpkit.algorithms.integrators.base import _AdaptiveStepsizeIntegrator
from ivpkit.algorithms.integrators.handlers import StepHandler
from ivpkit.algorithms.integrators.interpolation import (
    _NordsieckInterpolator, _nordsieck_taylor_jit_kernel)
from ivpkit.algorithms.integrators.nordsieck import _AdamsNordsieckTransformer
from ivpkit.algorithms.integrators.rk import _DOP853, _error_norm_jit_kernel
from ivpkit.algorithms.integrators.types import State
from ivpkit.algorithms.utils.config import FASTMATH
from ivpkit.algorithms.utils.exceptions import MultistepConvergenceError
from ivpkit.utils.log_config import logger


@numba.njit(cache=False, fastmath=FASTMATH)
def _adams_bashforth_error_jit_kernel(previous, predicted, predicted_scaled, nordsieck, atol, rtol):
    n = atol.size
    rows = nordsieck.shape[0]
    error = 0.0
    for i in range(n):
        tol = atol[i] + rtol[i] * abs(predicted[i])
        # Taylor formula at a = -1, high order terms first
        variation = 0.0
        sign = -1.0 if rows % 2 == 0 else 1.0
        for k in range(rows - 1, -1, -1):
            variation += sign * nordsieck[k, i]
            sign = -sign
        variation -= predicted_scaled[i]
        ratio = (predicted[i] - previous[i] + variation) / tol
        error += ratio * ratio
    return np.sqrt(error / n)


@numba.njit(cache=False, fastmath=FASTMATH)
def _adams_moulton_corrector_jit_kernel(previous, predicted, predicted_scaled, nordsieck, atol, rtol):
    dim = previous.size
    n = atol.size
    rows = nordsieck.shape[0]
    after = np.empty(dim, dtype=np.float64)
    error = 0.0
    for i in range(dim):
        acc = 0.0
        for k in range(rows):
            if k % 2 == 0:
                acc -= nordsieck[k, i]
            else:
                acc += nordsieck[k, i]
        after[i] = acc + previous[i] + predicted_scaled[i]
        if i < n:
            y_scale = max(abs(previous[i]), abs(after[i]))
            tol = atol[i] + rtol[i] * y_scale
            ratio = (after[i] - predicted[i]) / tol
            error += ratio * ratio
    return after, np.sqrt(error / n)


class _InitializationCompleted(Exception):
    """Interrupt the starter once enough points are collected."""
    pass


class _NordsieckInitializer(StepHandler):
    """Collect the starter points and build the initial Nordsieck vector.

    Parameters
    ----------
    n_points : int
        Number of points to collect, the step start included.
    transformer : :class:`~ivpkit.algorithms.integrators.nordsieck._AdamsNordsieckTransformer`
        Transformer of the multistep method being started.
    """

    def __init__(self, n_points: int, transformer: _AdamsNordsieckTransformer):
        self._n_points = n_points
        self._transformer = transformer
        self._times: List[float] = []
        self._states: List[np.ndarray] = []
        self._derivatives: List[np.ndarray] = []
        self.step_size = math.nan
        self.scaled: Optional[np.ndarray] = None
        self.nordsieck: Optional[np.ndarray] = None
        self.y_dot0: Optional[np.ndarray] = None

    def init(self, t0, y0, t_final):
        self._times = []
        self._states = []
        self._derivatives = []

    def _append(self, state: State) -> None:
        self._times.append(state.t)
        self._states.append(state.y)
        self._derivatives.append(state.y_dot)

    def handle_step(self, interpolator, is_last):
        if not self._times:
            self._append(interpolator.previous_state)
        self._append(interpolator.current_state)

        if len(self._times) == self._n_points:
            t = self._times
            h = (t[-1] - t[0]) / (self._n_points - 1)
            self.step_size = h
            self.y_dot0 = self._derivatives[0].copy()
            self.scaled = h * self._derivatives[0]
            self.nordsieck = self._transformer.initialize_high_order_derivatives(
                h, t, self._states, self._derivatives
            )
            raise _InitializationCompleted()


class _MultistepIntegrator(_AdaptiveStepsizeIntegrator):
    """Drive a Nordsieck-form multistep method.

    Parameters
    ----------
    name : str
        Identifier of the method.
    n_steps : int
        Number of steps of the method, at least 2.
    order : int
        Order of the method; the step size controller uses the exponent
        ``1 / order`` and the default maximal growth is ``2^(1/order)``.
    starter : :class:`~ivpkit.algorithms.integrators.base._Integrator`, optional
        Integrator computing the first points. Defaults to a Dormand-Prince
        8(5,3) instance with the same tolerances and step bounds.
    max_rejections : int, default 10
        Consecutive rejections of one step after which the history is
        considered degenerate and rebuilt with the starter.
    **options
        Step size control settings of
        :class:`~ivpkit.algorithms.integrators.base._AdaptiveStepsizeIntegrator`.

    Notes
    -----
    The history is rebuilt with the starter after an event reset, and when a
    step produces a non-finite error or too many consecutive rejections. This
    happens at most once per step, further rejections only shrink the step.
    """

    def __init__(self, name: str, n_steps: int, order: int,
                 starter: Optional[_AdaptiveStepsizeIntegrator] = None,
                 max_rejections: int = 10, **options):
        if n_steps < 2:
            raise ValueError(f"n_steps must be at least 2, got {n_steps}")
        if max_rejections < 1:
            raise ValueError(f"max_rejections must be at least 1, got {max_rejections}")
        if options.get("max_growth") is None:
            options["max_growth"] = 2.0 ** (1.0 / order)
        super().__init__(name, **options)
        self._n_steps = n_steps
        self._order = order
        self._exponent = 1.0 / order
        self._max_rejections = max_rejections
        self._transformer = _AdamsNordsieckTransformer.instance(n_steps)
        if starter is None:
            starter = _DOP853(rtol=self._rtol, atol=self._atol, min_step=self._min_step,
                              max_step=self._max_step)
        self._starter = starter
        self._restarts = 0
        self._reset_occurred = False

    @property
    def order(self) -> int:
        return self._order

    @property
    def n_steps(self) -> int:
        return self._n_steps

    @property
    def starter(self):
        return self._starter

    @starter.setter
    def starter(self, value) -> None:
        self._starter = value

    @property
    def restarts(self) -> int:
        """Number of starter runs in the current or last integration."""
        return self._restarts

    def _on_reset(self, t):
        self._reset_occurred = True

    @property
    def n_start_points(self) -> int:
        return (self._n_steps + 3) // 2

    def _start(self, t0: float, y0: np.ndarray, t_final: float) -> Tuple[float, np.ndarray, np.ndarray, np.ndarray]:
        """Run the starter from ``(t0, y0)`` and build the Nordsieck vector there.

        Returns
        -------
        tuple
            Step size, scaled derivative, higher order Nordsieck matrix and
            derivative at *t0*.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.MultistepConvergenceError`
            If the starter reaches *t_final* before enough points are known.
        """
        initializer = _NordsieckInitializer(self.n_start_points, self._transformer)
        logger.debug("%s: starting from t=%.16e with %s", self, t0, self._starter)
        self._restarts += 1
        try:
            self._starter._integrate_in_context(self._context, self._system, t0, y0, t_final,
                                                [initializer], [])
        except _InitializationCompleted:
            pass
        else:
            raise MultistepConvergenceError(
                f"Starter integrator reached t={t_final} before collecting "
                f"{self.n_start_points} points for {self.name}"
            )
        return initializer.step_size, initializer.scaled, initializer.nordsieck, initializer.y_dot0

    def _rescale(self, scaled: np.ndarray, nordsieck: np.ndarray, h_old: float,
                 h_new: float) -> Tuple[np.ndarray, np.ndarray]:
        """Return the history rescaled from step *h_old* to *h_new*."""
        ratio = h_new / h_old
        powers = ratio ** np.arange(2, nordsieck.shape[0] + 2, dtype=np.float64)
        return scaled * ratio, nordsieck * powers[:, None]

    def _fit_to_end(self, step_start: float, h: float, t_final: float, forward: bool) -> float:
        t_end = step_start + h
        if (forward and t_end >= t_final) or (not forward and t_end <= t_final):
            return t_final - step_start
        return h

    @abstractmethod
    def _corrected_step(self, t_end, h, y, scaled, nordsieck, y_pred, y_dot_pred,
                        pred_scaled, pred_nordsieck, atol, rtol):
        """Finish a predicted step.

        Returns
        -------
        tuple
            ``(y_new, y_dot_new, new_scaled, new_nordsieck, error)``.
        """
        pass

    def _integrate_steps(self, t0, y0, t_final):
        forward = t_final > t0
        atol, rtol = self._tolerances(self._primary_dim)
        transformer = self._transformer
        self._restarts = 0
        self._reset_occurred = False
        self._is_last_step = False

        step_start = t0
        y = y0.copy()
        h, scaled, nordsieck, y_dot = self._start(t0, y, t_final)
        h_new = self._fit_to_end(step_start, h, t_final, forward)
        scaled, nordsieck = self._rescale(scaled, nordsieck, h, h_new)
        h = h_new

        while not self._is_last_step:
            self._step_start = step_start
            rejections = 0
            restarted = False

            while True:
                self._step_size = h
                t_end = step_start + h
                if (forward and t_end >= t_final) or (not forward and t_end <= t_final):
                    t_end = t_final

                # predict
                y_pred, _ = _nordsieck_taylor_jit_kernel(y, scaled, nordsieck, 1.0, h)
                y_dot_pred = self._compute_derivatives(t_end, y_pred)
                pred_scaled = h * y_dot_pred
                pred_nordsieck = transformer.update_high_order_derivatives_phase_1(nordsieck)
                transformer.update_high_order_derivatives_phase_2(scaled, pred_scaled, pred_nordsieck)

                y_new, y_dot_new, new_scaled, new_nordsieck, error = self._corrected_step(
                    t_end, h, y, scaled, nordsieck, y_pred, y_dot_pred,
                    pred_scaled, pred_nordsieck, atol, rtol,
                )
                if error <= 1.0:
                    break

                rejections += 1
                if not restarted and (not np.isfinite(error) or rejections >= self._max_rejections):
                    logger.debug("%s: rebuilding history at t=%.16e after %d rejections (error=%s)",
                                 self, step_start, rejections, error)
                    h_start, scaled, nordsieck, y_dot = self._start(step_start, y, t_final)
                    h_new = self._fit_to_end(step_start, h_start, t_final, forward)
                    scaled, nordsieck = self._rescale(scaled, nordsieck, h_start, h_new)
                    h = h_new
                    restarted = True
                    rejections = 0
                    continue

                factor = self._step_factor(error, self._exponent)
                h_new = self.filter_step(h * factor, forward, False)
                scaled, nordsieck = self._rescale(scaled, nordsieck, h, h_new)
                h = h_new

            interpolator = _NordsieckInterpolator(
                State(step_start, y, y_dot), State(t_end, y_new, y_dot_new), forward,
                new_scaled, new_nordsieck, h,
            )
            step_start, y, y_dot = self._accept_step(interpolator, y_new, y_dot_new, t_final)
            scaled, nordsieck = new_scaled, new_nordsieck

            if not self._is_last_step:
                if self._reset_occurred:
                    self._reset_occurred = False
                    if step_start == t_final:
                        # zero length closing step, nothing left to predict
                        boundary = State(step_start, y, y_dot)
                        interpolator = _NordsieckInterpolator(boundary, boundary, forward,
                                                              np.zeros_like(y), np.zeros_like(nordsieck), 1.0)
                        step_start, y, y_dot = self._accept_step(interpolator, y, y_dot, t_final)
                        continue
                    h, scaled, nordsieck, y_dot = self._start(step_start, y, t_final)

                factor = self._step_factor(error, self._exponent)
                scaled_h = h * factor
                next_t = step_start + scaled_h
                next_is_last = next_t >= t_final if forward else next_t <= t_final
                h_new = self.filter_step(scaled_h, forward, next_is_last)
                filtered_next_t = step_start + h_new
                if (forward and filtered_next_t >= t_final) or (not forward and filtered_next_t <= t_final):
                    h_new = t_final - step_start
                scaled, nordsieck = self._rescale(scaled, nordsieck, h, h_new)
                h = h_new

        self._step_start = step_start
        return step_start, y


class _AdamsBashforth(_MultistepIntegrator):
    """Explicit Adams-Bashforth method of order *n_steps*.

    The error estimate compares the prediction with the Taylor expansion of
    the updated Nordsieck vector back to the step start.
    """

    def __init__(self, n_steps: int = 4, **opts):
        super().__init__(f"_AdamsBashforth{n_steps}", n_steps, n_steps, **opts)

    def _corrected_step(self, t_end, h, y, scaled, nordsieck, y_pred, y_dot_pred,
                        pred_scaled, pred_nordsieck, atol, rtol):
        error = _adams_bashforth_error_jit_kernel(y, y_pred, pred_scaled, pred_nordsieck, atol, rtol)
        return y_pred, y_dot_pred, pred_scaled, pred_nordsieck, error


class _AdamsMoulton(_MultistepIntegrator):
    """Implicit Adams-Moulton method of order *n_steps* + 1 in PECE form.

    Parameters
    ----------
    n_steps : int, default 4
        Number of steps.
    n_corrections : int, default 0
        Extra fixed-point iterations of the corrector on accepted steps.
    corrector_threshold : float, default 1.0
        Normalized size the last correction must reach when
        *n_corrections* is positive.
    **opts
        Forwarded to :class:`~ivpkit.algorithms.integrators.adams._MultistepIntegrator`.

    Raises
    ------
    :class:`~ivpkit.algorithms.utils.exceptions.MultistepConvergenceError`
        If the fixed-point corrections grow, or do not shrink below
        *corrector_threshold*.
    """

    def __init__(self, n_steps: int = 4, n_corrections: int = 0, corrector_threshold: float = 1.0, **opts):
        if n_corrections < 0:
            raise ValueError(f"n_corrections must be non-negative, got {n_corrections}")
        if not corrector_threshold >= 0.0:
            raise ValueError(f"corrector_threshold must be non-negative, got {corrector_threshold}")
        super().__init__(f"_AdamsMoulton{n_steps}", n_steps, n_steps + 1, **opts)
        self._n_corrections = n_corrections
        self._corrector_threshold = corrector_threshold

    @property
    def n_corrections(self) -> int:
        return self._n_corrections

    def _correct(self, t_end, h, y, scaled, nordsieck, corrected, atol, rtol):
        """Iterate the corrector to a fixed point.

        Returns
        -------
        tuple
            Corrected state, scaled derivative and Nordsieck matrix of the
            last iteration.
        """
        transformer = self._transformer
        delta_prev = math.inf
        corrected_scaled = corrected_nordsieck = None
        for _ in range(self._n_corrections):
            corrected_scaled = h * self._compute_derivatives(t_end, corrected)
            corrected_nordsieck = transformer.update_high_order_derivatives_phase_1(nordsieck)
            transformer.update_high_order_derivatives_phase_2(scaled, corrected_scaled, corrected_nordsieck)
            after, _ = _adams_moulton_corrector_jit_kernel(y, corrected, corrected_scaled,
                                                           corrected_nordsieck, atol, rtol)
            delta = _error_norm_jit_kernel(after - corrected, corrected, after, atol, rtol)
            if not delta <= delta_prev:
                raise MultistepConvergenceError(
                    f"Adams-Moulton corrector diverges at t={t_end:.16e}: "
                    f"correction {delta:.3e} after {delta_prev:.3e}"
                )
            corrected = after
            delta_prev = delta
            if delta <= self._corrector_threshold:
                break
        else:
            if self._n_corrections > 0:
                raise MultistepConvergenceError(
                    f"Adams-Moulton corrector did not converge at t={t_end:.16e}: "
                    f"correction {delta_prev:.3e} above {self._corrector_threshold:.3e} "
                    f"after {self._n_corrections} iterations"
                )
        return corrected, corrected_scaled, corrected_nordsieck

    def _corrected_step(self, t_end, h, y, scaled, nordsieck, y_pred, y_dot_pred,
                        pred_scaled, pred_nordsieck, atol, rtol):
        corrected, error = _adams_moulton_corrector_jit_kernel(y, y_pred, pred_scaled, pred_nordsieck,
                                                               atol, rtol)
        if not error <= 1.0:
            return corrected, y_dot_pred, pred_scaled, pred_nordsieck, error

        if self._n_corrections > 0:
            corrected, last_scaled, last_nordsieck = self._correct(t_end, h, y, scaled, nordsieck,
                                                                   corrected, atol, rtol)
            if last_scaled is not None:
                pred_scaled, pred_nordsieck = last_scaled, last_nordsieck

        # final evaluation of the PECE sequence
        y_dot_corrected = self._compute_derivatives(t_end, corrected)
        corrected_scaled = h * y_dot_corrected
        self._transformer.update_high_order_derivatives_phase_2(pred_scaled, corrected_scaled, pred_nordsieck)
        return corrected, y_dot_corrected, corrected_scaled, pred_nordsieck, error


class Adams:
    """Implement a factory class for creating Adams multistep integrators.

    Examples
    --------
    >>> am = Adams(kind="moulton", n_steps=4, rtol=1e-10, atol=1e-10)
    >>> ab = Adams(kind="bashforth", n_steps=5)
    """
    _map = {"bashforth": _AdamsBashforth, "moulton": _AdamsMoulton}

    def __new__(cls, kind="moulton", n_steps=4, **opts):
        """Create an Adams integrator.

        Parameters
        ----------
        kind : {"moulton", "bashforth"}, default "moulton"
            Implicit (PECE) or explicit variant.
        n_steps : int, default 4
            Number of steps, at least 2.
        **opts
            Additional options passed to the integrator constructor.

        Returns
        -------
        :class:`~ivpkit.algorithms.integrators.adams._MultistepIntegrator`
            A multistep integrator instance.

        Raises
        ------
        ValueError
            If *kind* is not supported.
        """
        if kind not in cls._map:
            raise ValueError(f"Adams kind must be 'moulton' or 'bashforth', got {kind!r}")
        return cls._map[kind](n_steps=n_steps, **opts)
