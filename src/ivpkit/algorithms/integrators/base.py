"""Provide the integration driver shared by every stepping algorithm.

The driver owns the evaluation context, the registered step and event
handlers, and the acceptance of steps: event isolation, truncation of the
visible step, dispatch to the step handlers and termination. Concrete
integrators only implement the stepping loop in
:func:`~ivpkit.algorithms.integrators.base._Integrator._integrate_steps`.

References
----------
Hairer, E., Norsett, S. P., & Wanner, G. (1993). "Solving Ordinary
Differential Equations I: Non-stiff Problems".
"""

import math
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ivpkit.algorithms.dynamics.base import _DynamicalSystemProtocol
from ivpkit.algorithms.integrators.configs import _EventConfig
from ivpkit.algorithms.integrators.context import _IntegrationContext
from ivpkit.algorithms.integrators.events import (EventHandler, _EventState,
                                                  _FunctionEventHandler)
from ivpkit.algorithms.integrators.handlers import (StepHandler,
                                                    _SolutionRecorder)
from ivpkit.algorithms.integrators.interpolation import _StepInterpolator
from ivpkit.algorithms.integrators.types import _Solution
from ivpkit.algorithms.utils.config import (EVENT_MAX_CHECK_INTERVAL,
                                            EVENT_MAX_ITER, EVENT_TOL,
                                            MAX_EVALUATIONS, TOL)
from ivpkit.algorithms.utils.exceptions import (DegenerateIntervalError,
                                                DimensionMismatchError,
                                                StepSizeUnderflowError)
from ivpkit.utils.log_config import logger


class _Integrator(ABC):
    """Define the driver every concrete integrator runs in.

    Parameters
    ----------
    name : str
        Human-readable identifier of the method.
    max_evaluations : int or None, default MAX_EVALUATIONS
        Budget of derivative evaluations per call to :func:`integrate`.
    **options
        Extra keyword arguments left untouched and stored in
        :attr:`~ivpkit.algorithms.integrators.base._Integrator.options` for later use by subclasses.

    Notes
    -----
    Subclasses *must* implement :func:`~ivpkit.algorithms.integrators.base._Integrator.order` and
    :func:`~ivpkit.algorithms.integrators.base._Integrator._integrate_steps`. An
    instance integrates one trajectory at a time.
    """

    def __init__(self, name: str, max_evaluations: Optional[int] = MAX_EVALUATIONS, **options):
        self.name = name
        self.options = options
        self._step_handlers: List[StepHandler] = []
        self._event_states: List[_EventState] = []
        self._context = _IntegrationContext(max_evaluations)
        self._max_evaluations = max_evaluations

        self._system: Optional[_DynamicalSystemProtocol] = None
        self._f: Optional[Callable[[float, np.ndarray], np.ndarray]] = None
        self._primary_dim = 0
        self._active_step_handlers: List[StepHandler] = []
        self._active_event_states: List[_EventState] = []
        self._step_start = math.nan
        self._step_size = math.nan
        self._is_last_step = False
        self._states_initialized = False

    @property
    @abstractmethod
    def order(self) -> Optional[int]:
        """Order of accuracy of the integrator.

        Returns
        -------
        int or None
            Order of the method, or None if not applicable
        """
        pass

    def add_step_handler(self, handler: StepHandler) -> None:
        self._step_handlers.append(handler)

    @property
    def step_handlers(self) -> Tuple[StepHandler, ...]:
        return tuple(self._step_handlers)

    def clear_step_handlers(self) -> None:
        self._step_handlers.clear()

    def add_event_handler(self, handler: EventHandler,
                          max_check_interval: float = EVENT_MAX_CHECK_INTERVAL,
                          tol: float = EVENT_TOL,
                          max_iter: int = EVENT_MAX_ITER,
                          *,
                          direction: int = 0,
                          max_count: Optional[int] = None) -> None:
        """Register an event handler.

        Parameters
        ----------
        handler : :class:`~ivpkit.algorithms.integrators.events.EventHandler`
            Handler providing the switching function and the actions.
        max_check_interval : float, default EVENT_MAX_CHECK_INTERVAL
            Maximal time between two samples of the switching function.
        tol : float, default EVENT_TOL
            Convergence threshold on the event time.
        max_iter : int, default EVENT_MAX_ITER
            Iteration budget of the root solver.
        direction : int, default 0
            Only report crossings where g increases (+1) or decreases (-1)
            with time; 0 reports both.
        max_count : int or None, default None
            Ignore the handler after this many events.
        """
        cfg = _EventConfig(direction=direction, terminal=False, tol=tol, max_iter=max_iter,
                           max_check_interval=max_check_interval, max_count=max_count)
        self._event_states.append(_EventState(handler, cfg))

    @property
    def event_handlers(self) -> Tuple[EventHandler, ...]:
        return tuple(state.handler for state in self._event_states)

    def clear_event_handlers(self) -> None:
        self._event_states.clear()

    @property
    def max_evaluations(self) -> Optional[int]:
        return self._max_evaluations

    @max_evaluations.setter
    def max_evaluations(self, value: Optional[int]) -> None:
        if value is not None and value < 0:
            raise ValueError(f"max_evaluations must be non-negative, got {value}")
        self._max_evaluations = value

    @property
    def evaluations(self) -> int:
        """Derivative evaluations of the current or last integration."""
        return self._context.evaluations

    @property
    def current_step_start(self) -> float:
        return self._step_start

    @property
    def current_signed_stepsize(self) -> float:
        return self._step_size

    def validate_system(self, system: _DynamicalSystemProtocol) -> None:
        """Check that *system* complies with :class:`~ivpkit.algorithms.dynamics.base._DynamicalSystemProtocol`.

        Raises
        ------
        ValueError
            If the required attribute ``rhs`` is absent.
        """
        if not hasattr(system, 'rhs'):
            raise ValueError(f"System must implement 'rhs' method for {self.name}")

    def validate_inputs(
        self,
        system: _DynamicalSystemProtocol,
        y0: np.ndarray,
        t0: float,
        t_final: float,
    ) -> None:
        """Validate that the input arguments form a consistent integration task.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.DimensionMismatchError`
            If ``y0`` is not a vector of length ``system.dim``.
        :class:`~ivpkit.algorithms.utils.exceptions.DegenerateIntervalError`
            If a time is not finite or ``t_final == t0``.
        """
        self.validate_system(system)

        if y0.ndim != 1 or len(y0) != system.dim:
            raise DimensionMismatchError(
                f"Initial state dimension {y0.shape} != system dimension {system.dim}"
            )

        if not (np.isfinite(t0) and np.isfinite(t_final)):
            raise DegenerateIntervalError(f"Integration bounds must be finite, got [{t0}, {t_final}]")

        if t_final == t0:
            raise DegenerateIntervalError(f"Empty integration interval: t0 = t_final = {t0}")

    def __str__(self):
        return f"IVPKIT-{self.name}"

    def __repr__(self):
        return f"{self.__class__.__name__}(name='{self.name}', options={self.options})"

    def integrate(
        self,
        system: _DynamicalSystemProtocol,
        t0: float,
        y0: np.ndarray,
        t_final: float,
        *,
        event_fn: "Callable[[float, np.ndarray], float] | None" = None,
        event_cfg: "_EventConfig | None" = None,
    ) -> _Solution:
        """Integrate the dynamical system from ``(t0, y0)`` towards ``t_final``.

        Parameters
        ----------
        system : :class:`~ivpkit.algorithms.dynamics.base._DynamicalSystemProtocol`
            The dynamical system to integrate.
        t0 : float
            Initial time.
        y0 : numpy.ndarray
            Initial state vector, shape (system.dim,).
        t_final : float
            Target time, smaller than *t0* for backward integration.
        event_fn : callable, optional
            Scalar ``g(t, y)`` monitored during this call only.
        event_cfg : :class:`~ivpkit.algorithms.integrators.configs._EventConfig`, optional
            Settings of *event_fn*; a terminal event in both directions by default.

        Returns
        -------
        :class:`~ivpkit.algorithms.integrators.types._Solution`
            States at the end of every visible step. Its last time is the time
            actually reached, which differs from *t_final* after a stop.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.IvpkitError`
            On any fatal condition; exceptions raised by user callbacks
            propagate unchanged.
        """
        y0 = np.array(y0, dtype=np.float64)
        t0 = float(t0)
        t_final = float(t_final)
        self.validate_inputs(system, y0, t0, t_final)

        recorder = _SolutionRecorder()
        step_handlers = list(self._step_handlers) + [recorder]
        event_states = list(self._event_states)
        if event_fn is not None:
            cfg = event_cfg if event_cfg is not None else _EventConfig()
            event_states.append(_EventState(_FunctionEventHandler(event_fn, cfg), cfg))

        context = _IntegrationContext(self._max_evaluations)
        logger.debug("%s: integrating from t=%.16e to t=%.16e", self, t0, t_final)
        t, _ = self._integrate_in_context(context, system, t0, y0, t_final, step_handlers, event_states)
        logger.debug("%s: reached t=%.16e after %d evaluations", self, t, context.evaluations)
        return recorder.solution()

    def _integrate_in_context(
        self,
        context: _IntegrationContext,
        system: _DynamicalSystemProtocol,
        t0: float,
        y0: np.ndarray,
        t_final: float,
        step_handlers: Sequence[StepHandler],
        event_states: Sequence[_EventState],
    ) -> Tuple[float, np.ndarray]:
        """Run the stepping loop with an externally owned evaluation context."""
        self._context = context
        self._system = system
        self._f = context.derivatives(system.rhs, system.dim)
        self._primary_dim = getattr(system, "primary_dim", system.dim)
        self._active_step_handlers = list(step_handlers)
        self._active_event_states = list(event_states)
        self._init_integration(t0, y0, t_final)
        return self._integrate_steps(t0, y0, t_final)

    def _compute_derivatives(self, t: float, y: np.ndarray) -> np.ndarray:
        return self._f(t, y)

    def _init_integration(self, t0: float, y0: np.ndarray, t_final: float) -> None:
        self._step_start = t0
        self._step_size = math.nan
        self._is_last_step = False
        self._states_initialized = False
        for state in self._active_event_states:
            state.init(t0, y0, t_final)
        for handler in self._active_step_handlers:
            handler.init(t0, y0.copy(), t_final)

    def _on_reset(self, t: float) -> None:
        """Called after an event reset the state or the derivatives at *t*."""
        pass

    @abstractmethod
    def _integrate_steps(self, t0: float, y0: np.ndarray, t_final: float) -> Tuple[float, np.ndarray]:
        """Advance from ``(t0, y0)`` until a step is flagged last.

        Returns
        -------
        tuple of (float, numpy.ndarray)
            Time reached and state there.
        """
        pass

    def _accept_step(
        self,
        interpolator: _StepInterpolator,
        y: np.ndarray,
        y_dot: np.ndarray,
        t_final: float,
    ) -> Tuple[float, np.ndarray, np.ndarray]:
        """Resolve the events of an accepted step and expose it to the step handlers.

        Events are handled in time order. The visible part of the step is
        truncated at each event; a stop ends the integration there, a reset
        restarts it from the event time with the new state.

        Parameters
        ----------
        interpolator : :class:`~ivpkit.algorithms.integrators.interpolation._StepInterpolator`
            Dense output of the accepted step.
        y, y_dot : numpy.ndarray
            State and derivative at the end of the step.
        t_final : float
            Target time of the integration.

        Returns
        -------
        tuple of (float, numpy.ndarray, numpy.ndarray)
            Time, state and derivative integration continues from.
        """
        previous_t = interpolator.global_previous_time
        current_t = interpolator.global_current_time
        states = self._active_event_states

        if not self._states_initialized:
            for state in states:
                state.reinitialize_begin(interpolator)
            self._states_initialized = True

        ordering = 1.0 if interpolator.is_forward else -1.0
        occurring = [state for state in states if state.evaluate_step(interpolator)]

        while occurring:
            current = min(occurring, key=lambda s: ordering * s.event_time)
            occurring.remove(current)

            # visible part of the step up to the event
            event_t = current.event_time
            interpolator.set_soft_previous_time(previous_t)
            interpolator.set_soft_current_time(event_t)

            event_state = interpolator.interpolate(event_t)
            event_y = event_state.y
            for state in states:
                state.step_accepted(event_t, event_y)
                self._is_last_step = self._is_last_step or state.stop()

            for handler in self._active_step_handlers:
                handler.handle_step(interpolator, self._is_last_step)

            if self._is_last_step:
                logger.debug("Integration stopped by an event at t=%.16e", event_t)
                return event_t, event_y, event_state.y_dot

            need_reset = False
            for state in states:
                reset, event_y = state.reset(event_t, event_y)
                need_reset = need_reset or reset
            if need_reset:
                event_y_dot = self._compute_derivatives(event_t, event_y)
                for state in states:
                    state.resync(event_t, event_y)
                self._on_reset(event_t)
                logger.debug("State reset by an event at t=%.16e", event_t)
                return event_t, event_y, event_y_dot

            # remaining part of the step
            previous_t = event_t
            interpolator.set_soft_previous_time(event_t)
            interpolator.set_soft_current_time(current_t)

            # every handler whose event was handled at event_t looks again
            consumed = [current] + [state for state in occurring if not state.pending]
            occurring = [state for state in occurring if state.pending]
            for state in consumed:
                if state.evaluate_step(interpolator):
                    occurring.append(state)

        for state in states:
            state.step_accepted(current_t, y)
            self._is_last_step = self._is_last_step or state.stop()
        self._is_last_step = self._is_last_step or current_t == t_final

        for handler in self._active_step_handlers:
            handler.handle_step(interpolator, self._is_last_step)

        return current_t, y, y_dot


class _AdaptiveStepsizeIntegrator(_Integrator):
    """Add error-controlled step size selection to the driver.

    Parameters
    ----------
    name : str
        Identifier passed to the :class:`~ivpkit.algorithms.integrators.base._Integrator` base class.
    rtol, atol : float or array_like, default TOL
        Relative and absolute tolerances, scalars or one value per primary
        component. All values must be strictly positive.
    min_step : float or None, optional
        Lower bound on the step size magnitude. When *None* the value is
        derived from machine precision.
    max_step : float, default numpy.inf
        Upper bound on the step size magnitude.
    initial_step : float or None, optional
        Magnitude of the first step. Estimated automatically when *None* or
        when it lies outside ``[min_step, max_step]``.
    safety, min_reduction, max_growth : float, optional
        Step size controller constants, default to :attr:`SAFETY`,
        :attr:`MIN_FACTOR` and :attr:`MAX_FACTOR`.
    **options
        Forwarded to :class:`~ivpkit.algorithms.integrators.base._Integrator`.

    Attributes
    ----------
    SAFETY, MIN_FACTOR, MAX_FACTOR : float
        Default controller constants. They follow SciPy's implementation and
        the recommendations by Hairer et al.
    """

    SAFETY = 0.9
    MIN_FACTOR = 0.2
    MAX_FACTOR = 10.0

    def __init__(self,
                 name: str = "AdaptiveStepsize",
                 rtol: Union[float, np.ndarray] = TOL,
                 atol: Union[float, np.ndarray] = TOL,
                 min_step: Optional[float] = None,
                 max_step: float = np.inf,
                 initial_step: Optional[float] = None,
                 safety: Optional[float] = None,
                 min_reduction: Optional[float] = None,
                 max_growth: Optional[float] = None,
                 **options):
        super().__init__(name, **options)
        rtol = np.array(rtol, dtype=np.float64)
        atol = np.array(atol, dtype=np.float64)
        if rtol.ndim > 1 or atol.ndim > 1:
            raise ValueError("Tolerances must be scalars or vectors")
        if not (np.all(rtol > 0.0) and np.all(atol > 0.0)):
            raise ValueError("Tolerances must be strictly positive")
        self._rtol = rtol
        self._atol = atol

        self._min_step = 10.0 * np.finfo(float).eps if min_step is None else float(min_step)
        self._max_step = float(max_step)
        self._initial_step = None if initial_step is None else float(initial_step)

        self._safety = self.SAFETY if safety is None else float(safety)
        self._min_reduction = self.MIN_FACTOR if min_reduction is None else float(min_reduction)
        self._max_growth = self.MAX_FACTOR if max_growth is None else float(max_growth)
        if not 0.0 < self._safety <= 1.0:
            raise ValueError(f"safety must lie in (0, 1], got {self._safety}")
        if not 0.0 < self._min_reduction < 1.0:
            raise ValueError(f"min_reduction must lie in (0, 1), got {self._min_reduction}")
        if not self._max_growth > 1.0:
            raise ValueError(f"max_growth must be greater than 1, got {self._max_growth}")

    @property
    def min_step(self) -> float:
        return self._min_step

    @property
    def max_step(self) -> float:
        return self._max_step

    @property
    def rtol(self) -> np.ndarray:
        return self._rtol.copy()

    @property
    def atol(self) -> np.ndarray:
        return self._atol.copy()

    def validate_inputs(self, system, y0, t0, t_final):
        """Validate the task together with the step bounds and tolerances.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.DegenerateIntervalError`
            If the step bounds are inconsistent.
        :class:`~ivpkit.algorithms.utils.exceptions.DimensionMismatchError`
            If a tolerance vector does not match the primary dimension.
        """
        super().validate_inputs(system, y0, t0, t_final)

        if not (self._min_step >= 0.0 and self._max_step > 0.0 and self._min_step <= self._max_step):
            raise DegenerateIntervalError(
                f"Inconsistent step bounds: min_step={self._min_step}, max_step={self._max_step}"
            )
        if self._initial_step is not None and not self._initial_step > 0.0:
            raise DegenerateIntervalError(f"initial_step must be positive, got {self._initial_step}")

        n = getattr(system, "primary_dim", system.dim)
        for label, tol in (("rtol", self._rtol), ("atol", self._atol)):
            if tol.ndim == 1 and tol.size != n:
                raise DimensionMismatchError(
                    f"{label} has {tol.size} components, primary state has {n}"
                )

    def _tolerances(self, n: int) -> Tuple[np.ndarray, np.ndarray]:
        atol = np.ascontiguousarray(np.broadcast_to(self._atol, (n,)), dtype=np.float64)
        rtol = np.ascontiguousarray(np.broadcast_to(self._rtol, (n,)), dtype=np.float64)
        return atol, rtol

    def _step_factor(self, error: float, exponent: float) -> float:
        """Return the step size ratio ``safety * error^(-exponent)`` within its limits."""
        if not np.isfinite(error):
            return self._min_reduction
        if error == 0.0:
            return self._max_growth
        return min(self._max_growth, max(self._min_reduction, self._safety * error ** (-exponent)))

    def filter_step(self, h: float, forward: bool, accept_small: bool) -> float:
        """Clamp a proposed step to the configured bounds.

        Parameters
        ----------
        h : float
            Signed step proposal.
        forward : bool
            Integration direction.
        accept_small : bool
            If True a step below ``min_step`` is raised to it instead of
            failing, used when the next step is the last one.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.StepSizeUnderflowError`
            If ``|h| < min_step`` and *accept_small* is False.
        """
        filtered = h
        if abs(h) < self._min_step:
            if accept_small:
                filtered = self._min_step if forward else -self._min_step
            else:
                raise StepSizeUnderflowError(
                    f"Step size {abs(h):.3e} below minimal step {self._min_step:.3e} "
                    f"at t={self._step_start:.16e}"
                )
        if filtered > self._max_step:
            filtered = self._max_step
        elif filtered < -self._max_step:
            filtered = -self._max_step
        return filtered

    def initialize_step(self, forward: bool, order: int, t0: float, y0: np.ndarray,
                        y_dot0: np.ndarray, atol: np.ndarray, rtol: np.ndarray) -> float:
        """Estimate a first step size, costing one derivative evaluation.

        A user *initial_step* within the step bounds is returned as is.
        Otherwise the step is chosen such that ``h^order * max(||y'||, ||y''||) = 0.01``
        in the tolerance weighted norm, ``y''`` being estimated from an
        explicit Euler step.
        """
        h = self._initial_step
        if h is not None:
            if self._min_step <= h <= self._max_step:
                return h if forward else -h
            logger.debug("%s: initial step %.3e outside [%.3e, %.3e], using an estimate",
                         self, h, self._min_step, self._max_step)

        n = atol.size
        scale = atol + rtol * np.abs(y0[:n])
        y_on_scale2 = float(np.sum((y0[:n] / scale) ** 2))
        y_dot_on_scale2 = float(np.sum((y_dot0[:n] / scale) ** 2))

        if y_on_scale2 < 1.0e-10 or y_dot_on_scale2 < 1.0e-10:
            h = 1.0e-6
        else:
            h = 0.01 * math.sqrt(y_on_scale2 / y_dot_on_scale2)
        if not forward:
            h = -h

        y1 = y0 + h * y_dot0
        y_dot1 = self._compute_derivatives(t0 + h, y1)

        y_ddot_on_scale = math.sqrt(float(np.sum(((y_dot1[:n] - y_dot0[:n]) / scale) ** 2))) / abs(h)

        max_inv2 = max(math.sqrt(y_dot_on_scale2), y_ddot_on_scale)
        if max_inv2 < 1.0e-15:
            h1 = max(1.0e-6, 0.001 * abs(h))
        else:
            h1 = (0.01 / max_inv2) ** (1.0 / order)
        h = min(100.0 * abs(h), h1)
        # avoid cancellation when computing t1 - t0
        h = max(h, 1.0e-12 * abs(t0))
        h = min(max(h, self._min_step), self._max_step)

        return h if forward else -h
