"""Observers of the accepted integration steps.

Step handlers are called once per accepted (possibly event-truncated) step,
in time order, with the step interpolator restricted to the visible part of
the step.
"""

import math
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

import numpy as np

from ivpkit.algorithms.integrators.interpolation import _StepInterpolator
from ivpkit.algorithms.integrators.types import State, _Solution


class StepHandler(ABC):
    """Define the interface of step handlers."""

    def init(self, t0: float, y0: np.ndarray, t_final: float) -> None:
        """Called once before integration starts."""
        pass

    @abstractmethod
    def handle_step(self, interpolator: _StepInterpolator, is_last: bool) -> None:
        """Handle the visible part of the last accepted step.

        Parameters
        ----------
        interpolator : :class:`~ivpkit.algorithms.integrators.interpolation._StepInterpolator`
            Dense output of the step. Valid only during the call.
        is_last : bool
            True for the step reaching the final time or a stopping event.
        """
        pass


class ContinuousOutputModel(StepHandler):
    """Keep the dense output of a whole integration.

    Once integration is over, :func:`interpolate` evaluates the trajectory
    anywhere between :attr:`initial_time` and :attr:`final_time`.
    """

    def __init__(self):
        self._steps: List[_StepInterpolator] = []
        self._forward = True
        self.initial_time = math.nan
        self.final_time = math.nan

    def init(self, t0, y0, t_final):
        self._steps = []
        self._forward = t_final >= t0
        self.initial_time = math.nan
        self.final_time = math.nan

    def handle_step(self, interpolator, is_last):
        if not self._steps:
            self.initial_time = interpolator.previous_time
            self._forward = interpolator.is_forward
        self._steps.append(interpolator.copy())
        self.final_time = interpolator.current_time

    @property
    def n_steps(self) -> int:
        return len(self._steps)

    def _locate(self, t: float) -> _StepInterpolator:
        # steps are ordered in integration direction, bisect on their visible ends
        sign = 1.0 if self._forward else -1.0
        lo, hi = 0, len(self._steps) - 1
        while lo < hi:
            mid = (lo + hi) // 2
            if sign * (t - self._steps[mid].current_time) <= 0.0:
                hi = mid
            else:
                lo = mid + 1
        return self._steps[lo]

    def interpolate(self, t: float) -> State:
        """Return the state at time *t*.

        Raises
        ------
        ValueError
            If nothing was recorded or *t* lies outside the integrated range.
        """
        if not self._steps:
            raise ValueError("No step has been recorded")
        lo = min(self.initial_time, self.final_time)
        hi = max(self.initial_time, self.final_time)
        if t < lo or t > hi:
            raise ValueError(f"Time {t} outside of integrated range [{lo}, {hi}]")
        return self._locate(t).interpolate(t)


class StepNormalizer(StepHandler):
    """Call a fixed-step callback on a regular grid from adaptive steps.

    Parameters
    ----------
    step : float
        Grid spacing, its sign is ignored.
    callback : callable
        ``callback(t, y, y_dot, is_last)`` called at every grid point.
    mode : {"increment", "multiples"}, default "increment"
        ``"increment"`` places points at ``t0 + k * step``, ``"multiples"`` at
        the multiples of *step*.
    bounds : {"both", "first", "last", "neither"}, default "both"
        Whether the integration start and end are reported as extra points.
    """

    _MODES = ("increment", "multiples")
    _BOUNDS = ("both", "first", "last", "neither")

    def __init__(self, step: float, callback: Callable[[float, np.ndarray, np.ndarray, bool], None],
                 mode: str = "increment", bounds: str = "both"):
        if not abs(step) > 0.0:
            raise ValueError(f"step must be non-zero, got {step}")
        if mode not in self._MODES:
            raise ValueError(f"mode must be one of {self._MODES}, got {mode!r}")
        if bounds not in self._BOUNDS:
            raise ValueError(f"bounds must be one of {self._BOUNDS}, got {bounds!r}")
        self._step = abs(step)
        self._callback = callback
        self._mode = mode
        self._bounds = bounds
        self._h = self._step
        self._first_time = math.nan
        self._last: Optional[State] = None
        self._forward = True

    def init(self, t0, y0, t_final):
        self._first_time = math.nan
        self._last = None
        self._forward = t_final >= t0
        self._h = self._step if self._forward else -self._step

    def _in_step(self, t: float, interpolator: _StepInterpolator) -> bool:
        if self._forward:
            return t <= interpolator.current_time
        return t >= interpolator.current_time

    def _emit(self, is_last: bool) -> None:
        if self._bounds in ("last", "neither") and self._last.t == self._first_time:
            return
        self._callback(self._last.t, self._last.y, self._last.y_dot, is_last)

    def handle_step(self, interpolator, is_last):
        if self._last is None:
            self._first_time = interpolator.previous_time
            self._last = interpolator.previous_state
            self._forward = interpolator.is_forward
            self._h = self._step if self._forward else -self._step

        if self._mode == "increment":
            next_time = self._last.t + self._h
        else:
            next_time = (math.floor(self._last.t / self._h) + 1) * self._h
            if np.isclose(next_time, self._last.t, rtol=2.0 * np.finfo(float).eps, atol=0.0):
                next_time += self._h

        while self._in_step(next_time, interpolator):
            self._emit(False)
            self._last = interpolator.interpolate(next_time)
            next_time += self._h

        if is_last:
            add_last = self._bounds in ("both", "last") and self._last.t != interpolator.current_time
            self._emit(not add_last)
            if add_last:
                self._last = interpolator.current_state
                self._emit(True)


class _SolutionRecorder(StepHandler):
    """Collect the visible step ends into a :class:`~ivpkit.algorithms.integrators.types._Solution`."""

    def __init__(self):
        self._times: List[float] = []
        self._states: List[np.ndarray] = []
        self._derivatives: List[np.ndarray] = []

    def init(self, t0, y0, t_final):
        self._times = []
        self._states = []
        self._derivatives = []

    def _append(self, state: State) -> None:
        self._times.append(state.t)
        self._states.append(state.y)
        self._derivatives.append(state.y_dot)

    def handle_step(self, interpolator, is_last):
        start = interpolator.previous_state
        # a new start state after a reset is stored as a second node at the same time
        if not self._states or not np.array_equal(self._states[-1], start.y):
            self._append(start)
        self._append(interpolator.current_state)

    def solution(self) -> _Solution:
        return _Solution(
            times=np.asarray(self._times, dtype=np.float64),
            states=np.asarray(self._states, dtype=np.float64),
            derivatives=np.asarray(self._derivatives, dtype=np.float64),
        )
