"""Event detection and handling during integration.

Each registered :class:`~ivpkit.algorithms.integrators.events.EventHandler`
is tracked by an :class:`~ivpkit.algorithms.integrators.events._EventState`
which samples the g-function over every accepted step, isolates sign changes
with :class:`~ivpkit.algorithms.integrators.roots._BracketingSolver` and
reports the action chosen by the handler to the driver.

Notes
-----
Sign changes are only searched between samples spaced by at most
``max_check_interval``; two roots of the same g-function closer than that
may be missed.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Tuple

import numpy as np

from ivpkit.algorithms.integrators.configs import _EventConfig
from ivpkit.algorithms.integrators.interpolation import _StepInterpolator
from ivpkit.algorithms.integrators.roots import _BracketingSolver
from ivpkit.algorithms.integrators.types import Action
from ivpkit.algorithms.utils.exceptions import DimensionMismatchError
from ivpkit.utils.log_config import logger


class EventHandler(ABC):
    """Define the interface of user event handlers.

    An event occurs when the scalar switching function ``g(t, y)`` changes
    sign. The handler then decides how integration proceeds.
    """

    def init(self, t0: float, y0: np.ndarray, t_final: float) -> None:
        """Called once before integration starts."""
        pass

    @abstractmethod
    def g(self, t: float, y: np.ndarray) -> float:
        """Switching function, continuous across the integration range."""
        pass

    @abstractmethod
    def event_occurred(self, t: float, y: np.ndarray, increasing: bool) -> Action:
        """Handle an event and return the :class:`~ivpkit.algorithms.integrators.types.Action` to take.

        Parameters
        ----------
        t : float
            Event time.
        y : numpy.ndarray
            State at the event time.
        increasing : bool
            True if g increases with time across the event.
        """
        pass

    def reset_state(self, t: float, y: np.ndarray) -> np.ndarray:
        """Return the state integration restarts from after a RESET_STATE action."""
        return y


class _FunctionEventHandler(EventHandler):
    """Adapt a plain ``event_fn(t, y) -> float`` callable.

    The event stops integration when ``cfg.terminal`` is set and is only
    recorded otherwise.
    """

    def __init__(self, event_fn: Callable[[float, np.ndarray], float], cfg: _EventConfig):
        self._event_fn = event_fn
        self._cfg = cfg

    def g(self, t, y):
        return self._event_fn(t, y)

    def event_occurred(self, t, y, increasing):
        return Action.STOP if self._cfg.terminal else Action.CONTINUE


@dataclass
class _SignRecord:
    """Last sampled value of a g-function and the sign tracked since then."""

    t: float = math.nan
    g: float = math.nan
    positive: bool = True


class _EventState:
    """Track one event handler across the steps of an integration.

    Parameters
    ----------
    handler : :class:`~ivpkit.algorithms.integrators.events.EventHandler`
        User handler.
    cfg : :class:`~ivpkit.algorithms.integrators.configs._EventConfig`
        Sampling, root isolation and filtering settings.
    """

    def __init__(self, handler: EventHandler, cfg: _EventConfig):
        self.handler = handler
        self.cfg = cfg
        self._solver = _BracketingSolver(cfg.tol, cfg.max_iter)
        self._clear()

    def _clear(self):
        self._sign = _SignRecord()
        self._forward = True
        self._pending = False
        self._pending_time = math.nan
        self._previous_event_time = math.nan
        self._increasing = True
        self._next_action = Action.CONTINUE
        self._count = 0
        self._disabled = False
        self._resample = False

    @property
    def convergence(self) -> float:
        return self.cfg.tol

    @property
    def count(self) -> int:
        """Number of events handled since the integration started."""
        return self._count

    @property
    def disabled(self) -> bool:
        return self._disabled

    @property
    def pending(self) -> bool:
        """True while an isolated event waits to be handled."""
        return self._pending

    @property
    def sign_record(self) -> _SignRecord:
        return self._sign

    @property
    def event_time(self) -> float:
        """Time of the pending event, or infinity in integration direction."""
        if self._pending:
            return self._pending_time
        return math.inf if self._forward else -math.inf

    def init(self, t0: float, y0: np.ndarray, t_final: float) -> None:
        self._clear()
        self._forward = t_final >= t0
        self.handler.init(t0, np.array(y0, dtype=np.float64), t_final)

    def _g(self, t: float, y: np.ndarray) -> float:
        return float(self.handler.g(t, y))

    def reinitialize_begin(self, interpolator: _StepInterpolator) -> None:
        """Sample g at the start of the first step."""
        self._forward = interpolator.is_forward
        self._sample_sign(interpolator, interpolator.previous_time)

    def _sample_sign(self, interpolator: _StepInterpolator, t0: float) -> None:
        g0 = self._g(t0, interpolator.interpolate(t0).y)
        if g0 == 0.0:
            # a zero exactly at the start is ignored, use the sign slightly after it
            shift = min(0.5 * self.convergence, 0.5 * abs(interpolator.current_time - t0))
            t_start = t0 + shift if self._forward else t0 - shift
            g0 = self._g(t_start, interpolator.interpolate(t_start).y)
        self._sign = _SignRecord(t0, g0, g0 >= 0.0)

    def _direction_allows(self, time_increasing: bool) -> bool:
        if self.cfg.direction == 0:
            return True
        return time_increasing == (self.cfg.direction > 0)

    def evaluate_step(self, interpolator: _StepInterpolator) -> bool:
        """Look for an event in the visible part of *interpolator*.

        Returns
        -------
        bool
            True if an event was isolated; its time is then :attr:`event_time`.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.NoBracketingError`
            If a detected sign change cannot be isolated.
        """
        self._pending = False
        self._pending_time = math.nan
        if self._disabled:
            return False

        forward = interpolator.is_forward
        self._forward = forward
        if self._resample:
            # g vanished at a reset, take the sign the new trajectory leaves with
            self._resample = False
            self._sample_sign(interpolator, self._sign.t)
        t0 = self._sign.t
        t1 = interpolator.current_time
        dt = t1 - t0
        conv = self.convergence
        if abs(dt) < conv:
            return False

        n = max(1, int(math.ceil(abs(dt) / self.cfg.max_check_interval)))
        h = dt / n

        def g_of_t(t: float) -> float:
            return self._g(t, interpolator.interpolate(t).y)

        def before(ta: float, tb: float) -> bool:
            return ta < tb if forward else ta > tb

        ta = t0
        ga = self._sign.g
        i = 0
        while i < n:
            tb = t1 if i == n - 1 else t0 + (i + 1) * h
            gb = g_of_t(tb)

            if self._sign.positive == (gb >= 0.0):
                ta, ga = tb, gb
                i += 1
                continue

            if ga != 0.0 and gb != 0.0 and (ga > 0.0) == (gb > 0.0):
                # only the remembered sign differs, nothing to bracket
                self._sign.positive = gb >= 0.0
                ta, ga = tb, gb
                i += 1
                continue

            # variation direction, with respect to the integration direction
            increasing = gb >= ga
            if not self._direction_allows(increasing == forward):
                # filtered crossing, remember the new sign and keep scanning
                self._sign.positive = gb >= 0.0
                ta, ga = tb, gb
                i += 1
                continue

            root = self._solver.solve(g_of_t, ta, tb, ga, gb)
            prev = self._previous_event_time

            if (not math.isnan(prev)) and abs(root - ta) <= conv and abs(root - prev) <= conv:
                # the root found is the previous event, move past it
                while True:
                    ta = min(ta + conv, tb) if forward else max(ta - conv, tb)
                    ga = g_of_t(ta)
                    if not ((self._sign.positive != (ga >= 0.0)) and before(ta, tb)):
                        break
                if before(ta, tb):
                    # retry the same substep from the shifted start
                    continue
                self._increasing = increasing
                self._pending_time = root
                self._pending = True
                return True

            if math.isnan(prev) or abs(prev - root) > conv:
                self._increasing = increasing
                self._pending_time = root
                self._pending = True
                return True

            ta, ga = tb, gb
            i += 1

        return False

    def _pending_at(self, t: float) -> bool:
        return self._pending and abs(self._pending_time - t) <= self.convergence

    def step_accepted(self, t: float, y: np.ndarray) -> None:
        """Record the end of the visible step and notify the handler on events."""
        if self._disabled:
            self._next_action = Action.CONTINUE
            return

        g0 = self._g(t, y)
        if self._pending_at(t):
            self._previous_event_time = t
            # sign just after the event
            self._sign = _SignRecord(t, g0, self._increasing)
            time_increasing = self._increasing == self._forward
            action = self.handler.event_occurred(t, np.array(y, dtype=np.float64), time_increasing)
            if not isinstance(action, Action):
                raise TypeError(f"event_occurred must return an Action, got {action!r}")
            self._next_action = action
            self._count += 1
            logger.debug("Event at t=%.16e (increasing=%s): %s", t, time_increasing, action.name)
            if self.cfg.max_count is not None and self._count >= self.cfg.max_count:
                self._disabled = True
                logger.debug("Event handler %r disabled after %d occurrences", self.handler, self._count)
        else:
            self._sign = _SignRecord(t, g0, g0 >= 0.0)
            self._next_action = Action.CONTINUE

    def stop(self) -> bool:
        return self._next_action == Action.STOP

    def reset(self, t: float, y: np.ndarray) -> Tuple[bool, np.ndarray]:
        """Apply a pending reset action at time *t*.

        Returns
        -------
        tuple of (bool, numpy.ndarray)
            Whether the integrator must restart, and the state to restart from.
        """
        if not self._pending_at(t):
            return False, y

        if self._next_action == Action.RESET_STATE:
            y_new = np.array(self.handler.reset_state(t, np.array(y, dtype=np.float64)), dtype=np.float64)
            if y_new.shape != y.shape:
                raise DimensionMismatchError(
                    f"Reset state dimension {y_new.shape} != state dimension {y.shape}"
                )
        else:
            y_new = y
        self._pending = False
        self._pending_time = math.nan

        return self._next_action in (Action.RESET_STATE, Action.RESET_DERIVATIVES), y_new

    def resync(self, t: float, y: np.ndarray) -> None:
        """Resample g after the state was reset at time *t*."""
        if self._disabled:
            return
        g0 = self._g(t, y)
        self._sign = _SignRecord(t, g0, g0 >= 0.0)
        self._resample = g0 == 0.0
