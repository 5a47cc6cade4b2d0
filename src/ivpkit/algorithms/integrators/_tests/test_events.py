import numba
import numpy as np
import pytest

from ivpkit.algorithms.dynamics.rhs import create_rhs_system
from ivpkit.algorithms.integrators.configs import _EventConfig
from ivpkit.algorithms.integrators.events import EventHandler
from ivpkit.algorithms.integrators.rk import AdaptiveRK, RungeKutta
from ivpkit.algorithms.integrators.types import Action
from ivpkit.algorithms.utils.exceptions import (DimensionMismatchError,
                                                NoBracketingError)


def _constant_slope(slope, name):
    def rhs(t, y):
        return np.array([slope])

    return create_rhs_system(rhs, dim=1, name=name)


def _oscillator():
    # y = [sin t, cos t]
    def rhs(t, y):
        return np.array([y[1], -y[0]])

    return create_rhs_system(rhs, dim=2, name="harmonic oscillator")


class _SineZeros(EventHandler):
    """Record the zeros of the first component."""

    def __init__(self, action=Action.CONTINUE):
        self.action = action
        self.times = []
        self.increasing = []
        self.initialized = False

    def init(self, t0, y0, t_final):
        self.initialized = True

    def g(self, t, y):
        return y[0]

    def event_occurred(self, t, y, increasing):
        self.times.append(t)
        self.increasing.append(increasing)
        return self.action


class _Threshold(EventHandler):
    """Fire when the first component reaches *level*."""

    def __init__(self, level, action, log, reset_value=None):
        self.level = level
        self.action = action
        self.log = log
        self.reset_value = reset_value

    def g(self, t, y):
        return y[0] - self.level

    def event_occurred(self, t, y, increasing):
        self.log.append((self.level, t))
        return self.action

    def reset_state(self, t, y):
        return np.array(self.reset_value, dtype=float)


def test_dop853_event_positive_crossing():
    # dy/dt = 1, y(t) = y0 + t; event at y = 1 -> t_hit = 1 - y0
    sys = _constant_slope(1.0, "unit_slope")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    dop853 = AdaptiveRK(order=8, max_step=1e-3)
    sol = dop853.integrate(sys, 0.0, np.array([0.0]), 2.0, event_fn=g, event_cfg=ev_cfg)

    # Early termination exactly at the event
    assert abs(sol.t_final - 1.0) < 1e-10
    assert abs(sol.y_final[0] - 1.0) < 1e-10
    assert dop853.current_step_start == sol.t_final


def test_dop853_event_negative_crossing():
    sys = _constant_slope(-1.0, "neg_slope")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=-1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([1.5]), 2.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 0.5) < 1e-10
    assert abs(sol.y_final[0] - 1.0) < 1e-10


def test_dop853_event_strict_direction_no_hit():
    # dy/dt = 1, starting below plane; request decreasing direction -> no hit
    sys = _constant_slope(1.0, "unit_slope_nohit")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=-1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([0.0]), 1.5, event_fn=g, event_cfg=ev_cfg)

    # Should run to t_final with no event
    assert abs(sol.t_final - 1.5) < 1e-15
    assert abs(sol.y_final[0] - 1.5) < 1e-8


def test_dop853_start_on_plane_moving_away_no_hit():
    # Start exactly on plane and move away in + direction -> no strict crossing
    sys = _constant_slope(1.0, "start_on_plane")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([1.0]), 0.5, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 0.5) < 1e-15
    assert abs(sol.y_final[0] - 1.5) < 1e-8


def test_dop853_event_any_direction_crossing():
    sys = _constant_slope(1.0, "any_dir")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=0, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([0.25]), 5.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 0.75) < 1e-10
    assert abs(sol.y_final[0] - 1.0) < 1e-10


def test_dop853_event_filtered_by_direction_no_hit():
    # Decreasing crossing should be ignored when direction=+1
    sys = _constant_slope(-1.0, "filtered_dir")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([2.0]), 3.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 3.0) < 1e-12


def test_dop853_event_always_positive_no_hit():
    sys = _constant_slope(0.0, "always_pos")

    def g(t, y):
        return float(y[0] - 1.0)  # always positive for y0=2 and dy/dt=0

    ev_cfg = _EventConfig(direction=0, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([2.0]), 1.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 1.0) < 1e-12
    assert abs(sol.y_final[0] - 2.0) < 1e-12


def test_dop853_event_numba_compiled_function():
    sys = _constant_slope(1.0, "numba_evt")

    @numba.njit(cache=False)
    def g(t, y):
        return y[0] - 1.5

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([0.0]), 3.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - 1.5) < 1e-9
    assert abs(sol.y_final[0] - 1.5) < 1e-9


def test_dop853_event_stiff_relaxation_positive_crossing():
    # Stiff(ish) relaxation to y=1 from y0=0: y(t) = 1 - exp(-lambda t)
    lam = 100.0

    def rhs(t, y):
        return np.array([lam * (1.0 - y[0])])

    sys = create_rhs_system(rhs, dim=1, name="stiff_relax")

    y_target = 0.999

    def g(t, y):
        return float(y[0] - y_target)

    t_expected = -np.log(1.0 - y_target) / lam

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([0.0]), 1.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - t_expected) < 1e-6
    assert abs(sol.y_final[0] - y_target) < 1e-8


def test_dop853_event_crossing_very_early_from_near_plane():
    # Start extremely close to the plane from below; hit almost immediately
    sys = _constant_slope(1.0, "near_plane")
    eps = 1e-9

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=+1, terminal=True)
    sol = AdaptiveRK(order=8).integrate(sys, 0.0, np.array([1.0 - eps]), 1.0, event_fn=g, event_cfg=ev_cfg)

    assert abs(sol.t_final - eps) < 1e-9
    assert abs(sol.y_final[0] - 1.0) < 1e-10


def test_endpoint_zero_is_detected_rk45_and_fixed_rk():
    # dy/dt = 1, y0 = 0, event at y=1, at t=1 exactly.
    sys = _constant_slope(1.0, "endpoint_zero")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=+1, terminal=True)

    sol45 = AdaptiveRK(order=5).integrate(sys, 0.0, np.array([0.0]), 1.0, event_fn=g, event_cfg=ev_cfg)
    assert abs(sol45.t_final - 1.0) < 1e-12
    assert abs(sol45.y_final[0] - 1.0) < 1e-12

    sol4 = RungeKutta(order=4).integrate(sys, 0.0, np.array([0.0]), 1.0, event_fn=g, event_cfg=ev_cfg)
    assert abs(sol4.t_final - 1.0) < 1e-12
    assert abs(sol4.y_final[0] - 1.0) < 1e-12


def test_non_terminal_event_function_runs_to_the_end():
    sys = _constant_slope(1.0, "record_only")

    def g(t, y):
        return float(y[0] - 1.0)

    ev_cfg = _EventConfig(direction=0, terminal=False)
    sol = AdaptiveRK(order=5).integrate(sys, 0.0, np.array([0.0]), 2.0, event_fn=g, event_cfg=ev_cfg)

    assert sol.t_final == 2.0
    # the step is split at the event
    assert np.min(np.abs(sol.times - 1.0)) < 1e-10


@pytest.mark.parametrize("direction,expected", [
    (+1, [2.0 * np.pi, 4.0 * np.pi]),
    (-1, [np.pi, 3.0 * np.pi, 5.0 * np.pi]),
    (0, [np.pi, 2.0 * np.pi, 3.0 * np.pi, 4.0 * np.pi, 5.0 * np.pi]),
])
def test_sine_zeros_by_direction(direction, expected):
    handler = _SineZeros()
    integrator = AdaptiveRK(order=8, rtol=1e-10, atol=1e-10)
    integrator.add_event_handler(handler, max_check_interval=0.5, direction=direction)
    sol = integrator.integrate(_oscillator(), 0.5 * np.pi, np.array([1.0, 0.0]), 5.5 * np.pi)

    assert handler.initialized
    assert len(handler.times) == len(expected)
    assert np.allclose(handler.times, expected, atol=1e-7)
    if direction != 0:
        assert all(inc == (direction > 0) for inc in handler.increasing)
    assert abs(sol.t_final - 5.5 * np.pi) < 1e-15


def test_max_count_disables_handler():
    handler = _SineZeros()
    integrator = AdaptiveRK(order=8, rtol=1e-10, atol=1e-10)
    integrator.add_event_handler(handler, max_count=2)
    sol = integrator.integrate(_oscillator(), 0.5 * np.pi, np.array([1.0, 0.0]), 5.5 * np.pi)

    assert np.allclose(handler.times, [np.pi, 2.0 * np.pi], atol=1e-7)
    assert abs(sol.t_final - 5.5 * np.pi) < 1e-15


def test_stop_action_from_handler():
    handler = _SineZeros(action=Action.STOP)
    integrator = AdaptiveRK(order=5, rtol=1e-10, atol=1e-10)
    integrator.add_event_handler(handler)
    sol = integrator.integrate(_oscillator(), 0.5 * np.pi, np.array([1.0, 0.0]), 5.5 * np.pi)

    assert len(handler.times) == 1
    assert abs(sol.t_final - np.pi) < 1e-7
    assert abs(sol.y_final[0]) < 1e-7


def test_events_in_one_step_are_handled_in_time_order():
    log = []
    integrator = AdaptiveRK(order=5)
    # registered in reverse order on purpose
    integrator.add_event_handler(_Threshold(0.7, Action.CONTINUE, log))
    integrator.add_event_handler(_Threshold(0.3, Action.CONTINUE, log))
    integrator.integrate(_constant_slope(1.0, "ramp"), 0.0, np.array([0.0]), 1.0)

    assert [level for level, _ in log] == [0.3, 0.7]
    assert np.allclose([t for _, t in log], [0.3, 0.7], atol=1e-10)


@pytest.mark.parametrize("make", [
    lambda: AdaptiveRK(order=5),
    lambda: AdaptiveRK(order=8),
    lambda: RungeKutta(order=4, step=0.3),
])
def test_coincident_events_are_each_handled_once(make):
    first, second = [], []
    integrator = make()
    integrator.add_event_handler(_Threshold(0.5, Action.CONTINUE, first))
    integrator.add_event_handler(_Threshold(0.5, Action.CONTINUE, second))
    integrator.add_event_handler(_Threshold(0.8, Action.CONTINUE, second))
    sol = integrator.integrate(_constant_slope(1.0, "ramp"), 0.0, np.array([0.0]), 1.0)

    assert [level for level, _ in first] == [0.5]
    assert [level for level, _ in second] == [0.5, 0.8]
    assert np.allclose([t for _, t in first + second], [0.5, 0.5, 0.8], atol=1e-10)
    assert sol.t_final == 1.0
    assert abs(sol.y_final[0] - 1.0) < 1e-12


def test_stop_prevents_later_events():
    log = []
    integrator = AdaptiveRK(order=5)
    integrator.add_event_handler(_Threshold(0.7, Action.CONTINUE, log))
    integrator.add_event_handler(_Threshold(0.3, Action.STOP, log))
    sol = integrator.integrate(_constant_slope(1.0, "ramp"), 0.0, np.array([0.0]), 1.0)

    assert [level for level, _ in log] == [0.3]
    assert abs(sol.t_final - 0.3) < 1e-10


def test_reset_state_sawtooth():
    log = []
    integrator = AdaptiveRK(order=5)
    integrator.add_event_handler(_Threshold(1.0, Action.RESET_STATE, log, reset_value=[0.0]), direction=+1)
    sol = integrator.integrate(_constant_slope(1.0, "sawtooth"), 0.0, np.array([0.0]), 3.5)

    assert np.allclose([t for _, t in log], [1.0, 2.0, 3.0], atol=1e-9)
    assert sol.t_final == 3.5
    assert abs(sol.y_final[0] - 0.5) < 1e-9

    # the reset time appears twice, before and after the jump
    idx = np.where(np.abs(sol.times - 1.0) < 1e-9)[0]
    assert idx.size == 2
    assert abs(sol.states[idx[0], 0] - 1.0) < 1e-9
    assert sol.states[idx[1], 0] == 0.0


@pytest.mark.parametrize("make", [
    lambda: AdaptiveRK(order=8, rtol=1e-10, atol=1e-10),
    lambda: AdaptiveRK(order=5, rtol=1e-10, atol=1e-10),
])
def test_reset_onto_the_switching_surface(make):
    # bouncing ball: the reset puts g exactly on zero, the ball then leaves upwards
    gravity, restitution = 9.81, 0.5

    class _Bounce(EventHandler):

        def __init__(self):
            self.times = []

        def g(self, t, y):
            return y[0]

        def event_occurred(self, t, y, increasing):
            self.times.append(t)
            return Action.RESET_STATE

        def reset_state(self, t, y):
            return np.array([0.0, -restitution * y[1]])

    def rhs(t, y):
        return np.array([y[1], -gravity])

    bounce = _Bounce()
    integrator = make()
    integrator.add_event_handler(bounce, max_check_interval=0.05)
    sol = integrator.integrate(create_rhs_system(rhs, dim=2, name="ball"), 0.0, np.array([1.0, 0.0]), 1.2)

    t1 = np.sqrt(2.0 / gravity)
    assert np.allclose(bounce.times, [t1, 2.0 * t1, 2.5 * t1], atol=1e-7)
    assert sol.t_final == 1.2
    assert sol.y_final[0] > 0.0


def test_reset_derivatives_after_parameter_switch():
    slope = {"k": 1.0}

    def rhs(t, y):
        return np.array([slope["k"]])

    class _Switch(EventHandler):

        def __init__(self):
            self.count = 0

        def g(self, t, y):
            return y[0] - 1.0

        def event_occurred(self, t, y, increasing):
            self.count += 1
            slope["k"] = -1.0
            return Action.RESET_DERIVATIVES

    switch = _Switch()
    integrator = AdaptiveRK(order=5)
    integrator.add_event_handler(switch, direction=+1)
    sol = integrator.integrate(create_rhs_system(rhs, dim=1, name="switch"), 0.0, np.array([0.0]), 2.0)

    assert switch.count == 1
    assert sol.t_final == 2.0
    assert abs(sol.y_final[0]) < 1e-9


def test_backward_integration_direction_is_with_respect_to_time():
    sys = _constant_slope(1.0, "ramp")

    def g(t, y):
        return float(y[0] - 0.5)

    # y = t decreases along the integration but g increases with time
    hit = AdaptiveRK(order=5).integrate(sys, 2.0, np.array([2.0]), 0.0, event_fn=g,
                                         event_cfg=_EventConfig(direction=+1))
    assert abs(hit.t_final - 0.5) < 1e-10

    miss = AdaptiveRK(order=5).integrate(sys, 2.0, np.array([2.0]), 0.0, event_fn=g,
                                          event_cfg=_EventConfig(direction=-1))
    assert miss.t_final == 0.0


def test_root_isolation_failure_is_reported():
    def g(t, y):
        return y[0]

    cfg = _EventConfig(direction=0, terminal=True, max_iter=1)
    with pytest.raises(NoBracketingError):
        AdaptiveRK(order=8, rtol=1e-10, atol=1e-10).integrate(
            _oscillator(), 0.5 * np.pi, np.array([1.0, 0.0]), 2.0 * np.pi, event_fn=g, event_cfg=cfg
        )


def test_reset_with_wrong_dimension_rejected():
    log = []
    integrator = AdaptiveRK(order=5)
    integrator.add_event_handler(_Threshold(1.0, Action.RESET_STATE, log, reset_value=[0.0, 0.0]))
    with pytest.raises(DimensionMismatchError):
        integrator.integrate(_constant_slope(1.0, "ramp"), 0.0, np.array([0.0]), 2.0)


def test_handler_must_return_an_action():

    class _Bad(EventHandler):

        def g(self, t, y):
            return y[0] - 1.0

        def event_occurred(self, t, y, increasing):
            return "stop"

    integrator = AdaptiveRK(order=5)
    integrator.add_event_handler(_Bad())
    with pytest.raises(TypeError):
        integrator.integrate(_constant_slope(1.0, "ramp"), 0.0, np.array([0.0]), 2.0)


def test_invalid_event_config():
    with pytest.raises(ValueError):
        _EventConfig(direction=2)
    with pytest.raises(ValueError):
        _EventConfig(tol=0.0)
    with pytest.raises(ValueError):
        _EventConfig(max_count=0)
