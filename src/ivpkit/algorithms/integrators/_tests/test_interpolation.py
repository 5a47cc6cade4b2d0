import numpy as np
import pytest

from ivpkit.algorithms.dynamics.rhs import create_rhs_system
from ivpkit.algorithms.integrators.adams import Adams
from ivpkit.algorithms.integrators.gbs import _GraggBulirschStoer
from ivpkit.algorithms.integrators.handlers import StepHandler
from ivpkit.algorithms.integrators.interpolation import (
    _NordsieckInterpolator, _RungeKuttaInterpolator)
from ivpkit.algorithms.integrators.rk import AdaptiveRK, RungeKutta
from ivpkit.algorithms.integrators.types import State


class _StepCheck(StepHandler):
    """Run a check on every step while the interpolator is valid."""

    def __init__(self, check):
        self.check = check
        self.n_calls = 0

    def handle_step(self, interpolator, is_last):
        self.check(interpolator)
        self.n_calls += 1


def _decay_system():
    return create_rhs_system(lambda t, y: -y, dim=1, name="decay")


INTEGRATORS = [
    lambda: RungeKutta(order=4, step=0.1),
    lambda: RungeKutta(order=4, method="three_eighths", step=0.1),
    lambda: RungeKutta(order=6, step=0.1),
    lambda: AdaptiveRK(order=3, rtol=1e-6, atol=1e-9),
    lambda: AdaptiveRK(order=5, rtol=1e-9, atol=1e-12),
    lambda: AdaptiveRK(order=5, method="higham_hall", rtol=1e-9, atol=1e-12),
    lambda: AdaptiveRK(order=8, rtol=1e-10, atol=1e-12),
    lambda: _GraggBulirschStoer(rtol=1e-9, atol=1e-12),
    lambda: Adams(kind="moulton", n_steps=4, rtol=1e-9, atol=1e-12),
]


@pytest.mark.parametrize("make", INTEGRATORS)
def test_endpoints_are_exact(make):
    def check(interp):
        start = interp.interpolate(interp.previous_time)
        end = interp.interpolate(interp.current_time)
        assert np.array_equal(start.y, interp.previous_state.y)
        assert np.array_equal(end.y, interp.current_state.y)
        assert np.array_equal(end.y_dot, interp.current_state.y_dot)

    integrator = make()
    checker = _StepCheck(check)
    integrator.add_step_handler(checker)
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 2.0)
    assert checker.n_calls > 0


@pytest.mark.parametrize("make", INTEGRATORS)
def test_repeated_queries_are_identical(make):
    def check(interp):
        t_mid = 0.5 * (interp.previous_time + interp.current_time)
        first = interp.interpolate(t_mid)
        first.y[0] = 123.0
        second = interp.interpolate(t_mid)
        third = interp.interpolate(t_mid)
        assert second.y[0] != 123.0
        assert np.array_equal(second.y, third.y)
        assert np.array_equal(second.y_dot, third.y_dot)

    integrator = make()
    integrator.add_step_handler(_StepCheck(check))
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 1.0)


@pytest.mark.parametrize("order,tol,bound", [(5, 1e-10, 1e-7), (8, 1e-11, 1e-8)])
def test_dense_output_accuracy(order, tol, bound):
    errors = []

    def check(interp):
        for theta in (0.25, 0.5, 0.75):
            t = interp.previous_time + theta * (interp.current_time - interp.previous_time)
            state = interp.interpolate(t)
            errors.append(abs(state.y[0] - np.exp(-t)))
            errors.append(abs(state.y_dot[0] + np.exp(-t)) * 1e-3)

    integrator = AdaptiveRK(order=order, rtol=tol, atol=tol)
    integrator.add_step_handler(_StepCheck(check))
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 3.0)
    assert max(errors) < bound


@pytest.mark.parametrize("make,bound", [
    (lambda: RungeKutta(order=6, step=0.1), 1e-7),
    (lambda: AdaptiveRK(order=5, method="higham_hall", rtol=1e-10, atol=1e-10), 1e-7),
])
def test_dense_output_accuracy_of_alternative_methods(make, bound):
    errors = []

    def check(interp):
        for theta in (0.25, 0.5, 0.75):
            t = interp.previous_time + theta * (interp.current_time - interp.previous_time)
            errors.append(abs(interp.interpolate(t).y[0] - np.exp(-t)))

    integrator = make()
    integrator.add_step_handler(_StepCheck(check))
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 3.0)
    assert max(errors) < bound


def test_query_outside_step_rejected():
    def check(interp):
        h = interp.current_time - interp.previous_time
        with pytest.raises(ValueError):
            interp.interpolate(interp.current_time + 10.0 * h)
        with pytest.raises(ValueError):
            interp.interpolate(interp.previous_time - 10.0 * h)

    integrator = AdaptiveRK(order=5, rtol=1e-6, atol=1e-6)
    integrator.add_step_handler(_StepCheck(check))
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 1.0)


def test_runge_kutta_interpolator_soft_range():
    # explicit Euler step of y' = 1 from (0, 1) to (1, 2): the interpolant is linear
    previous = State(0.0, np.array([1.0]), np.array([1.0]))
    current = State(1.0, np.array([2.0]), np.array([1.0]))
    K = np.array([[1.0], [1.0]])
    P = np.array([[1.0], [0.0]])
    interp = _RungeKuttaInterpolator(previous, current, True, K, P)

    state = interp.interpolate(0.25)
    assert state.y[0] == pytest.approx(1.25)
    assert state.y_dot[0] == pytest.approx(1.0)

    interp.set_soft_current_time(0.5)
    assert interp.current_time == 0.5
    assert interp.current_state.y[0] == pytest.approx(1.5)
    assert interp.global_current_time == 1.0
    # the hard range is still available
    assert interp.interpolate(1.0).y[0] == 2.0

    interp.set_soft_previous_time(0.25)
    assert interp.previous_time == 0.25
    assert interp.global_previous_time == 0.0
    assert interp.step_size == 1.0


def test_nordsieck_interpolator_is_exact_for_quadratic():
    # y = t^2 expanded at t = 1 with h = 0.5
    previous = State(0.5, np.array([0.25]), np.array([1.0]))
    current = State(1.0, np.array([1.0]), np.array([2.0]))
    scaled = np.array([1.0])
    nordsieck = np.array([[0.25]])
    interp = _NordsieckInterpolator(previous, current, True, scaled, nordsieck, 0.5)

    state = interp.interpolate(0.75)
    assert state.y[0] == pytest.approx(0.5625)
    assert state.y_dot[0] == pytest.approx(1.5)
    assert interp.interpolate(0.5).y[0] == 0.25


def test_copy_survives_the_step():
    copies = []

    def check(interp):
        copies.append((interp.copy(), interp.previous_time, interp.current_time))

    integrator = AdaptiveRK(order=8, rtol=1e-10, atol=1e-12)
    integrator.add_step_handler(_StepCheck(check))
    integrator.integrate(_decay_system(), 0.0, np.array([1.0]), 2.0)

    for snapshot, t0, t1 in copies:
        t = 0.5 * (t0 + t1)
        assert abs(snapshot.interpolate(t).y[0] - np.exp(-t)) < 1e-8
