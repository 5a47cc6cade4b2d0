import numpy as np
import pytest

from ivpkit.algorithms.dynamics.rhs import create_rhs_system
from ivpkit.algorithms.integrators.adams import Adams
from ivpkit.algorithms.integrators.configs import _EventConfig
from ivpkit.algorithms.integrators.events import EventHandler
from ivpkit.algorithms.integrators.handlers import (ContinuousOutputModel,
                                                    StepHandler)
from ivpkit.algorithms.integrators.rk import AdaptiveRK, RungeKutta
from ivpkit.algorithms.integrators.types import Action
from ivpkit.algorithms.utils.exceptions import (ConvergenceError,
                                                DegenerateIntervalError,
                                                DimensionMismatchError,
                                                EvaluationBudgetExceededError,
                                                IvpkitError,
                                                StepSizeUnderflowError)


class _CallbackError(RuntimeError):
    pass


def _counted_decay():
    calls = []

    def rhs(t, y):
        calls.append(t)
        return -y

    return create_rhs_system(rhs, dim=1, name="counted decay"), calls


class _ErrorRecorder(StepHandler):
    """Read the controller error of every accepted step."""

    def __init__(self, integrator):
        self.integrator = integrator
        self.errors = []

    def handle_step(self, interpolator, is_last):
        self.errors.append(self.integrator.last_error)


def test_exception_hierarchy():
    assert issubclass(StepSizeUnderflowError, ConvergenceError)
    assert issubclass(ConvergenceError, IvpkitError)
    assert issubclass(DimensionMismatchError, ValueError)
    assert issubclass(DegenerateIntervalError, ValueError)
    assert issubclass(EvaluationBudgetExceededError, IvpkitError)


def test_handler_registration():
    integrator = AdaptiveRK(order=5)
    model = ContinuousOutputModel()

    class _Never(EventHandler):

        def g(self, t, y):
            return 1.0

        def event_occurred(self, t, y, increasing):
            return Action.CONTINUE

    never = _Never()
    integrator.add_step_handler(model)
    integrator.add_event_handler(never)
    assert integrator.step_handlers == (model,)
    assert integrator.event_handlers == (never,)

    integrator.clear_step_handlers()
    integrator.clear_event_handlers()
    assert integrator.step_handlers == ()
    assert integrator.event_handlers == ()


def test_string_representation():
    assert str(AdaptiveRK(order=5)) == "IVPKIT-_RK45"
    assert str(RungeKutta(order=4)) == "IVPKIT-_RK4"
    assert "_DOP853" in repr(AdaptiveRK(order=8))


@pytest.mark.parametrize("make", [
    lambda: RungeKutta(order=4, step=0.05),
    lambda: AdaptiveRK(order=3, rtol=1e-6, atol=1e-6),
    lambda: AdaptiveRK(order=5, rtol=1e-8, atol=1e-8),
    lambda: AdaptiveRK(order=8, rtol=1e-8, atol=1e-8),
    lambda: Adams(kind="bashforth", n_steps=4, rtol=1e-8, atol=1e-8),
    lambda: Adams(kind="moulton", n_steps=4, rtol=1e-8, atol=1e-8),
])
def test_evaluations_match_rhs_calls(make):
    system, calls = _counted_decay()
    integrator = make()
    # dense output queries trigger the lazy extra stages of DOP853
    integrator.add_step_handler(ContinuousOutputModel())
    integrator.integrate(system, 0.0, np.array([1.0]), 2.0, event_fn=lambda t, y: y[0] - 0.5,
                         event_cfg=_EventConfig(terminal=False))
    assert integrator.evaluations == len(calls)
    assert integrator.evaluations > 0


def test_evaluation_budget():
    system, calls = _counted_decay()
    integrator = AdaptiveRK(order=5, max_evaluations=20)
    assert integrator.max_evaluations == 20
    with pytest.raises(EvaluationBudgetExceededError):
        integrator.integrate(system, 0.0, np.array([1.0]), 100.0)
    assert len(calls) == 20
    assert integrator.evaluations == 20


def test_evaluation_budget_is_per_integration():
    system, calls = _counted_decay()
    integrator = AdaptiveRK(order=5, rtol=1e-6, atol=1e-6)
    integrator.integrate(system, 0.0, np.array([1.0]), 1.0)
    first = integrator.evaluations
    integrator.integrate(system, 0.0, np.array([1.0]), 1.0)
    assert integrator.evaluations == first
    assert len(calls) == 2 * first


def test_negative_budget_rejected():
    integrator = AdaptiveRK(order=5)
    with pytest.raises(ValueError):
        integrator.max_evaluations = -1


@pytest.mark.parametrize("order", [3, 5, 8])
def test_accepted_errors_within_tolerance(order):
    def rhs(t, y):
        return np.array([y[1], (1.0 - y[0] ** 2) * y[1] - y[0]])

    integrator = AdaptiveRK(order=order, rtol=1e-7, atol=1e-7)
    recorder = _ErrorRecorder(integrator)
    integrator.add_step_handler(recorder)
    integrator.integrate(create_rhs_system(rhs, dim=2), 0.0, np.array([2.0, 0.0]), 5.0)

    errors = np.array(recorder.errors)
    assert errors.size > 1
    assert np.all(np.isfinite(errors))
    assert np.all(errors <= 1.0)


def test_backward_steps_have_negative_sign():
    system, _ = _counted_decay()
    sizes = []

    class _Sizes(StepHandler):

        def handle_step(self, interpolator, is_last):
            sizes.append(integrator.current_signed_stepsize)

    integrator = AdaptiveRK(order=5, rtol=1e-8, atol=1e-8, max_step=0.1)
    integrator.add_step_handler(_Sizes())
    integrator.integrate(system, 1.0, np.array([np.exp(-1.0)]), 0.0)

    assert len(sizes) >= 10
    assert all(-0.1 - 1e-15 <= h < 0.0 for h in sizes)


def test_step_size_underflow():
    # y' = y^2 blows up at t = 1
    system = create_rhs_system(lambda t, y: y * y, dim=1, name="blow-up")
    integrator = AdaptiveRK(order=5, rtol=1e-8, atol=1e-8, min_step=1e-4)
    with pytest.raises(StepSizeUnderflowError):
        integrator.integrate(system, 0.0, np.array([1.0]), 2.0)


def test_invalid_inputs():
    system, _ = _counted_decay()
    integrator = AdaptiveRK(order=5)

    with pytest.raises(DimensionMismatchError):
        integrator.integrate(system, 0.0, np.array([1.0, 2.0]), 1.0)
    with pytest.raises(DegenerateIntervalError):
        integrator.integrate(system, 1.0, np.array([1.0]), 1.0)
    with pytest.raises(DegenerateIntervalError):
        integrator.integrate(system, 0.0, np.array([1.0]), np.inf)
    with pytest.raises(DegenerateIntervalError):
        AdaptiveRK(order=5, min_step=1.0, max_step=0.1).integrate(system, 0.0, np.array([1.0]), 1.0)
    with pytest.raises(DegenerateIntervalError):
        AdaptiveRK(order=5, initial_step=-1.0).integrate(system, 0.0, np.array([1.0]), 1.0)
    with pytest.raises(DimensionMismatchError):
        AdaptiveRK(order=5, rtol=[1e-6, 1e-6]).integrate(system, 0.0, np.array([1.0]), 1.0)
    with pytest.raises(ValueError):
        integrator.integrate(object(), 0.0, np.array([1.0]), 1.0)


def test_wrong_derivative_shape():
    system = create_rhs_system(lambda t, y: np.zeros(3), dim=2, name="bad shape")
    with pytest.raises(DimensionMismatchError):
        AdaptiveRK(order=5).integrate(system, 0.0, np.zeros(2), 1.0)


def test_rhs_exception_propagates():
    def rhs(t, y):
        if t > 0.5:
            raise _CallbackError("rhs failed")
        return -y

    with pytest.raises(_CallbackError):
        AdaptiveRK(order=5).integrate(create_rhs_system(rhs, dim=1), 0.0, np.array([1.0]), 1.0)


def test_step_handler_exception_propagates():

    class _Failing(StepHandler):

        def handle_step(self, interpolator, is_last):
            raise _CallbackError("handler failed")

    integrator = RungeKutta(order=4, step=0.1)
    integrator.add_step_handler(_Failing())
    system, _ = _counted_decay()
    with pytest.raises(_CallbackError):
        integrator.integrate(system, 0.0, np.array([1.0]), 1.0)


def test_event_function_exception_propagates():
    def g(t, y):
        raise _CallbackError("g failed")

    system, _ = _counted_decay()
    with pytest.raises(_CallbackError):
        AdaptiveRK(order=8).integrate(system, 0.0, np.array([1.0]), 1.0, event_fn=g)


def test_solution_nodes_and_hermite_interpolation():
    system, _ = _counted_decay()
    sol = AdaptiveRK(order=8, rtol=1e-10, atol=1e-12, max_step=0.2).integrate(system, 0.0, np.array([1.0]), 2.0)

    assert sol.times[0] == 0.0
    assert sol.t_final == 2.0
    assert sol.derivatives is not None
    assert np.allclose(sol.derivatives[:, 0], -sol.states[:, 0])

    t = np.linspace(0.0, 2.0, 11)
    assert np.allclose(sol.interpolate(t)[:, 0], np.exp(-t), atol=1e-5)
    with pytest.raises(ValueError):
        sol.interpolate(2.5)


def test_reset_hook_called_once_per_reset():
    from ivpkit.algorithms.integrators.rk import _RK45

    class _Recording(_RK45):

        def __init__(self, **opts):
            super().__init__(**opts)
            self.resets = []

        def _on_reset(self, t):
            self.resets.append(t)

    class _Sawtooth(EventHandler):

        def g(self, t, y):
            return y[0] - 1.0

        def event_occurred(self, t, y, increasing):
            return Action.RESET_STATE

        def reset_state(self, t, y):
            return np.zeros_like(y)

    system = create_rhs_system(lambda t, y: np.ones_like(y), dim=1, name="sawtooth")
    integrator = _Recording()
    integrator.add_event_handler(_Sawtooth(), direction=+1)
    sol = integrator.integrate(system, 0.0, np.array([0.0]), 3.5)

    assert np.allclose(integrator.resets, [1.0, 2.0, 3.0], atol=1e-9)
    assert abs(sol.y_final[0] - 0.5) < 1e-9
    # the restart bookkeeping belongs to the multistep methods only
    assert not hasattr(integrator, "_reset_occurred")
    assert not hasattr(RungeKutta(order=4, step=0.1), "_reset_occurred")
