import numpy as np
import pytest

from ivpkit.algorithms.dynamics.expandable import (_ExpandableSystem,
                                                   _FunctionSecondaryEquations,
                                                   _SecondaryEquations)
from ivpkit.algorithms.dynamics.rhs import RHSSystem, create_rhs_system
from ivpkit.algorithms.integrators.rk import AdaptiveRK
from ivpkit.algorithms.utils.exceptions import DimensionMismatchError


class _Integral(_SecondaryEquations):
    # z' = y, accumulates the integral of the primary state

    @property
    def dim(self):
        return 1

    def compute_derivatives(self, t, primary, primary_dot, secondary):
        return primary.copy()


def _decay():
    return create_rhs_system(lambda t, y: -y, dim=1, name="decay")


def test_rhs_system_wraps_callable():
    sys = create_rhs_system(lambda t, y: 2.0 * y, dim=2, name="double")
    assert isinstance(sys, RHSSystem)
    assert sys.dim == 2
    assert np.allclose(sys.rhs(0.0, np.array([1.0, -1.0])), [2.0, -2.0])
    assert "double" in repr(sys)


def test_rhs_system_jit_compiles():
    def rhs(t, y):
        return -y

    sys = create_rhs_system(rhs, dim=1, jit=True)
    assert np.allclose(sys.rhs(0.0, np.array([3.0])), [-3.0])


def test_non_positive_dimension_rejected():
    with pytest.raises(ValueError):
        create_rhs_system(lambda t, y: y, dim=0)


def test_validate_state():
    sys = _decay()
    sys.validate_state(np.array([1.0]))
    with pytest.raises(DimensionMismatchError):
        sys.validate_state(np.array([1.0, 2.0]))


def test_expandable_dimensions_and_indices():
    system = _ExpandableSystem(create_rhs_system(lambda t, y: -y, dim=2))
    assert system.dim == 2
    assert system.primary_dim == 2
    assert system.add_secondary(_Integral()) == 0
    assert system.add_secondary(_FunctionSecondaryEquations(lambda t, y, yd, z: -z, dim=3)) == 1
    assert system.dim == 6
    assert system.primary_dim == 2
    assert len(system.secondaries) == 2


def test_expandable_split_and_join():
    system = _ExpandableSystem(create_rhs_system(lambda t, y: -y, dim=2))
    system.add_secondary(_Integral())
    system.add_secondary(_FunctionSecondaryEquations(lambda t, y, yd, z: -z, dim=2))

    y = np.arange(5, dtype=float)
    primary, blocks = system.split(y)
    assert np.array_equal(primary, [0.0, 1.0])
    assert np.array_equal(blocks[0], [2.0])
    assert np.array_equal(blocks[1], [3.0, 4.0])
    assert np.array_equal(system.join(primary, blocks), y)

    with pytest.raises(DimensionMismatchError):
        system.split(np.zeros(4))
    with pytest.raises(DimensionMismatchError):
        system.join(primary, blocks[:1])


def test_expandable_rhs_passes_primary_derivative():
    seen = []

    def secondary(t, y, yd, z):
        seen.append(yd.copy())
        return yd * 2.0

    system = _ExpandableSystem(_decay())
    system.add_secondary(_FunctionSecondaryEquations(secondary, dim=1))
    y_dot = system.rhs(0.0, np.array([3.0, 0.0]))

    assert np.allclose(y_dot, [-3.0, -6.0])
    assert np.allclose(seen[0], [-3.0])


def test_expandable_integration_of_secondary_block():
    # y' = -y, z' = y with y(0) = 1, z(0) = 0 -> z(t) = 1 - exp(-t)
    system = _ExpandableSystem(_decay())
    system.add_secondary(_Integral())

    integrator = AdaptiveRK(order=8, rtol=1e-10, atol=1e-12)
    sol = integrator.integrate(system, 0.0, np.array([1.0, 0.0]), 2.0)

    assert sol.states.shape[1] == 2
    assert abs(sol.t_final - 2.0) < 1e-15
    assert abs(sol.y_final[0] - np.exp(-2.0)) < 1e-9
    assert abs(sol.y_final[1] - (1.0 - np.exp(-2.0))) < 1e-8


def test_expandable_tolerances_cover_primary_only():
    system = _ExpandableSystem(create_rhs_system(lambda t, y: -y, dim=2))
    system.add_secondary(_Integral())
    system.add_secondary(_Integral())

    integrator = AdaptiveRK(order=5, rtol=[1e-9, 1e-9], atol=[1e-12, 1e-12])
    sol = integrator.integrate(system, 0.0, np.array([1.0, 2.0, 0.0, 0.0]), 1.0)
    assert np.allclose(sol.y_final[:2], np.array([1.0, 2.0]) * np.exp(-1.0), atol=1e-8)

    bad = AdaptiveRK(order=5, rtol=[1e-9] * 4, atol=1e-12)
    with pytest.raises(DimensionMismatchError):
        bad.integrate(system, 0.0, np.array([1.0, 2.0, 0.0, 0.0]), 1.0)
