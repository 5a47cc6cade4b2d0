import numpy as np
import pytest

from ivpkit.algorithms.integrators.tableau import (
    BOGACKI_SHAMPINE_32, CLASSICAL_RK4, DORMAND_PRINCE_54, DORMAND_PRINCE_853,
    EULER, GILL, HIGHAM_HALL_54, LUTHER, MIDPOINT, THREE_EIGHTHS, _ButcherTableau)

ALL_TABLEAUX = [EULER, MIDPOINT, CLASSICAL_RK4, GILL, THREE_EIGHTHS, LUTHER, BOGACKI_SHAMPINE_32,
                DORMAND_PRINCE_54, HIGHAM_HALL_54, DORMAND_PRINCE_853]
POLYNOMIAL_DENSE = [EULER, MIDPOINT, CLASSICAL_RK4, GILL, THREE_EIGHTHS, LUTHER,
                    BOGACKI_SHAMPINE_32, DORMAND_PRINCE_54, HIGHAM_HALL_54]


@pytest.mark.parametrize("tab", ALL_TABLEAUX, ids=lambda t: t.name)
def test_row_sums_match_abscissae(tab):
    assert np.allclose(tab.A.sum(axis=1), tab.c, atol=1e-12)


@pytest.mark.parametrize("tab", ALL_TABLEAUX, ids=lambda t: t.name)
def test_weights_are_consistent(tab):
    assert abs(tab.b.sum() - 1.0) < 1e-12
    assert np.allclose(np.triu(tab.A), 0.0)


@pytest.mark.parametrize("tab", [t for t in ALL_TABLEAUX if t.order >= 3], ids=lambda t: t.name)
def test_quadrature_order_conditions(tab):
    for q in range(1, tab.order + 1):
        assert tab.b @ tab.c ** (q - 1) == pytest.approx(1.0 / q, abs=1e-11)
    assert tab.b @ (tab.A @ tab.c) == pytest.approx(1.0 / 6.0, abs=1e-11)


@pytest.mark.parametrize("tab", POLYNOMIAL_DENSE, ids=lambda t: t.name)
def test_dense_output_is_consistent(tab):
    # the continuous weights sum to theta, so P carries no higher power in total
    column_sums = tab.P.sum(axis=0)
    assert column_sums[0] == pytest.approx(1.0, abs=1e-12)
    assert np.allclose(column_sums[1:], 0.0, atol=1e-12)


@pytest.mark.parametrize("tab", [BOGACKI_SHAMPINE_32, DORMAND_PRINCE_54, HIGHAM_HALL_54,
                                 DORMAND_PRINCE_853],
                         ids=lambda t: t.name)
def test_error_weights_vanish_on_constant_derivative(tab):
    assert tab.embedded
    assert abs(tab.e.sum()) < 1e-12
    if hasattr(tab, "e3"):
        assert abs(tab.e3.sum()) < 1e-12


@pytest.mark.parametrize("tab", POLYNOMIAL_DENSE, ids=lambda t: t.name)
def test_dense_output_reaches_step_end(tab):
    # at theta = 1 the continuous extension must reproduce the weights b
    expected = np.append(tab.b, 0.0)
    assert np.allclose(tab.P.sum(axis=1), expected, atol=1e-12)


def test_error_exponents():
    assert BOGACKI_SHAMPINE_32.error_exponent == pytest.approx(1.0 / 3.0)
    assert DORMAND_PRINCE_54.error_exponent == pytest.approx(1.0 / 5.0)
    assert DORMAND_PRINCE_853.error_exponent == pytest.approx(1.0 / 8.0)
    assert HIGHAM_HALL_54.error_exponent == pytest.approx(1.0 / 5.0)
    assert HIGHAM_HALL_54.fsal
    assert BOGACKI_SHAMPINE_32.fsal and DORMAND_PRINCE_54.fsal
    assert not DORMAND_PRINCE_853.fsal


def test_dop853_extra_stage_shapes():
    tab = DORMAND_PRINCE_853
    assert tab.n_stages == 12
    assert tab.a_extra.shape == (3, 16)
    assert tab.c_extra.shape == (3,)
    assert tab.d.shape == (4, 16)


def test_tableau_arrays_are_read_only():
    with pytest.raises(ValueError):
        DORMAND_PRINCE_54.b[0] = 1.0
    with pytest.raises(ValueError):
        CLASSICAL_RK4.A[1, 0] = 0.0


def test_inconsistent_shapes_rejected():
    with pytest.raises(ValueError):
        _ButcherTableau(name="bad", A=np.zeros((2, 2)), b=np.ones(3) / 3.0, c=np.zeros(3),
                        P=np.zeros((4, 1)), order=1)
    with pytest.raises(ValueError):
        _ButcherTableau(name="bad-dense", A=np.zeros((1, 1)), b=np.ones(1), c=np.zeros(1),
                        P=np.zeros((1, 1)), order=1)
