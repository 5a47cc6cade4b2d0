"""Butcher tableaux of the explicit Runge-Kutta methods.

Every tableau is laid out the same way: ``A``, ``b`` and ``c`` describe the
``s`` stages advancing the solution, while the error weights ``e`` and the
dense output matrix ``P`` have one more row that applies to the derivative at
the new state ``f(t + h, y_new)``. That derivative is always reused as the
first stage of the following step.
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ivpkit.algorithms.integrators.coefficients import dop853 as _dop853
from ivpkit.algorithms.integrators.coefficients import euler as _euler
from ivpkit.algorithms.integrators.coefficients import gill as _gill
from ivpkit.algorithms.integrators.coefficients import higham_hall as _higham_hall
from ivpkit.algorithms.integrators.coefficients import luther as _luther
from ivpkit.algorithms.integrators.coefficients import midpoint as _midpoint
from ivpkit.algorithms.integrators.coefficients import rk4 as _rk4
from ivpkit.algorithms.integrators.coefficients import rk23 as _rk23
from ivpkit.algorithms.integrators.coefficients import rk45 as _rk45
from ivpkit.algorithms.integrators.coefficients import \
    three_eighths as _three_eighths


@dataclass(frozen=True, eq=False)
class _ButcherTableau:
    """Store the immutable coefficients of an explicit Runge-Kutta method.

    Parameters
    ----------
    name : str
        Identifier of the method.
    A : numpy.ndarray, shape (s, s)
        Strictly lower triangular stage coupling matrix.
    b : numpy.ndarray, shape (s,)
        Weights of the propagated solution.
    c : numpy.ndarray, shape (s,)
        Stage abscissae in units of the step size.
    P : numpy.ndarray, shape (s + 1, p)
        Dense output coefficients, ``y(theta) = y0 + h * sum_i k_i sum_q P[i, q] theta^(q+1)``.
    order : int
        Order of the propagated solution.
    e : numpy.ndarray or None, shape (s + 1,)
        Weights of the error estimate ``b - b*``. None for fixed-step methods.
    error_order : int, default 0
        Order of the embedded solution; the controller exponent is
        ``1 / (error_order + 1)``.
    fsal : bool, default False
        True when ``f(t + h, y_new)`` enters the error estimate and must be
        evaluated before the step is accepted.
    """

    name: str
    A: np.ndarray
    b: np.ndarray
    c: np.ndarray
    P: np.ndarray
    order: int
    e: Optional[np.ndarray] = None
    error_order: int = 0
    fsal: bool = False

    def __post_init__(self):
        s = self.b.size
        if self.A.shape != (s, s) or self.c.size != s:
            raise ValueError(f"Inconsistent tableau shapes for {self.name}")
        if self.P.shape[0] != s + 1:
            raise ValueError(f"Dense output matrix of {self.name} must have {s + 1} rows")
        if self.e is not None and self.e.size != s + 1:
            raise ValueError(f"Error weights of {self.name} must have {s + 1} entries")
        for arr in (self.A, self.b, self.c, self.P, self.e):
            if arr is not None:
                arr.setflags(write=False)

    @property
    def n_stages(self) -> int:
        return self.b.size

    @property
    def embedded(self) -> bool:
        return self.e is not None

    @property
    def error_exponent(self) -> float:
        return 1.0 / (self.error_order + 1)


@dataclass(frozen=True, eq=False)
class _DOP853Tableau(_ButcherTableau):
    """Dormand-Prince 8(5,3) tableau.

    The error estimate combines a 5th order and a 3rd order embedded solution
    and the dense output uses three extra stages evaluated lazily.
    """

    e3: np.ndarray = field(default=None)
    a_extra: np.ndarray = field(default=None)
    c_extra: np.ndarray = field(default=None)
    d: np.ndarray = field(default=None)


BOGACKI_SHAMPINE_32 = _ButcherTableau(
    name="Bogacki-Shampine 3(2)",
    A=_rk23.A,
    b=_rk23.B,
    c=_rk23.C,
    P=_rk23.P,
    order=3,
    e=_rk23.E,
    error_order=2,
    fsal=True,
)

DORMAND_PRINCE_54 = _ButcherTableau(
    name="Dormand-Prince 5(4)",
    A=_rk45.A,
    b=_rk45.B,
    c=_rk45.C,
    P=_rk45.P,
    order=5,
    e=_rk45.E,
    error_order=4,
    fsal=True,
)

# P is unused, the dense output relies on the extra stages and d.
DORMAND_PRINCE_853 = _DOP853Tableau(
    name="Dormand-Prince 8(5,3)",
    A=_dop853.A,
    b=_dop853.B,
    c=_dop853.C,
    P=np.zeros((_dop853.N_STAGES + 1, 1), dtype=np.float64),
    order=8,
    e=_dop853.E5,
    error_order=7,
    fsal=False,
    e3=_dop853.E3,
    a_extra=_dop853.A_EXTRA,
    c_extra=_dop853.C_EXTRA,
    d=_dop853.D,
)

EULER = _ButcherTableau(name="Euler", A=_euler.A, b=_euler.B, c=_euler.C, P=_euler.P, order=1)

MIDPOINT = _ButcherTableau(name="Midpoint", A=_midpoint.A, b=_midpoint.B, c=_midpoint.C,
                           P=_midpoint.P, order=2)

CLASSICAL_RK4 = _ButcherTableau(name="RK4", A=_rk4.A, b=_rk4.B, c=_rk4.C, P=_rk4.P, order=4)

GILL = _ButcherTableau(name="Gill", A=_gill.A, b=_gill.B, c=_gill.C, P=_gill.P, order=4)

THREE_EIGHTHS = _ButcherTableau(name="3/8-rule", A=_three_eighths.A, b=_three_eighths.B,
                                c=_three_eighths.C, P=_three_eighths.P, order=4)

LUTHER = _ButcherTableau(name="Luther", A=_luther.A, b=_luther.B, c=_luther.C, P=_luther.P,
                         order=6)

HIGHAM_HALL_54 = _ButcherTableau(
    name="Higham-Hall 5(4)",
    A=_higham_hall.A,
    b=_higham_hall.B,
    c=_higham_hall.C,
    P=_higham_hall.P,
    order=5,
    e=_higham_hall.E,
    error_order=4,
    fsal=True,
)
