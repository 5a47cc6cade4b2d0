"""Provide variational equations for the sensitivities of a trajectory.

The :class:`~ivpkit.algorithms.dynamics.jacobians._JacobianMatrices` block
integrates, alongside the primary state ``y``, the Jacobian ``dY/dY0`` with
respect to the initial state and the Jacobians ``dY/dp`` with respect to a
selection of scalar parameters:

    d(dY/dY0)/dt = F(t, y) dY/dY0
    d(dY/dp)/dt  = F(t, y) dY/dp + df/dp

where ``F = df/dy``. Both ``F`` and ``df/dp`` come from user callables when
available and from forward finite differences otherwise.

The block stores ``dY/dY0`` in row major order followed by one column
``dY/dp`` per selected parameter, in selection order.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numba
import numpy as np

from ivpkit.algorithms.dynamics.base import _DynamicalSystemProtocol
from ivpkit.algorithms.dynamics.expandable import (_ExpandableSystem,
                                                   _SecondaryEquations)
from ivpkit.algorithms.utils.config import FASTMATH
from ivpkit.algorithms.utils.exceptions import DimensionMismatchError


@numba.njit(cache=False, fastmath=FASTMATH)
def _variational_jit_kernel(dfdy, z, dfdp):
    n = dfdy.shape[0]
    n_params = dfdp.shape[0]
    z_dot = np.empty(z.size, dtype=np.float64)
    # dPhi/dt = F * Phi, manually done to keep numba happy
    for i in range(n):
        for j in range(n):
            s = 0.0
            for k in range(n):
                s += dfdy[i, k] * z[k * n + j]
            z_dot[i * n + j] = s
    for p in range(n_params):
        start = n * n + p * n
        for i in range(n):
            s = dfdp[p, i]
            for k in range(n):
                s += dfdy[i, k] * z[start + k]
            z_dot[start + i] = s
    return z_dot


def _difference_step(value: float) -> float:
    return float(np.sqrt(np.finfo(float).eps) * max(1.0, abs(value)))


class _Parameterizable(ABC):
    """Expose named scalar parameters of a differential system.

    The right-hand side of the system must read the current parameter values,
    so that :meth:`set_parameter` changes the derivatives it returns.
    """

    @property
    @abstractmethod
    def parameter_names(self) -> Tuple[str, ...]:
        pass

    def is_supported(self, name: str) -> bool:
        return name in self.parameter_names

    @abstractmethod
    def get_parameter(self, name: str) -> float:
        pass

    @abstractmethod
    def set_parameter(self, name: str, value: float) -> None:
        pass


class _ParameterJacobianProvider(ABC):
    """Compute ``df/dp`` for some of the parameters of a system."""

    @property
    @abstractmethod
    def parameter_names(self) -> Tuple[str, ...]:
        pass

    def is_supported(self, name: str) -> bool:
        return name in self.parameter_names

    @abstractmethod
    def compute_parameter_jacobian(self, t: float, y: np.ndarray, y_dot: np.ndarray,
                                   name: str) -> np.ndarray:
        """Return ``df/dp`` for the parameter *name*, shape ``(n,)``."""
        pass


class _FiniteDifferenceParameterJacobian(_ParameterJacobianProvider):
    """Forward difference ``df/dp`` obtained by perturbing a parameterizable system.

    Parameters
    ----------
    rhs : callable
        Right-hand side ``f(t, y)`` of the primary system.
    parameterized : :class:`_Parameterizable`
        Holder of the parameter values read by *rhs*.
    steps : dict
        Difference step per parameter name; a missing or None entry uses
        ``sqrt(eps) * max(1, |p|)``.
    """

    def __init__(self, rhs: Callable[[float, np.ndarray], np.ndarray],
                 parameterized: _Parameterizable, steps: Dict[str, Optional[float]]):
        self._rhs = rhs
        self._parameterized = parameterized
        self._steps = dict(steps)

    @property
    def parameter_names(self) -> Tuple[str, ...]:
        return tuple(self._parameterized.parameter_names)

    def compute_parameter_jacobian(self, t, y, y_dot, name):
        p = self._parameterized.get_parameter(name)
        h = self._steps.get(name)
        if h is None:
            h = _difference_step(p)
        self._parameterized.set_parameter(name, p + h)
        try:
            shifted = np.asarray(self._rhs(t, y), dtype=np.float64)
        finally:
            self._parameterized.set_parameter(name, p)
        return (shifted - y_dot) / h


class _JacobianMatrices(_SecondaryEquations):
    """Integrate the Jacobians of the primary state along a trajectory.

    Parameters
    ----------
    system : :class:`~ivpkit.algorithms.dynamics.base._DynamicalSystemProtocol`
        Primary system; must be the primary of the expandable system the
        block is registered with.
    parameters : sequence of str, optional
        Names of the parameters whose Jacobians are integrated.
    jacobian : callable, optional
        ``jacobian(t, y)`` returning ``df/dy``, shape ``(n, n)``. Forward
        finite differences are used when None.
    h_y : array_like, optional
        Finite difference steps per state component. Defaults to
        ``sqrt(eps) * max(1, |y_j|)`` at each evaluation.

    Raises
    ------
    ValueError
        If parameter names are repeated or difference steps are not positive.
    :class:`~ivpkit.algorithms.utils.exceptions.DimensionMismatchError`
        If *h_y* does not have one entry per state component.

    Examples
    --------
    Sensitivity of ``y' = -p y`` to ``y0`` and ``p``::

        jac = _JacobianMatrices(system, parameters=("p",))
        jac.set_parameterized_system(holder)
        expandable = _ExpandableSystem(system)
        jac.register(expandable)
        y0 = expandable.join(np.array([1.0]), [jac.initial_state])
    """

    def __init__(self, system: _DynamicalSystemProtocol, parameters: Sequence[str] = (),
                 jacobian: Optional[Callable[[float, np.ndarray], np.ndarray]] = None,
                 h_y=None):
        n = system.dim
        parameters = tuple(parameters)
        if len(set(parameters)) != len(parameters):
            raise ValueError(f"Repeated parameter names in {parameters}")
        if h_y is not None:
            h_y = np.array(h_y, dtype=np.float64).reshape(-1)
            if h_y.size != n:
                raise DimensionMismatchError(f"h_y has {h_y.size} entries, state has {n}")
            if not np.all(h_y > 0.0):
                raise ValueError("Finite difference steps must be positive")

        self._system = system
        self._rhs = system.rhs
        self._n = n
        self._parameters = parameters
        self._jacobian = jacobian
        self._h_y = h_y
        self._parameter_steps: Dict[str, Optional[float]] = {name: None for name in parameters}
        self._providers: List[_ParameterJacobianProvider] = []
        self._parameterized: Optional[_Parameterizable] = None
        self._difference_provider: Optional[_FiniteDifferenceParameterJacobian] = None

        self._initial = np.zeros(n * (n + len(parameters)), dtype=np.float64)
        self._initial[:n * n] = np.eye(n).ravel()
        self._expandable: Optional[_ExpandableSystem] = None
        self._index = -1

    @property
    def dim(self) -> int:
        return self._n * (self._n + len(self._parameters))

    @property
    def parameters(self) -> Tuple[str, ...]:
        return self._parameters

    @property
    def index(self) -> int:
        """Block index in the registered expandable system, -1 before registration."""
        return self._index

    @property
    def initial_state(self) -> np.ndarray:
        """Initial value of the block, identity and zero columns unless set otherwise."""
        return self._initial.copy()

    def register(self, expandable: _ExpandableSystem) -> int:
        """Append the block to *expandable* and return its index.

        Raises
        ------
        ValueError
            If the primary system of *expandable* is not the one the block
            was built for.
        """
        if expandable.primary is not self._system:
            raise ValueError("Jacobian block does not match the primary system of the expandable system")
        self._index = expandable.add_secondary(self)
        self._expandable = expandable
        return self._index

    def add_parameter_jacobian_provider(self, provider: _ParameterJacobianProvider) -> None:
        """Register a provider of ``df/dp``, consulted before finite differences."""
        self._providers.append(provider)

    def set_parameterized_system(self, parameterized: _Parameterizable) -> None:
        """Enable finite differences for the parameters held by *parameterized*."""
        self._parameterized = parameterized
        self._difference_provider = None

    def set_parameter_step(self, name: str, h: float) -> None:
        """Set the finite difference step used for the parameter *name*."""
        self._position(name)
        if not h > 0.0:
            raise ValueError(f"Parameter step must be positive, got {h}")
        self._parameter_steps[name] = float(h)
        self._difference_provider = None

    def set_initial_main_state_jacobian(self, dy_dy0) -> None:
        n = self._n
        dy_dy0 = np.asarray(dy_dy0, dtype=np.float64)
        if dy_dy0.shape != (n, n):
            raise DimensionMismatchError(f"Initial state Jacobian must be {n}x{n}, got {dy_dy0.shape}")
        self._initial[:n * n] = dy_dy0.ravel()

    def set_initial_parameter_jacobian(self, name: str, dy_dp) -> None:
        n = self._n
        dy_dp = np.asarray(dy_dp, dtype=np.float64).reshape(-1)
        if dy_dp.size != n:
            raise DimensionMismatchError(f"Initial parameter Jacobian must have {n} entries, got {dy_dp.size}")
        start = n * n + self._position(name) * n
        self._initial[start:start + n] = dy_dp

    def main_state_jacobian(self, y: np.ndarray) -> np.ndarray:
        """Extract ``dY/dY0`` from a complete state of the registered system."""
        block = self._block(y)
        return block[:self._n * self._n].reshape(self._n, self._n)

    def parameter_jacobian(self, name: str, y: np.ndarray) -> np.ndarray:
        """Extract ``dY/dp`` for the parameter *name* from a complete state."""
        start = self._n * self._n + self._position(name) * self._n
        return self._block(y)[start:start + self._n]

    def _position(self, name: str) -> int:
        try:
            return self._parameters.index(name)
        except ValueError:
            raise ValueError(f"Unknown parameter {name!r}, selected: {self._parameters}") from None

    def _block(self, y: np.ndarray) -> np.ndarray:
        if self._expandable is None:
            raise ValueError("Jacobian block is not registered with an expandable system")
        _, blocks = self._expandable.split(y)
        return blocks[self._index]

    def _main_jacobian(self, t: float, y: np.ndarray, y_dot: np.ndarray) -> np.ndarray:
        n = self._n
        if self._jacobian is not None:
            dfdy = np.asarray(self._jacobian(t, y), dtype=np.float64)
            if dfdy.shape != (n, n):
                raise DimensionMismatchError(f"Jacobian must be {n}x{n}, got {dfdy.shape}")
            return dfdy
        dfdy = np.empty((n, n), dtype=np.float64)
        shifted = np.array(y, dtype=np.float64)
        for j in range(n):
            h = self._h_y[j] if self._h_y is not None else _difference_step(y[j])
            shifted[j] = y[j] + h
            dfdy[:, j] = (np.asarray(self._rhs(t, shifted), dtype=np.float64) - y_dot) / h
            shifted[j] = y[j]
        return dfdy

    def _parameter_providers(self) -> List[_ParameterJacobianProvider]:
        providers = list(self._providers)
        if self._parameterized is not None:
            if self._difference_provider is None:
                self._difference_provider = _FiniteDifferenceParameterJacobian(
                    self._rhs, self._parameterized, self._parameter_steps)
            providers.append(self._difference_provider)
        return providers

    def compute_derivatives(self, t, primary, primary_dot, secondary):
        dfdy = self._main_jacobian(t, primary, primary_dot)
        dfdp = np.zeros((len(self._parameters), self._n), dtype=np.float64)
        if self._parameters:
            providers = self._parameter_providers()
            for k, name in enumerate(self._parameters):
                for provider in providers:
                    if provider.is_supported(name):
                        dfdp[k] = provider.compute_parameter_jacobian(t, primary, primary_dot, name)
                        break
                else:
                    raise ValueError(f"No Jacobian provider supports parameter {name!r}")
        return _variational_jit_kernel(dfdy, np.ascontiguousarray(secondary), dfdp)
