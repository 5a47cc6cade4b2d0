"""Provide differential systems extended with secondary equation blocks.

The complete state vector of an :class:`~ivpkit.algorithms.dynamics.expandable._ExpandableSystem`
is the primary state followed by every secondary block, in registration
order. Secondary blocks typically carry quantities driven by the primary
trajectory (integrals, sensitivities, costs) and are excluded from the
adaptive error control of the integrators.
"""

from abc import ABC, abstractmethod
from typing import Callable, List, Sequence, Tuple

import numpy as np

from ivpkit.algorithms.dynamics.base import (_DynamicalSystem,
                                             _DynamicalSystemProtocol)
from ivpkit.algorithms.utils.exceptions import DimensionMismatchError


class _SecondaryEquations(ABC):
    """Define a block of equations appended to a primary system.

    Subclasses provide the block dimension and its derivatives, which may
    depend on the primary state and on the primary derivatives.
    """

    @property
    @abstractmethod
    def dim(self) -> int:
        """Dimension of the secondary block."""
        pass

    @abstractmethod
    def compute_derivatives(self, t: float, primary: np.ndarray, primary_dot: np.ndarray,
                            secondary: np.ndarray) -> np.ndarray:
        """Return the time derivative of the secondary block.

        Parameters
        ----------
        t : float
            Current time.
        primary : numpy.ndarray
            Primary state.
        primary_dot : numpy.ndarray
            Derivative of the primary state, already computed.
        secondary : numpy.ndarray
            Current value of this block.

        Returns
        -------
        numpy.ndarray
            Derivative of this block, shape ``(dim,)``.
        """
        pass


class _FunctionSecondaryEquations(_SecondaryEquations):
    """Secondary block defined by a plain callable."""

    def __init__(self, func: Callable[[float, np.ndarray, np.ndarray, np.ndarray], np.ndarray], dim: int):
        if dim <= 0:
            raise ValueError(f"Dimension must be positive, got {dim}")
        self._func = func
        self._dim = dim

    @property
    def dim(self) -> int:
        return self._dim

    def compute_derivatives(self, t, primary, primary_dot, secondary):
        return self._func(t, primary, primary_dot, secondary)


class _ExpandableSystem(_DynamicalSystem):
    """Wrap a primary system together with secondary equation blocks.

    Parameters
    ----------
    primary : :class:`~ivpkit.algorithms.dynamics.base._DynamicalSystemProtocol`
        System driving the main state. Its components are the only ones used
        by the step size control.

    Examples
    --------
    Accumulating the integral of the primary state::

        system = _ExpandableSystem(create_rhs_system(lambda t, y: -y, dim=1))
        system.add_secondary(_FunctionSecondaryEquations(lambda t, y, yd, z: y.copy(), dim=1))
    """

    def __init__(self, primary: _DynamicalSystemProtocol):
        super().__init__(primary.dim)
        self._primary = primary
        self._secondaries: List[_SecondaryEquations] = []

    @property
    def primary(self) -> _DynamicalSystemProtocol:
        return self._primary

    @property
    def primary_dim(self) -> int:
        """Dimension of the primary state (the error controlled part)."""
        return self._primary.dim

    @property
    def secondaries(self) -> Tuple[_SecondaryEquations, ...]:
        return tuple(self._secondaries)

    def add_secondary(self, equations: _SecondaryEquations) -> int:
        """Append a secondary block and return its index."""
        self._secondaries.append(equations)
        self._dim += equations.dim
        return len(self._secondaries) - 1

    def split(self, y: np.ndarray) -> Tuple[np.ndarray, List[np.ndarray]]:
        """Split a complete state into its primary part and secondary blocks."""
        if len(y) != self.dim:
            raise DimensionMismatchError(
                f"Complete state dimension {len(y)} != expandable system dimension {self.dim}"
            )
        start = self.primary_dim
        primary = np.array(y[:start], dtype=np.float64)
        blocks = []
        for eq in self._secondaries:
            blocks.append(np.array(y[start:start + eq.dim], dtype=np.float64))
            start += eq.dim
        return primary, blocks

    def join(self, primary: np.ndarray, secondaries: Sequence[np.ndarray]) -> np.ndarray:
        """Assemble a complete state from its parts."""
        if len(secondaries) != len(self._secondaries):
            raise DimensionMismatchError(
                f"Expected {len(self._secondaries)} secondary blocks, got {len(secondaries)}"
            )
        return np.concatenate([np.asarray(primary, dtype=np.float64)]
                              + [np.asarray(s, dtype=np.float64) for s in secondaries])

    @property
    def rhs(self) -> Callable[[float, np.ndarray], np.ndarray]:
        primary_rhs = self._primary.rhs
        n = self.primary_dim
        secondaries = list(self._secondaries)

        def _rhs(t: float, y: np.ndarray) -> np.ndarray:
            y_dot = np.empty_like(y)
            primary = y[:n]
            primary_dot = np.asarray(primary_rhs(t, primary), dtype=np.float64)
            y_dot[:n] = primary_dot
            start = n
            for eq in secondaries:
                stop = start + eq.dim
                y_dot[start:stop] = eq.compute_derivatives(t, primary, primary_dot, y[start:stop])
                start = stop
            return y_dot

        return _rhs

    def __repr__(self) -> str:
        return (f"ExpandableSystem(primary={self._primary!r}, "
                f"secondaries={len(self._secondaries)}, dim={self.dim})")
