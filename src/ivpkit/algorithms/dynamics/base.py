"""Provide the interface of the differential systems consumed by the integrators.

A differential system exposes its state dimension and a right-hand side
``rhs(t, y) -> y_dot``. The right-hand side must be a pure function of
``(t, y)``: the error estimators and the dense output formulas assume that
evaluating it twice at the same point yields the same derivative.
"""

from abc import ABC, abstractmethod
from typing import Callable, Protocol, runtime_checkable

import numpy as np

from ivpkit.algorithms.utils.exceptions import DimensionMismatchError


@runtime_checkable
class _DynamicalSystemProtocol(Protocol):
    """Protocol defining the interface for dynamical systems.

    This protocol specifies the minimum interface that any dynamical system
    must implement to be compatible with the integrator framework.
    """

    @property
    def dim(self) -> int:
        """Dimension of the state space."""
        ...

    @property
    def rhs(self) -> Callable[[float, np.ndarray], np.ndarray]:
        ...


class _DynamicalSystem(ABC):
    """Abstract base class for dynamical systems.

    Parameters
    ----------
    dim : int
        Dimension of the state space.

    Raises
    ------
    ValueError
        If *dim* is not positive.
    """

    def __init__(self, dim: int):
        if dim <= 0:
            raise ValueError(f"Dimension must be positive, got {dim}")
        self._dim = dim

    @property
    def dim(self) -> int:
        """Dimension of the state space."""
        return self._dim

    @property
    @abstractmethod
    def rhs(self) -> Callable[[float, np.ndarray], np.ndarray]:
        pass

    def validate_state(self, y: np.ndarray) -> None:
        """Validate that a state vector has the correct dimension.

        Parameters
        ----------
        y : numpy.ndarray
            State vector to validate.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.DimensionMismatchError`
            If the state vector has incorrect dimension.
        """
        if len(y) != self.dim:
            raise DimensionMismatchError(
                f"State vector dimension {len(y)} != system dimension {self.dim}"
            )
