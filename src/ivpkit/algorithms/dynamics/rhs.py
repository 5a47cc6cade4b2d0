from typing import Callable

import numba
from numba.core.registry import CPUDispatcher
import numpy as np

from ivpkit.algorithms.dynamics.base import _DynamicalSystem
from ivpkit.algorithms.utils.config import FASTMATH


class RHSSystem(_DynamicalSystem):
    def __init__(self, rhs_func: Callable[[float, np.ndarray], np.ndarray], dim: int,
                 name: str = "Generic RHS", jit: bool = False):
        """Wrap an arbitrary RHS into a _DynamicalSystem instance.

        The callable is used as is, so it may carry Python side effects such as
        call counters. With ``jit=True`` it is compiled in *nopython* mode
        unless it is a Numba dispatcher already.
        """

        super().__init__(dim)

        if jit and not isinstance(rhs_func, CPUDispatcher):
            self._rhs = numba.njit(cache=False, fastmath=FASTMATH)(rhs_func)
        else:
            self._rhs = rhs_func

        self.name = name

    @property
    def rhs(self) -> Callable[[float, np.ndarray], np.ndarray]:
        return self._rhs

    def __repr__(self) -> str:
        return f"RHSSystem(name='{self.name}', dim={self.dim})"


def create_rhs_system(rhs_func: Callable[[float, np.ndarray], np.ndarray], dim: int,
                      name: str = "Generic RHS", jit: bool = False):
    return RHSSystem(rhs_func, dim, name, jit=jit)
