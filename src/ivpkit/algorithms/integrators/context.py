"""Evaluation bookkeeping shared by everything taking part in one integration."""

from typing import Callable, Optional

import numpy as np

from ivpkit.algorithms.utils.exceptions import (DimensionMismatchError,
                                                EvaluationBudgetExceededError)


class _IntegrationContext:
    """Count derivative evaluations against an optional budget.

    The driver creates one context per call to ``integrate`` and hands it by
    reference to the starter integrator and to the interpolators that need
    extra stages, so that every evaluation lands in the same counter.

    Parameters
    ----------
    max_evaluations : int or None
        Maximal number of derivative evaluations, None for unbounded.
    """

    def __init__(self, max_evaluations: Optional[int] = None):
        if max_evaluations is not None and max_evaluations < 0:
            raise ValueError(f"max_evaluations must be non-negative, got {max_evaluations}")
        self._max_evaluations = max_evaluations
        self._evaluations = 0

    @property
    def evaluations(self) -> int:
        return self._evaluations

    @property
    def max_evaluations(self) -> Optional[int]:
        return self._max_evaluations

    def increment(self) -> None:
        """Record one evaluation.

        Raises
        ------
        :class:`~ivpkit.algorithms.utils.exceptions.EvaluationBudgetExceededError`
            If the budget is already exhausted. The counter is left untouched
            so that it keeps matching the evaluations actually performed.
        """
        if self._max_evaluations is not None and self._evaluations >= self._max_evaluations:
            raise EvaluationBudgetExceededError(
                f"Maximal number of derivative evaluations ({self._max_evaluations}) exceeded"
            )
        self._evaluations += 1

    def reset(self) -> None:
        self._evaluations = 0

    def derivatives(self, rhs: Callable[[float, np.ndarray], np.ndarray], dim: int):
        """Return *rhs* wrapped so that every call is counted and checked."""

        def _f(t: float, y: np.ndarray) -> np.ndarray:
            self.increment()
            y_dot = np.array(rhs(t, y), dtype=np.float64)
            if y_dot.shape != (dim,):
                raise DimensionMismatchError(
                    f"Derivative shape {y_dot.shape} != system dimension ({dim},)"
                )
            return y_dot

        return _f
