"""Initial value problem integration for ordinary differential equations.

The most frequently used classes are re-exported so that users can simply
write::

>>> from ivpkit import AdaptiveRK, create_rhs_system
"""

from .algorithms import (Action, Adams, AdaptiveRK, ContinuousOutputModel,
                         EventConfig, EventHandler, ExpandableSystem,
                         FunctionSecondaryEquations, GraggBulirschStoer,
                         JacobianMatrices, ParameterJacobianProvider,
                         Parameterizable, RungeKutta, SecondaryEquations,
                         Solution, State, StepHandler, StepNormalizer,
                         create_rhs_system)
from .algorithms.utils.exceptions import (ConvergenceError,
                                          DegenerateIntervalError,
                                          DimensionMismatchError,
                                          EvaluationBudgetExceededError,
                                          IvpkitError,
                                          MultistepConvergenceError,
                                          NoBracketingError,
                                          StepSizeUnderflowError)

__all__ = [
    "Action",
    "Adams",
    "AdaptiveRK",
    "RungeKutta",
    "GraggBulirschStoer",
    "ContinuousOutputModel",
    "StepNormalizer",
    "StepHandler",
    "EventHandler",
    "EventConfig",
    "State",
    "Solution",
    "create_rhs_system",
    "ExpandableSystem",
    "SecondaryEquations",
    "FunctionSecondaryEquations",
    "JacobianMatrices",
    "Parameterizable",
    "ParameterJacobianProvider",
    "IvpkitError",
    "ConvergenceError",
    "DimensionMismatchError",
    "DegenerateIntervalError",
    "EvaluationBudgetExceededError",
    "StepSizeUnderflowError",
    "NoBracketingError",
    "MultistepConvergenceError",
]
