""" Public API for the :mod:`~ivpkit.algorithms` package.
"""

from .dynamics.expandable import _ExpandableSystem as ExpandableSystem
from .dynamics.expandable import \
    _FunctionSecondaryEquations as FunctionSecondaryEquations
from .dynamics.expandable import _SecondaryEquations as SecondaryEquations
from .dynamics.jacobians import _JacobianMatrices as JacobianMatrices
from .dynamics.jacobians import _Parameterizable as Parameterizable
from .dynamics.jacobians import \
    _ParameterJacobianProvider as ParameterJacobianProvider
from .dynamics.rhs import create_rhs_system
from .integrators.adams import Adams
from .integrators.configs import _EventConfig as EventConfig
from .integrators.events import EventHandler
from .integrators.gbs import _GraggBulirschStoer as GraggBulirschStoer
from .integrators.handlers import (ContinuousOutputModel, StepHandler,
                                   StepNormalizer)
from .integrators.rk import AdaptiveRK, RungeKutta
from .integrators.types import Action, State
from .integrators.types import _Solution as Solution

__all__ = [
    "Adams",
    "AdaptiveRK",
    "RungeKutta",
    "GraggBulirschStoer",
    "EventHandler",
    "EventConfig",
    "StepHandler",
    "ContinuousOutputModel",
    "StepNormalizer",
    "Action",
    "State",
    "Solution",
    "create_rhs_system",
    "ExpandableSystem",
    "SecondaryEquations",
    "FunctionSecondaryEquations",
    "JacobianMatrices",
    "Parameterizable",
    "ParameterJacobianProvider",
]
