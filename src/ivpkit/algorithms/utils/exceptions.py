"""
Custom exceptions for the algorithms package.
"""

class IvpkitError(Exception):
    """Base exception for ivpkit errors.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class ConvergenceError(IvpkitError):
    """Raised when an algorithm fails to converge.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class DimensionMismatchError(IvpkitError, ValueError):
    """Raised when a state vector disagrees with the system dimension.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class DegenerateIntervalError(IvpkitError, ValueError):
    """Raised when the integration interval or the step bounds are unusable.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class EvaluationBudgetExceededError(IvpkitError):
    """Raised when the number of derivative evaluations exceeds its budget.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class StepSizeUnderflowError(ConvergenceError):
    """Raised when the step size controller falls below the minimal step.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class NoBracketingError(ConvergenceError):
    """Raised when an event root cannot be bracketed or isolated.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)


class MultistepConvergenceError(ConvergenceError):
    """Raised when a multistep method cannot start or its corrector diverges.

    Parameters
    ----------
    message : str
        The error message.
    """

    def __init__(self, message: str):
        super().__init__(message)
