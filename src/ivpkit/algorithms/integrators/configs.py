from dataclasses import dataclass
from typing import Optional

from ivpkit.algorithms.utils.config import (EVENT_MAX_CHECK_INTERVAL,
                                            EVENT_MAX_ITER, EVENT_TOL)


@dataclass(frozen=True)
class _EventConfig:
    """Configuration for a scalar event function g(t, y).

    Parameters
    ----------
    direction : int, default 0
        Crossing direction to detect, with respect to time:
        - 0: any sign change
        - +1: only increasing crossings
        - -1: only decreasing crossings
    terminal : bool, default True
        When True, integration stops at the first event. Only used by plain
        event functions; handler objects decide through their returned action.
    tol : float, default EVENT_TOL
        Absolute time tolerance of the root isolation.
    max_iter : int, default EVENT_MAX_ITER
        Maximum iterations of the bracketing refinement.
    max_check_interval : float, default EVENT_MAX_CHECK_INTERVAL
        Maximal time interval between two samples of g within a step.
    max_count : int or None, default None
        Number of occurrences after which the event is ignored for the rest of
        the integration. None means unlimited.
    """

    direction: int = 0
    terminal: bool = True
    tol: float = EVENT_TOL
    max_iter: int = EVENT_MAX_ITER
    max_check_interval: float = EVENT_MAX_CHECK_INTERVAL
    max_count: Optional[int] = None

    def __post_init__(self):
        if self.direction not in (-1, 0, 1):
            raise ValueError(f"direction must be -1, 0 or +1, got {self.direction}")
        if not self.tol > 0.0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {self.max_iter}")
        if not self.max_check_interval > 0.0:
            raise ValueError(f"max_check_interval must be positive, got {self.max_check_interval}")
        if self.max_count is not None and self.max_count < 1:
            raise ValueError(f"max_count must be at least 1, got {self.max_count}")
