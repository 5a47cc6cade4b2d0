"""Data containers exchanged between the integrators and their callers."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import numpy as np


class Action(Enum):
    """Decision returned by an event handler once its event occurred."""

    CONTINUE = "continue"
    STOP = "stop"
    RESET_STATE = "reset_state"
    RESET_DERIVATIVES = "reset_derivatives"


@dataclass(frozen=True)
class State:
    """Snapshot of the trajectory at one instant.

    The arrays are private copies, so mutating them never affects the
    interpolator or integrator that produced the snapshot.

    Attributes
    ----------
    t : float
        Time of the snapshot.
    y : numpy.ndarray
        Complete state vector.
    y_dot : numpy.ndarray or None
        Time derivative of *y*, when known.
    """

    t: float
    y: np.ndarray
    y_dot: Optional[np.ndarray] = None

    def __post_init__(self):
        object.__setattr__(self, "t", float(self.t))
        object.__setattr__(self, "y", np.array(self.y, dtype=np.float64))
        if self.y_dot is not None:
            object.__setattr__(self, "y_dot", np.array(self.y_dot, dtype=np.float64))

    @property
    def dim(self) -> int:
        return self.y.size


@dataclass
class _Solution:
    """Store a discrete trajectory and interpolate between its nodes.

    Attributes
    ----------
    times : numpy.ndarray
        Array of time points, shape (n_points,). Monotonic in the integration
        direction; a time may appear twice when a state reset occurred.
    states : numpy.ndarray
        Array of state vectors, shape (n_points, n_dim).
    derivatives : numpy.ndarray or None, optional
        Array of time derivatives f(t, y) evaluated at the stored time points,
        shape (n_points, n_dim).  When provided, cubic Hermite interpolation is
        used; otherwise interpolation falls back to linear.
    """

    times: np.ndarray
    states: np.ndarray
    derivatives: Optional[np.ndarray] = None

    def __post_init__(self):
        if len(self.times) != len(self.states):
            raise ValueError(
                f"Times and states must have same length: "
                f"{len(self.times)} != {len(self.states)}"
            )
        if self.derivatives is not None and len(self.derivatives) != len(self.times):
            raise ValueError(
                "If provided, derivatives must have the same length as times "
                f"({len(self.derivatives)} != {len(self.times)})"
            )

    @property
    def t_final(self) -> float:
        """Time actually reached by the integration."""
        return float(self.times[-1])

    @property
    def y_final(self) -> np.ndarray:
        return self.states[-1].copy()

    def interpolate(self, t: Union[np.ndarray, float]) -> np.ndarray:
        """Evaluate the solution at arbitrary time points by interpolation.

        If *derivatives* are available, a cubic Hermite interpolant is used on
        every interval; otherwise linear interpolation is applied.

        Parameters
        ----------
        t : float or array_like
            Time (or array of times) at which to evaluate the solution.  Must
            lie within the integrated interval.

        Returns
        -------
        numpy.ndarray
            Interpolated state(s) with shape ``(n_dim,)`` for a scalar *t* or
            ``(n_times, n_dim)`` for an array input.
        """
        t_arr = np.atleast_1d(t).astype(float)

        times = self.times
        states = self.states
        derivatives = self.derivatives
        if len(times) > 1 and times[-1] < times[0]:
            # backward run, flip to an increasing grid
            times = times[::-1]
            states = states[::-1]
            derivatives = None if derivatives is None else derivatives[::-1]

        if np.any(t_arr < times[0]) or np.any(t_arr > times[-1]):
            raise ValueError("Interpolation times must lie within the solution interval.")

        n_dim = states.shape[1]
        if len(times) == 1:
            return states[0].copy() if np.isscalar(t) else np.repeat(states[:1], t_arr.size, axis=0)

        y_out = np.empty((t_arr.size, n_dim), dtype=states.dtype)

        idxs = np.searchsorted(times, t_arr, side="right") - 1
        idxs = np.clip(idxs, 0, len(times) - 2)

        t0 = times[idxs]
        t1 = times[idxs + 1]
        y0 = states[idxs]
        y1 = states[idxs + 1]

        h = (t1 - t0)
        # duplicated nodes (resets) give zero length intervals
        safe_h = np.where(h == 0.0, 1.0, h)
        s = np.where(h == 0.0, 1.0, (t_arr - t0) / safe_h)

        if derivatives is None:
            y_out[:] = y0 + ((y1 - y0).T * s).T
        else:
            f0 = derivatives[idxs]
            f1 = derivatives[idxs + 1]

            s2 = s * s
            s3 = s2 * s
            h00 = 2 * s3 - 3 * s2 + 1
            h10 = s3 - 2 * s2 + s
            h01 = -2 * s3 + 3 * s2
            h11 = s3 - s2

            y_out[:] = (
                (h00[:, None] * y0) +
                (h10[:, None] * (h[:, None] * f0)) +
                (h01[:, None] * y1) +
                (h11[:, None] * (h[:, None] * f1))
            )

        if np.isscalar(t):
            return y_out[0]
        return y_out
