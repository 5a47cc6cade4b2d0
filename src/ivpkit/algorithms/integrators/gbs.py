"""Provide the Gragg-Bulirsch-Stoer extrapolation integrator.

Every step runs Gragg's modified midpoint rule with an increasing number of
substeps ``n_k = 4k + 2`` and extrapolates the results to a zero substep with
the Aitken-Neville scheme. The number of midpoint runs (hence the order) and
the step size are both adapted, minimizing the work per unit time.

The dense output follows Hairer and Ostermann: derivatives at the middle of
the step are estimated by central differences of the midpoint derivatives,
extrapolated like the solution, and combined with the values and derivatives
at both ends of the step into a single polynomial.

References
----------
Hairer, E., Norsett, S. P., & Wanner, G. (1993). "Solving Ordinary
Differential Equations I: Non-stiff Problems", section II.9 (code ODEX).

Hairer, E.; Ostermann, A. (1990). "Dense output for extrapolation methods".
"""

import math
from typing import List, Optional, Tuple

import numba
import numpy as np

from ivpkit.algorithms.integrators.base import _AdaptiveStepsizeIntegrator
from ivpkit.algorithms.integrators.interpolation import \
    _CenteredPolynomialInterpolator
from ivpkit.algorithms.integrators.types import State
from ivpkit.algorithms.utils.config import FASTMATH
from ivpkit.algorithms.utils.exceptions import StepSizeUnderflowError
from ivpkit.utils.log_config import logger


@numba.njit(cache=False, fastmath=FASTMATH)
def _extrapolation_row_jit_kernel(values, sequence, k):
    """Return the row ``T[k, 0..k]`` of the Aitken-Neville table of ``values[0..k]``."""
    n = values.shape[1]
    table = values[:k + 1].copy()
    row = np.empty((k + 1, n), dtype=np.float64)
    row[0] = values[k]
    for level in range(1, k + 1):
        for j in range(k, level - 1, -1):
            ratio = sequence[j] / sequence[j - level]
            factor = 1.0 / (ratio * ratio - 1.0)
            for i in range(n):
                table[j, i] = table[j, i] + (table[j, i] - table[j - 1, i]) * factor
        row[level] = table[k]
    return row


@numba.njit(cache=False, fastmath=FASTMATH)
def _scaled_rms_jit_kernel(diff, y, y_new, atol, rtol):
    n = atol.size
    acc = 0.0
    for i in range(n):
        scale = atol[i] + rtol[i] * max(abs(y[i]), abs(y_new[i]))
        r = diff[i] / scale
        acc += r * r
    return np.sqrt(acc / n)


@numba.njit(cache=False, fastmath=FASTMATH)
def _central_difference_jit_kernel(f, center, order):
    """Return ``delta^order f[center]`` with ``delta f[i] = f[i + 1] - f[i - 1]``."""
    n = f.shape[1]
    out = np.zeros(n, dtype=np.float64)
    binom = 1.0
    for r in range(order + 1):
        sign = 1.0 if r % 2 == 0 else -1.0
        idx = center + order - 2 * r
        for i in range(n):
            out[i] += sign * binom * f[idx, i]
        binom = binom * (order - r) / (r + 1)
    return out


class _GraggBulirschStoer(_AdaptiveStepsizeIntegrator):
    """Implement the Gragg-Bulirsch-Stoer extrapolation method.

    Parameters
    ----------
    max_order : int, default 18
        Highest order reachable by extrapolation, even and at least 8. The
        midpoint sequence holds ``max_order // 2`` members.
    stability_checks : bool, default True
        Compare the derivative after the first midpoint substep of the two
        lowest sequence members against the initial one, and halve the step
        when it grows too fast.
    interpolation_control : bool, default True
        Reject steps whose dense output error estimate exceeds ten times
        the tolerance.
    **options
        Step size control settings of
        :class:`~ivpkit.algorithms.integrators.base._AdaptiveStepsizeIntegrator`.
        ``safety``, ``min_reduction`` and ``max_growth`` are accepted but the
        step size control relies on its own constants.

    Attributes
    ----------
    last_order : int
        Order of the last accepted step, 0 before the first one.

    Notes
    -----
    A step that extrapolates ``k + 1`` midpoint runs is of order ``2k + 2``
    and its dense output polynomial of degree ``2k + 3``.
    """

    STEP_CONTROL_1 = 0.65
    STEP_CONTROL_2 = 0.94
    STEP_CONTROL_3 = 0.02
    STEP_CONTROL_4 = 4.0
    ORDER_CONTROL_1 = 0.8
    ORDER_CONTROL_2 = 0.9
    STABILITY_REDUCTION = 0.5
    MAX_CHECKED_SUBSTEPS = 1
    MAX_CHECKED_MEMBERS = 2

    def __init__(self, max_order: int = 18, stability_checks: bool = True,
                 interpolation_control: bool = True, **options):
        if max_order < 8 or max_order % 2 != 0:
            raise ValueError(f"max_order must be even and at least 8, got {max_order}")
        super().__init__("_GraggBulirschStoer", **options)
        self._max_order = int(max_order)
        self._stability_checks = bool(stability_checks)
        self._interpolation_control = bool(interpolation_control)
        self._sequence = 4 * np.arange(self._max_order // 2, dtype=np.int64) + 2
        # one extra evaluation for the derivative at the step end
        self._cost_per_step = np.cumsum(self._sequence) + 1
        self.last_order = 0

    @property
    def order(self) -> Optional[int]:
        return None

    @property
    def max_order(self) -> int:
        return self._max_order

    @property
    def sequence(self) -> np.ndarray:
        return self._sequence.copy()

    def _midpoint(self, t0: float, y0: np.ndarray, f0: np.ndarray, h: float, k: int,
                  scale: np.ndarray) -> Optional[Tuple[np.ndarray, np.ndarray, np.ndarray]]:
        """Run the modified midpoint rule with ``sequence[k]`` substeps.

        Returns
        -------
        tuple of numpy.ndarray or None
            Smoothed state at ``t0 + h``, state at the middle of the step and
            the derivatives at all substep points. None when the stability
            check failed.
        """
        n_sub = int(self._sequence[k])
        n = scale.size
        sub = h / n_sub
        check = self._stability_checks and k < self.MAX_CHECKED_MEMBERS

        f = np.empty((n_sub + 1, y0.size), dtype=np.float64)
        f[0] = f0
        z_prev = y0
        z = y0 + sub * f0
        f[1] = self._compute_derivatives(t0 + sub, z)
        y_mid = None
        for j in range(1, n_sub):
            if 2 * j == n_sub:
                y_mid = z.copy()
            t = t0 + h if j + 1 == n_sub else t0 + (j + 1) * sub
            z_prev, z = z, z_prev + 2.0 * sub * f[j]
            f[j + 1] = self._compute_derivatives(t, z)
            if check and j <= self.MAX_CHECKED_SUBSTEPS:
                initial_norm = float(np.sum((f0[:n] / scale) ** 2))
                delta_norm = float(np.sum(((f[j + 1, :n] - f0[:n]) / scale) ** 2))
                if delta_norm > 4.0 * max(1.0e-15, initial_norm):
                    return None
        y_end = 0.5 * (z_prev + z + sub * f[n_sub])
        return y_end, y_mid, f

    def _dense_coefficients(self, h: float, k: int, previous: State, current: State,
                            mids: np.ndarray, derivatives: List[np.ndarray]) -> np.ndarray:
        """Build the dense output polynomial of a step using ``k + 1`` midpoint runs.

        The polynomial in ``s = theta - 1/2`` matches the extrapolated
        scaled derivatives ``h^l y^(l)`` of orders ``0 .. 2k - 1`` at the
        middle of the step, and the values and derivatives at both ends.
        """
        seq = self._sequence
        dim = previous.y.size
        n_mid = 2 * k - 1
        degree = n_mid + 4

        coeffs = np.zeros((degree + 1, dim), dtype=np.float64)
        coeffs[0] = _extrapolation_row_jit_kernel(mids, seq, k)[k]
        for lam in range(1, n_mid + 1):
            first = (lam + 1) // 2 - 1
            values = np.empty((k + 1 - first, dim), dtype=np.float64)
            for j in range(first, k + 1):
                n_sub = int(seq[j])
                diff = _central_difference_jit_kernel(derivatives[j], n_sub // 2, lam - 1)
                values[j - first] = h * diff * (0.5 * n_sub) ** (lam - 1)
            scaled = _extrapolation_row_jit_kernel(values, seq[first:], k - first)[k - first]
            coeffs[lam] = scaled / math.factorial(lam)

        # the four remaining coefficients fit both step ends
        matrix = np.empty((4, 4), dtype=np.float64)
        rhs = np.empty((4, dim), dtype=np.float64)
        for row, (s, state) in enumerate(((-0.5, previous), (0.5, current))):
            powers = s ** np.arange(degree + 1)
            value = powers[:n_mid + 1] @ coeffs[:n_mid + 1]
            slope = (np.arange(1, n_mid + 1) * powers[:n_mid]) @ coeffs[1:n_mid + 1]
            for r in range(4):
                p = n_mid + 1 + r
                matrix[2 * row, r] = powers[p]
                matrix[2 * row + 1, r] = p * powers[p - 1]
            rhs[2 * row] = state.y - value
            rhs[2 * row + 1] = h * state.y_dot - slope
        coeffs[n_mid + 1:] = np.linalg.solve(matrix, rhs)
        return coeffs

    def _cheaper_below(self, target: int, cost_per_time: np.ndarray) -> int:
        if target > 1 and cost_per_time[target - 1] < self.ORDER_CONTROL_1 * cost_per_time[target]:
            return target - 1
        return target

    def _integrate_steps(self, t0, y0, t_final):
        forward = t_final > t0
        atol, rtol = self._tolerances(self._primary_dim)
        n = self._primary_dim
        seq = self._sequence
        cost = self._cost_per_step
        n_seq = seq.size

        step_start = t0
        y = y0.copy()
        y_dot = self._compute_derivatives(t0, y)

        log10_tol = math.log10(max(1.0e-10, float(np.min(rtol))))
        target = max(1, min(n_seq - 2, int(math.floor(0.5 - 0.6 * log10_tol))))
        h = self.initialize_step(forward, 2 * target + 1, t0, y, y_dot, atol, rtol)

        optimal_step = np.full(n_seq, np.inf)
        cost_per_time = np.full(n_seq, np.inf)
        results = np.empty((n_seq, y.size), dtype=np.float64)
        mids = np.empty((n_seq, y.size), dtype=np.float64)
        derivatives: List[np.ndarray] = [None] * n_seq

        previous_rejected = False
        first_time = True
        self.last_order = 0
        self._is_last_step = False
        while not self._is_last_step:
            self._step_start = step_start
            t_new = step_start + h
            reaches_end = (forward and t_new >= t_final) or (not forward and t_new <= t_final)
            if reaches_end:
                h = t_final - step_start
                t_new = t_final
            self._step_size = h
            scale = atol + rtol * np.abs(y[:n])

            reject = False
            max_error = np.inf
            h_new = abs(h)
            k = -1
            row = None
            while True:
                k += 1
                attempt = self._midpoint(step_start, y, y_dot, h, k, scale)
                if attempt is None:
                    logger.debug("%s: midpoint run %d unstable at t=%.6e", self, k, step_start)
                    h_new = abs(self.filter_step(h * self.STABILITY_REDUCTION, forward, False))
                    reject = True
                    break
                results[k], mids[k], derivatives[k] = attempt
                if k == 0:
                    continue

                row = _extrapolation_row_jit_kernel(results, seq, k)
                error = _scaled_rms_jit_kernel(row[k] - row[k - 1], y, row[k], atol, rtol)
                if not np.isfinite(error) or error > 1.0e15 or (k > 1 and error > max_error):
                    h_new = abs(self.filter_step(h * self.STABILITY_REDUCTION, forward, False))
                    reject = True
                    break
                max_error = max(4.0 * error, 1.0)

                exponent = 1.0 / (2 * k + 1)
                limit = self.STEP_CONTROL_3 ** exponent
                if error == 0.0:
                    fac = 1.0 / limit
                else:
                    fac = self.STEP_CONTROL_2 / (error / self.STEP_CONTROL_1) ** exponent
                    fac = max(limit / self.STEP_CONTROL_4, min(1.0 / limit, fac))
                optimal_step[k] = abs(self.filter_step(h * fac, forward, True))
                cost_per_time[k] = cost[k] / optimal_step[k]

                offset = k - target
                if offset == -1:
                    if target > 1 and not previous_rejected:
                        if error <= 1.0:
                            break
                        ratio = float(seq[target] * seq[target + 1]) / float(seq[0] * seq[0])
                        if error > ratio * ratio:
                            # convergence is not expected at the target order
                            reject = True
                            target = self._cheaper_below(k, cost_per_time)
                            h_new = optimal_step[target]
                            break
                elif offset == 0:
                    if error <= 1.0:
                        break
                    ratio = float(seq[k + 1]) / float(seq[0])
                    if error > ratio * ratio:
                        reject = True
                        target = self._cheaper_below(target, cost_per_time)
                        h_new = optimal_step[target]
                        break
                elif offset == 1:
                    if error > 1.0:
                        reject = True
                        target = self._cheaper_below(target, cost_per_time)
                        h_new = optimal_step[target]
                    break
                elif (first_time or reaches_end) and error <= 1.0:
                    break

            coeffs = None
            if not reject:
                y_new = row[k]
                y_dot_new = self._compute_derivatives(t_new, y_new)
                previous = State(step_start, y, y_dot)
                current = State(t_new, y_new, y_dot_new)
                coeffs = self._dense_coefficients(h, k, previous, current, mids, derivatives)
                if self._interpolation_control:
                    top = coeffs[-1] * 0.5 ** (coeffs.shape[0] - 1)
                    error_int = _scaled_rms_jit_kernel(top, y, y_new, atol, rtol)
                    if error_int > 10.0:
                        logger.debug("%s: dense output error %.3e at t=%.6e", self, error_int,
                                     step_start)
                        reject = True
                        h_new = abs(h) * max(0.2, error_int ** (-1.0 / (coeffs.shape[0] + 3)))

            if reject:
                if abs(h) <= self._min_step:
                    raise StepSizeUnderflowError(
                        f"Step rejected at the minimal step {self._min_step:.3e} at t={step_start:.16e}"
                    )
                previous_rejected = True
                h_new = abs(self.filter_step(h_new if forward else -h_new, forward, True))
                h = h_new if forward else -h_new
                continue

            self.last_order = 2 * k + 2
            interpolator = _CenteredPolynomialInterpolator(previous, current, forward, coeffs)
            step_start, y, y_dot = self._accept_step(interpolator, y_new, y_dot_new, t_final)

            # order and step size for the next step
            if k == 1:
                optimal_iter = 1 if previous_rejected else 2
            elif k <= target:
                optimal_iter = k
                if cost_per_time[k - 1] < self.ORDER_CONTROL_1 * cost_per_time[k]:
                    optimal_iter = k - 1
                elif cost_per_time[k] < self.ORDER_CONTROL_2 * cost_per_time[k - 1]:
                    optimal_iter = min(k + 1, n_seq - 2)
            else:
                optimal_iter = k - 1
                if k > 2 and cost_per_time[k - 2] < self.ORDER_CONTROL_1 * cost_per_time[k - 1]:
                    optimal_iter = k - 2
                if cost_per_time[k] < self.ORDER_CONTROL_2 * cost_per_time[optimal_iter]:
                    optimal_iter = min(k, n_seq - 2)

            if previous_rejected:
                # neither the order nor the step grow right after a rejection
                target = min(optimal_iter, k)
                h_new = min(abs(h), optimal_step[target])
            else:
                if optimal_iter <= k:
                    h_new = optimal_step[optimal_iter]
                elif k < target and cost_per_time[k] < self.ORDER_CONTROL_2 * cost_per_time[k - 1]:
                    h_new = abs(self.filter_step(
                        optimal_step[k] * cost[optimal_iter + 1] / cost[k], forward, True))
                else:
                    h_new = abs(self.filter_step(
                        optimal_step[k] * cost[optimal_iter] / cost[k], forward, True))
                target = optimal_iter

            previous_rejected = False
            first_time = False
            h = h_new if forward else -h_new

        self._step_start = step_start
        return step_start, y
