"""Example script: a ball dropped from 10 m that loses 20 % of its speed at
every bounce, integrated with an adaptive Dormand-Prince 8(5,3) scheme and
sampled on a regular grid, then compared with an Adams-Moulton run.

Run with
    python examples/bouncing_ball.py
"""

import os
import sys

sys.path.append(os.path.join(os.path.dirname(__file__), "..", "src"))

import numpy as np

from ivpkit import (Action, Adams, AdaptiveRK, EventHandler, StepNormalizer,
                    create_rhs_system)
from ivpkit.utils.log_config import logger

_GRAVITY = 9.81
_RESTITUTION = 0.8


class _Bounce(EventHandler):

    def __init__(self):
        self.times = []

    def g(self, t, y):
        return y[0]

    def event_occurred(self, t, y, increasing):
        self.times.append(t)
        return Action.RESET_STATE

    def reset_state(self, t, y):
        return np.array([0.0, -_RESTITUTION * y[1]])


def _free_fall(t, y):
    return np.array([y[1], -_GRAVITY])


def main() -> None:
    system = create_rhs_system(_free_fall, dim=2, name="bouncing ball")
    y0 = np.array([10.0, 0.0])

    # Analytic first impact at sqrt(2 h / g)
    logger.info("Expected first impact at t = %.12f", np.sqrt(2.0 * 10.0 / _GRAVITY))

    for integrator in (AdaptiveRK(order=8, rtol=1e-10, atol=1e-10),
                       Adams(kind="moulton", n_steps=5, rtol=1e-10, atol=1e-10)):
        bounce = _Bounce()
        samples = []
        integrator.add_event_handler(bounce, max_check_interval=0.1, direction=-1)
        integrator.add_step_handler(
            StepNormalizer(1.0, lambda t, y, y_dot, is_last: samples.append((t, y[0]))))

        sol = integrator.integrate(system, 0.0, y0, 8.0)

        logger.info("%s: %d bounces, %d evaluations", integrator, len(bounce.times), integrator.evaluations)
        logger.info("Bounce times: %s", np.round(bounce.times, 9))
        for t, height in samples:
            logger.info("  t = %4.1f  height = %9.6f", t, height)
        logger.info("Final state: %s", sol.y_final)


if __name__ == "__main__":
    main()
