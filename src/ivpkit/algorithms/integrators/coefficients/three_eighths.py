"""Kutta's 3/8-rule, fourth order."""

import numpy as np

N_STAGES = 4

C = np.array([0.0, 1.0 / 3.0, 2.0 / 3.0, 1.0], dtype=np.float64)

A = np.array([
    [0.0, 0.0, 0.0, 0.0],
    [1.0 / 3.0, 0.0, 0.0, 0.0],
    [-1.0 / 3.0, 1.0, 0.0, 0.0],
    [1.0, -1.0, 1.0, 0.0],
], dtype=np.float64)

B = np.array([1.0 / 8.0, 3.0 / 8.0, 3.0 / 8.0, 1.0 / 8.0], dtype=np.float64)

# Third order continuous extension, the last row applies to f(t + h, y_new).
P = np.array([
    [1.0, -15.0 / 8.0, 1.0],
    [0.0, 15.0 / 8.0, -3.0 / 2.0],
    [0.0, 3.0 / 8.0, 0.0],
    [0.0, -3.0 / 8.0, 1.0 / 2.0],
    [0.0, 0.0, 0.0],
], dtype=np.float64)
