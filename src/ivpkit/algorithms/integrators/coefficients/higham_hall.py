"""Higham-Hall 5(4) coefficients (Higham and Hall 1990, BIT 30).

The pair is FSAL like Dormand-Prince 5(4) but has better stability along
the step size control boundary.
"""

import numpy as np

N_STAGES = 6

C = np.array([0.0, 2.0 / 9.0, 1.0 / 3.0, 1.0 / 2.0, 3.0 / 5.0, 1.0], dtype=np.float64)

A = np.array([
    [0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    [2.0 / 9.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    [1.0 / 12.0, 1.0 / 4.0, 0.0, 0.0, 0.0, 0.0],
    [1.0 / 8.0, 0.0, 3.0 / 8.0, 0.0, 0.0, 0.0],
    [91.0 / 500.0, -27.0 / 100.0, 78.0 / 125.0, 8.0 / 125.0, 0.0, 0.0],
    [-11.0 / 20.0, 27.0 / 20.0, 12.0 / 5.0, -36.0 / 5.0, 5.0, 0.0],
], dtype=np.float64)

B = np.array([1.0 / 12.0, 0.0, 27.0 / 32.0, -4.0 / 3.0, 125.0 / 96.0, 5.0 / 48.0],
             dtype=np.float64)

E = np.array([-1.0 / 20.0, 0.0, 81.0 / 160.0, -6.0 / 5.0, 25.0 / 32.0, 1.0 / 16.0, -1.0 / 10.0],
             dtype=np.float64)

P = np.array([
    [1.0, -15.0 / 4.0, 16.0 / 3.0, -5.0 / 2.0],
    [0.0, 0.0, 0.0, 0.0],
    [0.0, 459.0 / 32.0, -243.0 / 8.0, 135.0 / 8.0],
    [0.0, -22.0, 152.0 / 3.0, -30.0],
    [0.0, 375.0 / 32.0, -625.0 / 24.0, 125.0 / 8.0],
    [0.0, -5.0 / 16.0, 5.0 / 12.0, 0.0],
    [0.0, 0.0, 0.0, 0.0],
], dtype=np.float64)
