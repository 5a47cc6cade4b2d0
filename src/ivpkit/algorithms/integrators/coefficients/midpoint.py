import numpy as np

N_STAGES = 2

C = np.array([0.0, 0.5], dtype=np.float64)

A = np.array([
    [0.0, 0.0],
    [0.5, 0.0],
], dtype=np.float64)

B = np.array([0.0, 1.0], dtype=np.float64)

P = np.array([
    [1.0, -1.0],
    [0.0, 1.0],
    [0.0, 0.0],
], dtype=np.float64)
