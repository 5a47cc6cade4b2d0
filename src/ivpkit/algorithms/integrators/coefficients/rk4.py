import numpy as np

N_STAGES = 4

C = np.array([0.0, 0.5, 0.5, 1.0], dtype=np.float64)

A = np.array([
    [0.0, 0.0, 0.0, 0.0],
    [0.5, 0.0, 0.0, 0.0],
    [0.0, 0.5, 0.0, 0.0],
    [0.0, 0.0, 1.0, 0.0],
], dtype=np.float64)

B = np.array([1.0 / 6.0, 1.0 / 3.0, 1.0 / 3.0, 1.0 / 6.0], dtype=np.float64)

# Third order continuous extension, the last row applies to f(t + h, y_new).
P = np.array([
    [1.0, -3.0 / 2.0, 2.0 / 3.0],
    [0.0, 1.0, -2.0 / 3.0],
    [0.0, 1.0, -2.0 / 3.0],
    [0.0, -1.0 / 2.0, 2.0 / 3.0],
    [0.0, 0.0, 0.0],
], dtype=np.float64)
