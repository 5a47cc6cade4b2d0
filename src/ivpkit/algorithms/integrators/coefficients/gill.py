"""Gill's fourth order method, a variant of RK4 with reduced roundoff."""

import numpy as np

N_STAGES = 4

_SQ2 = np.sqrt(2.0)

C = np.array([0.0, 0.5, 0.5, 1.0], dtype=np.float64)

A = np.array([
    [0.0, 0.0, 0.0, 0.0],
    [0.5, 0.0, 0.0, 0.0],
    [(_SQ2 - 1.0) / 2.0, (2.0 - _SQ2) / 2.0, 0.0, 0.0],
    [0.0, -_SQ2 / 2.0, (2.0 + _SQ2) / 2.0, 0.0],
], dtype=np.float64)

B = np.array([1.0 / 6.0, (2.0 - _SQ2) / 6.0, (2.0 + _SQ2) / 6.0, 1.0 / 6.0], dtype=np.float64)

_G_MINUS = 1.0 - 1.0 / _SQ2
_G_PLUS = 1.0 + 1.0 / _SQ2

P = np.array([
    [1.0, -3.0 / 2.0, 2.0 / 3.0],
    [0.0, _G_MINUS, -2.0 / 3.0 * _G_MINUS],
    [0.0, _G_PLUS, -2.0 / 3.0 * _G_PLUS],
    [0.0, -1.0 / 2.0, 2.0 / 3.0],
    [0.0, 0.0, 0.0],
], dtype=np.float64)
