# Global flag for Numba's fastmath option
FASTMATH = False

# Default absolute and relative tolerance of the adaptive integrators
TOL = 1e-12

# Event detection defaults
EVENT_TOL = 1e-12
EVENT_MAX_ITER = 100
EVENT_MAX_CHECK_INTERVAL = 1.0

# Derivative evaluation budget (None means unbounded)
MAX_EVALUATIONS = None
