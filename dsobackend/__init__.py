"""Hessian and Schur complement accumulators, residual structures, stereo projections and pixel selection for a direct sparse odometry back-end."""

__version__ = "0.1.0"