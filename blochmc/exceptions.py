"""
exceptions.py - Error types raised by blochmc.
==============================================

ConfigurationError  : malformed input detected at construction / first use
SingularSystemError : (I - A) cannot be inverted in a steady-state solve
"""

import numpy as np


class ConfigurationError(ValueError):
    """Invalid spin, exchange or sequence configuration."""


class SingularSystemError(np.linalg.LinAlgError):
    """Steady-state system (I - A) is singular to working precision."""
