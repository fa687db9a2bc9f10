"""
constants.py - Physical constants and numeric defaults.
=======================================================

Units used throughout the package:
  time        ms
  frequency   Hz  (converted to rad/ms internally)
  gradient    G/cm
  position    cm
  angles      rad
"""

import numpy as np

# Gyromagnetic ratio of 1H
GAMBAR = 4258                 # Hz/G
GAMMA = 2 * np.pi * GAMBAR    # rad/s/G

# |z·t| below which (1 - exp(-z t)) / z is evaluated by its Taylor series
SERIES_CUTOFF = 1e-4

# (I - A) with a larger condition number is treated as singular
STEADY_STATE_MAX_COND = 1.0 / np.finfo(float).eps
