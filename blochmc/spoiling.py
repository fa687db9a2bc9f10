"""
spoiling.py - Descriptions of transverse-magnetization spoiling.
================================================================

  IdealSpoiling          : transverse magnetization set to zero
  GradientSpoiling       : a spoiler gradient played for a fixed duration;
                           the spin precesses (and relaxes) under it
  RFSpoiling             : quadratic RF phase cycling, acts only through the
                           phase of the next excitation
  RFandGradientSpoiling  : both of the above

The RF phase schedule for an increment Δθ is

    φ_0 = 0,   φ_k = φ_{k-1} + k Δθ

with Δθ = 117° the usual choice.
"""

from __future__ import annotations

import numpy as np
from typing import Union

from .blochmatrix import IDEAL_SPOILING
from .core import apply_dynamics, free_precession
from .exceptions import ConfigurationError
from .magnetization import Magnetization, MagnetizationMC
from .spin import Gradient, Spin, as_gradient


# ===========================================================================
# Spoiling descriptions
# ===========================================================================

class IdealSpoiling:
    """Perfect spoiling: zero transverse magnetization."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "IdealSpoiling()"


IDEAL = IdealSpoiling()


class GradientSpoiling:
    """Spoiler gradient *gradient* (G/cm) played for *duration* ms.

    Examples
    --------
    >>> GradientSpoiling((0, 1, 0), 1.0)
    GradientSpoiling(Gradient(0.0, 1.0, 0.0), 1.0)
    """

    __slots__ = ("gradient", "duration")

    def __init__(self, gradient: Union[Gradient, tuple], duration: float):
        if duration < 0:
            raise ConfigurationError(f"spoiler duration must be non-negative, got {duration}")
        self.gradient = as_gradient(gradient)
        self.duration = float(duration)

    def __repr__(self) -> str:
        return f"GradientSpoiling({self.gradient!r}, {self.duration!r})"


class RFSpoiling:
    """Quadratic RF phase cycling with phase increment *increment* (rad)."""

    __slots__ = ("increment",)

    def __init__(self, increment: float = np.deg2rad(117)):
        self.increment = float(increment)

    def __repr__(self) -> str:
        return f"RFSpoiling({self.increment!r})"


class RFandGradientSpoiling:
    """Gradient spoiling after every TR plus RF phase cycling.

    The two parts may be given in either order.
    """

    __slots__ = ("gradient_spoiling", "rf_spoiling")

    def __init__(self, first, second=None):
        if second is None:
            second = RFSpoiling()
        if isinstance(first, RFSpoiling):
            first, second = second, first
        if not isinstance(first, GradientSpoiling) or not isinstance(second, RFSpoiling):
            raise ConfigurationError(
                "RFandGradientSpoiling needs a GradientSpoiling and an RFSpoiling")
        self.gradient_spoiling = first
        self.rf_spoiling = second

    def __repr__(self) -> str:
        return f"RFandGradientSpoiling({self.gradient_spoiling!r}, {self.rf_spoiling!r})"


def spoiler_gradient(spoiling: GradientSpoiling | RFandGradientSpoiling) -> Gradient:
    if isinstance(spoiling, RFandGradientSpoiling):
        spoiling = spoiling.gradient_spoiling
    return spoiling.gradient


def rfspoiling_increment(spoiling) -> float:
    """Phase increment Δθ (rad); 0 when no RF spoiling is applied."""
    if isinstance(spoiling, RFSpoiling):
        return spoiling.increment
    if isinstance(spoiling, RFandGradientSpoiling):
        return spoiling.rf_spoiling.increment
    return 0.0


def rf_spoiling_phases(increment: float, n: int) -> np.ndarray:
    """Excitation phases φ_0 ... φ_{n-1} of the quadratic schedule.

    Examples
    --------
    >>> rf_spoiling_phases(1.0, 4)
    array([0., 1., 3., 6.])
    """
    return np.cumsum(np.arange(n) * increment)


# ===========================================================================
# Spoiling as an affine pair
# ===========================================================================

def spoil(spin, spoiling=IDEAL, workspace=None):
    """(A, B) that spoils the transverse magnetization of *spin*.

    Returns
    -------
    IdealSpoiling          : (IDEAL_SPOILING, zero offset)
    GradientSpoiling       : free precession under the spoiler gradient
    RFandGradientSpoiling  : same as GradientSpoiling
    RFSpoiling             : (None, None); RF spoiling only changes the
                             phase of the next excitation
    """
    if isinstance(spoiling, IdealSpoiling):
        B = Magnetization() if isinstance(spin, Spin) else MagnetizationMC.zeros(spin.N)
        return IDEAL_SPOILING, B
    if isinstance(spoiling, (GradientSpoiling, RFandGradientSpoiling)):
        g = spoiling if isinstance(spoiling, GradientSpoiling) else spoiling.gradient_spoiling
        return free_precession(spin, g.duration, g.gradient, workspace=workspace)
    if isinstance(spoiling, RFSpoiling):
        return None, None
    raise TypeError(f"unknown spoiling description {spoiling!r}")


def apply_spoiling(spin, spoiling=IDEAL, workspace=None) -> None:
    """Spoil spin.M in place."""
    A, B = spoil(spin, spoiling, workspace)
    apply_dynamics(spin, A, B)
