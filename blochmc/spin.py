"""
spin.py - Spin parameters for one or many exchanging compartments.
==================================================================

Spin    : single compartment, tissue parameters M0, T1, T2, Δf
SpinMC  : N compartments with fractions, per-compartment T1, T2, Δf and an
          N x N exchange-rate table

Exchange convention:
    r[i][j]    rate (1/ms) at which magnetization moves from compartment j
               into compartment i.  The diagonal is zero.
    r_out(i) = sum_k r[k][i]   total rate out of compartment i, which is
               added to that compartment's R1 and R2.

Position and Gradient are small cartesian triples; a spin at position r
under gradient G sees an extra off-resonance of GAMBAR * (G · r) Hz.
"""

from __future__ import annotations

import numpy as np
from typing import Optional, Sequence, Union

from .constants import GAMBAR
from .exceptions import ConfigurationError
from .magnetization import Magnetization, MagnetizationMC


# ===========================================================================
# Position / gradient
# ===========================================================================

class Position:
    """Spatial position (cm)."""

    __slots__ = ("x", "y", "z")

    def __init__(self, x: float = 0.0, y: float = 0.0, z: float = 0.0):
        self.x = float(x)
        self.y = float(y)
        self.z = float(z)

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def __repr__(self) -> str:
        return f"Position({self.x!r}, {self.y!r}, {self.z!r})"

    def __str__(self) -> str:
        return f"Position(x = {self.x} cm, y = {self.y} cm, z = {self.z} cm)"


class Gradient:
    """Magnetic field gradient (G/cm)."""

    __slots__ = ("x", "y", "z")

    def __init__(self, x: float = 0.0, y: float = 0.0, z: float = 0.0):
        self.x = float(x)
        self.y = float(y)
        self.z = float(z)

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def __repr__(self) -> str:
        return f"Gradient({self.x!r}, {self.y!r}, {self.z!r})"

    def __str__(self) -> str:
        return f"Gradient(x = {self.x} G/cm, y = {self.y} G/cm, z = {self.z} G/cm)"


def as_gradient(grad) -> Gradient:
    """Accept a Gradient or any 3-sequence."""
    if isinstance(grad, Gradient):
        return grad
    g = np.asarray(grad, dtype=float)
    if g.shape != (3,):
        raise ConfigurationError(f"a gradient needs 3 components, got shape {g.shape}")
    return Gradient(*g)


def gradient_frequency(grad: Gradient, pos: Position) -> float:
    """Off-resonance frequency (Hz) caused by *grad* at *pos*.

    Examples
    --------
    >>> gradient_frequency(Gradient(0, 0, 1), Position(0, 0, 0.5))
    2129.0
    """
    grad = as_gradient(grad)
    return GAMBAR * (grad.x * pos.x + grad.y * pos.y + grad.z * pos.z)


def _check_relaxation(T1: float, T2: float) -> None:
    if not (T1 > 0) or not (T2 > 0):
        raise ConfigurationError(
            f"relaxation times must be positive (inf allowed), got T1={T1}, T2={T2}")


# ===========================================================================
# Single compartment
# ===========================================================================

class Spin:
    """Single-compartment spin.

    Parameters
    ----------
    M0  : float   equilibrium magnetization
    T1  : float   longitudinal relaxation time (ms), may be ``np.inf``
    T2  : float   transverse relaxation time (ms), may be ``np.inf``
    df  : float   off-resonance frequency (Hz)
    M   : Magnetization or 3-sequence, optional
          initial magnetization, default ``(0, 0, M0)``
    pos : Position, optional
          default the origin

    Examples
    --------
    >>> spin = Spin(1.0, 1000.0, 100.0, 3.75)
    >>> spin.M
    Magnetization(0.0, 0.0, 1.0)
    """

    def __init__(
        self,
        M0: float,
        T1: float,
        T2: float,
        df: float = 0.0,
        M: Optional[Union[Magnetization, Sequence[float]]] = None,
        pos: Optional[Position] = None,
    ):
        _check_relaxation(T1, T2)
        self.M0 = float(M0)
        self.T1 = float(T1)
        self.T2 = float(T2)
        self.df = float(df)
        if M is None:
            M = Magnetization(0.0, 0.0, self.M0)
        elif not isinstance(M, Magnetization):
            M = Magnetization.from_array(M)
        self.M = M
        self.pos = Position() if pos is None else pos

    @property
    def N(self) -> int:
        return 1

    @property
    def Meq(self) -> Magnetization:
        return Magnetization(0.0, 0.0, self.M0)

    def signal(self) -> complex:
        return self.M.signal()

    def __repr__(self) -> str:
        return (f"Spin(M0={self.M0}, T1={self.T1}, T2={self.T2}, df={self.df}, "
                f"M={self.M!r}, pos={self.pos!r})")


# ===========================================================================
# Multiple compartments
# ===========================================================================

def _per_compartment(name: str, values, N: int) -> tuple:
    values = np.atleast_1d(np.asarray(values, dtype=float))
    if values.size == 1:
        values = np.repeat(values, N)
    if values.shape != (N,):
        raise ConfigurationError(
            f"{name} must have one value per compartment ({N}), got shape {values.shape}")
    return tuple(float(v) for v in values)


class SpinMC:
    """Multi-compartment spin for Bloch-McConnell simulation.

    Parameters
    ----------
    M0   : float              total equilibrium magnetization
    frac : sequence, len N    fraction of M0 in each compartment, sums to 1
    T1   : sequence, len N    longitudinal relaxation times (ms)
    T2   : sequence, len N    transverse relaxation times (ms)
    df   : float or sequence  off-resonance per compartment (Hz)
    r    : (N, N) array-like  exchange rates (1/ms), r[i][j] from j into i
    M    : MagnetizationMC or (3N,) array-like, optional
           default each compartment at ``(0, 0, frac[i] * M0)``
    pos  : Position, optional

    Raises
    ------
    ConfigurationError
        Mismatched lengths, non-square rate table, negative rates, nonzero
        diagonal, fractions that do not sum to one or invalid T1/T2.

    Examples
    --------
    >>> spin = SpinMC(1.0, [0.15, 0.85], [400, 1000], [20, 100], [15, 0],
    ...               [[0, 1 / 400], [1 / 20, 0]])
    >>> spin.N
    2
    >>> round(spin.r_out(0), 4)
    0.05
    """

    def __init__(
        self,
        M0: float,
        frac: Sequence[float],
        T1: Sequence[float],
        T2: Sequence[float],
        df,
        r,
        M=None,
        pos: Optional[Position] = None,
    ):
        frac = np.atleast_1d(np.asarray(frac, dtype=float))
        N = frac.size
        if N < 1:
            raise ConfigurationError("SpinMC needs at least one compartment")
        if np.any(frac < 0) or not np.isclose(frac.sum(), 1.0):
            raise ConfigurationError(
                f"compartment fractions must be non-negative and sum to 1, got {frac.tolist()}")
        self.M0 = float(M0)
        self.frac = tuple(float(f) for f in frac)
        self.T1 = _per_compartment("T1", T1, N)
        self.T2 = _per_compartment("T2", T2, N)
        self.df = _per_compartment("df", df, N)
        for T1i, T2i in zip(self.T1, self.T2):
            _check_relaxation(T1i, T2i)

        r = np.asarray(r, dtype=float)
        if r.shape != (N, N):
            raise ConfigurationError(
                f"exchange rates must be defined for each pair of compartments: "
                f"expected an {N}x{N} table, got shape {r.shape}")
        if np.any(r < 0):
            raise ConfigurationError("exchange rates must be non-negative")
        if np.any(np.diag(r) != 0):
            raise ConfigurationError("a compartment cannot exchange with itself (nonzero diagonal)")
        self.r = tuple(tuple(float(v) for v in row) for row in r)
        self._r_out = tuple(float(v) for v in r.sum(axis=0))

        if M is None:
            M = self.Meq
        elif not isinstance(M, MagnetizationMC):
            M = MagnetizationMC.from_array(M)
        if M.N != N:
            raise ConfigurationError(f"initial magnetization has {M.N} compartments, expected {N}")
        self.M = M
        self.pos = Position() if pos is None else pos

    @classmethod
    def from_residence_times(cls, M0, frac, T1, T2, df, tau, M=None, pos=None) -> "SpinMC":
        """Build a spin from residence times instead of rates.

        ``tau[i][j]`` is the residence time (ms) governing exchange from
        compartment j into i; ``np.inf`` means no exchange.  The diagonal is
        ignored.
        """
        tau = np.asarray(tau, dtype=float)
        if tau.ndim != 2 or tau.shape[0] != tau.shape[1]:
            raise ConfigurationError(f"residence times must be a square table, got shape {tau.shape}")
        if np.any(tau <= 0):
            raise ConfigurationError("residence times must be positive")
        with np.errstate(divide="ignore"):
            r = 1.0 / tau
        np.fill_diagonal(r, 0.0)
        return cls(M0, frac, T1, T2, df, r, M=M, pos=pos)

    @property
    def N(self) -> int:
        return len(self.frac)

    @property
    def Meq(self) -> MagnetizationMC:
        return MagnetizationMC(*((0.0, 0.0, f * self.M0) for f in self.frac))

    def r_out(self, i: int) -> float:
        return self._r_out[i]

    def signal(self) -> complex:
        return self.M.signal()

    def __repr__(self) -> str:
        return (f"SpinMC(M0={self.M0}, frac={self.frac}, T1={self.T1}, T2={self.T2}, "
                f"df={self.df}, r={self.r}, M={self.M!r}, pos={self.pos!r})")
