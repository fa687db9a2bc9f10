"""
magnetization.py - Magnetization vectors for one or many compartments.
======================================================================

Magnetization    : mutable (Mx, My, Mz) in the rotating frame
MagnetizationMC  : ordered, fixed-length tuple of Magnetization, one per
                   compartment.  Index i always refers to compartment i.

Both are overwritten in place by the propagators in core.py, so they are
plain mutable objects rather than numpy arrays.  ``np.asarray(M)`` gives
the dense view ``(3,)`` or ``(3N,)`` whenever numpy is needed.
"""

from __future__ import annotations

import numpy as np
from typing import Iterable, Union

from .exceptions import ConfigurationError


# ===========================================================================
# Single compartment
# ===========================================================================

class Magnetization:
    """Magnetization vector of a single compartment.

    Parameters
    ----------
    x, y, z : float
        Components in the rotating frame (same units as M0).

    Examples
    --------
    >>> M = Magnetization(1.0, 0.0, 0.0)
    >>> (M + Magnetization(0.0, 0.5, 1.0)).to_array()
    array([1. , 0.5, 1. ])
    """

    __slots__ = ("x", "y", "z")

    def __init__(self, x: float = 0.0, y: float = 0.0, z: float = 0.0):
        self.x = float(x)
        self.y = float(y)
        self.z = float(z)

    @classmethod
    def from_array(cls, v) -> "Magnetization":
        v = np.asarray(v, dtype=float)
        if v.shape != (3,):
            raise ConfigurationError(f"expected 3 components, got shape {v.shape}")
        return cls(v[0], v[1], v[2])

    def __repr__(self) -> str:
        return f"Magnetization({self.x!r}, {self.y!r}, {self.z!r})"

    def __len__(self) -> int:
        return 3

    def __iter__(self):
        yield self.x
        yield self.y
        yield self.z

    def __array__(self, dtype=None, copy=None):
        return self.to_array() if dtype is None else self.to_array().astype(dtype)

    def to_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z])

    def __add__(self, other: "Magnetization") -> "Magnetization":
        return Magnetization(self.x + other.x, self.y + other.y, self.z + other.z)

    def __sub__(self, other: "Magnetization") -> "Magnetization":
        return Magnetization(self.x - other.x, self.y - other.y, self.z - other.z)

    def __neg__(self) -> "Magnetization":
        return Magnetization(-self.x, -self.y, -self.z)

    def __truediv__(self, a: float) -> "Magnetization":
        return Magnetization(self.x / a, self.y / a, self.z / a)

    def copy(self) -> "Magnetization":
        return Magnetization(self.x, self.y, self.z)

    def copyto(self, dst: "Magnetization") -> None:
        """Overwrite *dst* with this vector."""
        dst.x = self.x
        dst.y = self.y
        dst.z = self.z

    def fill(self, v: float) -> None:
        self.x = self.y = self.z = float(v)

    def signal(self) -> complex:
        """Complex transverse signal Mx + i·My."""
        return complex(self.x, self.y)

    @property
    def N(self) -> int:
        return 1


# ===========================================================================
# Multiple compartments
# ===========================================================================

class MagnetizationMC:
    """Ordered tuple of per-compartment magnetization vectors.

    Parameters
    ----------
    *compartments : Magnetization or 3-sequence
        One entry per compartment; the order is the compartment index.

    Examples
    --------
    >>> M = MagnetizationMC((1, 0.4, 5), (0.2, 10, 0.2))
    >>> M.N
    2
    >>> M[1].y
    10.0
    """

    __slots__ = ("_M",)

    def __init__(self, *compartments: Union[Magnetization, Iterable[float]]):
        if len(compartments) == 0:
            raise ConfigurationError("MagnetizationMC needs at least one compartment")
        self._M = tuple(
            m if isinstance(m, Magnetization) else Magnetization(*m)
            for m in compartments
        )

    @classmethod
    def zeros(cls, N: int) -> "MagnetizationMC":
        return cls(*(Magnetization() for _ in range(N)))

    @classmethod
    def from_array(cls, v) -> "MagnetizationMC":
        v = np.asarray(v, dtype=float)
        if v.ndim != 1 or v.size % 3 != 0 or v.size == 0:
            raise ConfigurationError(f"expected a (3N,) vector, got shape {v.shape}")
        return cls(*(v[3 * i:3 * i + 3] for i in range(v.size // 3)))

    @property
    def N(self) -> int:
        return len(self._M)

    def __getitem__(self, i: int) -> Magnetization:
        return self._M[i]

    def __len__(self) -> int:
        return len(self._M)

    def __iter__(self):
        return iter(self._M)

    def __repr__(self) -> str:
        inner = ", ".join(repr(m) for m in self._M)
        return f"MagnetizationMC({inner})"

    def __array__(self, dtype=None, copy=None):
        return self.to_array() if dtype is None else self.to_array().astype(dtype)

    def to_array(self) -> np.ndarray:
        return np.array([c for m in self._M for c in (m.x, m.y, m.z)])

    def _check(self, other: "MagnetizationMC") -> None:
        if other.N != self.N:
            raise ConfigurationError(
                f"compartment count mismatch: {self.N} vs {other.N}")

    def __add__(self, other: "MagnetizationMC") -> "MagnetizationMC":
        self._check(other)
        return MagnetizationMC(*(a + b for a, b in zip(self._M, other._M)))

    def __sub__(self, other: "MagnetizationMC") -> "MagnetizationMC":
        self._check(other)
        return MagnetizationMC(*(a - b for a, b in zip(self._M, other._M)))

    def __neg__(self) -> "MagnetizationMC":
        return MagnetizationMC(*(-a for a in self._M))

    def __truediv__(self, a: float) -> "MagnetizationMC":
        return MagnetizationMC(*(m / a for m in self._M))

    def copy(self) -> "MagnetizationMC":
        return MagnetizationMC(*(m.copy() for m in self._M))

    def copyto(self, dst: "MagnetizationMC") -> None:
        self._check(dst)
        for src, d in zip(self._M, dst._M):
            src.copyto(d)

    def fill(self, v: float) -> None:
        for m in self._M:
            m.fill(v)

    def signal(self) -> complex:
        """Complex transverse signal summed over compartments."""
        return complex(sum(m.x for m in self._M), sum(m.y for m in self._M))


# ---------------------------------------------------------------------------
# In-place addition
# ---------------------------------------------------------------------------

def add(M1, M2) -> None:
    """M1 += M2.

    *M2* may be a magnetization of the same kind or any array-like of
    matching length (3 or 3N).
    """
    if isinstance(M1, Magnetization):
        if isinstance(M2, Magnetization):
            M1.x += M2.x
            M1.y += M2.y
            M1.z += M2.z
        else:
            M1.x += M2[0]
            M1.y += M2[1]
            M1.z += M2[2]
        return
    if isinstance(M2, MagnetizationMC):
        M1._check(M2)
        for a, b in zip(M1, M2):
            add(a, b)
        return
    v = np.asarray(M2, dtype=float)
    if v.shape != (3 * M1.N,):
        raise ConfigurationError(f"expected shape ({3 * M1.N},), got {v.shape}")
    for i, m in enumerate(M1):
        add(m, v[3 * i:3 * i + 3])
