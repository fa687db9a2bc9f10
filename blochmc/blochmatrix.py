"""
blochmatrix.py - Structured 3x3 and 3Nx3N matrices for Bloch dynamics.
======================================================================

Block types (one compartment):
  BlochMatrix            : dense 3x3 block, entries a11 ... a33
  BlochDynamicsMatrix    : generator block  [[-R2,  Δω,   0],
                                             [-Δω, -R2,   0],
                                             [  0,   0, -R1]]
  ExchangeDynamicsMatrix : generator block  r·I  (isotropic exchange)
  FreePrecessionMatrix   : propagator block [[ E2cosθ, E2sinθ,  0],
                                             [-E2sinθ, E2cosθ,  0],
                                             [      0,      0, E1]]
  ExcitationMatrix       : a BlochMatrix applied identically to every
                           compartment
  IdealSpoilingMatrix    : diag(0, 0, 1) in every compartment

System types (N compartments):
  BlochMcConnellDynamicsMatrix : N dynamics blocks on the diagonal and
                                 N(N-1) exchange blocks off the diagonal
  BlochMcConnellMatrix         : N x N dense BlochMatrix blocks

All arithmetic goes through a small set of module functions (``mul``,
``muladd``, ``compose`` ...) that look up a closed-form kernel by the
operand types.  Each kernel only touches the entries its operands can have,
so nothing is ever materialized as a generic dense matrix unless asked for
with ``to_array()``.
"""

from __future__ import annotations

import numpy as np
from typing import Sequence, Tuple

from .exceptions import ConfigurationError
from .magnetization import Magnetization, MagnetizationMC, add as _add_magnetization


# ===========================================================================
# Block types
# ===========================================================================

class _BlochAlgebra:
    """``@`` operator and numpy interop shared by every matrix type."""

    __slots__ = ()

    def __matmul__(self, other):
        return compose(self, other)

    def __rmatmul__(self, other):
        return compose(other, self)

    def __array__(self, dtype=None, copy=None):
        return self.to_array() if dtype is None else self.to_array().astype(dtype)


class BlochMatrix(_BlochAlgebra):
    """Dense 3x3 block.

    The constructor takes the entries in column-major order, which is also
    the order of the tuples produced by the product kernels below.
    """

    __slots__ = ("a11", "a21", "a31", "a12", "a22", "a32", "a13", "a23", "a33")

    def __init__(self, a11=0.0, a21=0.0, a31=0.0, a12=0.0, a22=0.0, a32=0.0,
                 a13=0.0, a23=0.0, a33=0.0):
        self._assign((a11, a21, a31, a12, a22, a32, a13, a23, a33))

    @classmethod
    def identity(cls) -> "BlochMatrix":
        return cls(1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0)

    @classmethod
    def from_array(cls, m) -> "BlochMatrix":
        m = np.asarray(m, dtype=float)
        if m.shape != (3, 3):
            raise ConfigurationError(f"expected a 3x3 matrix, got shape {m.shape}")
        return cls(*m.T.ravel())

    def _assign(self, a) -> None:
        (self.a11, self.a21, self.a31,
         self.a12, self.a22, self.a32,
         self.a13, self.a23, self.a33) = (float(v) for v in a)

    def _accumulate(self, a) -> None:
        self.a11 += a[0]
        self.a21 += a[1]
        self.a31 += a[2]
        self.a12 += a[3]
        self.a22 += a[4]
        self.a32 += a[5]
        self.a13 += a[6]
        self.a23 += a[7]
        self.a33 += a[8]

    def entries(self) -> Tuple[float, ...]:
        return (self.a11, self.a21, self.a31, self.a12, self.a22, self.a32,
                self.a13, self.a23, self.a33)

    def fill(self, v: float) -> None:
        self._assign((v,) * 9)

    def copyto(self, dst: "BlochMatrix") -> None:
        dst._assign(self.entries())

    def copy(self) -> "BlochMatrix":
        return BlochMatrix(*self.entries())

    def to_array(self) -> np.ndarray:
        return np.array(self.entries()).reshape(3, 3).T

    def __repr__(self) -> str:
        return "BlochMatrix(" + ", ".join(repr(v) for v in self.entries()) + ")"


class BlochDynamicsMatrix(_BlochAlgebra):
    """Relaxation / precession generator of one compartment.

    Parameters
    ----------
    R1, R2 : float   longitudinal / transverse decay rates (1/ms), >= 0
    dw     : float   off-resonance angular frequency Δω (rad/ms)
    """

    __slots__ = ("R1", "R2", "dw")

    def __init__(self, R1: float = 0.0, R2: float = 0.0, dw: float = 0.0):
        if R1 < 0 or R2 < 0:
            raise ConfigurationError(f"decay rates must be non-negative, got R1={R1}, R2={R2}")
        self.R1 = float(R1)
        self.R2 = float(R2)
        self.dw = float(dw)

    def scale(self, t: float) -> None:
        self.R1 *= t
        self.R2 *= t
        self.dw *= t

    def absolutesum(self) -> float:
        return 2 * abs(self.R2) + 2 * abs(self.dw) + abs(self.R1)

    def to_array(self) -> np.ndarray:
        return np.array([[-self.R2, self.dw, 0.0],
                         [-self.dw, -self.R2, 0.0],
                         [0.0, 0.0, -self.R1]])

    def __repr__(self) -> str:
        return f"BlochDynamicsMatrix(R1={self.R1!r}, R2={self.R2!r}, dw={self.dw!r})"


class ExchangeDynamicsMatrix(_BlochAlgebra):
    """Exchange generator block ``r·I`` for one ordered compartment pair."""

    __slots__ = ("r",)

    def __init__(self, r: float = 0.0):
        if r < 0:
            raise ConfigurationError(f"exchange rate must be non-negative, got {r}")
        self.r = float(r)

    def scale(self, t: float) -> None:
        self.r *= t

    def absolutesum(self) -> float:
        return 3 * abs(self.r)

    def to_array(self) -> np.ndarray:
        return self.r * np.eye(3)

    def __repr__(self) -> str:
        return f"ExchangeDynamicsMatrix({self.r!r})"


class FreePrecessionMatrix(_BlochAlgebra):
    """Propagator of one free-precession interval for a single compartment."""

    __slots__ = ("E1", "E2cos", "E2sin")

    def __init__(self, E1: float = 0.0, E2cos: float = 0.0, E2sin: float = 0.0):
        self.E1 = float(E1)
        self.E2cos = float(E2cos)
        self.E2sin = float(E2sin)

    def entries(self) -> Tuple[float, ...]:
        return (self.E2cos, -self.E2sin, 0.0, self.E2sin, self.E2cos, 0.0,
                0.0, 0.0, self.E1)

    def copy(self) -> "FreePrecessionMatrix":
        return FreePrecessionMatrix(self.E1, self.E2cos, self.E2sin)

    def to_array(self) -> np.ndarray:
        return np.array(self.entries()).reshape(3, 3).T

    def __repr__(self) -> str:
        return f"FreePrecessionMatrix({self.E1!r}, {self.E2cos!r}, {self.E2sin!r})"


class ExcitationMatrix(_BlochAlgebra):
    """Instantaneous rotation shared by all compartments of a spin."""

    __slots__ = ("A",)

    def __init__(self, A: BlochMatrix = None):
        self.A = BlochMatrix() if A is None else A

    def to_array(self, N: int = 1) -> np.ndarray:
        return np.kron(np.eye(N), self.A.to_array())

    def __repr__(self) -> str:
        return f"ExcitationMatrix({self.A!r})"


class IdealSpoilingMatrix(_BlochAlgebra):
    """Zero the transverse magnetization of every compartment."""

    __slots__ = ()

    def to_array(self, N: int = 1) -> np.ndarray:
        return np.kron(np.eye(N), np.diag([0.0, 0.0, 1.0]))

    def __repr__(self) -> str:
        return "IDEAL_SPOILING"


IDEAL_SPOILING = IdealSpoilingMatrix()


# ===========================================================================
# Block-structured system matrices
# ===========================================================================

def exchange_index(i: int, j: int, N: int) -> int:
    """Linear index of exchange block (i, j), i != j, among N(N-1) blocks.

    Blocks are enumerated column by column, skipping the diagonal:

        N = 3:  (1,0)->0  (2,0)->1  (0,1)->2  (2,1)->3  (0,2)->4  (1,2)->5
    """
    return j * (N - 1) + i - (i > j)


class BlochMcConnellDynamicsMatrix(_BlochAlgebra):
    """Continuous-time Bloch-McConnell generator for N compartments.

    Parameters
    ----------
    A : sequence of BlochDynamicsMatrix, length N
        Diagonal blocks (relaxation rates include exchange out of the
        compartment).
    E : sequence of ExchangeDynamicsMatrix, length N(N-1)
        Off-diagonal blocks in ``exchange_index`` order; block (i, j)
        carries the rate from compartment j into compartment i.

    Raises
    ------
    ConfigurationError
        If ``len(E) != N(N-1)``.
    """

    __slots__ = ("A", "E")

    def __init__(self, A: Sequence[BlochDynamicsMatrix], E: Sequence[ExchangeDynamicsMatrix]):
        A = tuple(A)
        E = tuple(E)
        N = len(A)
        if N < 1:
            raise ConfigurationError("at least one compartment is required")
        if len(E) != N * (N - 1):
            raise ConfigurationError(
                f"exchange rates must be defined for each pair of compartments: "
                f"expected {N * (N - 1)} exchange blocks for N={N}, got {len(E)}")
        self.A = A
        self.E = E

    @classmethod
    def zeros(cls, N: int) -> "BlochMcConnellDynamicsMatrix":
        return cls([BlochDynamicsMatrix() for _ in range(N)],
                   [ExchangeDynamicsMatrix() for _ in range(N * (N - 1))])

    @property
    def N(self) -> int:
        return len(self.A)

    def block(self, i: int, j: int):
        return self.A[i] if i == j else self.E[exchange_index(i, j, self.N)]

    def scale(self, t: float) -> None:
        for A in self.A:
            A.scale(t)
        for E in self.E:
            E.scale(t)

    def copyto(self, dst: "BlochMcConnellDynamicsMatrix") -> None:
        for s, d in zip(self.A, dst.A):
            d.R1, d.R2, d.dw = s.R1, s.R2, s.dw
        for s, d in zip(self.E, dst.E):
            d.r = s.r

    def absolutesum(self) -> float:
        """Sum of absolute entries; an upper bound on the 1-norm."""
        return sum(A.absolutesum() for A in self.A) + sum(E.absolutesum() for E in self.E)

    def to_array(self) -> np.ndarray:
        N = self.N
        mat = np.zeros((3 * N, 3 * N))
        index = 0
        for j in range(N):
            for i in range(N):
                if i == j:
                    A = self.A[i]
                    mat[3 * i:3 * i + 3, 3 * j:3 * j + 3] = (
                        (-A.R2, A.dw, 0.0),
                        (-A.dw, -A.R2, 0.0),
                        (0.0, 0.0, -A.R1),
                    )
                else:
                    r = self.E[index].r
                    index += 1
                    mat[3 * i, 3 * j] = r
                    mat[3 * i + 1, 3 * j + 1] = r
                    mat[3 * i + 2, 3 * j + 2] = r
        return mat

    def __repr__(self) -> str:
        return f"BlochMcConnellDynamicsMatrix(A={self.A!r}, E={self.E!r})"


class BlochMcConnellMatrix(_BlochAlgebra):
    """Dense 3N x 3N matrix stored as N x N BlochMatrix blocks."""

    __slots__ = ("A",)

    def __init__(self, blocks: Sequence[Sequence[BlochMatrix]]):
        blocks = tuple(tuple(row) for row in blocks)
        N = len(blocks)
        if N < 1 or any(len(row) != N for row in blocks):
            raise ConfigurationError("BlochMcConnellMatrix needs N x N blocks")
        self.A = blocks

    @classmethod
    def zeros(cls, N: int) -> "BlochMcConnellMatrix":
        return cls([[BlochMatrix() for _ in range(N)] for _ in range(N)])

    @classmethod
    def identity(cls, N: int) -> "BlochMcConnellMatrix":
        C = cls.zeros(N)
        add_identity(C, 1.0)
        return C

    @classmethod
    def from_array(cls, m) -> "BlochMcConnellMatrix":
        m = np.asarray(m, dtype=float)
        if m.ndim != 2 or m.shape[0] != m.shape[1] or m.shape[0] % 3 != 0:
            raise ConfigurationError(f"expected a 3N x 3N matrix, got shape {m.shape}")
        C = cls.zeros(m.shape[0] // 3)
        C.copy_from_array(m)
        return C

    @property
    def N(self) -> int:
        return len(self.A)

    def block(self, i: int, j: int) -> BlochMatrix:
        return self.A[i][j]

    def fill(self, v: float) -> None:
        for row in self.A:
            for b in row:
                b.fill(v)

    def copyto(self, dst: "BlochMcConnellMatrix") -> None:
        _check_n(self, dst)
        for srow, drow in zip(self.A, dst.A):
            for s, d in zip(srow, drow):
                d._assign(s.entries())

    def copy(self) -> "BlochMcConnellMatrix":
        C = BlochMcConnellMatrix.zeros(self.N)
        self.copyto(C)
        return C

    def copy_from_array(self, m: np.ndarray) -> None:
        N = self.N
        if m.shape != (3 * N, 3 * N):
            raise ConfigurationError(f"expected shape {(3 * N, 3 * N)}, got {m.shape}")
        for j in range(N):
            for i in range(N):
                self.A[i][j]._assign(m[3 * i:3 * i + 3, 3 * j:3 * j + 3].T.ravel())

    def to_array(self) -> np.ndarray:
        N = self.N
        mat = np.empty((3 * N, 3 * N))
        for j in range(N):
            for i in range(N):
                mat[3 * i:3 * i + 3, 3 * j:3 * j + 3] = self.A[i][j].to_array()
        return mat

    def __repr__(self) -> str:
        return f"BlochMcConnellMatrix(N={self.N})"


_SYSTEM_TYPES = (BlochMcConnellMatrix, BlochMcConnellDynamicsMatrix)
_REPLICATED_TYPES = (ExcitationMatrix, IdealSpoilingMatrix)


def _check_n(*mats) -> int:
    N = mats[0].N
    for m in mats[1:]:
        if m.N != N:
            raise ConfigurationError(f"compartment count mismatch: {N} vs {m.N}")
    return N


def as_dense(A, N: int = 1) -> np.ndarray:
    """Materialize any operator as a dense ``(3N, 3N)`` array."""
    if isinstance(A, np.ndarray):
        return A
    if isinstance(A, _REPLICATED_TYPES):
        return A.to_array(N)
    mat = A.to_array()
    if mat.shape != (3 * N, 3 * N):
        raise ConfigurationError(
            f"operator of shape {mat.shape} does not act on {N} compartment(s)")
    return mat


# ===========================================================================
# 3x3 product kernels
# ===========================================================================
# Each kernel returns A·B as a column-major 9-tuple.

def _bloch_bloch(A, B):
    return (
        A.a11 * B.a11 + A.a12 * B.a21 + A.a13 * B.a31,
        A.a21 * B.a11 + A.a22 * B.a21 + A.a23 * B.a31,
        A.a31 * B.a11 + A.a32 * B.a21 + A.a33 * B.a31,
        A.a11 * B.a12 + A.a12 * B.a22 + A.a13 * B.a32,
        A.a21 * B.a12 + A.a22 * B.a22 + A.a23 * B.a32,
        A.a31 * B.a12 + A.a32 * B.a22 + A.a33 * B.a32,
        A.a11 * B.a13 + A.a12 * B.a23 + A.a13 * B.a33,
        A.a21 * B.a13 + A.a22 * B.a23 + A.a23 * B.a33,
        A.a31 * B.a13 + A.a32 * B.a23 + A.a33 * B.a33,
    )


def _dynamics_bloch(A, B):
    R1, R2, w = A.R1, A.R2, A.dw
    return (
        -R2 * B.a11 + w * B.a21, -w * B.a11 - R2 * B.a21, -R1 * B.a31,
        -R2 * B.a12 + w * B.a22, -w * B.a12 - R2 * B.a22, -R1 * B.a32,
        -R2 * B.a13 + w * B.a23, -w * B.a13 - R2 * B.a23, -R1 * B.a33,
    )


def _bloch_dynamics(A, B):
    R1, R2, w = B.R1, B.R2, B.dw
    return (
        -R2 * A.a11 - w * A.a12, -R2 * A.a21 - w * A.a22, -R2 * A.a31 - w * A.a32,
        w * A.a11 - R2 * A.a12, w * A.a21 - R2 * A.a22, w * A.a31 - R2 * A.a32,
        -R1 * A.a13, -R1 * A.a23, -R1 * A.a33,
    )


def _exchange_bloch(A, B):
    r = A.r
    return tuple(r * v for v in B.entries())


def _bloch_exchange(A, B):
    r = B.r
    return tuple(r * v for v in A.entries())


def _dynamics_dynamics(A, B):
    c11 = A.R2 * B.R2 - A.dw * B.dw
    c21 = A.dw * B.R2 + A.R2 * B.dw
    return (c11, c21, 0.0, -c21, c11, 0.0, 0.0, 0.0, A.R1 * B.R1)


def _dynamics_exchange(A, B):
    r = B.r
    return (-A.R2 * r, -A.dw * r, 0.0, A.dw * r, -A.R2 * r, 0.0, 0.0, 0.0, -A.R1 * r)


def _exchange_dynamics(A, B):
    return _dynamics_exchange(B, A)


def _exchange_exchange(A, B):
    rr = A.r * B.r
    return (rr, 0.0, 0.0, 0.0, rr, 0.0, 0.0, 0.0, rr)


def _bloch_precession(A, B):
    c, s, E1 = B.E2cos, B.E2sin, B.E1
    return (
        A.a11 * c - A.a12 * s, A.a21 * c - A.a22 * s, A.a31 * c - A.a32 * s,
        A.a11 * s + A.a12 * c, A.a21 * s + A.a22 * c, A.a31 * s + A.a32 * c,
        A.a13 * E1, A.a23 * E1, A.a33 * E1,
    )


def _precession_bloch(A, B):
    c, s, E1 = A.E2cos, A.E2sin, A.E1
    return (
        c * B.a11 + s * B.a21, c * B.a21 - s * B.a11, E1 * B.a31,
        c * B.a12 + s * B.a22, c * B.a22 - s * B.a12, E1 * B.a32,
        c * B.a13 + s * B.a23, c * B.a23 - s * B.a13, E1 * B.a33,
    )


def _precession_precession(A, B):
    c = A.E2cos * B.E2cos - A.E2sin * B.E2sin
    s = A.E2cos * B.E2sin + A.E2sin * B.E2cos
    return (c, -s, 0.0, s, c, 0.0, 0.0, 0.0, A.E1 * B.E1)


def _spoiling_bloch(A, B):
    return (0.0, 0.0, B.a31, 0.0, 0.0, B.a32, 0.0, 0.0, B.a33)


def _bloch_spoiling(A, B):
    return (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, A.a13, A.a23, A.a33)


def _spoiling_precession(A, B):
    return (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, B.E1)


def _precession_spoiling(A, B):
    return (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, A.E1)


_KERNELS = {
    (BlochMatrix, BlochMatrix): _bloch_bloch,
    (BlochDynamicsMatrix, BlochMatrix): _dynamics_bloch,
    (BlochMatrix, BlochDynamicsMatrix): _bloch_dynamics,
    (ExchangeDynamicsMatrix, BlochMatrix): _exchange_bloch,
    (BlochMatrix, ExchangeDynamicsMatrix): _bloch_exchange,
    (BlochDynamicsMatrix, BlochDynamicsMatrix): _dynamics_dynamics,
    (BlochDynamicsMatrix, ExchangeDynamicsMatrix): _dynamics_exchange,
    (ExchangeDynamicsMatrix, BlochDynamicsMatrix): _exchange_dynamics,
    (ExchangeDynamicsMatrix, ExchangeDynamicsMatrix): _exchange_exchange,
    (BlochMatrix, FreePrecessionMatrix): _bloch_precession,
    (FreePrecessionMatrix, BlochMatrix): _precession_bloch,
    (FreePrecessionMatrix, FreePrecessionMatrix): _precession_precession,
    (IdealSpoilingMatrix, BlochMatrix): _spoiling_bloch,
    (BlochMatrix, IdealSpoilingMatrix): _bloch_spoiling,
    (IdealSpoilingMatrix, FreePrecessionMatrix): _spoiling_precession,
    (FreePrecessionMatrix, IdealSpoilingMatrix): _precession_spoiling,
}


# ---------------------------------------------------------------------------
# Kernels applied to a magnetization: return (x, y, z)
# ---------------------------------------------------------------------------

def _apply_bloch(A, M):
    return (A.a11 * M.x + A.a12 * M.y + A.a13 * M.z,
            A.a21 * M.x + A.a22 * M.y + A.a23 * M.z,
            A.a31 * M.x + A.a32 * M.y + A.a33 * M.z)


def _apply_precession(A, M):
    return (A.E2cos * M.x + A.E2sin * M.y,
            A.E2cos * M.y - A.E2sin * M.x,
            A.E1 * M.z)


def _apply_excitation(A, M):
    return _apply_bloch(A.A, M)


def _apply_spoiling(A, M):
    return (0.0, 0.0, M.z)


_APPLY = {
    BlochMatrix: _apply_bloch,
    FreePrecessionMatrix: _apply_precession,
    ExcitationMatrix: _apply_excitation,
    IdealSpoilingMatrix: _apply_spoiling,
}


def _rows(A, M):
    """A·M as a list of per-compartment (x, y, z) tuples.

    Everything is computed before the caller writes, so the destination may
    be M itself.
    """
    if isinstance(A, np.ndarray):
        v = as_dense(A, M.N) @ M.to_array()
        return [tuple(v[3 * i:3 * i + 3]) for i in range(M.N)]
    if isinstance(M, Magnetization):
        try:
            return [_APPLY[type(A)](A, M)]
        except KeyError:
            raise TypeError(f"cannot apply {type(A).__name__} to a Magnetization") from None
    if isinstance(A, _REPLICATED_TYPES):
        kernel = _APPLY[type(A)]
        return [kernel(A, m) for m in M]
    if isinstance(A, BlochMcConnellMatrix):
        N = _check_n(A, M)
        rows = []
        for i in range(N):
            x = y = z = 0.0
            for j in range(N):
                bx, by, bz = _apply_bloch(A.A[i][j], M[j])
                x += bx
                y += by
                z += bz
            rows.append((x, y, z))
        return rows
    raise TypeError(f"cannot apply {type(A).__name__} to a MagnetizationMC")


def _write_rows(C, rows, accumulate: bool) -> None:
    targets = (C,) if isinstance(C, Magnetization) else tuple(C)
    if len(targets) != len(rows):
        raise ConfigurationError(
            f"compartment count mismatch: {len(targets)} vs {len(rows)}")
    for m, (x, y, z) in zip(targets, rows):
        if accumulate:
            m.x += x
            m.y += y
            m.z += z
        else:
            m.x, m.y, m.z = x, y, z


# ===========================================================================
# Multiplication
# ===========================================================================

def _unwrap(A):
    return A.A if isinstance(A, ExcitationMatrix) else A


def _mul_blocks(C, A, B, accumulate: bool) -> None:
    if isinstance(C, ExcitationMatrix):
        C = C.A
    A = _unwrap(A)
    B = _unwrap(B)
    if isinstance(C, FreePrecessionMatrix):
        if not (isinstance(A, FreePrecessionMatrix) and isinstance(B, FreePrecessionMatrix)):
            raise TypeError("a FreePrecessionMatrix can only hold a product of two "
                            "FreePrecessionMatrix operands")
        c, _, _, s, _, _, _, _, E1 = _precession_precession(A, B)
        if accumulate:
            C.E2cos += c
            C.E2sin += s
            C.E1 += E1
        else:
            C.E2cos, C.E2sin, C.E1 = c, s, E1
        return
    if isinstance(A, IdealSpoilingMatrix) and isinstance(B, IdealSpoilingMatrix):
        entries = (0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 1.0)
    else:
        try:
            kernel = _KERNELS[type(A), type(B)]
        except KeyError:
            raise TypeError(f"cannot multiply {type(A).__name__} by {type(B).__name__}") from None
        entries = kernel(A, B)
    if accumulate:
        C._accumulate(entries)
    else:
        C._assign(entries)


def _mul_system(C, A, B, accumulate: bool) -> None:
    # C_ij = sum_k A_ik B_kj
    N = _check_n(C, A, B)
    for j in range(N):
        for i in range(N):
            Cij = C.A[i][j]
            for k in range(N):
                _mul_blocks(Cij, A.block(i, k), B.block(k, j), accumulate or k > 0)


def _mul_replicated_left(C, A, B, accumulate: bool) -> None:
    N = _check_n(C, B)
    for j in range(N):
        for i in range(N):
            _mul_blocks(C.A[i][j], A, B.block(i, j), accumulate)


def _mul_replicated_right(C, A, B, accumulate: bool) -> None:
    N = _check_n(C, A)
    for j in range(N):
        for i in range(N):
            _mul_blocks(C.A[i][j], A.block(i, j), B, accumulate)


def _mul(C, A, B, accumulate: bool) -> None:
    if isinstance(B, (Magnetization, MagnetizationMC)):
        _write_rows(C, _rows(A, B), accumulate)
        return
    if isinstance(C, BlochMcConnellMatrix):
        if isinstance(A, _SYSTEM_TYPES) and isinstance(B, _SYSTEM_TYPES):
            _mul_system(C, A, B, accumulate)
        elif isinstance(A, _REPLICATED_TYPES) and isinstance(B, _SYSTEM_TYPES):
            _mul_replicated_left(C, A, B, accumulate)
        elif isinstance(A, _SYSTEM_TYPES) and isinstance(B, _REPLICATED_TYPES):
            _mul_replicated_right(C, A, B, accumulate)
        else:
            raise TypeError(f"cannot multiply {type(A).__name__} by {type(B).__name__} "
                            f"into a BlochMcConnellMatrix")
        return
    _mul_blocks(C, A, B, accumulate)


def mul(C, A, B) -> None:
    """C = A·B.

    *B* may be a matrix type or a (multi-compartment) magnetization.  When *B*
    is a magnetization, *C* may be the same object.  For matrix products *C*
    must not alias *A* or *B*.
    """
    _mul(C, A, B, False)


def muladd(C, A, B) -> None:
    """C = A·B + C."""
    _mul(C, A, B, True)


def _negate(C) -> None:
    if isinstance(C, (Magnetization, MagnetizationMC)):
        for m in ((C,) if isinstance(C, Magnetization) else C):
            m.x, m.y, m.z = -m.x, -m.y, -m.z
    elif isinstance(C, FreePrecessionMatrix):
        C.E1, C.E2cos, C.E2sin = -C.E1, -C.E2cos, -C.E2sin
    else:
        for b in _dense_blocks(_unwrap(C)):
            b._assign(tuple(-v for v in b.entries()))


def neg_mul(C, A, B) -> None:
    """C = -A·B."""
    _mul(C, A, B, False)
    _negate(C)


def neg_muladd(C, A, B) -> None:
    """C = C - A·B."""
    # negation is exact, so -(-C + A·B) loses nothing
    _negate(C)
    _mul(C, A, B, True)
    _negate(C)


# ---------------------------------------------------------------------------
# Scalars and identity
# ---------------------------------------------------------------------------

def _dense_blocks(A):
    if isinstance(A, BlochMatrix):
        return (A,)
    return tuple(b for row in A.A for b in row)


def mul_scalar(C, A, t: float) -> None:
    """C = A·t for BlochMatrix / BlochMcConnellMatrix operands."""
    for c, a in zip(_dense_blocks(C), _dense_blocks(A)):
        c._assign(tuple(v * t for v in a.entries()))


def muladd_scalar(C, A, t: float) -> None:
    """C = A·t + C."""
    for c, a in zip(_dense_blocks(C), _dense_blocks(A)):
        c._accumulate(tuple(v * t for v in a.entries()))


def add_identity(C, t: float) -> None:
    """C = I·t + C."""
    diagonal = (C,) if isinstance(C, BlochMatrix) else tuple(C.A[i][i] for i in range(C.N))
    for b in diagonal:
        b.a11 += t
        b.a22 += t
        b.a33 += t


# ---------------------------------------------------------------------------
# Sums into dense arrays
# ---------------------------------------------------------------------------

def _block_pairs(A, B):
    if isinstance(A, BlochMatrix) and isinstance(B, BlochMatrix):
        yield 0, 0, A, B
        return
    N = _check_n(A, B)
    for j in range(N):
        for i in range(N):
            yield i, j, A.A[i][j], B.A[i][j]


def add(C: np.ndarray, A, B) -> None:
    """C = A + B written into the dense array *C*."""
    for i, j, a, b in _block_pairs(A, B):
        C[3 * i:3 * i + 3, 3 * j:3 * j + 3] = (
            (a.a11 + b.a11, a.a12 + b.a12, a.a13 + b.a13),
            (a.a21 + b.a21, a.a22 + b.a22, a.a23 + b.a23),
            (a.a31 + b.a31, a.a32 + b.a32, a.a33 + b.a33),
        )


def subtract(C: np.ndarray, A, B) -> None:
    """C = A - B written into the dense array *C*."""
    for i, j, a, b in _block_pairs(A, B):
        C[3 * i:3 * i + 3, 3 * j:3 * j + 3] = (
            (a.a11 - b.a11, a.a12 - b.a12, a.a13 - b.a13),
            (a.a21 - b.a21, a.a22 - b.a22, a.a23 - b.a23),
            (a.a31 - b.a31, a.a32 - b.a32, a.a33 - b.a33),
        )


def identity_minus(C: np.ndarray, B) -> None:
    """C = I - B written into the dense array *C*."""
    if isinstance(B, BlochMatrix):
        C[:, :] = np.eye(3) - B.to_array()
        return
    N = B.N
    for j in range(N):
        for i in range(N):
            b = B.A[i][j]
            d = 1.0 if i == j else 0.0
            C[3 * i:3 * i + 3, 3 * j:3 * j + 3] = (
                (d - b.a11, -b.a12, -b.a13),
                (-b.a21, d - b.a22, -b.a23),
                (-b.a31, -b.a32, d - b.a33),
            )


# ---------------------------------------------------------------------------
# Fused (I - A)·M
# ---------------------------------------------------------------------------

def _identity_minus_rows(A, M):
    rows = _rows(A, M)
    return [(m.x - x, m.y - y, m.z - z)
            for m, (x, y, z) in zip((M,) if isinstance(M, Magnetization) else M, rows)]


def identity_minus_mul(M2, A, M1) -> None:
    """M2 = (I - A)·M1 without forming I - A."""
    _write_rows(M2, _identity_minus_rows(A, M1), False)


def identity_minus_muladd(M2, A, M1) -> None:
    """M2 = (I - A)·M1 + M2."""
    _write_rows(M2, _identity_minus_rows(A, M1), True)


# ===========================================================================
# Allocating composition
# ===========================================================================

def _new_product(A, B):
    if isinstance(B, Magnetization):
        return Magnetization()
    if isinstance(B, MagnetizationMC):
        return MagnetizationMC.zeros(B.N)
    for X in (A, B):
        if isinstance(X, _SYSTEM_TYPES):
            return BlochMcConnellMatrix.zeros(X.N)
    if isinstance(A, FreePrecessionMatrix) and isinstance(B, FreePrecessionMatrix):
        return FreePrecessionMatrix()
    if isinstance(A, _REPLICATED_TYPES) and isinstance(B, _REPLICATED_TYPES):
        return ExcitationMatrix()
    return BlochMatrix()


def compose(A2, A1):
    """Return A2·A1 as a new object.

    The result keeps as much structure as the operands allow: two
    precession blocks stay a FreePrecessionMatrix, two compartment-wide
    rotations stay an ExcitationMatrix, anything coupling compartments is a
    BlochMcConnellMatrix.  If either operand is an ``ndarray`` the product is
    computed densely.
    """
    if isinstance(A2, np.ndarray) or isinstance(A1, np.ndarray):
        if isinstance(A1, (Magnetization, MagnetizationMC)):
            return as_dense(A2, A1.N) @ A1.to_array()
        size = (A2 if isinstance(A2, np.ndarray) else A1).shape[0]
        return as_dense(A2, size // 3) @ as_dense(A1, size // 3)
    if isinstance(A2, IdealSpoilingMatrix) and isinstance(A1, IdealSpoilingMatrix):
        return IDEAL_SPOILING
    C = _new_product(A2, A1)
    mul(C, A2, A1)
    return C


def add_offsets(B1, B2):
    """B1 + B2 for magnetizations or arrays (``None`` counts as zero)."""
    if B1 is None:
        return B2
    if B2 is None:
        return B1
    if isinstance(B1, np.ndarray) or isinstance(B2, np.ndarray):
        return np.asarray(B1, dtype=float) + np.asarray(B2, dtype=float)
    result = B1.copy()
    _add_magnetization(result, B2)
    return result
