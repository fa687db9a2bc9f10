"""
expm.py - Matrix exponential of Bloch-McConnell generators.
===========================================================

Free precession of an N-compartment spin for a time t is

    M(t) = exp(A t) M(0) + (I - exp(A t)) Meq,

where A is the block-structured BlochMcConnellDynamicsMatrix.  Two ways of
computing exp(A t) are provided:

  exact        : block-structured Padé scaling and squaring (Higham 2005),
                 reusing a MatrixExponentialWorkspace.  Without exchange the
                 result is the direct sum of per-compartment closed forms and
                 no Padé step is taken.
  approximate  : stateless first-order closed form.  Diagonal blocks are
                 exact; off-diagonal blocks keep the single-exchange term
                 r_ij ∫ exp(A_i (t - s)) exp(A_j s) ds (Van Loan 1977,
                 doi:10.1137/0714065).  Valid for r·t << 1.

References
----------
N. J. Higham, "The scaling and squaring method for the matrix exponential
revisited", SIAM J. Matrix Anal. Appl. 26(4), 2005.
"""

from __future__ import annotations

import cmath
import logging
import math

import numpy as np
from scipy.linalg import solve

from .blochmatrix import (
    BlochMcConnellDynamicsMatrix,
    BlochMcConnellMatrix,
    add,
    add_identity,
    exchange_index,
    mul,
    muladd_scalar,
    subtract,
)
from .constants import SERIES_CUTOFF
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Padé coefficients and 1-norm bounds for degree m (Higham 2005, table 2.3)
# ---------------------------------------------------------------------------

_THETA = (
    (3, 1.495585217958292e-2),
    (5, 2.539398330063230e-1),
    (7, 9.504178996162932e-1),
    (9, 2.097847961257068e0),
)
_THETA13 = 5.371920351148152e0

_PADE = {
    3: (120.0, 60.0, 12.0, 1.0),
    5: (30240.0, 15120.0, 3360.0, 420.0, 30.0, 1.0),
    7: (17297280.0, 8648640.0, 1995840.0, 277200.0, 25200.0, 1512.0, 56.0, 1.0),
    9: (17643225600.0, 8821612800.0, 2075673600.0, 302702400.0, 30270240.0,
        2162160.0, 110880.0, 3960.0, 90.0, 1.0),
    13: (64764752532480000.0, 32382376266240000.0, 7771770303897600.0,
         1187353796428800.0, 129060195264000.0, 10559470521600.0,
         670442572800.0, 33522128640.0, 1323241920.0, 40840800.0,
         960960.0, 16380.0, 182.0, 1.0),
}


# ===========================================================================
# Workspaces
# ===========================================================================

class MatrixExponentialWorkspace:
    """Scratch storage for ``expm`` on N-compartment systems.

    Holds the even powers of A, the Padé numerator/denominator pieces, a
    scaled copy of the generator and the two dense arrays of the final
    solve.  Reuse one workspace across calls; do not share it between
    threads.
    """

    def __init__(self, N: int):
        if N < 1:
            raise ConfigurationError(f"number of compartments must be >= 1, got {N}")
        self.N = N
        self.A2 = BlochMcConnellMatrix.zeros(N)
        self.A4 = BlochMcConnellMatrix.zeros(N)
        self.A6 = BlochMcConnellMatrix.zeros(N)
        self.A8 = BlochMcConnellMatrix.zeros(N)
        self.U = BlochMcConnellMatrix.zeros(N)
        self.V = BlochMcConnellMatrix.zeros(N)
        self.W = BlochMcConnellMatrix.zeros(N)
        self.tmp = BlochMcConnellMatrix.zeros(N)
        self.scaled = BlochMcConnellDynamicsMatrix.zeros(N)
        self.lhs = np.zeros((3 * N, 3 * N))
        self.rhs = np.zeros((3 * N, 3 * N))


class BlochMcConnellWorkspace:
    """Generator plus exponential workspace for exact free precession.

    Examples
    --------
    >>> ws = BlochMcConnellWorkspace.for_spin(spin)      # doctest: +SKIP
    >>> A, B = free_precession(spin, 10.0, workspace=ws)  # doctest: +SKIP
    """

    def __init__(self, N: int):
        self.N = N
        self.A = BlochMcConnellDynamicsMatrix.zeros(N)
        self.expm_workspace = MatrixExponentialWorkspace(N)
        logger.debug("allocated Bloch-McConnell workspace for N=%d", N)

    @classmethod
    def for_spin(cls, spin) -> "BlochMcConnellWorkspace":
        return cls(spin.N)


# ===========================================================================
# Exact exponential
# ===========================================================================

def _precession_entries(E1: float, E2: float, theta: float):
    c = E2 * math.cos(theta)
    s = E2 * math.sin(theta)
    return (c, -s, 0.0, s, c, 0.0, 0.0, 0.0, E1)


def _expm_uncoupled(expAt: BlochMcConnellMatrix, A: BlochMcConnellDynamicsMatrix) -> None:
    N = A.N
    for j in range(N):
        for i in range(N):
            if i == j:
                D = A.A[i]
                expAt.A[i][i]._assign(_precession_entries(math.exp(-D.R1), math.exp(-D.R2), D.dw))
            else:
                expAt.A[i][j].fill(0.0)


def _pade(expAt, A, ws: MatrixExponentialWorkspace, m: int) -> None:
    b = _PADE[m]
    mul(ws.A2, A, A)
    powers = [ws.A2]
    if m >= 5:
        mul(ws.A4, ws.A2, ws.A2)
        powers.append(ws.A4)
    if m >= 7:
        mul(ws.A6, ws.A4, ws.A2)
        powers.append(ws.A6)
    if m >= 9:
        mul(ws.A8, ws.A6, ws.A2)
        powers.append(ws.A8)

    # U = A (b_1 I + b_3 A^2 + ...),  V = b_0 I + b_2 A^2 + ...
    ws.W.fill(0.0)
    ws.V.fill(0.0)
    add_identity(ws.W, b[1])
    add_identity(ws.V, b[0])
    for k, P in enumerate(powers, start=1):
        muladd_scalar(ws.W, P, b[2 * k + 1])
        muladd_scalar(ws.V, P, b[2 * k])
    mul(ws.U, A, ws.W)


def _pade13(expAt, A, ws: MatrixExponentialWorkspace) -> None:
    b = _PADE[13]
    mul(ws.A2, A, A)
    mul(ws.A4, ws.A2, ws.A2)
    mul(ws.A6, ws.A4, ws.A2)

    # U = A [A6 (b13 A6 + b11 A4 + b9 A2) + b7 A6 + b5 A4 + b3 A2 + b1 I]
    ws.tmp.fill(0.0)
    muladd_scalar(ws.tmp, ws.A6, b[13])
    muladd_scalar(ws.tmp, ws.A4, b[11])
    muladd_scalar(ws.tmp, ws.A2, b[9])
    mul(ws.W, ws.A6, ws.tmp)
    muladd_scalar(ws.W, ws.A6, b[7])
    muladd_scalar(ws.W, ws.A4, b[5])
    muladd_scalar(ws.W, ws.A2, b[3])
    add_identity(ws.W, b[1])
    mul(ws.U, A, ws.W)

    # V = A6 (b12 A6 + b10 A4 + b8 A2) + b6 A6 + b4 A4 + b2 A2 + b0 I
    ws.tmp.fill(0.0)
    muladd_scalar(ws.tmp, ws.A6, b[12])
    muladd_scalar(ws.tmp, ws.A4, b[10])
    muladd_scalar(ws.tmp, ws.A2, b[8])
    mul(ws.V, ws.A6, ws.tmp)
    muladd_scalar(ws.V, ws.A6, b[6])
    muladd_scalar(ws.V, ws.A4, b[4])
    muladd_scalar(ws.V, ws.A2, b[2])
    add_identity(ws.V, b[0])


def _solve_pade(expAt, ws: MatrixExponentialWorkspace) -> None:
    # (V - U) X = (V + U)
    subtract(ws.lhs, ws.V, ws.U)
    add(ws.rhs, ws.V, ws.U)
    X = solve(ws.lhs, ws.rhs, overwrite_a=True, overwrite_b=True, check_finite=False)
    expAt.copy_from_array(X)


def expm(expAt: BlochMcConnellMatrix, A: BlochMcConnellDynamicsMatrix,
         workspace: MatrixExponentialWorkspace) -> None:
    """expAt = exp(A), exact to working precision.

    *A* is the generator already multiplied by the time step and is left
    untouched.  *expAt* and *workspace* must match the compartment count of
    *A*.

    Invariants
    ----------
    * No exchange: expAt is block diagonal and every block equals the
      single-compartment free-precession matrix.
    * A of zero norm gives the identity.
    """
    N = A.N
    if expAt.N != N or workspace.N != N:
        raise ConfigurationError(
            f"compartment count mismatch: generator {N}, result {expAt.N}, workspace {workspace.N}")

    if all(E.r == 0 for E in A.E):
        _expm_uncoupled(expAt, A)
        return

    norm = A.absolutesum()
    for m, theta in _THETA:
        if norm <= theta:
            _pade(expAt, A, workspace, m)
            _solve_pade(expAt, workspace)
            return

    s = max(0, int(math.ceil(math.log2(norm / _THETA13))))
    scaled = workspace.scaled
    A.copyto(scaled)
    if s > 0:
        scaled.scale(2.0 ** -s)
    _pade13(expAt, scaled, workspace)
    _solve_pade(expAt, workspace)

    src, dst = expAt, workspace.tmp
    for _ in range(s):
        mul(dst, src, src)
        src, dst = dst, src
    if src is not expAt:
        src.copyto(expAt)


# ===========================================================================
# Spin → generator
# ===========================================================================

def _angular_frequency(df: float, gradfreq: float) -> float:
    return 2 * math.pi * (df + gradfreq) / 1000    # Hz -> rad/ms


def fill_dynamics(A: BlochMcConnellDynamicsMatrix, spin, t: float, gradfreq: float = 0.0) -> None:
    """Overwrite *A* with ``t`` times the Bloch-McConnell generator of *spin*."""
    N = spin.N
    if A.N != N:
        raise ConfigurationError(f"generator has {A.N} compartments, spin has {N}")
    for i in range(N):
        r_out = spin.r_out(i)
        D = A.A[i]
        D.R1 = (1 / spin.T1[i] + r_out) * t
        D.R2 = (1 / spin.T2[i] + r_out) * t
        D.dw = _angular_frequency(spin.df[i], gradfreq) * t
    for j in range(N):
        for i in range(N):
            if i != j:
                A.E[exchange_index(i, j, N)].r = spin.r[i][j] * t


# ===========================================================================
# Approximate exponential
# ===========================================================================

def _relaxation_integral(z: complex, t: float) -> complex:
    """∫₀ᵗ exp(-z s) ds, with a series near z = 0."""
    zt = z * t
    if abs(zt) < SERIES_CUTOFF:
        return t * (1 - zt / 2 + zt * zt / 6 - zt * zt * zt / 24)
    return (1 - cmath.exp(-zt)) / z


def _expm_approximate(expAt: BlochMcConnellMatrix, spin, t: float, gradfreq: float) -> None:
    N = spin.N
    R1 = [1 / spin.T1[i] + spin.r_out(i) for i in range(N)]
    R2 = [1 / spin.T2[i] + spin.r_out(i) for i in range(N)]
    w = [_angular_frequency(spin.df[i], gradfreq) for i in range(N)]
    E1 = [math.exp(-R * t) for R in R1]
    E2 = [math.exp(-R * t) for R in R2]

    for j in range(N):
        for i in range(N):
            block = expAt.A[i][j]
            if i == j:
                block._assign(_precession_entries(E1[i], E2[i], w[i] * t))
                continue
            rij = spin.r[i][j]
            if rij == 0:
                block.fill(0.0)
                continue
            D = complex(R2[j] - R2[i], w[j] - w[i])
            wc = rij * E2[i] * cmath.exp(complex(0.0, -w[i] * t)) * _relaxation_integral(D, t)
            tmpc = wc.real
            tmps = -wc.imag
            # longitudinal exchange relaxes with R1, not the transverse R2
            a33 = rij * E1[i] * _relaxation_integral(complex(R1[j] - R1[i]), t).real
            block._assign((tmpc, -tmps, 0.0, tmps, tmpc, 0.0, 0.0, 0.0, a33))


def expm_spin(expAt: BlochMcConnellMatrix, spin, t: float, gradfreq: float = 0.0,
              workspace: BlochMcConnellWorkspace = None) -> None:
    """expAt = exp(A t) for the generator of *spin*.

    With a ``BlochMcConnellWorkspace`` the exact Padé path is used; with
    ``workspace=None`` the first-order approximation, which is only
    accurate for small r·t.
    """
    if expAt.N != spin.N:
        raise ConfigurationError(f"result has {expAt.N} compartments, spin has {spin.N}")
    if workspace is None:
        _expm_approximate(expAt, spin, t, gradfreq)
        return
    if workspace.N != spin.N:
        raise ConfigurationError(f"workspace has {workspace.N} compartments, spin has {spin.N}")
    fill_dynamics(workspace.A, spin, t, gradfreq)
    expm(expAt, workspace.A, workspace.expm_workspace)
