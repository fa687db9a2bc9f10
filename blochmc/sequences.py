"""
sequences.py - Steady-state and transient signal models for MR sequences.
=========================================================================

  bssfp_matrix           : balanced SSFP signal from explicit 3x3 matrices
                           (Hargreaves' formulation), used as a reference
  bssfp_steady_state     : the same signal through the propagator algebra
  bssfp_steady_state_mc  : balanced SSFP for exchanging compartments
  spgr_steady_state      : ideal-spoiled gradient echo
  spoiled_gre_transient  : step a spin through n repetitions of a spoiled
                           gradient echo, honouring RF-spoiling phases

Balanced SSFP, echo at TE, excitation every TR:

    A = P(TE) R P(TR - TE)
    B = P(TE) R B(TR - TE) + B(TE)
    M_TE = (I - A)^-1 B

Key invariants:
  Δf = 0             → Mx = 0, magnetization stays in the y-z plane
  spoiled GRE, TE=0  → |M⊥| = M0 sinα (1 - E1) / (1 - E1 cosα)   (Ernst)
"""

from __future__ import annotations

import logging

import numpy as np
from typing import Optional

from .blochmatrix import compose
from .core import (
    BlochMcConnellWorkspace,
    apply_dynamics,
    apply_excitation,
    combine,
    excitation,
    free_precession,
    steady_state,
)
from .exceptions import ConfigurationError
from .magnetization import add
from .spin import Spin, SpinMC
from .spoiling import IDEAL, rf_spoiling_phases, rfspoiling_increment, spoil

logger = logging.getLogger(__name__)


def _check_timing(TR: float, TE: float) -> None:
    if TR <= 0:
        raise ConfigurationError(f"TR must be positive, got {TR}")
    if not 0 <= TE <= TR:
        raise ConfigurationError(f"TE must lie in [0, TR], got TE={TE}, TR={TR}")


# ===========================================================================
# Balanced SSFP
# ===========================================================================

def bssfp_matrix(
    alpha: float,
    TR: float,
    TE: float,
    M0: float,
    T1: float,
    T2: float,
    df: float = 0.0,
) -> complex:
    """Balanced SSFP signal at TE from hand-built 3x3 matrices.

    Parameters
    ----------
    alpha  : float   flip angle (rad), rotation about -x
    TR, TE : float   repetition / echo time (ms)
    M0     : float   equilibrium magnetization
    T1, T2 : float   relaxation times (ms)
    df     : float   off-resonance (Hz)

    Returns
    -------
    complex
        Mx + i My at TE.
    """
    _check_timing(TR, TE)
    c, s = np.cos(alpha), np.sin(alpha)
    R = np.array([[1, 0, 0],
                  [0, c, s],
                  [0, -s, c]])

    def relax(t):
        E1, E2 = np.exp(-t / T1), np.exp(-t / T2)
        phi = 2 * np.pi * df * t / 1000
        P = np.array([[np.cos(phi), np.sin(phi), 0],
                      [-np.sin(phi), np.cos(phi), 0],
                      [0, 0, 1]])
        C = np.diag([E2, E2, E1])
        D = (np.eye(3) - C) @ np.array([0.0, 0.0, M0])
        return P @ C, D

    PC1, D1 = relax(TE)
    PC2, D2 = relax(TR - TE)
    A = PC1 @ R @ PC2
    B = PC1 @ R @ D2 + D1
    M = np.linalg.solve(np.eye(3) - A, B)
    return complex(M[0], M[1])


def bssfp_steady_state(alpha: float, TR: float, TE: float, spin: Spin) -> complex:
    """Balanced SSFP signal at TE for a single-compartment spin.

    Uses the same rotation convention as ``bssfp_matrix`` (θ = π, i.e.
    about -x) so the two agree to rounding.
    """
    _check_timing(TR, TE)
    R = excitation(spin, np.pi, alpha)
    P1 = free_precession(spin, TE)
    P2 = free_precession(spin, TR - TE)
    A, B = combine(P2, R, P1)
    return steady_state(A, B).signal()


def bssfp_steady_state_mc(
    alpha: float,
    TR: float,
    TE: float,
    spin: SpinMC,
    spin_te: Optional[SpinMC] = None,
    theta: float = 0.0,
    workspace: Optional[BlochMcConnellWorkspace] = None,
) -> complex:
    """Balanced SSFP signal at TE for an exchanging multi-compartment spin.

    The steady state is taken just before the excitation, tipped, and then
    evolved for TE with *spin_te* (defaults to *spin*), which allows the
    readout interval to use different parameters, e.g. another frequency
    offset.
    """
    _check_timing(TR, TE)
    if workspace is None:
        workspace = BlochMcConnellWorkspace.for_spin(spin)
    R, _ = excitation(spin, theta, alpha)
    A, B = combine((R, None), free_precession(spin, TR, workspace=workspace))
    Mss = steady_state(A, B)
    M = compose(R, Mss)
    Ate, Bte = free_precession(spin if spin_te is None else spin_te, TE, workspace=workspace)
    M = compose(Ate, M)
    add(M, Bte)
    return M.signal()


# ===========================================================================
# Spoiled gradient echo
# ===========================================================================

def spgr_steady_state(alpha: float, TR: float, TE: float, spin, theta: float = 0.0) -> complex:
    """Signal at TE of an ideal-spoiled gradient echo in steady state."""
    _check_timing(TR, TE)
    A, B = combine(free_precession(spin, TR), spoil(spin, IDEAL), excitation(spin, theta, alpha))
    M = steady_state(A, B)
    Ate, Bte = free_precession(spin, TE)
    M = compose(Ate, M)
    add(M, Bte)
    return M.signal()


def spoiled_gre_transient(
    spin,
    alpha: float,
    TR: float,
    n: int,
    spoiling=IDEAL,
    TE: float = 0.0,
) -> np.ndarray:
    """Step *spin* through *n* repetitions of a spoiled gradient echo.

    Each repetition: excitation with phase φ_k, TE of free precession,
    readout, TR - TE of free precession, spoiling.  The readout is
    demodulated by the RF phase.  The spin is modified in place.

    Returns
    -------
    signals : (n,) complex np.ndarray
    """
    _check_timing(TR, TE)
    if n < 1:
        raise ConfigurationError(f"n must be >= 1, got {n}")
    phases = rf_spoiling_phases(rfspoiling_increment(spoiling), n)
    logger.debug("spoiled GRE: %d repetitions, spoiling=%r", n, spoiling)

    workspace = BlochMcConnellWorkspace.for_spin(spin) if isinstance(spin, SpinMC) else None
    Ate, Bte = free_precession(spin, TE, workspace=workspace)
    Arest, Brest = free_precession(spin, TR - TE, workspace=workspace)
    Aspoil, Bspoil = spoil(spin, spoiling, workspace)

    signals = np.empty(n, dtype=complex)
    for k in range(n):
        apply_excitation(spin, phases[k], alpha)
        apply_dynamics(spin, Ate, Bte)
        signals[k] = spin.signal() * np.exp(-1j * phases[k])
        apply_dynamics(spin, Arest, Brest)
        apply_dynamics(spin, Aspoil, Bspoil)
    return signals
