"""
core.py - Propagators, composition and application of Bloch dynamics.
======================================================================

Every physical operation is an affine pair (A, B) acting on magnetization as

    M  <-  A M + B

  free_precession     : relaxation + off-resonance over time t
                          Spin   -> (FreePrecessionMatrix, Magnetization)
                          SpinMC -> (BlochMcConnellMatrix, MagnetizationMC)
  excitation          : instantaneous rotation by α about the transverse
                        axis at angle θ from +x, B = 0
  excitation_waveform : hard-pulse integration of a sampled RF waveform
  combine             : (A2, B2) ∘ (A1, B1) = (A2 A1, A2 B1 + B2)
  apply_dynamics      : M <- A M + B in place
  steady_state        : M* = (I - A)^-1 B

Single-spin free precession (no exchange):
    E1 = exp(-t/T1),  E2 = exp(-t/T2),  θ = 2π Δf t / 1000
    A  = [[ E2 cosθ, E2 sinθ,  0],
          [-E2 sinθ, E2 cosθ,  0],
          [       0,       0, E1]]
    B  = (0, 0, M0 (1 - E1))

Key invariants:
  t = 0              → A = I, B = 0
  T1, T2 = ∞         → pure rotation, B = 0
  no exchange        → SpinMC propagator is block diagonal and each block
                       equals the single-spin A of that compartment
"""

from __future__ import annotations

import logging
import math

import numpy as np
from scipy.linalg import solve
from typing import Optional, Tuple

from .blochmatrix import (
    BlochMatrix,
    BlochMcConnellMatrix,
    ExcitationMatrix,
    FreePrecessionMatrix,
    add_offsets,
    as_dense,
    compose,
    identity_minus_mul,
    mul,
)
from .constants import GAMMA, STEADY_STATE_MAX_COND
from .exceptions import ConfigurationError, SingularSystemError
from .expm import BlochMcConnellWorkspace, expm_spin
from .magnetization import Magnetization, MagnetizationMC, add
from .spin import Gradient, Spin, SpinMC, as_gradient, gradient_frequency

__all__ = [
    "BlochMcConnellWorkspace",
    "free_precession",
    "free_precession_into",
    "rotatetheta",
    "excitation",
    "excitation_waveform",
    "combine",
    "apply_dynamics",
    "apply_free_precession",
    "apply_excitation",
    "apply_excitation_waveform",
    "steady_state",
]

logger = logging.getLogger(__name__)


def _zero_offset(spin):
    return Magnetization() if isinstance(spin, Spin) else MagnetizationMC.zeros(spin.N)


# ===========================================================================
# Free precession
# ===========================================================================

def free_precession_into(
    A,
    B,
    spin,
    t: float,
    grad: Optional[Gradient] = None,
    workspace: Optional[BlochMcConnellWorkspace] = None,
    approximate: bool = False,
) -> None:
    """Overwrite (A, B) with free precession of *spin* for *t* ms.

    Parameters
    ----------
    A, B        : FreePrecessionMatrix, Magnetization          (Spin)
                  BlochMcConnellMatrix, MagnetizationMC        (SpinMC)
    spin        : Spin or SpinMC
    t           : float       duration (ms), >= 0
    grad        : Gradient or 3-sequence, optional
                  adds GAMBAR (G · r) Hz of off-resonance at spin.pos
    workspace   : BlochMcConnellWorkspace, optional
                  reused for the exact exponential; allocated when omitted
    approximate : bool
                  SpinMC only, use the first-order exchange approximation
                  (accurate for r·t << 1) instead of the exact exponential

    Raises
    ------
    ConfigurationError
        Operands sized for a different number of compartments.
    """
    if t < 0:
        raise ConfigurationError(f"duration must be non-negative, got {t}")
    gradfreq = 0.0 if grad is None else gradient_frequency(grad, spin.pos)

    if isinstance(spin, Spin):
        if not isinstance(A, FreePrecessionMatrix) or not isinstance(B, Magnetization):
            raise ConfigurationError(
                f"single-compartment spin needs a FreePrecessionMatrix and a Magnetization, "
                f"got {type(A).__name__} and {type(B).__name__}")
        E1 = math.exp(-t / spin.T1)
        E2 = math.exp(-t / spin.T2)
        theta = 2 * math.pi * (spin.df + gradfreq) * t / 1000
        A.E1 = E1
        A.E2cos = E2 * math.cos(theta)
        A.E2sin = E2 * math.sin(theta)
        B.x = 0.0
        B.y = 0.0
        B.z = spin.M0 * (1 - E1)
        return

    if A.N != spin.N or B.N != spin.N:
        raise ConfigurationError(
            f"propagator sized for {A.N} compartments, offset for {B.N}, spin has {spin.N}")
    if approximate:
        expm_spin(A, spin, t, gradfreq)
    else:
        if workspace is None:
            workspace = BlochMcConnellWorkspace(spin.N)
        expm_spin(A, spin, t, gradfreq, workspace)
    identity_minus_mul(B, A, spin.Meq)


def free_precession(spin, t: float, grad: Optional[Gradient] = None,
                    workspace: Optional[BlochMcConnellWorkspace] = None, approximate: bool = False):
    """Return a new (A, B) pair for free precession of *spin* for *t* ms.

    Examples
    --------
    >>> spin = Spin(1.0, 1000.0, 100.0, 3.75, M=(1, 0, 0))
    >>> A, B = free_precession(spin, 100.0)
    >>> apply_dynamics(spin, A, B)
    >>> np.round(spin.M.to_array(), 4)
    array([-0.2601, -0.2601,  0.0952])
    """
    if isinstance(spin, Spin):
        A, B = FreePrecessionMatrix(), Magnetization()
    else:
        A, B = BlochMcConnellMatrix.zeros(spin.N), MagnetizationMC.zeros(spin.N)
    free_precession_into(A, B, spin, t, grad, workspace=workspace, approximate=approximate)
    return A, B


# ===========================================================================
# Excitation
# ===========================================================================

def _Rx(theta: float) -> np.ndarray:
    """3x3 rotation matrix around x-axis by angle theta (radians)."""
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[1, 0,  0],
                     [0, c, -s],
                     [0, s,  c]])


def _Rz(theta: float) -> np.ndarray:
    """3x3 rotation matrix around z-axis by angle theta (radians)."""
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s, 0],
                     [s,  c, 0],
                     [0,  0, 1]])


def rotatetheta(theta: float = 0.0, alpha: float = np.pi / 2) -> np.ndarray:
    """Rotation by *alpha* about the transverse axis at angle *theta* from +x.

    Equivalent to Rz(θ) Rx(α) Rz(-θ).  θ = 0 rotates about +x, θ = π/2
    about +y and θ = π about -x.

    Examples
    --------
    >>> np.round(rotatetheta(0.0, np.pi / 2) @ [0, 0, 1], 12)
    array([ 0., -1.,  0.])

    Invariants
    ----------
    * orthogonal with determinant 1
    * rotatetheta(θ, -α) is the inverse of rotatetheta(θ, α)
    """
    return _Rz(theta) @ _Rx(alpha) @ _Rz(-theta)


def excitation(spin, theta: float, alpha: float) -> Tuple[ExcitationMatrix, object]:
    """Instantaneous RF excitation: (ExcitationMatrix, zero offset)."""
    A = ExcitationMatrix(BlochMatrix.from_array(rotatetheta(theta, alpha)))
    return A, _zero_offset(spin)


def _gradient_samples(grad, T: int):
    """Return (constant gradient, None) or (None, per-sample gradients)."""
    if grad is None or isinstance(grad, Gradient):
        return grad, None
    if isinstance(grad, (list, tuple)) and len(grad) > 0 and isinstance(grad[0], Gradient):
        if len(grad) != T:
            raise ConfigurationError(
                f"gradient waveform has {len(grad)} samples, RF waveform has {T}")
        return None, list(grad)
    g = np.asarray(grad, dtype=float)
    if g.shape == (3,):
        return as_gradient(g), None
    if g.ndim == 2 and g.shape[0] == 3:
        if g.shape[1] != T:
            raise ConfigurationError(
                f"gradient waveform has {g.shape[1]} samples, RF waveform has {T}")
        return None, [Gradient(*g[:, k]) for k in range(T)]
    raise ConfigurationError(
        f"gradient must be a 3-vector or a 3 x {T} waveform, got shape {g.shape}")


def _rf_samples(rf, dtheta: float, dt: float):
    rf = np.atleast_1d(np.asarray(rf, dtype=complex))
    if rf.ndim != 1:
        raise ConfigurationError(f"RF waveform must be 1-D, got shape {rf.shape}")
    if dt <= 0:
        raise ConfigurationError(f"dt must be positive, got {dt}")
    alpha = GAMMA * np.abs(rf) * dt / 1000
    theta = np.angle(rf) + dtheta
    return alpha, theta


def excitation_waveform(spin, rf, dtheta: float = 0.0, grad=None, dt: float = 0.004,
                        workspace: Optional[BlochMcConnellWorkspace] = None):
    """(A, B) of a sampled RF waveform, hard-pulse approximation.

    Each sample k is free precession for dt/2, an instantaneous rotation by
    α_k = GAMMA |rf_k| dt / 1000 about the axis at θ_k = angle(rf_k) + Δθ,
    and another dt/2 of free precession.

    Parameters
    ----------
    spin   : Spin or SpinMC
    rf     : (T,) complex array   RF amplitude and phase (G)
    dtheta : float                extra phase added to every sample (rad)
    grad   : Gradient, 3-vector or (3, T) array, optional
    dt     : float                sample spacing (ms)

    Raises
    ------
    ConfigurationError
        Gradient waveform length differs from the RF waveform length.
    """
    alpha, theta = _rf_samples(rf, dtheta, dt)
    T = alpha.size
    constant, samples = _gradient_samples(grad, T)
    if isinstance(spin, SpinMC) and workspace is None:
        workspace = BlochMcConnellWorkspace(spin.N)

    if isinstance(spin, Spin):
        A, B = BlochMatrix.identity(), Magnetization()
    else:
        A, B = BlochMcConnellMatrix.identity(spin.N), MagnetizationMC.zeros(spin.N)
    half = free_precession(spin, dt / 2, constant, workspace=workspace)
    for k in range(T):
        if samples is not None:
            free_precession_into(half[0], half[1], spin, dt / 2, samples[k], workspace)
        A, B = combine((A, B), half, excitation(spin, theta[k], alpha[k]), half)
    return A, B


# ===========================================================================
# Composition
# ===========================================================================

def combine(*pairs):
    """Compose affine pairs in the order they are applied.

    ``combine((A1, B1), (A2, B2))`` is the single pair equivalent to applying
    (A1, B1) and then (A2, B2): ``(A2 A1, A2 B1 + B2)``.  Pairs whose A is
    ``None`` (pure RF spoiling) are skipped.

    Examples
    --------
    >>> A, B = combine(free_precession(spin, 5.0), excitation(spin, 0, np.pi / 2))  # doctest: +SKIP
    """
    pairs = [p for p in pairs if p[0] is not None]
    if not pairs:
        raise ValueError("combine needs at least one pair with a matrix")
    A, B = pairs[0]
    for A2, B2 in pairs[1:]:
        B = add_offsets(None if B is None else compose(A2, B), B2)
        A = compose(A2, A)
    return A, B


# ===========================================================================
# In-place application
# ===========================================================================

def apply_dynamics(spin, A, B=None) -> None:
    """spin.M <- A spin.M + B.  ``A is None`` leaves the spin untouched."""
    if A is None:
        return
    mul(spin.M, A, spin.M)
    if B is not None:
        add(spin.M, B)


def apply_free_precession(spin, t: float, grad: Optional[Gradient] = None,
                          workspace: Optional[BlochMcConnellWorkspace] = None,
                          approximate: bool = False) -> None:
    A, B = free_precession(spin, t, grad, approximate=approximate, workspace=workspace)
    apply_dynamics(spin, A, B)


def apply_excitation(spin, theta: float, alpha: float) -> None:
    A, _ = excitation(spin, theta, alpha)
    mul(spin.M, A, spin.M)


def apply_excitation_waveform(spin, rf, dtheta: float = 0.0, grad=None, dt: float = 0.004,
                              workspace: Optional[BlochMcConnellWorkspace] = None) -> None:
    """Step spin.M through a sampled RF waveform without forming the pair."""
    alpha, theta = _rf_samples(rf, dtheta, dt)
    T = alpha.size
    constant, samples = _gradient_samples(grad, T)
    if isinstance(spin, SpinMC) and workspace is None:
        workspace = BlochMcConnellWorkspace(spin.N)
    Af, Bf = free_precession(spin, dt / 2, constant, workspace=workspace)
    for k in range(T):
        if samples is not None:
            free_precession_into(Af, Bf, spin, dt / 2, samples[k], workspace)
        apply_dynamics(spin, Af, Bf)
        apply_excitation(spin, theta[k], alpha[k])
        apply_dynamics(spin, Af, Bf)


# ===========================================================================
# Steady state
# ===========================================================================

def steady_state(A, B):
    """Fixed point M* of M <- A M + B, i.e. M* = (I - A)^-1 B.

    Block-structured matrices are materialized to dense form first.  The
    result has the same kind as *B* (Magnetization, MagnetizationMC or
    ndarray).

    Raises
    ------
    SingularSystemError
        (I - A) is singular or too ill-conditioned to invert, e.g. A = I
        (no relaxation, no excitation).
    """
    b = np.asarray(B, dtype=float)
    n = b.size
    if n == 0 or n % 3 != 0:
        raise ConfigurationError(f"offset must have 3N entries, got {n}")
    IA = np.eye(n) - as_dense(A, n // 3)
    with np.errstate(divide="ignore", invalid="ignore"):
        cond = np.linalg.cond(IA)
    logger.debug("steady-state solve: size %d, cond(I - A) = %.3e", n, cond)
    if not np.isfinite(cond) or cond > STEADY_STATE_MAX_COND:
        raise SingularSystemError(f"(I - A) is singular (condition number {cond:.3e})")
    try:
        x = solve(IA, b)
    except np.linalg.LinAlgError as err:
        raise SingularSystemError(f"(I - A) is singular: {err}") from err
    if isinstance(B, Magnetization):
        return Magnetization.from_array(x)
    if isinstance(B, MagnetizationMC):
        return MagnetizationMC.from_array(x)
    return x
