"""
tests/test_expm.py – Exact and approximate Bloch-McConnell exponentials.
========================================================================

  A. Padé scaling and squaring vs scipy.linalg.expm over the full norm range
  B. Exact free precession vs numerical ODE integration (solve_ivp)
  C. Uncoupled compartments give the exact direct sum
  D. First-order approximation vs exact for small r·t
  E. Degenerate exchange branches (equal R2 / equal frequency)
  F. Single-compartment closed form and the two-pool reference scenario

Run with:  pytest tests/ -v
"""

import numpy as np
import pytest
import sys, os
from scipy.integrate import solve_ivp
from scipy.linalg import expm as dense_expm

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from blochmc.blochmatrix import (
    BlochDynamicsMatrix,
    BlochMcConnellDynamicsMatrix,
    BlochMcConnellMatrix,
    ExchangeDynamicsMatrix,
    exchange_index,
)
from blochmc.core import free_precession
from blochmc.exceptions import ConfigurationError
from blochmc.expm import (
    BlochMcConnellWorkspace,
    MatrixExponentialWorkspace,
    expm,
    expm_spin,
    fill_dynamics,
)
from blochmc.spin import Gradient, Position, Spin, SpinMC, gradient_frequency


rng = np.random.default_rng(2024)


def random_generator(N, norm):
    """Random physical generator: relaxation rates include the out-exchange."""
    r = rng.uniform(0.1, 1.0, size=(N, N))
    np.fill_diagonal(r, 0.0)
    r_out = r.sum(axis=0)
    A = BlochMcConnellDynamicsMatrix(
        [BlochDynamicsMatrix(rng.uniform(0, 1) + r_out[i], rng.uniform(0, 1) + r_out[i], rng.normal())
         for i in range(N)],
        [ExchangeDynamicsMatrix(r[i, j]) for j in range(N) for i in range(N) if i != j],
    )
    A.scale(norm / A.absolutesum())
    return A


def myelin_spin(**kwargs):
    """Two-pool myelin water model with detailed balance."""
    frac = (0.2, 0.8)
    k_mw = kwargs.pop("k", 0.05)              # myelin -> free water, 1/ms
    r = [[0.0, k_mw * frac[0] / frac[1]],
         [k_mw, 0.0]]
    params = dict(M0=1.0, frac=frac, T1=(400.0, 1000.0), T2=(20.0, 100.0), df=(15.0, 0.0), r=r)
    params.update(kwargs)
    return SpinMC(**params)


# ===========================================================================
# A. Padé vs dense reference
# ===========================================================================

class TestPade:
    @pytest.mark.parametrize("norm", [1e-3, 0.01, 0.2, 0.9, 2.0, 5.0, 40.0, 700.0])
    @pytest.mark.parametrize("N", [2, 3])
    def test_matches_scipy(self, N, norm):
        A = random_generator(N, norm)
        expAt = BlochMcConnellMatrix.zeros(N)
        expm(expAt, A, MatrixExponentialWorkspace(N))
        reference = dense_expm(A.to_array())
        assert np.allclose(expAt.to_array(), reference, rtol=1e-10, atol=1e-12)

    def test_generator_not_modified(self):
        A = random_generator(2, 40.0)
        before = A.to_array()
        expm(BlochMcConnellMatrix.zeros(2), A, MatrixExponentialWorkspace(2))
        assert np.array_equal(A.to_array(), before)

    def test_workspace_reuse(self):
        ws = MatrixExponentialWorkspace(2)
        expAt = BlochMcConnellMatrix.zeros(2)
        for norm in (50.0, 0.05, 3.0):
            A = random_generator(2, norm)
            expm(expAt, A, ws)
            assert np.allclose(expAt.to_array(), dense_expm(A.to_array()), rtol=1e-10, atol=1e-12)

    def test_zero_generator_gives_identity(self):
        A = BlochMcConnellDynamicsMatrix.zeros(3)
        expAt = BlochMcConnellMatrix.zeros(3)
        expm(expAt, A, MatrixExponentialWorkspace(3))
        assert np.allclose(expAt.to_array(), np.eye(9))

    def test_size_mismatch(self):
        with pytest.raises(ConfigurationError):
            expm(BlochMcConnellMatrix.zeros(2), random_generator(3, 1.0), MatrixExponentialWorkspace(3))


# ===========================================================================
# B. Exact free precession vs ODE
# ===========================================================================

class TestAgainstODE:
    @pytest.mark.parametrize("t", [0.5, 10.0, 250.0])
    def test_two_pool(self, t):
        spin = myelin_spin(k=0.2)
        A, B = free_precession(spin, t)

        K = BlochMcConnellDynamicsMatrix.zeros(2)
        fill_dynamics(K, spin, 1.0)
        K = K.to_array()
        Meq = spin.Meq.to_array()
        M_init = np.array([1.0, 0.0, 0.0, 0.0, 0.5, 0.3])

        sol = solve_ivp(lambda _, M: K @ (M - Meq), (0.0, t), M_init,
                        method="DOP853", rtol=1e-11, atol=1e-13)
        predicted = A.to_array() @ M_init + B.to_array()
        assert np.allclose(predicted, sol.y[:, -1], atol=1e-8)

    def test_fill_dynamics_rates(self):
        spin = myelin_spin(k=0.1)
        K = BlochMcConnellDynamicsMatrix.zeros(2)
        fill_dynamics(K, spin, 2.0, gradfreq=10.0)
        assert np.isclose(K.A[0].R1, 2.0 * (1 / 400 + 0.1))
        assert np.isclose(K.A[1].R2, 2.0 * (1 / 100 + 0.1 * 0.25))
        assert np.isclose(K.A[0].dw, 2.0 * 2 * np.pi * 25.0 / 1000)
        assert np.isclose(K.block(1, 0).r, 0.2)
        assert np.isclose(K.block(0, 1).r, 0.05)


# ===========================================================================
# C. No exchange
# ===========================================================================

class TestUncoupled:
    def test_direct_sum(self):
        spin = SpinMC(1.0, (0.3, 0.7), (500.0, 1200.0), (30.0, 90.0), (10.0, -4.0), np.zeros((2, 2)))
        A, B = free_precession(spin, 17.0)
        for i in range(2):
            single = Spin(spin.frac[i], spin.T1[i], spin.T2[i], spin.df[i])
            Ai, Bi = free_precession(single, 17.0)
            assert np.allclose(A.block(i, i).to_array(), Ai.to_array(), atol=1e-15)
            assert np.allclose(B[i].to_array(), Bi.to_array(), atol=1e-15)
        assert np.allclose(A.block(0, 1).to_array(), 0.0)
        assert np.allclose(A.block(1, 0).to_array(), 0.0)


# ===========================================================================
# D. Approximate path
# ===========================================================================

class TestApproximate:
    def test_small_exchange_close_to_exact(self):
        spin = myelin_spin(k=1e-3)
        exact = BlochMcConnellMatrix.zeros(2)
        approx = BlochMcConnellMatrix.zeros(2)
        expm_spin(exact, spin, 5.0, workspace=BlochMcConnellWorkspace(2))
        expm_spin(approx, spin, 5.0)
        assert np.allclose(approx.to_array(), exact.to_array(), atol=1e-4)

    def test_error_shrinks_with_rate(self):
        errors = []
        for k in (1e-2, 1e-3):
            spin = myelin_spin(k=k)
            exact = BlochMcConnellMatrix.zeros(2)
            approx = BlochMcConnellMatrix.zeros(2)
            expm_spin(exact, spin, 5.0, workspace=BlochMcConnellWorkspace(2))
            expm_spin(approx, spin, 5.0)
            errors.append(np.abs(approx.to_array() - exact.to_array()).max())
        assert errors[1] < errors[0] / 10

    def test_matches_exact_without_exchange(self):
        spin = myelin_spin(k=0.0)
        A1, _ = free_precession(spin, 12.0)
        A2, _ = free_precession(spin, 12.0, approximate=True)
        assert np.allclose(A1.to_array(), A2.to_array(), atol=1e-15)

    @pytest.mark.parametrize("exact", [False, True])
    def test_gradient_offset_shifts_every_compartment(self, exact):
        spin = myelin_spin(k=0.02)
        shifted = myelin_spin(k=0.02, df=tuple(f + 35.0 for f in spin.df))
        a = BlochMcConnellMatrix.zeros(2)
        b = BlochMcConnellMatrix.zeros(2)
        expm_spin(a, spin, 3.0, 35.0, BlochMcConnellWorkspace(2) if exact else None)
        expm_spin(b, shifted, 3.0, 0.0, BlochMcConnellWorkspace(2) if exact else None)
        assert np.allclose(a.to_array(), b.to_array(), rtol=1e-12, atol=1e-15)

    def test_longitudinal_exchange_uses_longitudinal_rates(self):
        k, t = 0.02, 3.0
        spin = myelin_spin(k=k)
        approx = BlochMcConnellMatrix.zeros(2)
        expm_spin(approx, spin, t)
        R1_free = 1 / 1000 + k * 0.25
        R1_myelin = 1 / 400 + k
        dR = R1_myelin - R1_free
        expected = k * np.exp(-R1_free * t) * (1 - np.exp(-dR * t)) / dR
        assert np.isclose(approx.block(1, 0).to_array()[2, 2], expected, rtol=1e-12)

    def test_approximate_free_precession_under_gradient(self):
        pos = Position(0.0, 0.0, 0.5)
        spin = myelin_spin(k=0.02, pos=pos)
        offset = gradient_frequency(Gradient(0, 0, 0.01), pos)
        shifted = myelin_spin(k=0.02, df=tuple(f + offset for f in spin.df))
        A1, B1 = free_precession(spin, 3.0, Gradient(0, 0, 0.01), approximate=True)
        A2, B2 = free_precession(shifted, 3.0, approximate=True)
        assert np.allclose(A1.to_array(), A2.to_array(), rtol=1e-12, atol=1e-15)
        assert np.allclose(B1.to_array(), B2.to_array(), rtol=1e-12, atol=1e-15)

    def test_workspace_size_mismatch(self):
        with pytest.raises(ConfigurationError):
            expm_spin(BlochMcConnellMatrix.zeros(2), myelin_spin(), 1.0,
                      workspace=BlochMcConnellWorkspace(3))


# ===========================================================================
# E. Degenerate branches
# ===========================================================================

class TestDegenerate:
    def identical_pools(self, df_shift=0.0):
        return SpinMC(1.0, (0.5, 0.5), (800.0, 800.0), (60.0, 60.0), (20.0, 20.0 + df_shift),
                      [[0.0, 1e-3], [1e-3, 0.0]])

    def test_equal_rates_and_frequencies(self):
        spin = self.identical_pools()
        t = 8.0
        approx = BlochMcConnellMatrix.zeros(2)
        expm_spin(approx, spin, t)
        block = approx.block(0, 1).to_array()
        diag = approx.block(0, 0).to_array()
        assert np.all(np.isfinite(approx.to_array()))
        # single-exchange term degenerates to r·t times the diagonal propagator
        assert np.allclose(block, 1e-3 * t * diag, rtol=1e-12, atol=1e-15)

    def test_nearly_equal_frequencies_continuous(self):
        t = 8.0
        a = BlochMcConnellMatrix.zeros(2)
        b = BlochMcConnellMatrix.zeros(2)
        expm_spin(a, self.identical_pools(), t)
        expm_spin(b, self.identical_pools(df_shift=1e-9), t)
        assert np.all(np.isfinite(b.to_array()))
        assert np.allclose(a.to_array(), b.to_array(), atol=1e-12)

    def test_degenerate_close_to_exact(self):
        spin = self.identical_pools()
        exact = BlochMcConnellMatrix.zeros(2)
        approx = BlochMcConnellMatrix.zeros(2)
        expm_spin(exact, spin, 8.0, workspace=BlochMcConnellWorkspace(2))
        expm_spin(approx, spin, 8.0)
        assert np.allclose(approx.to_array(), exact.to_array(), atol=1e-4)


# ===========================================================================
# F. Single-compartment closed form
# ===========================================================================

class TestSingleCompartment:
    @pytest.mark.parametrize("T1,T2,df,t", [
        (1000.0, 100.0, 3.75, 100.0),
        (400.0, 20.0, -40.0, 7.3),
        (np.inf, 50.0, 120.0, 2.0),
        (800.0, 800.0, 0.0, 1500.0),
    ])
    def test_matches_dense_exponential(self, T1, T2, df, t):
        A, _ = free_precession(Spin(1.0, T1, T2, df), t)
        G = BlochDynamicsMatrix(1 / T1, 1 / T2, 2 * np.pi * df / 1000).to_array()
        assert np.allclose(A.to_array(), dense_expm(G * t), rtol=1e-12, atol=1e-14)


class TestReferenceScenario:
    def test_two_pool_without_exchange(self):
        spin = SpinMC(1.0, (0.5, 0.5), (1000.0, 400.0), (100.0, 20.0), (0.0, 15.0), np.zeros((2, 2)))
        A, _ = free_precession(spin, 20.0)
        direct_sum = np.zeros((6, 6))
        for i in range(2):
            Ai, _ = free_precession(Spin(0.5, spin.T1[i], spin.T2[i], spin.df[i]), 20.0)
            direct_sum[3 * i:3 * i + 3, 3 * i:3 * i + 3] = Ai.to_array()
        assert np.allclose(A.to_array(), direct_sum, rtol=0, atol=1e-15)

    def test_generator_fields_match_blocks(self):
        A = random_generator(4, 3.0)
        dense = A.to_array()
        for i in range(4):
            assert np.array_equal(dense[3 * i:3 * i + 3, 3 * i:3 * i + 3], A.A[i].to_array())
            for j in range(4):
                if i != j:
                    E = A.E[exchange_index(i, j, 4)]
                    assert np.array_equal(dense[3 * i:3 * i + 3, 3 * j:3 * j + 3], E.to_array())
