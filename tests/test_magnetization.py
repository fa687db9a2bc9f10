"""
tests/test_magnetization.py – Magnetization and MagnetizationMC containers.
===========================================================================

Run with:  pytest tests/ -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from blochmc.exceptions import ConfigurationError
from blochmc.magnetization import Magnetization, MagnetizationMC, add


class TestMagnetization:
    def test_defaults_to_zero(self):
        assert np.allclose(Magnetization().to_array(), 0.0)

    def test_arithmetic(self):
        a = Magnetization(1.0, 2.0, 3.0)
        b = Magnetization(0.5, -1.0, 1.0)
        assert np.allclose((a + b).to_array(), [1.5, 1.0, 4.0])
        assert np.allclose((a - b).to_array(), [0.5, 3.0, 2.0])
        assert np.allclose((-a).to_array(), [-1.0, -2.0, -3.0])
        assert np.allclose((a / 2).to_array(), [0.5, 1.0, 1.5])

    def test_copy_is_independent(self):
        a = Magnetization(1.0, 0.0, 0.0)
        b = a.copy()
        b.x = 5.0
        assert a.x == 1.0

    def test_copyto_and_fill(self):
        a = Magnetization(1.0, 2.0, 3.0)
        b = Magnetization()
        a.copyto(b)
        assert np.allclose(np.asarray(b), [1.0, 2.0, 3.0])
        b.fill(0.25)
        assert np.allclose(np.asarray(b), 0.25)

    def test_signal(self):
        assert Magnetization(0.3, -0.4, 1.0).signal() == complex(0.3, -0.4)

    def test_from_array_rejects_bad_shape(self):
        with pytest.raises(ConfigurationError):
            Magnetization.from_array([1.0, 2.0])


class TestMagnetizationMC:
    def test_construction_from_tuples(self):
        M = MagnetizationMC((1, 0.4, 5), (0.2, 10, 0.2))
        assert M.N == 2
        assert M[1].y == 10.0
        assert np.allclose(M.to_array(), [1, 0.4, 5, 0.2, 10, 0.2])

    def test_from_array_round_trip_order(self):
        v = np.arange(9.0)
        M = MagnetizationMC.from_array(v)
        assert M.N == 3
        assert np.allclose(M[2].to_array(), [6.0, 7.0, 8.0])

    def test_signal_sums_compartments(self):
        M = MagnetizationMC((1, 2, 0), (0.5, -1, 3))
        assert M.signal() == complex(1.5, 1.0)

    def test_arithmetic(self):
        a = MagnetizationMC((1, 0, 0), (0, 1, 0))
        b = MagnetizationMC((0, 0, 1), (1, 1, 1))
        assert np.allclose((a + b).to_array(), [1, 0, 1, 1, 2, 1])
        assert np.allclose((a - b).to_array(), [1, 0, -1, -1, 0, -1])
        assert np.allclose((-a).to_array(), [-1, 0, 0, 0, -1, 0])

    def test_mismatched_compartments(self):
        with pytest.raises(ConfigurationError):
            MagnetizationMC((1, 0, 0)) + MagnetizationMC((1, 0, 0), (0, 0, 1))

    def test_empty_rejected(self):
        with pytest.raises(ConfigurationError):
            MagnetizationMC()


class TestInPlaceAdd:
    def test_single(self):
        M = Magnetization(1.0, 1.0, 1.0)
        add(M, Magnetization(1.0, 2.0, 3.0))
        assert np.allclose(M.to_array(), [2.0, 3.0, 4.0])

    def test_multi_with_array(self):
        M = MagnetizationMC.zeros(2)
        add(M, np.arange(6.0))
        assert np.allclose(M.to_array(), np.arange(6.0))

    def test_multi_bad_length(self):
        with pytest.raises(ConfigurationError):
            add(MagnetizationMC.zeros(2), np.zeros(3))
