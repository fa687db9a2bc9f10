"""
tests/test_spin.py – Spin parameter validation and derived quantities.
======================================================================

Run with:  pytest tests/ -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from blochmc.exceptions import ConfigurationError
from blochmc.spin import Gradient, Position, Spin, SpinMC, gradient_frequency


RATES = [[0.0, 1 / 400], [1 / 20, 0.0]]


class TestSpin:
    def test_default_magnetization(self):
        spin = Spin(2.0, 1000.0, 100.0)
        assert np.allclose(spin.M.to_array(), [0.0, 0.0, 2.0])
        assert np.allclose(spin.Meq.to_array(), [0.0, 0.0, 2.0])
        assert spin.N == 1

    def test_infinite_times_allowed(self):
        spin = Spin(1.0, np.inf, np.inf)
        assert spin.T1 == np.inf

    @pytest.mark.parametrize("T1,T2", [(0.0, 10.0), (100.0, -1.0)])
    def test_invalid_times(self, T1, T2):
        with pytest.raises(ConfigurationError):
            Spin(1.0, T1, T2)

    def test_signal(self):
        assert Spin(1.0, 100.0, 10.0, M=(0.5, 0.25, 0.0)).signal() == complex(0.5, 0.25)


class TestSpinMC:
    def test_equilibrium(self):
        spin = SpinMC(1.0, (0.15, 0.85), (400, 1000), (20, 100), (15, 0), RATES)
        assert spin.N == 2
        assert np.allclose(spin.Meq.to_array(), [0, 0, 0.15, 0, 0, 0.85])
        assert np.allclose(spin.M.to_array(), spin.Meq.to_array())

    def test_out_rates(self):
        spin = SpinMC(1.0, (0.15, 0.85), (400, 1000), (20, 100), (15, 0), RATES)
        assert np.isclose(spin.r_out(0), 1 / 20)
        assert np.isclose(spin.r_out(1), 1 / 400)

    def test_signal_sums_compartments(self):
        spin = SpinMC(1.0, (0.5, 0.5), (400, 1000), (20, 100), 0.0, np.zeros((2, 2)),
                      M=[0.1, 0.2, 0.0, 0.3, -0.1, 0.0])
        assert np.isclose(spin.signal(), complex(0.4, 0.1))

    def test_from_residence_times(self):
        spin = SpinMC.from_residence_times(1.0, (0.15, 0.85), (400, 1000), (20, 100), (15, 0),
                                           [[np.inf, 400.0], [20.0, np.inf]])
        assert np.allclose(spin.r, RATES)

    def test_residence_time_inf_means_no_exchange(self):
        spin = SpinMC.from_residence_times(1.0, (0.5, 0.5), (400, 1000), (20, 100), 0.0,
                                           [[1.0, np.inf], [np.inf, 1.0]])
        assert np.allclose(spin.r, 0.0)

    @pytest.mark.parametrize("kwargs", [
        dict(frac=(0.5, 0.6)),                                   # fractions do not sum to 1
        dict(T1=(400, 1000, 1200)),                              # wrong length
        dict(r=[[0.0, 0.1, 0.0], [0.1, 0.0, 0.0]]),              # wrong table shape
        dict(r=[[0.0, -0.1], [0.1, 0.0]]),                       # negative rate
        dict(r=[[0.1, 0.1], [0.1, 0.0]]),                        # self exchange
        dict(T2=(0.0, 100.0)),                                   # invalid T2
        dict(M=[0.0, 0.0, 1.0]),                                 # wrong compartment count
    ])
    def test_invalid_configuration(self, kwargs):
        params = dict(M0=1.0, frac=(0.15, 0.85), T1=(400, 1000), T2=(20, 100), df=(15, 0), r=RATES)
        params.update(kwargs)
        with pytest.raises(ConfigurationError):
            SpinMC(**params)


class TestGradients:
    def test_frequency(self):
        assert np.isclose(gradient_frequency(Gradient(0, 0, 1), Position(0, 0, 0.5)), 2129.0)

    def test_accepts_sequence(self):
        assert np.isclose(gradient_frequency((1, 1, 0), Position(0.5, 0.5, 3)), 4258.0)

    def test_bad_gradient(self):
        with pytest.raises(ConfigurationError):
            gradient_frequency((1, 2), Position())

    def test_readable(self):
        assert "G/cm" in str(Gradient(0, 1, 0))
        assert "cm" in str(Position(1, 2, 3))
