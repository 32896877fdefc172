"""
tests/test_btpde.py - End-to-end tests for the interval driver and the sweep.
=============================================================================

Physics invariants under test:

  A. free-diffusion limit   - |S(b)| / S(0) ~ exp(-D b) on a 50-point box
  B. monotonicity           - attenuation does not increase with b
  C. conservation           - q = 0 keeps the total magnetization
  D. relaxation             - q = 0 with finite T2 gives exp(-TE / T2)
  E. symmetry               - g and -g give the same signal on a centred box
  F. determinism            - sequential and threaded sweeps agree
  G. partial failure        - a failing task leaves the other slots valid
  H. interval generator     - constant vs time-dependent Jacobians

Run with:  pytest tests/ -v
"""

import logging

import numpy as np
import pytest
import sys, os
from scipy import sparse

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from bloch_torrey.core import btpde_functions_interval, simulate_btpde
from bloch_torrey.assembly import assemble_btpde_operators
from bloch_torrey.experiment import BTPDESetup, GradientSetup, PDEParams
from bloch_torrey.integrators import IntegrationError, ODEOptions, ScipyIntegrator, ThetaIntegrator
from bloch_torrey.mesh import create_box_femesh
from bloch_torrey.sequences import PGSE, CosOGSE, DoublePGSE
from bloch_torrey.sweep import BTPDEResult, solve_btpde


D = 0.002
PRECISE = dict(reltol=1e-8, abstol=1e-10)


@pytest.fixture(scope="module")
def femesh():
    return create_box_femesh((5, 5, 2), (10.0, 10.0, 2.0))


@pytest.fixture(scope="module")
def two_compartments():
    return create_box_femesh((3, 3, 3), (4.0, 4.0, 2.0), ncompartment=2)


# ---------------------------------------------------------------------------
# A-B. free diffusion and monotonicity
# ---------------------------------------------------------------------------

class TestSingleCompartment:
    def test_reference_scenario(self, femesh):
        """50 points, PGSE(5000, 5000), b = 10, D = 0.002, no relaxation."""
        assert femesh.npoint_cmpts == (50,)
        pde = PDEParams.isotropic(1, 1, diffusivity=D, relaxation=np.inf, initial_density=1.0)
        gradient = GradientSetup([10.0], [PGSE(5000, 5000)], values_type="b")
        result = solve_btpde(femesh, pde, gradient, BTPDESetup(parallel=False))

        assert isinstance(result, BTPDEResult)
        assert result.signal.shape == (1, 1, 1, 1)
        assert np.array_equal(result.signal_allcmpts, result.signal[0])
        assert result.initial_signal[0].real == pytest.approx(200.0)
        assert result.attenuation()[0, 0, 0] == pytest.approx(np.exp(-D * 10.0), rel=0.05)
        assert not result.failed.any()
        assert result.errors == {}

    def test_attenuation_non_increasing_in_b(self, femesh):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        bvalues = [0.0, 100.0, 500.0, 2000.0]
        gradient = GradientSetup(bvalues, [PGSE(5000, 10000)])
        result = solve_btpde(femesh, pde, gradient, BTPDESetup(**PRECISE))
        attenuation = result.attenuation()[:, 0, 0]
        assert attenuation[0] == pytest.approx(1.0, rel=1e-6)
        assert np.all(np.diff(attenuation) <= 1e-9)
        assert attenuation[-1] < attenuation[1] < 1.0

    def test_oscillating_sequence(self, femesh):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([10.0], [CosOGSE(5000, 5000, 2)])
        result = solve_btpde(femesh, pde, gradient, BTPDESetup(parallel=False))
        assert result.attenuation()[0, 0, 0] == pytest.approx(np.exp(-D * 10.0), rel=0.05)

    def test_theta_integrator_agrees(self, femesh):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([500.0], [PGSE(5000, 10000)])
        reference = solve_btpde(femesh, pde, gradient, BTPDESetup(**PRECISE))
        theta = solve_btpde(femesh, pde, gradient, BTPDESetup(integrator=ThetaIntegrator(nstep=400)))
        assert np.allclose(theta.signal, reference.signal, rtol=1e-3)


# ---------------------------------------------------------------------------
# C-D. conservation and relaxation
# ---------------------------------------------------------------------------

class TestConservation:
    def test_q_zero_two_compartments(self, two_compartments):
        pde = PDEParams.isotropic(2, 3, diffusivity=D, initial_density=[1.0, 2.0],
                                  permeability=[1e-2, 0.0, 0.0])
        gradient = GradientSetup([0.0], [PGSE(5000, 10000)])
        result = solve_btpde(two_compartments, pde, gradient,
                             BTPDESetup(symmetric_flux=True, **PRECISE))
        total = result.signal_allcmpts[0, 0, 0]
        assert total == pytest.approx(result.initial_signal.sum(), rel=1e-6)
        # spins move from the dense compartment to the sparse one
        assert result.signal[0, 0, 0, 0].real > result.initial_signal[0].real

    def test_density_weighted_coupling_keeps_equilibrium(self, two_compartments):
        pde = PDEParams.isotropic(2, 3, diffusivity=D, initial_density=[1.0, 2.0],
                                  permeability=[1e-2, 0.0, 0.0])
        gradient = GradientSetup([0.0], [PGSE(5000, 10000)])
        result = solve_btpde(two_compartments, pde, gradient, BTPDESetup(**PRECISE))
        assert np.allclose(result.signal[:, 0, 0, 0], result.initial_signal, rtol=1e-6)

    def test_relaxation_decay(self, femesh):
        T2 = 20000.0
        seq = PGSE(5000, 10000, TE=20000)
        pde = PDEParams.isotropic(1, 1, diffusivity=D, relaxation=T2)
        result = solve_btpde(femesh, pde, GradientSetup([0.0], [seq]), BTPDESetup(**PRECISE))
        assert result.attenuation()[0, 0, 0] == pytest.approx(np.exp(-seq.TE / T2), rel=1e-5)


# ---------------------------------------------------------------------------
# E-F. symmetry and determinism
# ---------------------------------------------------------------------------

class TestSweep:
    def test_opposite_directions(self, femesh):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([1000.0], [PGSE(5000, 10000)],
                                 directions=[[1.0, -1.0], [1.0, -1.0], [1.0, -1.0]])
        result = solve_btpde(femesh, pde, gradient, BTPDESetup(**PRECISE))
        s = result.signal_allcmpts[0, 0]
        assert s[0] == pytest.approx(s[1], rel=1e-5)

    def test_sequential_equals_parallel(self, two_compartments):
        pde = PDEParams.isotropic(2, 3, diffusivity=[D, 0.001], relaxation=[np.inf, 30000.0],
                                  permeability=[1e-4, 0.0, 0.0])
        gradient = GradientSetup([100.0, 1000.0], [PGSE(5000, 10000), DoublePGSE(2000, 4000, 1000)],
                                 directions=np.eye(3))
        sequential = solve_btpde(two_compartments, pde, gradient, BTPDESetup(parallel=False))
        parallel = solve_btpde(two_compartments, pde, gradient, BTPDESetup(parallel=True, max_workers=4))
        assert np.allclose(sequential.signal, parallel.signal, rtol=1e-8, atol=0)
        assert np.allclose(sequential.signal_allcmpts, parallel.signal_allcmpts, rtol=1e-8, atol=0)

    def test_result_layout(self, two_compartments):
        pde = PDEParams.isotropic(2, 3, diffusivity=D)
        gradient = GradientSetup([100.0, 1000.0], [PGSE(5000, 10000), CosOGSE(5000, 5000, 1)],
                                 directions=np.eye(3))
        result = solve_btpde(two_compartments, pde, gradient)
        assert result.magnetization.shape == (2, 2, 2, 3)
        assert result.signal.shape == (2, 2, 2, 3)
        assert result.signal_allcmpts.shape == (2, 2, 3)
        assert result.itertimes.shape == (2, 2, 3)
        assert result.qvalues.shape == result.bvalues.shape == (2, 2)
        assert np.all(result.itertimes > 0)
        assert result.totaltime >= result.itertimes.max()
        for icmpt, npoint in enumerate(two_compartments.npoint_cmpts):
            assert result.magnetization[icmpt, 1, 1, 2].shape == (npoint,)
        assert np.allclose(result.signal_allcmpts, result.signal.sum(axis=0))

    def test_configuration_error_aborts(self, femesh):
        pde = PDEParams.isotropic(2, 3)
        gradient = GradientSetup([10.0], [PGSE(5000, 5000)])
        with pytest.raises(ValueError):
            solve_btpde(femesh, pde, gradient)

    def test_logs_tasks(self, femesh, caplog):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([10.0], [PGSE(5000, 5000)])
        with caplog.at_level(logging.DEBUG, logger="bloch_torrey"):
            solve_btpde(femesh, pde, gradient, BTPDESetup(parallel=False))
        messages = [record.getMessage() for record in caplog.records]
        assert any("Setting up FEM matrices" in m for m in messages)
        assert any("Solving BTPDE of size 50" in m for m in messages)
        assert sum("interval" in m for m in messages) == 2


# ---------------------------------------------------------------------------
# G. partial failure
# ---------------------------------------------------------------------------

class FailingLongIntegrator(ScipyIntegrator):
    """Fails on every interval ending after t_max."""

    def __init__(self, t_max):
        super().__init__("BDF")
        self.t_max = t_max

    def __call__(self, fun, time_list, y0, options):
        if time_list[-1] > self.t_max:
            raise IntegrationError("integrator did not converge")
        return super().__call__(fun, time_list, y0, options)


class TestPartialFailure:
    @pytest.mark.parametrize("parallel", [False, True])
    def test_failed_slots_are_recorded(self, femesh, parallel):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([10.0, 100.0], [PGSE(5000, 5000), PGSE(5000, 10000)])
        btpde = BTPDESetup(integrator=FailingLongIntegrator(t_max=10001.0), parallel=parallel)
        result = solve_btpde(femesh, pde, gradient, btpde)

        assert np.array_equal(result.failed[:, :, 0], [[False, True], [False, True]])
        assert set(result.errors) == {(0, 1, 0), (1, 1, 0)}
        assert "did not converge" in result.errors[(0, 1, 0)]
        assert np.all(np.isnan(result.signal_allcmpts[:, 1, 0]))
        assert np.all(np.isfinite(result.signal_allcmpts[:, 0, 0]))
        assert result.magnetization[0, 0, 1, 0] is None
        assert result.magnetization[0, 0, 0, 0] is not None

    def test_failure_is_logged(self, femesh, caplog):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        gradient = GradientSetup([10.0], [PGSE(5000, 10000)])
        btpde = BTPDESetup(integrator=FailingLongIntegrator(t_max=0.0), parallel=False)
        with caplog.at_level(logging.WARNING, logger="bloch_torrey"):
            solve_btpde(femesh, pde, gradient, btpde)
        assert any(record.levelno == logging.WARNING for record in caplog.records)


# ---------------------------------------------------------------------------
# H. interval generator
# ---------------------------------------------------------------------------

class TestIntervalFunctions:
    def setup_method(self):
        n = 5
        self.KQR = sparse.diags(np.arange(1.0, n + 1)).tocsr()
        self.J = sparse.identity(n, format="csr")
        self.y = np.ones(n, dtype=complex)

    def test_constant_interval(self):
        seq = PGSE(10.0, 20.0)
        fun, jac = btpde_functions_interval(self.KQR, self.J, 2.0, seq, 5.0, True)
        assert sparse.issparse(jac)
        expected = -(self.KQR.diagonal() + 2j)
        assert np.allclose(jac.diagonal(), expected)
        assert np.allclose(fun(0.0, self.y), expected)
        assert fun(0.0, np.ones((5, 3))).shape == (5, 3)

    def test_time_dependent_interval(self):
        seq = CosOGSE(10.0, 20.0, 1)
        fun, jac = btpde_functions_interval(self.KQR, self.J, 2.0, seq, 5.0, False)
        assert callable(jac)
        for t in (0.0, 2.5, 5.0):
            expected = -(self.KQR.diagonal() + 2j * np.cos(2 * np.pi * t / 10.0))
            assert np.allclose(jac(t, self.y).diagonal(), expected)
            assert np.allclose(fun(t, self.y), expected)

    def test_simulate_btpde_q_zero(self, femesh):
        pde = PDEParams.isotropic(1, 1, diffusivity=D)
        ops = assemble_btpde_operators(femesh, pde)
        options = ODEOptions(ops.M, **PRECISE)
        mag = simulate_btpde(ops, 0.0, PGSE(5000, 10000), np.array([1.0, 0.0, 0.0]),
                             options, ScipyIntegrator())
        assert np.allclose(mag, ops.rho, rtol=1e-6)
