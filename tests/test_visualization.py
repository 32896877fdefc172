"""
tests/test_visualization.py - Smoke tests for the plotting helpers.
===================================================================

Run with:  pytest tests/ -v
"""

import numpy as np
import sys, os
import matplotlib; matplotlib.use("Agg")
import matplotlib.pyplot as plt

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from bloch_torrey.sequences import PGSE, CosOGSE, DoublePGSE
from bloch_torrey.sweep import BTPDEResult
from bloch_torrey.visualization import plot_sequences, plot_signal_attenuation


def fake_result(bvalues, failed_slot=None):
    bvalues = np.asarray(bvalues, dtype=float)
    namp, nseq = bvalues.shape
    signal_allcmpts = (100.0 * np.exp(-0.002 * bvalues))[:, :, None].astype(complex)
    errors = {}
    if failed_slot is not None:
        signal_allcmpts[failed_slot] = np.nan
        errors[failed_slot] = "integrator did not converge"
    return BTPDEResult(
        magnetization=np.empty((1, namp, nseq, 1), dtype=object),
        signal=signal_allcmpts[None],
        signal_allcmpts=signal_allcmpts,
        itertimes=np.ones((namp, nseq, 1)),
        totaltime=1.0,
        qvalues=np.sqrt(bvalues),
        bvalues=bvalues,
        initial_signal=np.array([100.0 + 0j]),
        errors=errors,
    )


class TestPlotSequences:
    def test_two_panels(self, tmp_path):
        path = tmp_path / "sequences.png"
        fig = plot_sequences([PGSE(5000, 10000), DoublePGSE(2000, 4000, 1000), CosOGSE(5000, 5000, 2)],
                             npoint=200, save_path=str(path))
        assert len(fig.axes) == 2
        assert len(fig.axes[0].get_lines()) >= 3
        assert path.exists()
        plt.close(fig)

    def test_without_intervals(self):
        fig = plot_sequences([PGSE(10, 20)], npoint=50, show_intervals=False)
        assert len(fig.axes) == 2
        plt.close(fig)


class TestPlotSignalAttenuation:
    def test_curves_and_reference(self, tmp_path):
        bvalues = np.array([[0.0, 0.0], [100.0, 100.0], [500.0, 500.0]])
        path = tmp_path / "attenuation.png"
        fig = plot_signal_attenuation(fake_result(bvalues), labels=["PGSE", "OGSE"],
                                      diffusivity=0.002, save_path=str(path))
        ax = fig.axes[0]
        assert len(ax.get_lines()) == 3
        assert ax.get_legend() is not None
        assert path.exists()
        plt.close(fig)

    def test_failed_slot_is_tolerated(self):
        bvalues = np.array([[0.0], [100.0], [500.0]])
        fig = plot_signal_attenuation(fake_result(bvalues, failed_slot=(1, 0, 0)))
        line = fig.axes[0].get_lines()[0]
        assert np.isnan(line.get_ydata()).sum() == 1
        plt.close(fig)
