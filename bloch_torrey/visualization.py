"""
visualization.py - Figures for gradient waveforms and signal attenuation.
=========================================================================

  - plot_sequences          : f(t) and F(t) of one or more sequences,
                              with interval breakpoints marked
  - plot_signal_attenuation : |S(b)| / S(0) per sequence on a log scale,
                              with the free-diffusion reference exp(-D b)
"""

from __future__ import annotations

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.ticker as ticker
from typing import Optional, Sequence as SequenceType

from .sequences import Sequence
from .sweep import BTPDEResult


_COLORS = ["#2C7BB6", "#D7191C", "#1A9641", "#FDAE61", "#7B3294", "#555555"]


def _style(ax, xlabel: str, ylabel: str) -> None:
    ax.set_xlabel(xlabel, fontsize=11)
    ax.set_ylabel(ylabel, fontsize=11)
    ax.grid(True, linestyle="--", alpha=0.4)
    ax.set_facecolor("#F9F9F9")


# ---------------------------------------------------------------------------
# Waveforms
# ---------------------------------------------------------------------------

def plot_sequences(
    sequences: SequenceType[Sequence],
    npoint: int = 1000,
    title: str = "Gradient Sequences",
    time_unit: str = "µs",
    show_intervals: bool = True,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Plot the profile f(t) (top) and its integral F(t) (bottom).

    Parameters
    ----------
    sequences      : list of Sequence objects (a single one is accepted)
    npoint         : samples per curve on [0, TE]
    title          : figure title
    time_unit      : label for the horizontal axis
    show_intervals : mark the breakpoints of the first sequence
    save_path      : save PNG to this path if given

    Returns
    -------
    matplotlib.figure.Figure
    """
    if isinstance(sequences, Sequence):
        sequences = [sequences]
    fig, (ax_f, ax_F) = plt.subplots(2, 1, figsize=(9, 6), sharex=True)

    for i, seq in enumerate(sequences):
        color = _COLORS[i % len(_COLORS)]
        t = np.linspace(0, seq.TE, npoint)
        ax_f.plot(t, seq.call(t), color=color, lw=1.8, label=seq.string())
        ax_F.plot(t, seq.integral(t), color=color, lw=1.8)

    if show_intervals and len(sequences):
        for tb in sequences[0].intervals().timelist:
            for ax in (ax_f, ax_F):
                ax.axvline(tb, color="#999999", lw=0.8, ls=":", alpha=0.8)

    ax_f.axhline(0, color="black", lw=0.6)
    ax_F.axhline(0, color="black", lw=0.6)
    _style(ax_f, "", r"$f(t)$")
    _style(ax_F, f"Time  ({time_unit})", r"$F(t) = \int_0^t f(s)\,ds$")
    ax_f.set_title(title, fontsize=13, fontweight="bold", pad=10)
    ax_f.legend(loc="upper right", fontsize=8, framealpha=0.85)
    fig.patch.set_facecolor("white")
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")

    return fig


# ---------------------------------------------------------------------------
# Signal
# ---------------------------------------------------------------------------

def plot_signal_attenuation(
    result: BTPDEResult,
    labels: Optional[SequenceType[str]] = None,
    idirection: int = 0,
    diffusivity: Optional[float] = None,
    title: str = "Signal Attenuation",
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Plot |S(b)| / S(0) against b for every sequence of a sweep.

    Parameters
    ----------
    result      : BTPDEResult from solve_btpde
    labels      : legend entry per sequence (defaults to "sequence k")
    idirection  : gradient direction to plot
    diffusivity : if given, draw the free-diffusion curve exp(-D b)
    title       : figure title
    save_path   : save PNG to this path if given

    Failed tasks (NaN signal) leave gaps in the curves.
    """
    attenuation = result.attenuation()[:, :, idirection]
    nseq = attenuation.shape[1]
    if labels is None:
        labels = [f"sequence {iseq + 1}" for iseq in range(nseq)]

    fig, ax = plt.subplots(figsize=(8, 4.5))
    for iseq in range(nseq):
        order = np.argsort(result.bvalues[:, iseq])
        ax.semilogy(result.bvalues[order, iseq], attenuation[order, iseq], "o-",
                    color=_COLORS[iseq % len(_COLORS)], lw=1.8, ms=5, label=labels[iseq])

    if diffusivity is not None:
        b = np.linspace(0, np.nanmax(result.bvalues), 200)
        ax.semilogy(b, np.exp(-diffusivity * b), color="black", lw=1.0, ls="--",
                    alpha=0.8, label=rf"$e^{{-Db}}$, $D = {diffusivity:g}$")

    _style(ax, r"$b$  (µs/µm²)", r"$|S(b)| / S(0)$")
    ax.yaxis.set_major_formatter(ticker.FormatStrFormatter("%.2f"))
    ax.set_title(title, fontsize=13, fontweight="bold", pad=10)
    ax.legend(loc="lower left", fontsize=9, framealpha=0.85)
    fig.patch.set_facecolor("white")
    fig.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")

    return fig
