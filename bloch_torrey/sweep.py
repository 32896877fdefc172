"""
sweep.py - Experiment sweep over amplitudes, sequences and directions.
======================================================================

solve_btpde runs one Bloch-Torrey solve per (amplitude, sequence,
direction) combination.  Each combination is an independent task that
only reads the shared FEMOperators and ODEOptions, so tasks can run on
a thread pool; results are merged by task index, which makes parallel
and sequential sweeps identical.

Per task the final magnetization is split by compartment and reduced to

    signal_c = sum(M_c @ y_c)

and the compartment-summed signal_allcmpts is formed once every task
has finished.  A task whose integrator raises IntegrationError is
recorded as failed (NaN signal, no magnetization) without affecting the
other slots.  There is no cancellation or timeout: a hung integrator
call blocks its worker.
"""

from __future__ import annotations

import itertools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .assembly import FEMOperators, assemble_btpde_operators
from .core import simulate_btpde
from .experiment import BTPDESetup, GradientSetup, PDEParams
from .integrators import IntegrationError, ODEOptions
from .mesh import FEMesh

logger = logging.getLogger(__name__)

TaskIndex = Tuple[int, int, int]


@dataclass
class BTPDEResult:
    """Result bundle of a Bloch-Torrey sweep.

    Attributes
    ----------
    magnetization   : (ncompartment, namplitude, nsequence, ndirection) object
                      array of complex vectors; None in failed slots
    signal          : (ncompartment, namplitude, nsequence, ndirection) complex
    signal_allcmpts : (namplitude, nsequence, ndirection) complex
    itertimes       : (namplitude, nsequence, ndirection) task wall times [s]
    totaltime       : float  wall time of assembly plus sweep [s]
    qvalues         : (namplitude, nsequence)
    bvalues         : (namplitude, nsequence)
    initial_signal  : (ncompartment,) signal of the initial magnetization
    errors          : {(iamp, iseq, idir): message} for failed tasks
    """
    magnetization: np.ndarray
    signal: np.ndarray
    signal_allcmpts: np.ndarray
    itertimes: np.ndarray
    totaltime: float
    qvalues: np.ndarray
    bvalues: np.ndarray
    initial_signal: np.ndarray
    errors: Dict[TaskIndex, str] = field(default_factory=dict)

    @property
    def failed(self) -> np.ndarray:
        """Boolean mask (namplitude, nsequence, ndirection) of failed tasks."""
        mask = np.zeros(self.signal_allcmpts.shape, dtype=bool)
        for index in self.errors:
            mask[index] = True
        return mask

    def attenuation(self) -> np.ndarray:
        """|signal_allcmpts| normalised by the total initial signal."""
        return np.abs(self.signal_allcmpts) / np.abs(self.initial_signal.sum())


@dataclass
class _TaskResult:
    index: TaskIndex
    magnetization: Optional[List[np.ndarray]]
    signal: np.ndarray
    itertime: float
    error: Optional[str] = None


def _run_task(
    index: TaskIndex,
    operators: FEMOperators,
    gradient: GradientSetup,
    qvalues: np.ndarray,
    bvalues: np.ndarray,
    options: ODEOptions,
    integrator,
) -> _TaskResult:
    iamp, iseq, idir = index
    seq = gradient.sequences[iseq]
    q = qvalues[iamp, iseq]
    direction = gradient.directions[:, idir]
    logger.info(
        "Solving BTPDE of size %d using %r:\n  direction %d: g = [%.2f, %.2f, %.2f]\n"
        "  sequence  %d: %s\n  amplitude %d: q = %g, b = %g",
        operators.npoint, integrator, idir + 1, *direction,
        iseq + 1, seq, iamp + 1, q, bvalues[iamp, iseq],
    )

    tic = time.perf_counter()
    try:
        magnetization = simulate_btpde(operators, q, seq, direction, options, integrator)
    except IntegrationError as exc:
        itertime = time.perf_counter() - tic
        logger.warning("Task (amplitude %d, sequence %d, direction %d) failed: %s",
                       iamp + 1, iseq + 1, idir + 1, exc)
        return _TaskResult(index, None, np.full(operators.ncompartment, np.nan + 0j), itertime, str(exc))

    signal = operators.compartment_signals(magnetization)
    itertime = time.perf_counter() - tic
    logger.info("  done in %.3f s", itertime)
    return _TaskResult(index, operators.split(magnetization), signal, itertime)


def solve_btpde(
    femesh: FEMesh,
    pde: PDEParams,
    gradient: GradientSetup,
    btpde: Optional[BTPDESetup] = None,
) -> BTPDEResult:
    """Solve the Bloch-Torrey PDE for every amplitude, sequence and direction.

    Parameters
    ----------
    femesh   : FEMesh         compartment meshes
    pde      : PDEParams      diffusivity, relaxation, density, permeability
    gradient : GradientSetup  amplitudes, sequences and directions
    btpde    : BTPDESetup     integrator, tolerances and parallelism
                              (defaults to BTPDESetup())

    Returns
    -------
    BTPDEResult

    Raises
    ------
    ValueError
        On inconsistent configuration or mesh data; nothing is solved.

    Examples
    --------
    >>> femesh = create_box_femesh((5, 5, 2), (10.0, 10.0, 2.0))
    >>> pde = PDEParams.isotropic(1, 1)
    >>> gradient = GradientSetup([10.0], [PGSE(5000, 5000)])
    >>> result = solve_btpde(femesh, pde, gradient)
    >>> result.signal_allcmpts.shape
    (1, 1, 1)
    """
    if btpde is None:
        btpde = BTPDESetup()
    start_time = time.perf_counter()

    operators = assemble_btpde_operators(femesh, pde, symmetric=btpde.symmetric_flux)
    qvalues, bvalues = gradient.amplitudes()
    options = ODEOptions(operators.M, abstol=btpde.abstol, reltol=btpde.reltol)

    ncmpt = operators.ncompartment
    namp, nseq, ndir = gradient.namplitude, gradient.nsequence, gradient.ndirection
    tasks = list(itertools.product(range(namp), range(nseq), range(ndir)))

    def run(index):
        return _run_task(index, operators, gradient, qvalues, bvalues, options, btpde.integrator)

    if btpde.parallel and len(tasks) > 1:
        logger.info("Running %d tasks on a thread pool", len(tasks))
        with ThreadPoolExecutor(max_workers=btpde.max_workers) as executor:
            task_results = list(executor.map(run, tasks))
    else:
        task_results = [run(index) for index in tasks]

    magnetization = np.empty((ncmpt, namp, nseq, ndir), dtype=object)
    signal = np.empty((ncmpt, namp, nseq, ndir), dtype=complex)
    itertimes = np.empty((namp, nseq, ndir))
    errors = {}
    for res in task_results:
        iamp, iseq, idir = res.index
        for icmpt in range(ncmpt):
            magnetization[icmpt, iamp, iseq, idir] = (
                None if res.magnetization is None else res.magnetization[icmpt]
            )
        signal[:, iamp, iseq, idir] = res.signal
        itertimes[iamp, iseq, idir] = res.itertime
        if res.error is not None:
            errors[res.index] = res.error

    totaltime = time.perf_counter() - start_time
    if errors:
        logger.warning("%d of %d tasks failed", len(errors), len(tasks))
    logger.info("Done with BTPDE computation in %.3f s", totaltime)

    return BTPDEResult(
        magnetization=magnetization,
        signal=signal,
        signal_allcmpts=signal.sum(axis=0),
        itertimes=itertimes,
        totaltime=totaltime,
        qvalues=qvalues,
        bvalues=bvalues,
        initial_signal=operators.compartment_signals(operators.rho),
        errors=errors,
    )
