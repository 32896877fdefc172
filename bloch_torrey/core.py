"""
core.py - Interval-wise time evolution of the Bloch-Torrey system.
===================================================================

The semi-discrete Bloch-Torrey equation for one (q, sequence, g) task:

    M dy/dt = -(K + Q + R + i q f(t) J_g) y,      y(0) = rho

    K   : stiffness (diffusion)
    Q   : permeability coupling between compartments
    R   : T2 relaxation
    J_g : g_x Jx + g_y Jy + g_z Jz, coordinate moment along g
    f   : normalised gradient time profile of the sequence

The waveform is piecewise defined, so the solve is split at the
breakpoints returned by sequence.intervals().  On each interval

  - constant profile  -> the generator is a constant sparse matrix,
                         evaluated once at the interval midpoint
  - varying profile   -> the generator is a callable of t

and the integrator is asked for exactly three output times
[start, midpoint, end].  Only the end state is kept; it becomes the
initial state of the next interval.

Key invariants:
  q = 0, no relaxation, no outer permeability  -> sum(M y) conserved
  g -> -g on a centrosymmetric domain          -> same signal
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple

import numpy as np
from scipy import sparse

from .assembly import FEMOperators
from .integrators import ODEOptions
from .sequences import Sequence

logger = logging.getLogger(__name__)


# ===========================================================================
# Generator of one interval
# ===========================================================================

def btpde_functions_interval(
    KQR: sparse.spmatrix,
    J: sparse.spmatrix,
    q: float,
    seq: Sequence,
    interval_midpoint: float,
    constant: bool,
) -> Tuple[Callable, object]:
    """Right-hand side and Jacobian of the Bloch-Torrey ODE on one interval.

    Parameters
    ----------
    KQR               : sparse   K + Q + R
    J                 : sparse   moment matrix along the gradient direction
    q                 : float    gradient amplitude (q-value)
    seq               : Sequence time profile f(t)
    interval_midpoint : float    time at which a constant profile is evaluated
    constant          : bool     profile is constant on the interval

    Returns
    -------
    ode_function : callable (t, y) -> -(KQR + i q f(t) J) y, vectorised
                   over the columns of y
    jacobian     : sparse matrix if constant, else callable (t, y) -> sparse
    """
    if constant:
        jacobian = (-(KQR + (1j * q * float(seq.call(interval_midpoint))) * J)).tocsr()

        def ode_function(t, y):
            return jacobian @ y

        return ode_function, jacobian

    def jacobian_t(t, y=None):
        return (-(KQR + (1j * q * float(seq.call(t))) * J)).tocsr()

    def ode_function(t, y):
        return jacobian_t(t) @ y

    return ode_function, jacobian_t


# ===========================================================================
# One task
# ===========================================================================

def simulate_btpde(
    operators: FEMOperators,
    q: float,
    seq: Sequence,
    direction: np.ndarray,
    options: ODEOptions,
    integrator: Callable,
) -> np.ndarray:
    """Advance the initial magnetization through every interval of seq.

    Parameters
    ----------
    operators  : FEMOperators  global matrices and initial vector
    q          : float         q-value of the task
    seq        : Sequence      gradient waveform
    direction  : (3,) array    unit gradient direction
    options    : ODEOptions    mass matrix and tolerances shared by all tasks
    integrator : callable      (fun, time_list, y0, options) -> (t, y)

    Returns
    -------
    magnetization : (npoint,) complex array at t = TE

    Raises
    ------
    IntegrationError
        Propagated from the integrator; the remaining intervals are skipped.
    """
    J = operators.direction_matrix(direction)
    KQR = (operators.K + operators.Q + operators.R).tocsr()
    partition = seq.intervals()

    magnetization = operators.rho.copy()
    for iint in range(partition.ninterval):
        start, end = partition.timelist[iint], partition.timelist[iint + 1]
        midpoint = (start + end) / 2
        tic = time.perf_counter()

        ode_function, jacobian = btpde_functions_interval(
            KQR, J, q, seq, midpoint, partition.constant[iint]
        )
        _, y = integrator(
            ode_function,
            np.array([start, midpoint, end]),
            magnetization,
            options.with_jacobian(jacobian),
        )
        magnetization = y[:, -1]

        logger.debug(
            "  interval %d/%d %s, %s: %.3f s",
            iint + 1, partition.ninterval, partition.interval_str[iint],
            partition.timeprofile_str[iint], time.perf_counter() - tic,
        )

    return magnetization
