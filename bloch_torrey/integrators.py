"""
integrators.py - Time integrators for M dy/dt = f(t, y).
========================================================

An integrator is any callable

    integrator(fun, time_list, y0, options) -> (t, y)

with time_list the requested output times (first entry is the initial
time), y0 the complex initial state and y of shape (n, len(time_list)).
It raises IntegrationError when it cannot reach the final time.

Two integrators are provided:

  - ScipyIntegrator : adaptive scipy.integrate.solve_ivp (BDF by default)
                      applied to y' = M^-1 f(t, y)
  - ThetaIntegrator : fixed-step theta scheme for linear systems
                      f = A(t) y; theta = 1/2 is Crank-Nicolson,
                      theta = 1 is backward Euler

ODEOptions carries the mass matrix, tolerances and Jacobian, mirroring
the option set of stiff ODE suites (Mass, AbsTol, RelTol, Jacobian,
Vectorized, MassSingular).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Tuple, Union

import numpy as np
from scipy import sparse
from scipy.integrate import solve_ivp
from scipy.sparse.linalg import splu


class IntegrationError(RuntimeError):
    """Raised when an integrator fails to reach the end of its time span."""


# ===========================================================================
# Options
# ===========================================================================

@dataclass(frozen=True)
class ODEOptions:
    """Solver options for one ODE interval.

    Attributes
    ----------
    mass          : (n, n) sparse mass matrix M (non-singular)
    abstol        : absolute tolerance
    reltol        : relative tolerance
    jacobian      : df/dy as a sparse matrix (constant) or a callable
                    jacobian(t, y) returning one; None lets the integrator
                    approximate it
    vectorized    : fun accepts y of shape (n, k)
    mass_singular : must be False; differential-algebraic systems are not
                    supported

    The sparse LU factorisation of M is computed once on construction and
    shared by copies made with with_jacobian().
    """
    mass: sparse.spmatrix
    abstol: float = 1e-6
    reltol: float = 1e-4
    jacobian: Optional[Union[sparse.spmatrix, Callable]] = None
    vectorized: bool = True
    mass_singular: bool = False
    mass_lu: object = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        if self.mass_singular:
            raise ValueError("singular mass matrices are not supported")
        if self.mass.shape[0] != self.mass.shape[1]:
            raise ValueError(f"mass matrix must be square, got shape {self.mass.shape}")
        if not (self.abstol > 0 and self.reltol > 0):
            raise ValueError(f"tolerances must be positive, got abstol={self.abstol}, reltol={self.reltol}")
        if self.mass_lu is None:
            object.__setattr__(self, "mass_lu", splu(sparse.csc_matrix(self.mass, dtype=complex)))

    @property
    def size(self) -> int:
        return self.mass.shape[0]

    def with_jacobian(self, jacobian) -> "ODEOptions":
        """Copy of these options with another Jacobian, reusing the mass LU."""
        return replace(self, jacobian=jacobian)

    def solve_mass(self, rhs: np.ndarray) -> np.ndarray:
        """Return M^-1 rhs for a vector or an (n, k) block."""
        return self.mass_lu.solve(np.asarray(rhs, dtype=complex))


def _dense(matrix) -> np.ndarray:
    return matrix.toarray() if sparse.issparse(matrix) else np.asarray(matrix)


# ===========================================================================
# scipy.integrate.solve_ivp
# ===========================================================================

class ScipyIntegrator:
    """Adaptive integration with scipy.integrate.solve_ivp.

    The mass matrix is folded in with its LU factorisation, so the
    solver sees y' = M^-1 f(t, y) and, for implicit methods, the
    Jacobian M^-1 df/dy.  That Jacobian is dense, which suits the small
    and medium meshes this integrator is meant for; use ThetaIntegrator
    for large meshes.

    Parameters
    ----------
    method   : str    "BDF" (default), "RK45", "RK23" or "DOP853"; these
                      are the solve_ivp methods that accept complex states
    max_step : float  upper bound on the internal step size
    """

    METHODS = ("BDF", "RK45", "RK23", "DOP853")
    IMPLICIT = ("BDF",)

    def __init__(self, method: str = "BDF", max_step: float = np.inf) -> None:
        if method not in self.METHODS:
            raise ValueError(f"method must be one of {self.METHODS}, got {method!r}")
        if not max_step > 0:
            raise ValueError(f"max_step must be positive, got {max_step}")
        self.method = method
        self.max_step = max_step

    def __repr__(self) -> str:
        return f"ScipyIntegrator(method={self.method!r})"

    def __call__(self, fun, time_list, y0, options: ODEOptions) -> Tuple[np.ndarray, np.ndarray]:
        time_list = np.asarray(time_list, dtype=float)
        y0 = np.asarray(y0, dtype=complex)

        def rhs(t, y):
            return options.solve_mass(fun(t, y))

        kwargs = dict(
            method=self.method,
            t_eval=time_list,
            rtol=options.reltol,
            atol=options.abstol,
            vectorized=options.vectorized,
            max_step=self.max_step,
        )
        if self.method in self.IMPLICIT and options.jacobian is not None:
            kwargs["jac"] = self._jacobian(options)

        sol = solve_ivp(rhs, (time_list[0], time_list[-1]), y0, **kwargs)
        if not sol.success:
            raise IntegrationError(f"solve_ivp ({self.method}) failed: {sol.message}")
        if not np.all(np.isfinite(sol.y)):
            raise IntegrationError(f"solve_ivp ({self.method}) returned a non-finite state")
        return sol.t, sol.y

    @staticmethod
    def _jacobian(options: ODEOptions):
        jacobian = options.jacobian
        if callable(jacobian):
            return lambda t, y: options.solve_mass(_dense(jacobian(t, y)))
        return options.solve_mass(_dense(jacobian))


# ===========================================================================
# Fixed-step theta scheme
# ===========================================================================

class ThetaIntegrator:
    """Fixed-step theta method for linear systems M y' = A(t) y.

        (M - theta h A(t+h)) y_{n+1} = (M + (1 - theta) h A(t)) y_n

    A(t) is taken from options.jacobian (required).  For a constant
    Jacobian the left-hand side is factorised once per step size.

    Parameters
    ----------
    theta : float  implicitness in [1/2, 1]; 1/2 = Crank-Nicolson
    nstep : int    number of steps over the full time span, distributed
                   over the output sub-intervals (at least one each)
    """

    def __init__(self, theta: float = 0.5, nstep: int = 100) -> None:
        if not 0.5 <= theta <= 1:
            raise ValueError(f"theta must lie in [0.5, 1], got {theta}")
        if nstep < 1:
            raise ValueError(f"nstep must be >= 1, got {nstep}")
        self.theta = float(theta)
        self.nstep = int(nstep)

    def __repr__(self) -> str:
        return f"ThetaIntegrator(theta={self.theta}, nstep={self.nstep})"

    def __call__(self, fun, time_list, y0, options: ODEOptions) -> Tuple[np.ndarray, np.ndarray]:
        jacobian = options.jacobian
        if jacobian is None:
            raise ValueError("ThetaIntegrator needs the system matrix in options.jacobian")
        time_list = np.asarray(time_list, dtype=float)
        constant = not callable(jacobian)
        M = sparse.csc_matrix(options.mass, dtype=complex)

        A_const = sparse.csc_matrix(jacobian, dtype=complex) if constant else None

        def system(t):
            return A_const if constant else sparse.csc_matrix(jacobian(t, None), dtype=complex)

        span = time_list[-1] - time_list[0]
        y = np.asarray(y0, dtype=complex).copy()
        out = np.empty((y.size, time_list.size), dtype=complex)
        out[:, 0] = y
        factors = {}

        for iout, (a, b) in enumerate(zip(time_list[:-1], time_list[1:]), start=1):
            nsub = max(1, int(round(self.nstep * (b - a) / span))) if span > 0 else 1
            h = (b - a) / nsub
            for istep in range(nsub):
                t = a + istep * h
                A0 = system(t)
                A1 = A0 if constant else system(t + h)
                lu = factors.get(h) if constant else None
                if lu is None:
                    try:
                        lu = splu((M - self.theta * h * A1).tocsc())
                    except RuntimeError as exc:
                        raise IntegrationError(f"singular step matrix at t={t:g}: {exc}") from exc
                    if constant:
                        factors[h] = lu
                y = lu.solve(M @ y + (1 - self.theta) * h * (A0 @ y))
            if not np.all(np.isfinite(y)):
                raise IntegrationError(f"non-finite solution at t={b:g}")
            out[:, iout] = y
        return time_list.copy(), out
