"""
experiment.py - Physical parameters and experiment configuration.
=================================================================

Plain dataclasses validated on construction:

  - PDEParams      : diffusivity, T2 relaxation, initial spin density and
                     permeability of the multi-compartment Bloch-Torrey PDE
  - GradientSetup  : gradient amplitudes, sequences and directions
  - BTPDESetup     : integrator choice, tolerances and parallelism

Units follow the usual diffusion-MRI conventions: µm, µs, T/m.
GAMMA converts a gradient amplitude g [T/m] into q = g * GAMMA.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from .integrators import ScipyIntegrator
from .sequences import Sequence


# Gyromagnetic ratio of water protons: q [rad / (µm µs)] per g [T/m]
GAMMA = 2.67513e-04

_VALUES_TYPES = ("g", "q", "b")


# ===========================================================================
# PDE parameters
# ===========================================================================

@dataclass
class PDEParams:
    """Coefficients of the Bloch-Torrey PDE.

    Attributes
    ----------
    diffusivity     : (3, 3, ncompartment) diffusion tensors [µm^2/µs]
    relaxation      : (ncompartment,) T2 relaxation times [µs]; np.inf
                      disables relaxation
    initial_density : (ncompartment,) initial spin density
    permeability    : (nboundary,) permeability of each boundary [µm/µs]

    Invariants
    ----------
    - relaxation > 0 (zero, negative or NaN raise ValueError)
    - diffusivity tensors are symmetric and finite
    - initial_density and permeability are finite and non-negative
    """
    diffusivity: np.ndarray
    relaxation: np.ndarray
    initial_density: np.ndarray
    permeability: np.ndarray

    def __post_init__(self):
        self.diffusivity = np.asarray(self.diffusivity, dtype=float)
        self.relaxation = np.atleast_1d(np.asarray(self.relaxation, dtype=float))
        self.initial_density = np.atleast_1d(np.asarray(self.initial_density, dtype=float))
        self.permeability = np.atleast_1d(np.asarray(self.permeability, dtype=float))

        if self.diffusivity.ndim == 2:
            self.diffusivity = self.diffusivity[:, :, None]
        if self.diffusivity.ndim != 3 or self.diffusivity.shape[:2] != (3, 3):
            raise ValueError(f"diffusivity must have shape (3, 3, ncompartment), got {self.diffusivity.shape}")
        ncmpt = self.diffusivity.shape[2]
        if self.relaxation.shape != (ncmpt,) or self.initial_density.shape != (ncmpt,):
            raise ValueError(
                f"relaxation {self.relaxation.shape} and initial_density "
                f"{self.initial_density.shape} must have shape ({ncmpt},)"
            )
        if not np.all(np.isfinite(self.diffusivity)):
            raise ValueError("diffusivity must be finite")
        if not np.allclose(self.diffusivity, self.diffusivity.transpose(1, 0, 2)):
            raise ValueError("diffusion tensors must be symmetric")
        if np.any(np.isnan(self.relaxation)) or np.any(self.relaxation <= 0):
            raise ValueError(
                f"relaxation times must be positive (use np.inf for no relaxation), got {self.relaxation}"
            )
        for name in ("initial_density", "permeability"):
            values = getattr(self, name)
            if not np.all(np.isfinite(values)) or np.any(values < 0):
                raise ValueError(f"{name} must be finite and non-negative, got {values}")

    @property
    def ncompartment(self) -> int:
        return self.diffusivity.shape[2]

    @property
    def nboundary(self) -> int:
        return self.permeability.shape[0]

    @classmethod
    def isotropic(
        cls,
        ncompartment: int,
        nboundary: int,
        diffusivity=0.002,
        relaxation=np.inf,
        initial_density=1.0,
        permeability=0.0,
    ) -> "PDEParams":
        """Build parameters with isotropic diffusion.

        Scalars are broadcast to every compartment (or boundary); sequences
        give one value per compartment (or boundary).

        Examples
        --------
        >>> pde = PDEParams.isotropic(2, 3, diffusivity=[0.002, 0.001], permeability=[1e-4, 0, 0])
        >>> pde.diffusivity.shape
        (3, 3, 2)
        """
        d = np.broadcast_to(np.asarray(diffusivity, dtype=float), (ncompartment,))
        return cls(
            diffusivity=np.eye(3)[:, :, None] * d[None, None, :],
            relaxation=np.broadcast_to(np.asarray(relaxation, dtype=float), (ncompartment,)).copy(),
            initial_density=np.broadcast_to(np.asarray(initial_density, dtype=float), (ncompartment,)).copy(),
            permeability=np.broadcast_to(np.asarray(permeability, dtype=float), (nboundary,)).copy(),
        )


# ===========================================================================
# Gradient directions
# ===========================================================================

def unit_directions(ndirection: int, flat: bool = False, remove_opposite: bool = False) -> np.ndarray:
    """Quasi-uniform unit gradient directions, shape (3, ndirection).

    Parameters
    ----------
    ndirection      : number of directions (>= 1)
    flat            : directions in the xy-plane instead of on the sphere
    remove_opposite : restrict to a half circle / hemisphere, so no two
                      directions are opposite

    Spherical directions follow a Fibonacci lattice.
    """
    if ndirection < 1:
        raise ValueError(f"ndirection must be >= 1, got {ndirection}")
    k = np.arange(ndirection)
    if flat:
        span = np.pi if remove_opposite else 2 * np.pi
        theta = span * k / ndirection
        return np.vstack([np.cos(theta), np.sin(theta), np.zeros(ndirection)])

    if remove_opposite:
        z = 1 - (k + 0.5) / ndirection
    else:
        z = 1 - 2 * (k + 0.5) / ndirection
    radius = np.sqrt(1 - z**2)
    phi = k * math.pi * (3 - math.sqrt(5))
    return np.vstack([radius * np.cos(phi), radius * np.sin(phi), z])


# ===========================================================================
# Experiment setups
# ===========================================================================

@dataclass
class GradientSetup:
    """Gradient amplitudes, sequences and directions of an experiment.

    Attributes
    ----------
    values      : (namplitude,) non-negative amplitudes
    sequences   : list of Sequence objects
    directions  : (3,) or (3, ndirection) gradient directions, normalised
                  on construction
    values_type : "g" (T/m), "q" (rad/(µm µs)) or "b" (µs/µm^2)
    """
    values: np.ndarray
    sequences: List[Sequence]
    directions: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.0, 0.0]))
    values_type: str = "b"

    def __post_init__(self):
        self.values = np.atleast_1d(np.asarray(self.values, dtype=float))
        if self.values.ndim != 1 or not np.all(np.isfinite(self.values)) or np.any(self.values < 0):
            raise ValueError(f"values must be a 1D array of non-negative numbers, got {self.values}")
        if self.values_type not in _VALUES_TYPES:
            raise ValueError(f"values_type must be one of {_VALUES_TYPES}, got {self.values_type!r}")

        if isinstance(self.sequences, Sequence):
            self.sequences = [self.sequences]
        self.sequences = list(self.sequences)
        if not self.sequences:
            raise ValueError("at least one sequence is required")
        for seq in self.sequences:
            if not isinstance(seq, Sequence):
                raise ValueError(f"expected Sequence objects, got {type(seq).__name__}")

        directions = np.asarray(self.directions, dtype=float)
        if directions.ndim == 1:
            directions = directions[:, None]
        if directions.shape[0] != 3 or directions.shape[1] == 0:
            raise ValueError(f"directions must have shape (3,) or (3, n), got {directions.shape}")
        norms = np.linalg.norm(directions, axis=0)
        if np.any(norms == 0) or not np.all(np.isfinite(norms)):
            raise ValueError("gradient directions must be finite and non-zero")
        self.directions = directions / norms

    @property
    def namplitude(self) -> int:
        return self.values.shape[0]

    @property
    def nsequence(self) -> int:
        return len(self.sequences)

    @property
    def ndirection(self) -> int:
        return self.directions.shape[1]

    def amplitudes(self) -> Tuple[np.ndarray, np.ndarray]:
        """Return (qvalues, bvalues), each of shape (namplitude, nsequence).

        g -> q = g * GAMMA,  q -> b = q^2 * integral_F2,  b -> q = sqrt(b / integral_F2).
        """
        F2 = np.array([seq.integral_F2() for seq in self.sequences])
        if self.values_type == "g":
            qvalues = np.outer(self.values * GAMMA, np.ones(self.nsequence))
            bvalues = qvalues**2 * F2
        elif self.values_type == "q":
            qvalues = np.outer(self.values, np.ones(self.nsequence))
            bvalues = qvalues**2 * F2
        else:
            bvalues = np.outer(self.values, np.ones(self.nsequence))
            qvalues = np.sqrt(bvalues / F2)
        return qvalues, bvalues


@dataclass
class BTPDESetup:
    """Solver configuration for the Bloch-Torrey sweep.

    Attributes
    ----------
    integrator     : callable (fun, time_list, y0, options) -> (t, y);
                     see bloch_torrey.integrators
    reltol, abstol : tolerances forwarded to the integrator
    parallel       : run the sweep tasks on a thread pool
    max_workers    : thread-pool size (None lets the executor decide)
    symmetric_flux : use the unweighted interface coupling
    """
    integrator: Callable = field(default_factory=ScipyIntegrator)
    reltol: float = 1e-4
    abstol: float = 1e-6
    parallel: bool = True
    max_workers: Optional[int] = None
    symmetric_flux: bool = False

    def __post_init__(self):
        if not callable(self.integrator):
            raise ValueError(f"integrator must be callable, got {type(self.integrator).__name__}")
        if not (self.reltol > 0 and self.abstol > 0):
            raise ValueError(f"tolerances must be positive, got reltol={self.reltol}, abstol={self.abstol}")
        if self.max_workers is not None and self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
