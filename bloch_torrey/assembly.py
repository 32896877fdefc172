"""
assembly.py - Global Bloch-Torrey operators.
============================================

Compartment-local P1 matrices are built first (CompartmentMatrices), then
composed block-diagonally into one immutable FEMOperators value:

    M  = blkdiag(M_c)          mass
    K  = blkdiag(K_c)          stiffness (diffusion)
    R  = blkdiag(M_c / T2_c)   relaxation (zero block when T2_c = inf)
    Jx, Jy, Jz                 coordinate-moment matrices
    Q                          permeability coupling across boundaries
    rho                        initial magnetization (complex)

Global index order is compartment 0, 1, ..., shared by every matrix and
by rho.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from scipy import sparse

from .experiment import PDEParams
from .fem import couple_flux_matrix, flux_matrix, get_volume_mesh, mass_matrix, stiffness_matrix
from .mesh import FEMesh

logger = logging.getLogger(__name__)


def relaxation_matrix(M: sparse.spmatrix, relaxation: float) -> sparse.csr_matrix:
    """Return M / relaxation; an infinite relaxation time gives a zero matrix.

    Raises
    ------
    ValueError
        If relaxation is zero, negative or NaN.
    """
    if np.isnan(relaxation) or relaxation <= 0:
        raise ValueError(f"relaxation time must be positive or inf, got {relaxation}")
    if np.isinf(relaxation):
        return sparse.csr_matrix(M.shape)
    return sparse.csr_matrix(M / relaxation)


@dataclass(frozen=True)
class CompartmentMatrices:
    """P1 matrices of one compartment."""
    M: sparse.csr_matrix
    K: sparse.csr_matrix
    R: sparse.csr_matrix
    J: Tuple[sparse.csr_matrix, sparse.csr_matrix, sparse.csr_matrix]
    rho: np.ndarray
    volume: float

    @property
    def npoint(self) -> int:
        return self.M.shape[0]


def assemble_compartment(
    points: np.ndarray,
    elements: np.ndarray,
    diffusivity: np.ndarray,
    relaxation: float,
    initial_density: float,
) -> CompartmentMatrices:
    """Build mass, stiffness, relaxation and moment matrices of one compartment."""
    npoint = points.shape[1]
    volume, volumes = get_volume_mesh(points, elements)
    M = mass_matrix(elements, volumes, npoint=npoint)
    J = tuple(mass_matrix(elements, volumes, weight=points[idim], npoint=npoint) for idim in range(3))
    return CompartmentMatrices(
        M=M,
        K=stiffness_matrix(elements, points, diffusivity),
        R=relaxation_matrix(M, relaxation),
        J=J,
        rho=np.full(npoint, initial_density, dtype=complex),
        volume=volume,
    )


@dataclass(frozen=True)
class FEMOperators:
    """Global operators of the coupled multi-compartment system.

    Invariants
    ----------
    - every matrix is (npoint, npoint) with npoint = sum(npoint_cmpts)
    - rho has length npoint, ordered like the matrices
    """
    M: sparse.csr_matrix
    K: sparse.csr_matrix
    R: sparse.csr_matrix
    Jx: sparse.csr_matrix
    Jy: sparse.csr_matrix
    Jz: sparse.csr_matrix
    Q: sparse.csr_matrix
    rho: np.ndarray
    M_cmpts: Tuple[sparse.csr_matrix, ...]
    npoint_cmpts: Tuple[int, ...]
    volumes: Tuple[float, ...]

    @property
    def npoint(self) -> int:
        return self.M.shape[0]

    @property
    def ncompartment(self) -> int:
        return len(self.npoint_cmpts)

    def direction_matrix(self, direction) -> sparse.csr_matrix:
        """J = g_x Jx + g_y Jy + g_z Jz for a gradient direction g."""
        g = np.asarray(direction, dtype=float).reshape(3)
        return (g[0] * self.Jx + g[1] * self.Jy + g[2] * self.Jz).tocsr()

    def split(self, magnetization: np.ndarray) -> List[np.ndarray]:
        """Split a global vector into contiguous per-compartment pieces."""
        return np.split(np.asarray(magnetization), np.cumsum(self.npoint_cmpts)[:-1])

    def compartment_signals(self, magnetization: np.ndarray) -> np.ndarray:
        """Signal of each compartment, sum(M_c @ y_c), shape (ncompartment,)."""
        return np.array([
            np.sum(M_c @ y_c) for M_c, y_c in zip(self.M_cmpts, self.split(magnetization))
        ], dtype=complex)


def assemble_btpde_operators(femesh: FEMesh, pde: PDEParams, symmetric: bool = False) -> FEMOperators:
    """Build every compartment, couple them and return the global operators.

    Parameters
    ----------
    femesh    : FEMesh      compartment meshes and boundary facets
    pde       : PDEParams   coefficients, one entry per compartment/boundary
    symmetric : bool        unweighted interface coupling

    Raises
    ------
    ValueError
        On compartment or boundary count mismatch, invalid relaxation, or
        malformed mesh data reported by the matrix builders.
    """
    if pde.ncompartment != femesh.ncompartment:
        raise ValueError(
            f"PDE parameters describe {pde.ncompartment} compartments, mesh has {femesh.ncompartment}"
        )
    if pde.nboundary != femesh.nboundary:
        raise ValueError(
            f"PDE parameters give {pde.nboundary} permeabilities, mesh has {femesh.nboundary} boundaries"
        )

    logger.info("Setting up FEM matrices for %s", femesh)
    cmpts = [
        assemble_compartment(
            femesh.points[icmpt],
            femesh.elements[icmpt],
            pde.diffusivity[:, :, icmpt],
            pde.relaxation[icmpt],
            pde.initial_density[icmpt],
        )
        for icmpt in range(femesh.ncompartment)
    ]

    logger.info("Coupling FEM matrices (%s interface weights)", "symmetric" if symmetric else "density")
    flux_blocks = flux_matrix(femesh.points, femesh.facets)
    Q = couple_flux_matrix(femesh, pde, flux_blocks, symmetric=symmetric)

    def blkdiag(mats):
        return sparse.block_diag(mats, format="csr")

    return FEMOperators(
        M=blkdiag([c.M for c in cmpts]),
        K=blkdiag([c.K for c in cmpts]),
        R=blkdiag([c.R for c in cmpts]),
        Jx=blkdiag([c.J[0] for c in cmpts]),
        Jy=blkdiag([c.J[1] for c in cmpts]),
        Jz=blkdiag([c.J[2] for c in cmpts]),
        Q=Q,
        rho=np.concatenate([c.rho for c in cmpts]),
        M_cmpts=tuple(c.M for c in cmpts),
        npoint_cmpts=tuple(c.npoint for c in cmpts),
        volumes=tuple(c.volume for c in cmpts),
    )
