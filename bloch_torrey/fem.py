"""
fem.py - P1 finite-element matrices on tetrahedral meshes.
===========================================================

Builders for the compartment-level matrices of the Bloch-Torrey system:

  - get_volume_mesh    : element volumes and total volume
  - mass_matrix        : M_ij  = int phi_i phi_j           (optionally weighted)
  - stiffness_matrix   : K_ij  = int grad phi_i . D grad phi_j
  - facet_mass_matrix  : F_ij  = int_Gamma phi_i phi_j     (surface triangles)
  - flux_matrix        : facet mass matrices per compartment and boundary
  - couple_flux_matrix : permeability coupling Q across compartments

Conventions: points are (3, npoint), elements (4, nelement) and facets
(3, nfacet), all indices zero-based and local to one compartment.
All matrices are returned as scipy.sparse CSR matrices.
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.spatial import cKDTree


# Gradients of the barycentric shape functions on the reference tetrahedron.
_REF_GRADS = np.array([
    [-1.0, -1.0, -1.0],
    [1.0, 0.0, 0.0],
    [0.0, 1.0, 0.0],
    [0.0, 0.0, 1.0],
])


def _scatter(elements: np.ndarray, local: np.ndarray, npoint: int) -> sparse.csr_matrix:
    """Assemble element matrices local[e, i, j] into an (npoint, npoint) matrix."""
    nloc = elements.shape[0]
    rows = np.broadcast_to(elements.T[:, :, None], (elements.shape[1], nloc, nloc))
    cols = np.broadcast_to(elements.T[:, None, :], (elements.shape[1], nloc, nloc))
    return sparse.csr_matrix(
        (local.ravel(), (rows.ravel(), cols.ravel())), shape=(npoint, npoint)
    )


def _npoint(elements: np.ndarray, npoint: Optional[int]) -> int:
    if npoint is not None:
        return int(npoint)
    return int(elements.max()) + 1 if elements.size else 0


# ---------------------------------------------------------------------------
# Volumes
# ---------------------------------------------------------------------------

def get_volume_mesh(points: np.ndarray, elements: np.ndarray) -> Tuple[float, np.ndarray]:
    """Return (total volume, per-element volumes) of a tetrahedral mesh.

    Raises
    ------
    ValueError
        If the connectivity references missing points or an element is flat.
    """
    points = np.asarray(points, dtype=float)
    elements = np.asarray(elements, dtype=int)
    if points.shape[0] != 3 or elements.shape[0] != 4:
        raise ValueError(
            f"expected points (3, n) and elements (4, m), got {points.shape} and {elements.shape}"
        )
    if elements.size and (elements.min() < 0 or elements.max() >= points.shape[1]):
        raise ValueError("element connectivity references points outside the mesh")

    p = points[:, elements]                       # (3, 4, nelement)
    edges = p[:, 1:, :] - p[:, [0], :]            # (3, 3, nelement)
    volumes = np.abs(np.linalg.det(edges.transpose(2, 0, 1))) / 6
    if np.any(volumes <= 0):
        raise ValueError(f"{np.count_nonzero(volumes <= 0)} degenerate element(s) with zero volume")
    return float(volumes.sum()), volumes


# ---------------------------------------------------------------------------
# Mass and stiffness
# ---------------------------------------------------------------------------

def mass_matrix(
    elements: np.ndarray,
    volumes: np.ndarray,
    weight: Optional[np.ndarray] = None,
    npoint: Optional[int] = None,
) -> sparse.csr_matrix:
    """Consistent P1 mass matrix, optionally weighted by a nodal P1 field.

    Unweighted:  M_ij = V/20 * (1 + delta_ij)
    Weighted:    M_ij = V/120 * (w_i + w_j + sum_k w_k) * (1 + delta_ij)

    With weight = points[idim] the result is the moment matrix
    int phi_i x_idim phi_j used by the gradient term.
    """
    elements = np.asarray(elements, dtype=int)
    volumes = np.asarray(volumes, dtype=float)
    n = _npoint(elements, npoint)
    factor = 1 + np.eye(4)

    if weight is None:
        local = volumes[:, None, None] / 20 * factor
    else:
        w = np.asarray(weight, dtype=float)[elements].T        # (nelement, 4)
        total = w.sum(axis=1)
        local = (volumes[:, None, None] / 120
                 * (w[:, :, None] + w[:, None, :] + total[:, None, None])
                 * factor)
    return _scatter(elements, local, n)


def stiffness_matrix(
    elements: np.ndarray,
    points: np.ndarray,
    diffusivity: np.ndarray,
) -> sparse.csr_matrix:
    """P1 stiffness matrix K_ij = sum_e V_e grad phi_i . D grad phi_j.

    Parameters
    ----------
    elements    : (4, nelement) int
    points      : (3, npoint) float
    diffusivity : (3, 3) diffusion tensor, or a scalar for isotropic diffusion
    """
    elements = np.asarray(elements, dtype=int)
    points = np.asarray(points, dtype=float)
    D = np.asarray(diffusivity, dtype=float)
    if D.ndim == 0:
        D = D * np.eye(3)
    if D.shape != (3, 3):
        raise ValueError(f"diffusivity must be a scalar or a 3x3 tensor, got shape {D.shape}")

    _, volumes = get_volume_mesh(points, elements)
    p = points[:, elements]
    edge_matrix = (p[:, 1:, :] - p[:, [0], :]).transpose(2, 0, 1)   # columns are edges
    grads = _REF_GRADS @ np.linalg.inv(edge_matrix)                  # (nelement, 4, 3)
    local = volumes[:, None, None] * np.einsum("eik,kl,ejl->eij", grads, D, grads)
    return _scatter(elements, local, points.shape[1])


# ---------------------------------------------------------------------------
# Surface (flux) matrices
# ---------------------------------------------------------------------------

def facet_mass_matrix(points: np.ndarray, facets: np.ndarray) -> sparse.csr_matrix:
    """Surface mass matrix F_ij = int_Gamma phi_i phi_j on triangles.

    Local matrix: A/12 * (1 + delta_ij).  Returns an (npoint, npoint) matrix;
    an empty facet list gives the zero matrix.
    """
    points = np.asarray(points, dtype=float)
    facets = np.asarray(facets, dtype=int).reshape(3, -1)
    npoint = points.shape[1]
    if facets.shape[1] == 0:
        return sparse.csr_matrix((npoint, npoint))
    p = points[:, facets]                                       # (3, 3, nfacet)
    areas = 0.5 * np.linalg.norm(np.cross(p[:, 1] - p[:, 0], p[:, 2] - p[:, 0], axis=0), axis=0)
    local = areas[:, None, None] / 12 * (1 + np.eye(3))
    return _scatter(facets, local, npoint)


def flux_matrix(points: Sequence[np.ndarray], facets: Sequence[Sequence[np.ndarray]]) -> List[List[sparse.csr_matrix]]:
    """Facet mass matrices for every (compartment, boundary) pair.

    Parameters
    ----------
    points : per-compartment (3, npoint) arrays
    facets : facets[icmpt][iboundary] (3, nfacet) arrays

    Returns
    -------
    blocks[icmpt][iboundary] : (npoint_c, npoint_c) sparse matrices
    """
    return [
        [facet_mass_matrix(pts, fac) for fac in facets_cmpt]
        for pts, facets_cmpt in zip(points, facets)
    ]


def _match_interface_nodes(
    points_1: np.ndarray,
    facets_1: np.ndarray,
    points_2: np.ndarray,
    facets_2: np.ndarray,
) -> sparse.csr_matrix:
    """Return P with P[i1, i2] = 1 where interface nodes of two compartments coincide."""
    nodes_1 = np.unique(facets_1)
    nodes_2 = np.unique(facets_2)
    if nodes_1.size != nodes_2.size:
        raise ValueError(
            f"interface has {nodes_1.size} nodes on one side and {nodes_2.size} on the other"
        )
    coords_2 = points_2[:, nodes_2].T
    scale = max(np.ptp(coords_2, axis=0).max(), 1.0)
    distance, index = cKDTree(coords_2).query(points_1[:, nodes_1].T)
    if np.any(distance > 1e-8 * scale):
        raise ValueError("interface nodes of neighbouring compartments do not coincide")
    return sparse.csr_matrix(
        (np.ones(nodes_1.size), (nodes_1, nodes_2[index])),
        shape=(points_1.shape[1], points_2.shape[1]),
    )


def couple_flux_matrix(femesh, pde, flux_blocks, symmetric: bool = False) -> sparse.csr_matrix:
    """Assemble the global permeability matrix Q.

    A boundary touched by one compartment contributes kappa * F_c to its
    diagonal block (outer-boundary permeability).  An interface between
    compartments c1 and c2 contributes the flux kappa * (a1 u1 - a2 u2):

        Q[c1, c1] += kappa a1 F_1      Q[c1, c2] -= kappa a2 F_1 P
        Q[c2, c2] += kappa a2 F_2      Q[c2, c1] -= kappa a1 F_2 P^T

    with P the node matching of the interface.  symmetric=True uses
    a1 = a2 = 1.  Otherwise a1 = 2 rho_2 / (rho_1 + rho_2) and
    a2 = 2 rho_1 / (rho_1 + rho_2), which keeps the initial densities as a
    steady state when they differ.  In both cases the total magnetization
    is conserved by Q.

    Parameters
    ----------
    femesh      : FEMesh with points, facets and boundary_markers
    pde         : PDEParams with initial_density and permeability
    flux_blocks : output of flux_matrix(femesh.points, femesh.facets)
    symmetric   : use unweighted coupling
    """
    ncmpt = femesh.ncompartment
    npoint = femesh.npoint_cmpts
    blocks = [[None] * ncmpt for _ in range(ncmpt)]
    for icmpt in range(ncmpt):
        blocks[icmpt][icmpt] = sparse.csr_matrix((npoint[icmpt], npoint[icmpt]))

    density = np.asarray(pde.initial_density, dtype=float)
    for iboundary in range(femesh.nboundary):
        kappa = float(pde.permeability[iboundary])
        cmpts_touch = np.flatnonzero(femesh.boundary_markers[:, iboundary])
        if kappa == 0 or cmpts_touch.size == 0:
            continue
        if cmpts_touch.size == 1:
            c = cmpts_touch[0]
            blocks[c][c] = blocks[c][c] + kappa * flux_blocks[c][iboundary]
        elif cmpts_touch.size == 2:
            c1, c2 = cmpts_touch
            if symmetric:
                a1 = a2 = 1.0
            else:
                rho_sum = density[c1] + density[c2]
                if rho_sum <= 0:
                    raise ValueError(f"boundary {iboundary}: both initial densities are zero")
                a1 = 2 * density[c2] / rho_sum
                a2 = 2 * density[c1] / rho_sum
            F1 = flux_blocks[c1][iboundary]
            F2 = flux_blocks[c2][iboundary]
            P = _match_interface_nodes(
                femesh.points[c1], femesh.facets[c1][iboundary],
                femesh.points[c2], femesh.facets[c2][iboundary],
            )
            blocks[c1][c1] = blocks[c1][c1] + kappa * a1 * F1
            blocks[c2][c2] = blocks[c2][c2] + kappa * a2 * F2
            offdiag_12 = -kappa * a2 * (F1 @ P)
            offdiag_21 = -kappa * a1 * (F2 @ P.T)
            blocks[c1][c2] = offdiag_12 if blocks[c1][c2] is None else blocks[c1][c2] + offdiag_12
            blocks[c2][c1] = offdiag_21 if blocks[c2][c1] is None else blocks[c2][c1] + offdiag_21
        else:
            raise ValueError(
                f"boundary {iboundary} touches {cmpts_touch.size} compartments; at most 2 are supported"
            )

    return sparse.bmat(blocks, format="csr")
