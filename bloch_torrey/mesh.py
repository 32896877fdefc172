"""
mesh.py - Multi-compartment tetrahedral meshes.
===============================================

FEMesh stores one P1 tetrahedral mesh per compartment.  Interface nodes
are duplicated: each compartment owns its own copy of every point on a
shared boundary, and facets[icmpt][iboundary] lists the surface triangles
of compartment icmpt lying on boundary iboundary (empty if it does not
touch that boundary).

create_box_femesh builds a structured mesh of axis-aligned boxes stacked
along x, which is enough to exercise every code path of the solver.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np


@dataclass
class FEMesh:
    """Finite-element mesh split into compartments.

    Attributes
    ----------
    points   : list of (3, npoint_c) float arrays, one per compartment
    elements : list of (4, nelement_c) int arrays (zero-based, local indices)
    facets   : facets[icmpt][iboundary] -> (3, nfacet) int array
    """
    points: List[np.ndarray]
    elements: List[np.ndarray]
    facets: List[List[np.ndarray]]

    def __post_init__(self):
        if not self.points:
            raise ValueError("a mesh needs at least one compartment")
        if not (len(self.points) == len(self.elements) == len(self.facets)):
            raise ValueError(
                f"got {len(self.points)} point sets, {len(self.elements)} element sets "
                f"and {len(self.facets)} facet sets"
            )
        self.points = [np.asarray(p, dtype=float) for p in self.points]
        self.elements = [np.asarray(e, dtype=int) for e in self.elements]
        self.facets = [
            [np.asarray(f, dtype=int).reshape(3, -1) for f in facets_cmpt]
            for facets_cmpt in self.facets
        ]
        nboundary = {len(f) for f in self.facets}
        if len(nboundary) != 1:
            raise ValueError("every compartment must list the same number of boundaries")

        for icmpt, (pts, elems) in enumerate(zip(self.points, self.elements)):
            if pts.ndim != 2 or pts.shape[0] != 3:
                raise ValueError(f"compartment {icmpt}: points must have shape (3, n), got {pts.shape}")
            if elems.ndim != 2 or elems.shape[0] != 4:
                raise ValueError(f"compartment {icmpt}: elements must have shape (4, m), got {elems.shape}")
            indices = [elems] + [f for f in self.facets[icmpt] if f.size]
            for idx in indices:
                if idx.size and (idx.min() < 0 or idx.max() >= pts.shape[1]):
                    raise ValueError(f"compartment {icmpt}: connectivity references missing points")

    @property
    def ncompartment(self) -> int:
        return len(self.points)

    @property
    def nboundary(self) -> int:
        return len(self.facets[0])

    @property
    def npoint_cmpts(self) -> Tuple[int, ...]:
        return tuple(p.shape[1] for p in self.points)

    @property
    def nelement_cmpts(self) -> Tuple[int, ...]:
        return tuple(e.shape[1] for e in self.elements)

    @property
    def boundary_markers(self) -> np.ndarray:
        """(ncompartment, nboundary) bool, True where a compartment touches a boundary."""
        return np.array([[f.shape[1] > 0 for f in facets_cmpt] for facets_cmpt in self.facets])

    def __str__(self) -> str:
        return (f"FEMesh({self.ncompartment} compartment(s), {self.nboundary} boundaries, "
                f"{sum(self.npoint_cmpts)} points, {sum(self.nelement_cmpts)} elements)")


# ===========================================================================
# Structured box mesher
# ===========================================================================

def _grid_ids(shape: Tuple[int, int, int]) -> np.ndarray:
    """Node index of grid vertex (i, j, k), x varying fastest."""
    return np.arange(int(np.prod(shape))).reshape(shape, order="F")


def _box_tetrahedra(ids: np.ndarray) -> np.ndarray:
    """Split every grid cube into the 6 tetrahedra sharing its main diagonal."""
    nx, ny, nz = ids.shape

    def corner(offset):
        a, b, c = offset
        return ids[a:nx - 1 + a, b:ny - 1 + b, c:nz - 1 + c].ravel(order="F")

    tets = []
    for perm in itertools.permutations(range(3)):
        offset = [0, 0, 0]
        vertices = [corner(offset)]
        for axis in perm:
            offset[axis] = 1
            vertices.append(corner(offset))
        tets.append(np.vstack(vertices))
    return np.hstack(tets)


def _box_face(ids: np.ndarray, axis: int, side: int) -> np.ndarray:
    """Triangulate one face of the box, split along the same diagonal as the cubes."""
    index = [slice(None)] * 3
    index[axis] = 0 if side == 0 else ids.shape[axis] - 1
    face = ids[tuple(index)]                        # 2D grid over the two other axes
    p00 = face[:-1, :-1].ravel(order="F")
    p10 = face[1:, :-1].ravel(order="F")
    p01 = face[:-1, 1:].ravel(order="F")
    p11 = face[1:, 1:].ravel(order="F")
    return np.hstack([np.vstack([p00, p10, p11]), np.vstack([p00, p01, p11])])


def create_box_femesh(
    shape: Tuple[int, int, int] = (5, 5, 2),
    lengths: Tuple[float, float, float] = (10.0, 10.0, 2.0),
    ncompartment: int = 1,
    origin: Optional[Tuple[float, float, float]] = None,
) -> FEMesh:
    """Structured mesh of ncompartment boxes stacked along x.

    Parameters
    ----------
    shape        : grid points per compartment along (x, y, z), each >= 2
    lengths      : box size per compartment along (x, y, z)
    ncompartment : number of boxes
    origin       : lower corner of the first box; by default the whole
                   domain is centred at the origin

    Boundaries are numbered interfaces first, then outer surfaces:
    boundary c (c < ncompartment - 1) is the interface between boxes c and
    c + 1, boundary ncompartment - 1 + c is the outer surface of box c.

    Examples
    --------
    >>> femesh = create_box_femesh((5, 5, 2), (10.0, 10.0, 2.0))
    >>> femesh.npoint_cmpts
    (50,)
    """
    shape = tuple(int(n) for n in shape)
    lengths = tuple(float(length) for length in lengths)
    if len(shape) != 3 or min(shape) < 2:
        raise ValueError(f"shape needs at least 2 points along each axis, got {shape}")
    if len(lengths) != 3 or min(lengths) <= 0:
        raise ValueError(f"lengths must be three positive numbers, got {lengths}")
    if ncompartment < 1:
        raise ValueError(f"ncompartment must be >= 1, got {ncompartment}")
    if origin is None:
        origin = (-ncompartment * lengths[0] / 2, -lengths[1] / 2, -lengths[2] / 2)

    ids = _grid_ids(shape)
    elements = _box_tetrahedra(ids)
    nboundary = 2 * ncompartment - 1
    empty = np.empty((3, 0), dtype=int)

    points, facets = [], []
    for icmpt in range(ncompartment):
        x0 = origin[0] + icmpt * lengths[0]
        axes = [
            np.linspace(x0, x0 + lengths[0], shape[0]),
            np.linspace(origin[1], origin[1] + lengths[1], shape[1]),
            np.linspace(origin[2], origin[2] + lengths[2], shape[2]),
        ]
        grid = np.meshgrid(*axes, indexing="ij")
        points.append(np.vstack([g.ravel(order="F") for g in grid]))

        facets_cmpt = [empty] * nboundary
        outer = []
        for axis, side in itertools.product(range(3), (0, 1)):
            tri = _box_face(ids, axis, side)
            if axis == 0 and side == 1 and icmpt < ncompartment - 1:
                facets_cmpt[icmpt] = tri
            elif axis == 0 and side == 0 and icmpt > 0:
                facets_cmpt[icmpt - 1] = tri
            else:
                outer.append(tri)
        facets_cmpt[ncompartment - 1 + icmpt] = np.hstack(outer)
        facets.append(facets_cmpt)

    return FEMesh(points, [elements.copy() for _ in range(ncompartment)], facets)
