"""
tests/test_fem.py - Unit tests for the P1 matrix builders and box meshes.
=========================================================================

Identities under test:

  A. volumes          - unit tetrahedron, structured box
  B. mass             - sums to the volume, weighted mass sums to int w
  C. stiffness        - annihilates constants, exact for linear fields
  D. facet mass       - sums to the boundary area
  E. flux coupling    - conservation, symmetry, density equilibrium
  F. box mesher       - counts, boundary numbering, validation

Run with:  pytest tests/ -v
"""

import numpy as np
import pytest
import sys, os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
from bloch_torrey.experiment import PDEParams
from bloch_torrey.fem import (
    couple_flux_matrix,
    facet_mass_matrix,
    flux_matrix,
    get_volume_mesh,
    mass_matrix,
    stiffness_matrix,
)
from bloch_torrey.mesh import FEMesh, create_box_femesh


UNIT_TET_POINTS = np.array([
    [0.0, 1.0, 0.0, 0.0],
    [0.0, 0.0, 1.0, 0.0],
    [0.0, 0.0, 0.0, 1.0],
])
UNIT_TET = np.array([[0], [1], [2], [3]])

LENGTHS = (4.0, 3.0, 2.0)


@pytest.fixture
def box():
    return create_box_femesh((4, 3, 3), LENGTHS, origin=(0.0, 0.0, 0.0))


@pytest.fixture
def two_boxes():
    return create_box_femesh((3, 3, 3), LENGTHS, ncompartment=2)


# ---------------------------------------------------------------------------
# A. volumes
# ---------------------------------------------------------------------------

class TestVolumes:
    def test_unit_tetrahedron(self):
        total, volumes = get_volume_mesh(UNIT_TET_POINTS, UNIT_TET)
        assert total == pytest.approx(1 / 6)
        assert volumes.shape == (1,)

    def test_box_volume(self, box):
        total, volumes = get_volume_mesh(box.points[0], box.elements[0])
        assert total == pytest.approx(np.prod(LENGTHS))
        assert np.all(volumes > 0)

    def test_degenerate_element_raises(self):
        flat = UNIT_TET_POINTS.copy()
        flat[2, 3] = 0.0
        with pytest.raises(ValueError, match="degenerate"):
            get_volume_mesh(flat, UNIT_TET)

    def test_missing_point_raises(self):
        with pytest.raises(ValueError):
            get_volume_mesh(UNIT_TET_POINTS, np.array([[0], [1], [2], [7]]))

    def test_bad_shapes_raise(self):
        with pytest.raises(ValueError):
            get_volume_mesh(UNIT_TET_POINTS.T, UNIT_TET)


# ---------------------------------------------------------------------------
# B. mass
# ---------------------------------------------------------------------------

class TestMassMatrix:
    def test_sums_to_volume(self, box):
        _, volumes = get_volume_mesh(box.points[0], box.elements[0])
        M = mass_matrix(box.elements[0], volumes)
        assert M.sum() == pytest.approx(np.prod(LENGTHS))
        assert abs(M - M.T).max() < 1e-14

    def test_unit_tet_entries(self):
        _, volumes = get_volume_mesh(UNIT_TET_POINTS, UNIT_TET)
        M = mass_matrix(UNIT_TET, volumes).toarray()
        assert M[0, 0] == pytest.approx(1 / 60)
        assert M[0, 1] == pytest.approx(1 / 120)

    def test_weight_one_is_plain_mass(self, box):
        _, volumes = get_volume_mesh(box.points[0], box.elements[0])
        M = mass_matrix(box.elements[0], volumes)
        Mw = mass_matrix(box.elements[0], volumes, weight=np.ones(box.npoint_cmpts[0]))
        assert abs(M - Mw).max() < 1e-14

    @pytest.mark.parametrize("idim", [0, 1, 2])
    def test_moment_matrix_integrates_coordinate(self, box, idim):
        """1^T J 1 = int x_idim dV over a box with a corner at the origin."""
        _, volumes = get_volume_mesh(box.points[0], box.elements[0])
        J = mass_matrix(box.elements[0], volumes, weight=box.points[0][idim])
        expected = np.prod(LENGTHS) * LENGTHS[idim] / 2
        assert J.sum() == pytest.approx(expected)

    def test_moment_matrix_is_exact_for_linear_fields(self, box):
        """u^T J_x v = int x u v for u = 1, v = y."""
        pts = box.points[0]
        _, volumes = get_volume_mesh(pts, box.elements[0])
        J = mass_matrix(box.elements[0], volumes, weight=pts[0])
        expected = (LENGTHS[0] ** 2 / 2) * (LENGTHS[1] ** 2 / 2) * LENGTHS[2]
        assert np.ones(pts.shape[1]) @ J @ pts[1] == pytest.approx(expected)

    def test_explicit_size(self):
        _, volumes = get_volume_mesh(UNIT_TET_POINTS, UNIT_TET)
        assert mass_matrix(UNIT_TET, volumes, npoint=6).shape == (6, 6)


# ---------------------------------------------------------------------------
# C. stiffness
# ---------------------------------------------------------------------------

class TestStiffnessMatrix:
    def test_constants_in_kernel(self, box):
        K = stiffness_matrix(box.elements[0], box.points[0], 0.002)
        assert np.allclose(K @ np.ones(K.shape[0]), 0.0, atol=1e-14)
        assert abs(K - K.T).max() < 1e-12

    @pytest.mark.parametrize("idim", [0, 1, 2])
    def test_energy_of_linear_field(self, box, idim):
        """u = x_idim gives u^T K u = D_ii * volume."""
        D = np.diag([1.0, 2.0, 3.0])
        K = stiffness_matrix(box.elements[0], box.points[0], D)
        u = box.points[0][idim]
        assert u @ K @ u == pytest.approx(D[idim, idim] * np.prod(LENGTHS))

    def test_scalar_and_tensor_agree(self, box):
        K1 = stiffness_matrix(box.elements[0], box.points[0], 0.5)
        K2 = stiffness_matrix(box.elements[0], box.points[0], 0.5 * np.eye(3))
        assert abs(K1 - K2).max() < 1e-14

    def test_positive_semidefinite(self, box):
        K = stiffness_matrix(box.elements[0], box.points[0], 1.0).toarray()
        assert np.linalg.eigvalsh(K).min() > -1e-12

    def test_bad_tensor_raises(self, box):
        with pytest.raises(ValueError, match="diffusivity"):
            stiffness_matrix(box.elements[0], box.points[0], np.ones((2, 2)))


# ---------------------------------------------------------------------------
# D. facet mass
# ---------------------------------------------------------------------------

class TestFacetMass:
    def test_outer_area(self, box):
        F = facet_mass_matrix(box.points[0], box.facets[0][0])
        Lx, Ly, Lz = LENGTHS
        assert F.sum() == pytest.approx(2 * (Lx * Ly + Ly * Lz + Lx * Lz))

    def test_empty_facets_give_zero_matrix(self, box):
        F = facet_mass_matrix(box.points[0], np.empty((3, 0), dtype=int))
        assert F.shape == (box.npoint_cmpts[0],) * 2
        assert F.nnz == 0

    def test_flux_blocks_layout(self, two_boxes):
        blocks = flux_matrix(two_boxes.points, two_boxes.facets)
        assert len(blocks) == 2 and all(len(b) == 3 for b in blocks)
        Ly, Lz = LENGTHS[1:]
        assert blocks[0][0].sum() == pytest.approx(Ly * Lz)
        assert blocks[1][0].sum() == pytest.approx(Ly * Lz)
        assert blocks[0][2].nnz == 0


# ---------------------------------------------------------------------------
# E. flux coupling
# ---------------------------------------------------------------------------

def _coupling(femesh, density, permeability, symmetric):
    pde = PDEParams.isotropic(femesh.ncompartment, femesh.nboundary,
                              initial_density=density, permeability=permeability)
    blocks = flux_matrix(femesh.points, femesh.facets)
    return couple_flux_matrix(femesh, pde, blocks, symmetric=symmetric)


class TestFluxCoupling:
    def test_no_permeability_gives_zero(self, two_boxes):
        Q = _coupling(two_boxes, 1.0, 0.0, symmetric=False)
        assert Q.shape == (sum(two_boxes.npoint_cmpts),) * 2
        assert Q.nnz == 0 or abs(Q).max() == 0

    @pytest.mark.parametrize("symmetric", [True, False])
    def test_interface_conserves_magnetization(self, two_boxes, symmetric):
        Q = _coupling(two_boxes, [1.0, 2.0], [1e-3, 0.0, 0.0], symmetric)
        column_sums = np.asarray(Q.sum(axis=0)).ravel()
        assert np.allclose(column_sums, 0.0, atol=1e-12 * abs(Q).max())

    def test_symmetric_coupling_is_symmetric(self, two_boxes):
        Q = _coupling(two_boxes, [1.0, 2.0], [1e-3, 0.0, 0.0], symmetric=True)
        assert abs(Q - Q.T).max() < 1e-12 * abs(Q).max()

    def test_density_weighted_keeps_equilibrium(self, two_boxes):
        density = [1.0, 2.0]
        Q = _coupling(two_boxes, density, [1e-3, 0.0, 0.0], symmetric=False)
        rho = np.concatenate([np.full(n, d) for n, d in zip(two_boxes.npoint_cmpts, density)])
        assert np.allclose(Q @ rho, 0.0, atol=1e-12 * abs(Q).max())

    def test_equal_densities_match_symmetric(self, two_boxes):
        Q1 = _coupling(two_boxes, 1.0, [1e-3, 0.0, 0.0], symmetric=False)
        Q2 = _coupling(two_boxes, 1.0, [1e-3, 0.0, 0.0], symmetric=True)
        assert abs(Q1 - Q2).max() < 1e-12 * abs(Q2).max()

    def test_outer_permeability(self, two_boxes):
        kappa = 1e-2
        Q = _coupling(two_boxes, 1.0, [0.0, kappa, 0.0], symmetric=False)
        Lx, Ly, Lz = LENGTHS
        outer_area = 2 * (Lx * Ly + Lx * Lz) + Ly * Lz
        assert Q.sum() == pytest.approx(kappa * outer_area)

    def test_misaligned_interface_raises(self, two_boxes):
        shifted = FEMesh(
            [two_boxes.points[0], two_boxes.points[1] + np.array([[0.0], [0.4], [0.0]])],
            two_boxes.elements,
            two_boxes.facets,
        )
        with pytest.raises(ValueError, match="coincide"):
            _coupling(shifted, 1.0, [1e-3, 0.0, 0.0], symmetric=True)

    def test_boundary_shared_by_three_compartments_raises(self):
        femesh = create_box_femesh((3, 3, 3), LENGTHS, ncompartment=3)
        facets = [list(f) for f in femesh.facets]
        facets[2][0] = facets[2][1]
        broken = FEMesh(femesh.points, femesh.elements, facets)
        with pytest.raises(ValueError, match="at most 2"):
            _coupling(broken, 1.0, [1e-3, 0.0, 0.0, 0.0, 0.0], symmetric=True)


# ---------------------------------------------------------------------------
# F. box mesher
# ---------------------------------------------------------------------------

class TestBoxMesh:
    def test_fifty_points(self):
        femesh = create_box_femesh((5, 5, 2), (10.0, 10.0, 2.0))
        assert femesh.npoint_cmpts == (50,)
        assert femesh.nelement_cmpts == (6 * 4 * 4,)
        assert femesh.nboundary == 1
        assert femesh.facets[0][0].shape == (3, 2 * (2 * 4 + 2 * 4 + 2 * 16))

    def test_centred_by_default(self):
        femesh = create_box_femesh((3, 3, 3), LENGTHS, ncompartment=2)
        pts = np.hstack(femesh.points)
        assert np.allclose(pts.min(axis=1), -pts.max(axis=1))

    def test_boundary_numbering(self, two_boxes):
        markers = two_boxes.boundary_markers
        assert markers.shape == (2, 3)
        assert np.array_equal(markers, [[True, True, False], [True, False, True]])

    def test_interface_nodes_coincide(self, two_boxes):
        nodes_0 = np.unique(two_boxes.facets[0][0])
        nodes_1 = np.unique(two_boxes.facets[1][0])
        x0 = two_boxes.points[0][0, nodes_0]
        x1 = two_boxes.points[1][0, nodes_1]
        assert np.all(x0 == x0[0]) and np.all(x1 == x0[0])

    @pytest.mark.parametrize("kwargs", [
        dict(shape=(1, 3, 3)),
        dict(lengths=(1.0, 0.0, 1.0)),
        dict(ncompartment=0),
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            create_box_femesh(**kwargs)

    def test_femesh_validation(self, box):
        with pytest.raises(ValueError):
            FEMesh(box.points, box.elements, [])
        with pytest.raises(ValueError):
            FEMesh([box.points[0][:2]], box.elements, box.facets)
        with pytest.raises(ValueError, match="missing points"):
            FEMesh(box.points, [box.elements[0] + 1000], box.facets)

    def test_str(self, box):
        assert "1 compartment(s)" in str(box)
