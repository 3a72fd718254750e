"""Tests for BVH validation helpers."""

import logging
import math

import numpy as np

from src.acoustic.geometry.bvh import BVHBuilder
from src.acoustic.geometry.meshes import box_mesh, box_room, build_world_triangles
from src.acoustic.geometry.validation import (
    DISTANCE_TOLERANCE,
    ValidationReport,
    check_bvh_bounds,
    random_unit_vectors,
    results_agree,
    validate_bvh,
)


def furnished_room():
    meshes = [
        box_room((-4.0, -1.5, -2.5), (8.0, 3.0, 5.0)),
        box_mesh((1.0, -0.5, 1.0), (0.5, 0.5, 0.5)),
        box_mesh((-2.0, 0.0, -1.0), (0.3, 1.0, 0.3)),
    ]
    return build_world_triangles(meshes)


class TestRandomUnitVectors:
    """Test direction sampling."""

    def test_unit_length(self, rng):
        """Test that sampled directions are normalized."""
        v = random_unit_vectors(500, rng)
        assert v.shape == (500, 3)
        np.testing.assert_allclose(np.linalg.norm(v, axis=1), 1.0)

    def test_reproducible(self):
        """Test that equal seeds give equal directions."""
        a = random_unit_vectors(10, np.random.default_rng(7))
        b = random_unit_vectors(10, np.random.default_rng(7))
        np.testing.assert_array_equal(a, b)


class TestResultsAgree:
    """Test result comparison."""

    def test_agreement_rules(self):
        """Test hit flag and distance tolerance handling."""
        assert results_agree(False, math.inf, False, math.inf)
        assert results_agree(True, 2.0, True, 2.0 + DISTANCE_TOLERANCE / 2)
        assert not results_agree(True, 2.0, True, 2.0 + DISTANCE_TOLERANCE * 2)
        assert not results_agree(True, 2.0, False, math.inf)


class TestCheckBounds:
    """Test structural bounds checks."""

    def test_built_tree_is_consistent(self):
        """Test that a fresh build has no problems."""
        tris = furnished_room()
        builder = BVHBuilder()
        nodes = builder.build(tris)
        assert check_bvh_bounds(nodes, builder.triangle_indices, tris) == []

    def test_stale_bounds_are_reported(self):
        """Test that moving geometry without refit is detected."""
        tris = furnished_room()
        builder = BVHBuilder()
        nodes = builder.build(tris)

        moved = tris + np.float32(10.0)
        problems = check_bvh_bounds(nodes, builder.triangle_indices, moved)
        assert problems
        assert any("leaf" in problem for problem in problems)


class TestValidateBVH:
    """Test the randomized oracle comparison."""

    def test_passes_on_valid_tree(self, caplog):
        """Test that a correct hierarchy passes every ray."""
        builder = BVHBuilder()
        nodes = builder.build(furnished_room())

        with caplog.at_level(logging.INFO):
            report = validate_bvh(builder, nodes, origin=(0.2, 0.1, -0.3), batches=3, rays_per_batch=100, seed=5)

        assert report.passed
        assert report.rays_tested == 300
        assert "0 errors" in report.describe()
        assert any("[BVH TEST]" in message for message in caplog.messages)

    def test_passes_after_refit(self):
        """Test that a refitted hierarchy still agrees with brute force."""
        room = box_room((-4.0, -1.5, -2.5), (8.0, 3.0, 5.0))
        box = box_mesh((1.0, -0.5, 1.0), (0.5, 0.5, 0.5))
        builder = BVHBuilder()
        nodes = builder.build(build_world_triangles([room, box]))

        box.set_position((-2.5, 0.5, -1.0))
        builder.store.update_positions(build_world_triangles([room, box]))
        builder.recompute_triangle_bounds()
        builder.refit(nodes)

        report = validate_bvh(builder, nodes, origin=(0.2, 0.1, -0.3), batches=2, rays_per_batch=100, seed=11)
        assert report.passed, report.describe()

    def test_reports_first_mismatch(self):
        """Test that stale bounds make validation stop with mismatch details."""
        room = box_room((-4.0, -1.5, -2.5), (8.0, 3.0, 5.0))
        box = box_mesh((2.0, 0.0, 0.0), (0.5, 0.5, 0.5))
        builder = BVHBuilder()
        nodes = builder.build(build_world_triangles([room, box]))

        # Move the box without refitting so its old boxes no longer contain it
        box.set_position((-2.0, 0.0, 0.0))
        builder.store.update_positions(build_world_triangles([room, box]))

        report = validate_bvh(builder, nodes, origin=(0.0, 0.05, 0.05), batches=20, rays_per_batch=200, seed=3)

        assert not report.passed
        assert report.batch >= 0
        assert report.ray >= 0
        assert "Mismatch!" in report.describe()
        assert report.rays_tested == report.batch * 200 + report.ray + 1


class TestValidationReport:
    """Test report formatting."""

    def test_failed_report_fields(self):
        """Test that a failed report names seed, batch and ray."""
        report = ValidationReport(rays_tested=12, seed=99, batch=0, ray=11, brute_hit=True, brute_t=1.0)
        text = report.describe()
        assert not report.passed
        assert "seed=99" in text
        assert "batch=0" in text
        assert "ray=11" in text
