"""Tests for host-side intersection math.

This module tests:
- Slab test against boxes, including axis-parallel rays
- Moller-Trumbore hits, misses, parallel rays and rays starting on a surface
- Nearest-hit agreement between BVH traversal and the brute-force scan
"""

import math

import numpy as np
import pytest

from src.acoustic.geometry.bvh import BVHBuilder
from src.acoustic.geometry.intersection import (
    DIRECTION_EPSILON,
    brute_force_intersect,
    intersect_bvh,
    ray_aabb,
    ray_triangle,
    ray_triangles,
    safe_inverse_direction,
)
from src.acoustic.geometry.meshes import box_mesh, box_room, build_world_triangles
from src.acoustic.geometry.validation import random_unit_vectors

TRIANGLE = np.array([[-1.0, -1.0, 0.0], [1.0, -1.0, 0.0], [0.0, 1.0, 0.0]], dtype=np.float32)


class TestSafeInverseDirection:
    """Test reciprocal direction computation."""

    def test_regular_components(self):
        """Test that ordinary components are inverted exactly."""
        np.testing.assert_allclose(safe_inverse_direction((2.0, -4.0, 0.5)), [0.5, -0.25, 2.0])

    def test_zero_component_is_clamped(self):
        """Test that zero components become 1 / eps with a positive sign."""
        inv = safe_inverse_direction((0.0, 1.0, -1e-12))
        assert inv[0] == pytest.approx(1.0 / DIRECTION_EPSILON)
        assert inv[2] == pytest.approx(-1.0 / DIRECTION_EPSILON)
        assert np.all(np.isfinite(inv))


class TestRayAABB:
    """Test the slab test."""

    def test_hit_in_front(self):
        """Test a ray pointing at a box."""
        inv = safe_inverse_direction((1.0, 0.0, 0.0))
        assert ray_aabb((-5, 0, 0), inv, (-1, -1, -1), (1, 1, 1), math.inf)

    def test_box_behind_origin(self):
        """Test that boxes entirely behind the origin are missed."""
        inv = safe_inverse_direction((1.0, 0.0, 0.0))
        assert not ray_aabb((5, 0, 0), inv, (-1, -1, -1), (1, 1, 1), math.inf)

    def test_origin_inside_box(self):
        """Test that a ray starting inside a box hits it."""
        inv = safe_inverse_direction((0.3, 0.4, -0.5))
        assert ray_aabb((0, 0, 0), inv, (-1, -1, -1), (1, 1, 1), math.inf)

    def test_beyond_t_max(self):
        """Test that boxes entered after t_max are culled."""
        inv = safe_inverse_direction((1.0, 0.0, 0.0))
        assert not ray_aabb((-5, 0, 0), inv, (-1, -1, -1), (1, 1, 1), 3.0)
        assert ray_aabb((-5, 0, 0), inv, (-1, -1, -1), (1, 1, 1), 4.5)

    def test_axis_parallel_miss(self):
        """Test that an axis-parallel ray outside the slab misses."""
        inv = safe_inverse_direction((1.0, 0.0, 0.0))
        assert not ray_aabb((-5, 2, 0), inv, (-1, -1, -1), (1, 1, 1), math.inf)

    def test_flat_box(self):
        """Test that zero-thickness boxes (flat walls) can still be hit."""
        inv = safe_inverse_direction((0.0, -1.0, 0.0))
        assert ray_aabb((0.5, 2.0, 0.5), inv, (0, 0, 0), (1, 0, 1), math.inf)


class TestRayTriangle:
    """Test Moller-Trumbore intersection."""

    def test_head_on_hit(self):
        """Test the hand-computed distance of a perpendicular hit."""
        hit, t = ray_triangle((0, 0, 5), (0, 0, -1), TRIANGLE)
        assert hit
        assert t == pytest.approx(5.0)

    def test_back_face_hit(self):
        """Test that the test is two-sided."""
        hit, t = ray_triangle((0, 0, -2), (0, 0, 1), TRIANGLE)
        assert hit
        assert t == pytest.approx(2.0)

    def test_oblique_hit(self):
        """Test an oblique ray against the distance along the unnormalized direction."""
        hit, t = ray_triangle((0.0, -3.0, 3.0), (0.0, 1.0, -1.0), TRIANGLE)
        assert hit
        assert t == pytest.approx(3.0)

    def test_miss_outside(self):
        """Test that rays outside the triangle miss."""
        hit, t = ray_triangle((5, 5, 5), (0, 0, -1), TRIANGLE)
        assert not hit
        assert t == 0.0

    def test_parallel_ray(self):
        """Test that rays in the triangle plane are rejected."""
        hit, _ = ray_triangle((-5, 0, 0), (1, 0, 0), TRIANGLE)
        assert not hit

    def test_pointing_away(self):
        """Test that triangles behind the origin are missed."""
        hit, _ = ray_triangle((0, 0, 5), (0, 0, 1), TRIANGLE)
        assert not hit

    def test_origin_on_surface(self):
        """Test that a ray leaving the surface it starts on does not hit it again."""
        hit, _ = ray_triangle((0, 0, 0), (0, 0, 1), TRIANGLE)
        assert not hit

    def test_vectorized_matches_scalar(self, rng):
        """Test that ray_triangles agrees with ray_triangle per triangle."""
        tris = box_room((-2, -2, -2), (4, 4, 4)).world_triangles()
        for direction in random_unit_vectors(20, rng):
            hits, ts = ray_triangles((0.1, 0.2, 0.3), direction, tris)
            for tri, hit, t in zip(tris, hits, ts):
                expected_hit, expected_t = ray_triangle((0.1, 0.2, 0.3), direction, tri)
                assert hit == expected_hit
                assert t == pytest.approx(expected_t)


class TestNearestHit:
    """Test BVH traversal against brute force."""

    def test_room_wall_distance(self):
        """Test the nearest wall distance inside a shoebox room."""
        tris = box_room((-4, -1.5, -2.5), (8, 3, 5)).world_triangles()
        builder = BVHBuilder()
        nodes = builder.build(tris)

        origin = (0.3, 0.2, -0.4)
        for direction, expected in [((1, 0, 0), 3.7), ((0, -1, 0), 1.7), ((0, 0, 1), 2.9)]:
            assert brute_force_intersect(tris, origin, direction) == (True, pytest.approx(expected))
            assert builder.intersect(nodes, origin, direction) == (True, pytest.approx(expected))

    def test_nearest_of_several(self):
        """Test that the closer of two surfaces is reported."""
        tris = build_world_triangles([box_room((-4, -4, -4), (8, 8, 8)), box_mesh((2, 0, 0), (0.5, 0.5, 0.5))])
        builder = BVHBuilder()
        nodes = builder.build(tris)
        hit, t = builder.intersect(nodes, (0.0, 0.1, 0.2), (1, 0, 0))
        assert hit
        assert t == pytest.approx(1.5)

    def test_miss_reports_infinity(self):
        """Test that both paths report inf when nothing is hit."""
        tris = box_mesh((0, 0, 0), (1, 1, 1)).world_triangles()
        builder = BVHBuilder()
        nodes = builder.build(tris)

        assert brute_force_intersect(tris, (5, 5, 5), (1, 0, 0)) == (False, math.inf)
        assert builder.intersect(nodes, (5, 5, 5), (1, 0, 0)) == (False, math.inf)

    def test_single_triangle_both_paths(self):
        """Test a one-triangle hierarchy against the hand-computed distance, then a ray pointing away."""
        builder = BVHBuilder()
        nodes = builder.build(TRIANGLE[np.newaxis])
        assert len(nodes) == 1

        centroid = TRIANGLE.mean(axis=0)
        origin = centroid + np.array([0.0, 0.0, 5.0])
        assert builder.intersect(nodes, origin, (0, 0, -1)) == (True, pytest.approx(5.0))
        assert brute_force_intersect(TRIANGLE[np.newaxis], origin, (0, 0, -1)) == (True, pytest.approx(5.0))

        assert builder.intersect(nodes, origin, (0, 0, 1)) == (False, math.inf)
        assert brute_force_intersect(TRIANGLE[np.newaxis], origin, (0, 0, 1)) == (False, math.inf)

    def test_empty_arena(self):
        """Test that an empty hierarchy never hits."""
        builder = BVHBuilder()
        nodes = builder.build(np.zeros((0, 3, 3)))
        assert intersect_bvh(nodes, builder.triangle_indices, np.zeros((0, 3, 3)), (0, 0, 0), (1, 0, 0)) == (
            False,
            math.inf,
        )

    def test_random_rays_agree(self, rng):
        """Test that BVH and brute force agree on hit and distance for random rays."""
        meshes = [box_room((-5, -2, -4), (10, 4, 8))]
        meshes += [box_mesh(tuple(rng.uniform(-3, 3, 3)), (0.4, 0.4, 0.4)) for _ in range(15)]
        tris = build_world_triangles(meshes)
        builder = BVHBuilder()
        nodes = builder.build(tris)

        origins = rng.uniform(-4, 4, size=(200, 3)) * np.array([1.0, 0.4, 0.9])
        directions = random_unit_vectors(200, rng)
        for origin, direction in zip(origins, directions):
            brute_hit, brute_t = brute_force_intersect(tris, origin, direction)
            bvh_hit, bvh_t = builder.intersect(nodes, origin, direction)
            assert bvh_hit == brute_hit
            assert bvh_t == pytest.approx(brute_t, abs=1e-6)
