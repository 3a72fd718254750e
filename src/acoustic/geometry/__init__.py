"""Geometry module for triangles, the BVH and intersection tests.

This module provides the host-side geometry pipeline:

Components:
    triangles: Fixed-count world-space triangle store
    meshes: Mesh instances, world-space extraction and simple motion
    bvh: Median-split BVH builder with bottom-up refit
    intersection: Slab, Moller-Trumbore, BVH traversal and brute-force tests
    validation: BVH invariant checks and randomized oracle comparison

The BVH node arena uses the same 40-byte layout the compute kernel reads,
so the arrays produced here are uploaded without conversion.
"""

from .bvh import (
    BVH_NODE_DTYPE,
    LEAF_SENTINEL,
    MAX_LEAF_TRIANGLES,
    BVHBuilder,
    bvh_depth,
    empty_nodes,
    is_leaf,
)
from .intersection import (
    brute_force_intersect,
    intersect_bvh,
    ray_aabb,
    ray_triangle,
    ray_triangles,
    safe_inverse_direction,
)
from .meshes import (
    MeshGeometrySource,
    MeshInstance,
    SideToSideMotion,
    box_mesh,
    box_room,
    build_world_triangles,
    translation_matrix,
)
from .triangles import TriangleStore, as_triangle_array
from .validation import ValidationReport, check_bvh_bounds, validate_bvh

__all__ = [
    # Triangles
    "TriangleStore",
    "as_triangle_array",
    # Meshes
    "MeshInstance",
    "MeshGeometrySource",
    "SideToSideMotion",
    "box_room",
    "box_mesh",
    "build_world_triangles",
    "translation_matrix",
    # BVH
    "BVHBuilder",
    "BVH_NODE_DTYPE",
    "LEAF_SENTINEL",
    "MAX_LEAF_TRIANGLES",
    "bvh_depth",
    "empty_nodes",
    "is_leaf",
    # Intersection
    "ray_aabb",
    "ray_triangle",
    "ray_triangles",
    "intersect_bvh",
    "brute_force_intersect",
    "safe_inverse_direction",
    # Validation
    "ValidationReport",
    "check_bvh_bounds",
    "validate_bvh",
]
