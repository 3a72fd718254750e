"""Host-side ray intersection math.

This module holds the reference implementation of the intersection tests
that the compute kernel performs on the device:

    - ray_aabb: three-axis slab test against a bounding box
    - ray_triangle: Moller-Trumbore ray/triangle test
    - intersect_bvh: stack traversal of the node arena, nearest hit
    - brute_force_intersect: linear scan over every triangle, nearest hit

The BVH traversal and the brute-force scan must agree on hit/no-hit and
(within floating tolerance) on distance for every ray. The brute-force path
is only used as an oracle when validating the hierarchy.

All functions take plain array-likes and compute in float64. A miss reports
a distance of ``math.inf``.

Example:
    >>> import numpy as np
    >>> from src.acoustic.geometry.intersection import ray_triangle
    >>> tri = np.array([[-1, -1, 0], [1, -1, 0], [0, 1, 0]], dtype=np.float32)
    >>> ray_triangle((0, 0, 5), (0, 0, -1), tri)
    (True, 5.0)
"""

from __future__ import annotations

import math

import numpy as np
import numpy.typing as npt

# Moller-Trumbore tolerance for parallel rays and self-intersection
TRIANGLE_EPSILON = 1e-5

# Smallest direction component magnitude used when inverting a direction
DIRECTION_EPSILON = 1e-8


def safe_inverse_direction(
    direction: npt.ArrayLike, eps: float = DIRECTION_EPSILON
) -> npt.NDArray[np.float64]:
    """Component-wise reciprocal of a ray direction.

    Components with magnitude at or below ``eps`` are replaced by ``eps``
    carrying the component's sign (zero counts as positive), so the slab
    test never divides by zero.

    Args:
        direction: The ray direction.
        eps: Replacement magnitude for near-zero components.

    Returns:
        The reciprocal direction as a float64 array of shape (3,).
    """
    d = np.asarray(direction, dtype=np.float64)
    signed_eps = np.where(np.signbit(d), -eps, eps)
    return 1.0 / np.where(np.abs(d) > eps, d, signed_eps)


def ray_aabb(
    origin: npt.ArrayLike,
    inv_dir: npt.ArrayLike,
    box_min: npt.ArrayLike,
    box_max: npt.ArrayLike,
    t_max: float,
) -> bool:
    """Slab test of a ray against an axis-aligned box.

    Args:
        origin: Ray origin.
        inv_dir: Reciprocal ray direction (see safe_inverse_direction).
        box_min: Minimum corner of the box.
        box_max: Maximum corner of the box.
        t_max: Upper end of the parametric range of interest.

    Returns:
        True iff the ray's parametric interval inside the box overlaps
        [0, t_max].
    """
    o = np.asarray(origin, dtype=np.float64)
    inv = np.asarray(inv_dir, dtype=np.float64)
    t1 = (np.asarray(box_min, dtype=np.float64) - o) * inv
    t2 = (np.asarray(box_max, dtype=np.float64) - o) * inv
    t_near = float(np.max(np.minimum(t1, t2)))
    t_far = float(np.min(np.maximum(t1, t2)))
    return t_far >= max(0.0, t_near) and t_near <= t_max


def ray_triangle(
    origin: npt.ArrayLike,
    direction: npt.ArrayLike,
    triangle: npt.ArrayLike,
) -> tuple[bool, float]:
    """Moller-Trumbore ray/triangle intersection.

    The test is two-sided. It rejects rays nearly parallel to the triangle
    plane (|det| < TRIANGLE_EPSILON), hits outside the triangle (u or v
    outside [0, 1], u + v > 1) and hits at t <= TRIANGLE_EPSILON, which also
    discards surfaces the ray starts on or behind.

    Args:
        origin: Ray origin.
        direction: Ray direction (need not be normalized; t is in units of
            the direction's length).
        triangle: Vertices as a (3, 3) array-like.

    Returns:
        Tuple of (hit, t). t is 0.0 on a miss.
    """
    o = np.asarray(origin, dtype=np.float64)
    d = np.asarray(direction, dtype=np.float64)
    v0, v1, v2 = np.asarray(triangle, dtype=np.float64)

    edge1 = v1 - v0
    edge2 = v2 - v0
    pvec = np.cross(d, edge2)
    det = float(np.dot(edge1, pvec))
    if abs(det) < TRIANGLE_EPSILON:
        return False, 0.0

    inv_det = 1.0 / det
    tvec = o - v0
    u = float(np.dot(tvec, pvec)) * inv_det
    if u < 0.0 or u > 1.0:
        return False, 0.0

    qvec = np.cross(tvec, edge1)
    v = float(np.dot(qvec, d)) * inv_det
    if v < 0.0 or u + v > 1.0:
        return False, 0.0

    t = float(np.dot(edge2, qvec)) * inv_det
    if t <= TRIANGLE_EPSILON:
        return False, 0.0
    return True, t


def ray_triangles(
    origin: npt.ArrayLike,
    direction: npt.ArrayLike,
    triangles: npt.ArrayLike,
) -> tuple[npt.NDArray[np.bool_], npt.NDArray[np.float64]]:
    """Vectorized Moller-Trumbore against many triangles at once.

    Applies the same rejection rules as ray_triangle to every triangle.

    Args:
        origin: Ray origin.
        direction: Ray direction.
        triangles: Vertices as an (N, 3, 3) array-like.

    Returns:
        Tuple of (hits, ts), each of length N. ts is 0.0 where hits is False.
    """
    o = np.asarray(origin, dtype=np.float64)
    d = np.asarray(direction, dtype=np.float64)
    tris = np.asarray(triangles, dtype=np.float64).reshape(-1, 3, 3)

    v0 = tris[:, 0]
    edge1 = tris[:, 1] - v0
    edge2 = tris[:, 2] - v0
    pvec = np.cross(d, edge2)
    det = np.einsum("ij,ij->i", edge1, pvec)

    hits = np.abs(det) >= TRIANGLE_EPSILON
    inv_det = np.divide(1.0, det, out=np.zeros_like(det), where=hits)

    tvec = o - v0
    u = np.einsum("ij,ij->i", tvec, pvec) * inv_det
    qvec = np.cross(tvec, edge1)
    v = (qvec @ d) * inv_det
    t = np.einsum("ij,ij->i", edge2, qvec) * inv_det

    hits &= (u >= 0.0) & (u <= 1.0) & (v >= 0.0) & (u + v <= 1.0) & (t > TRIANGLE_EPSILON)
    return hits, np.where(hits, t, 0.0)


def intersect_bvh(
    nodes: npt.NDArray[np.void],
    triangle_indices: npt.ArrayLike,
    triangles: npt.ArrayLike,
    origin: npt.ArrayLike,
    direction: npt.ArrayLike,
) -> tuple[bool, float]:
    """Nearest hit through the BVH node arena.

    Iterative traversal from the root (node 0) with an explicit stack. A node
    is expanded only if the ray enters its box before the nearest hit found so
    far; internal nodes push their right child then their left child, leaves
    test every triangle in their permutation range.

    Args:
        nodes: Node arena with the BVH_NODE_DTYPE layout.
        triangle_indices: Permutation the leaves index into.
        triangles: (N, 3, 3) triangle vertices.
        origin: Ray origin.
        direction: Ray direction.

    Returns:
        Tuple of (hit, nearest_t). nearest_t is inf on a miss.
    """
    nearest = math.inf
    if len(nodes) == 0:
        return False, nearest

    o = np.asarray(origin, dtype=np.float64)
    d = np.asarray(direction, dtype=np.float64)
    inv_dir = safe_inverse_direction(d)
    tris = np.asarray(triangles)
    indices = np.asarray(triangle_indices)

    hit = False
    stack = [0]
    while stack:
        node = nodes[stack.pop()]
        if not ray_aabb(o, inv_dir, node["bounds_min"], node["bounds_max"], nearest):
            continue

        count = int(node["triangle_count"])
        if count > 0:
            first = int(node["first_triangle"])
            for tri_index in indices[first : first + count]:
                did_hit, t = ray_triangle(o, d, tris[tri_index])
                if did_hit and t < nearest:
                    nearest = t
                    hit = True
        else:
            stack.append(int(node["right_child"]))
            stack.append(int(node["left_child"]))

    return hit, nearest


def brute_force_intersect(
    triangles: npt.ArrayLike,
    origin: npt.ArrayLike,
    direction: npt.ArrayLike,
) -> tuple[bool, float]:
    """Nearest hit by testing every triangle.

    Returns:
        Tuple of (hit, nearest_t). nearest_t is inf on a miss.
    """
    hits, ts = ray_triangles(origin, direction, triangles)
    if not hits.any():
        return False, math.inf
    return True, float(ts[hits].min())
