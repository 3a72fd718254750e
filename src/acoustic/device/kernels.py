"""Device-side ray queries against the uploaded geometry.

The Taichi functions here are the device counterparts of the host
intersection math in geometry.intersection and use the same constants:

    - ray_aabb: slab test with a reciprocal direction
    - ray_triangle: two-sided Moller-Trumbore test
    - intersect_bvh: per-ray stack traversal of the node buffers
    - brute_force_intersect: linear scan over every uploaded triangle

trace() runs batches of rays through either path and returns nearest-hit
distances, which lets tests and tools check the device layout against the
host hierarchy.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from src.acoustic.device.buffers import upload_geometry
    >>> from src.acoustic.device.kernels import trace
    >>> upload_geometry(store.triangles, nodes, builder.triangle_indices)
    >>> hits, distances = trace((0, 0, 0), directions)
"""

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm

from src.acoustic.device.buffers import (
    MAX_BVH_DEPTH,
    get_triangle_count,
    node_bounds_max,
    node_bounds_min,
    node_first_triangle,
    node_left_child,
    node_right_child,
    node_triangle_count,
    num_nodes,
    num_triangles,
    triangle_indices,
    triangle_v0,
    triangle_v1,
    triangle_v2,
)
from src.acoustic.geometry.intersection import DIRECTION_EPSILON, TRIANGLE_EPSILON

# Type alias for 3D vectors using Taichi's math module
vec3 = tm.vec3

# Rays traced per kernel launch
MAX_TRACE_BATCH = 4096

# Pending siblings along the deepest path plus both children of the current node
STACK_SIZE = MAX_BVH_DEPTH + 2

# One traversal stack per ray slot of a batch
_traversal_stack = ti.field(dtype=ti.i32, shape=(MAX_TRACE_BATCH, STACK_SIZE))


@ti.func
def safe_inverse_direction(direction: vec3) -> vec3:
    """Component-wise reciprocal with near-zero components clamped to +/-eps."""
    inv = vec3(0.0, 0.0, 0.0)
    for c in ti.static(range(3)):
        d = direction[c]
        if ti.abs(d) <= DIRECTION_EPSILON:
            d = ti.select(d < 0.0, -DIRECTION_EPSILON, DIRECTION_EPSILON)
        inv[c] = 1.0 / d
    return inv


@ti.func
def ray_aabb(origin: vec3, inv_dir: vec3, box_min: vec3, box_max: vec3, t_max: ti.f32) -> ti.i32:
    """Slab test: 1 if the ray's interval inside the box overlaps [0, t_max]."""
    t1 = (box_min - origin) * inv_dir
    t2 = (box_max - origin) * inv_dir
    t_lo = ti.min(t1, t2)
    t_hi = ti.max(t1, t2)
    t_near = ti.max(t_lo[0], t_lo[1], t_lo[2])
    t_far = ti.min(t_hi[0], t_hi[1], t_hi[2])

    result = 0
    if t_far >= ti.max(0.0, t_near) and t_near <= t_max:
        result = 1
    return result


@ti.func
def ray_triangle(origin: vec3, direction: vec3, v0: vec3, v1: vec3, v2: vec3):
    """Moller-Trumbore test.

    Returns:
        Tuple of (hit, t) where hit is 1 on intersection and t is 0.0 on a
        miss.
    """
    hit = 0
    t_hit = 0.0

    edge1 = v1 - v0
    edge2 = v2 - v0
    pvec = tm.cross(direction, edge2)
    det = tm.dot(edge1, pvec)

    if ti.abs(det) >= TRIANGLE_EPSILON:
        inv_det = 1.0 / det
        tvec = origin - v0
        u = tm.dot(tvec, pvec) * inv_det
        if u >= 0.0 and u <= 1.0:
            qvec = tm.cross(tvec, edge1)
            v = tm.dot(qvec, direction) * inv_det
            if v >= 0.0 and u + v <= 1.0:
                t = tm.dot(edge2, qvec) * inv_det
                if t > TRIANGLE_EPSILON:
                    hit = 1
                    t_hit = t

    return hit, t_hit


@ti.func
def intersect_bvh(ray_slot: ti.i32, origin: vec3, direction: vec3):
    """Nearest hit through the uploaded BVH.

    Internal nodes push their right child then their left child; a node is
    expanded only if the ray enters its box before the nearest hit so far.

    Returns:
        Tuple of (hit, nearest_t); nearest_t is inf on a miss.
    """
    inv_dir = safe_inverse_direction(direction)
    nearest = tm.inf
    hit = 0

    sp = 0
    if num_nodes[None] > 0:
        _traversal_stack[ray_slot, 0] = 0
        sp = 1

    while sp > 0:
        sp -= 1
        node = _traversal_stack[ray_slot, sp]
        if ray_aabb(origin, inv_dir, node_bounds_min[node], node_bounds_max[node], nearest) == 1:
            count = node_triangle_count[node]
            if count > 0:
                first = node_first_triangle[node]
                for k in range(first, first + count):
                    tri = triangle_indices[k]
                    did_hit, t = ray_triangle(origin, direction, triangle_v0[tri], triangle_v1[tri], triangle_v2[tri])
                    if did_hit == 1 and t < nearest:
                        nearest = t
                        hit = 1
            else:
                _traversal_stack[ray_slot, sp] = node_right_child[node]
                _traversal_stack[ray_slot, sp + 1] = node_left_child[node]
                sp += 2

    return hit, nearest


@ti.func
def brute_force_intersect(origin: vec3, direction: vec3):
    """Nearest hit by testing every uploaded triangle.

    Returns:
        Tuple of (hit, nearest_t); nearest_t is inf on a miss.
    """
    nearest = tm.inf
    hit = 0
    for tri in range(num_triangles[None]):
        did_hit, t = ray_triangle(origin, direction, triangle_v0[tri], triangle_v1[tri], triangle_v2[tri])
        if did_hit == 1 and t < nearest:
            nearest = t
            hit = 1
    return hit, nearest


@ti.kernel
def _trace_batch(
    origins: ti.types.ndarray(),
    directions: ti.types.ndarray(),
    count: ti.i32,
    use_bvh: ti.i32,
    hits: ti.types.ndarray(),
    distances: ti.types.ndarray(),
):
    for i in range(count):
        origin = vec3(origins[i, 0], origins[i, 1], origins[i, 2])
        direction = vec3(directions[i, 0], directions[i, 1], directions[i, 2])
        if use_bvh != 0:
            bvh_hit, bvh_t = intersect_bvh(i, origin, direction)
            hits[i] = bvh_hit
            distances[i] = bvh_t
        else:
            brute_hit, brute_t = brute_force_intersect(origin, direction)
            hits[i] = brute_hit
            distances[i] = brute_t


def trace(
    origins: npt.ArrayLike,
    directions: npt.ArrayLike,
    use_bvh: bool = True,
) -> tuple[npt.NDArray[np.bool_], npt.NDArray[np.float64]]:
    """Trace rays against the uploaded geometry on the device.

    Args:
        origins: (N, 3) ray origins, or a single (3,) origin shared by all
            rays.
        directions: (N, 3) ray directions.
        use_bvh: Traverse the BVH if True, otherwise scan every triangle.

    Returns:
        Tuple of (hits, distances), each of length N. distances is inf
        where hits is False.

    Raises:
        RuntimeError: If no geometry has been uploaded.
    """
    if get_triangle_count() == 0:
        raise RuntimeError("No geometry uploaded. Call upload_geometry() first.")

    dirs = np.ascontiguousarray(np.asarray(directions, dtype=np.float32).reshape(-1, 3))
    origs = np.ascontiguousarray(
        np.broadcast_to(np.asarray(origins, dtype=np.float32).reshape(-1, 3), dirs.shape)
    )
    total = len(dirs)
    hits = np.zeros(total, dtype=np.int32)
    distances = np.zeros(total, dtype=np.float32)

    for start in range(0, total, MAX_TRACE_BATCH):
        stop = min(start + MAX_TRACE_BATCH, total)
        batch_hits = np.zeros(stop - start, dtype=np.int32)
        batch_distances = np.zeros(stop - start, dtype=np.float32)
        _trace_batch(
            np.ascontiguousarray(origs[start:stop]),
            np.ascontiguousarray(dirs[start:stop]),
            stop - start,
            int(use_bvh),
            batch_hits,
            batch_distances,
        )
        hits[start:stop] = batch_hits
        distances[start:stop] = batch_distances

    return hits.astype(bool), distances.astype(np.float64)
