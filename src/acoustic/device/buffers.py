"""Device-side geometry buffers.

This module mirrors the host upload layout in Taichi fields so that device
kernels can trace rays against the same triangles and hierarchy the host
builds:

    - triangle vertices: three vec3 fields (v0, v1, v2), one entry per
      triangle in store order
    - BVH nodes: bounds and child/leaf indices, one entry per arena slot
    - triangle permutation: leaf ranges index into this, and it indexes
      into the triangle fields

Buffers are sized for fixed capacities and hold counts of the live
entries. release_geometry() drops the live counts; the field data is left in
place and overwritten by the next upload.

Example:
    >>> import taichi as ti
    >>> ti.init(arch=ti.cpu)
    >>> from src.acoustic.device.buffers import upload_geometry
    >>> upload_geometry(store.triangles, nodes, builder.triangle_indices)
"""

import logging
import math

import numpy as np
import numpy.typing as npt
import taichi as ti
import taichi.math as tm

from src.acoustic.geometry.triangles import as_triangle_array

logger = logging.getLogger(__name__)

# Type alias for 3D vectors using Taichi's math module
vec3 = tm.vec3

# Maximum number of triangles supported on the device
MAX_TRIANGLES = 16384

# A median split with leaves of at least one triangle needs at most 2N - 1 nodes
MAX_NODES = 2 * MAX_TRIANGLES

# Median splits keep depth within ceil(log2(MAX_TRIANGLES)); deeper arenas are refused on upload
MAX_BVH_DEPTH = 2 * math.ceil(math.log2(MAX_TRIANGLES))

# Triangle storage: Structure of Arrays layout
triangle_v0 = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TRIANGLES)
triangle_v1 = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TRIANGLES)
triangle_v2 = ti.Vector.field(3, dtype=ti.f32, shape=MAX_TRIANGLES)
num_triangles = ti.field(dtype=ti.i32, shape=())

# BVH node storage
node_bounds_min = ti.Vector.field(3, dtype=ti.f32, shape=MAX_NODES)
node_bounds_max = ti.Vector.field(3, dtype=ti.f32, shape=MAX_NODES)
node_left_child = ti.field(dtype=ti.i32, shape=MAX_NODES)
node_right_child = ti.field(dtype=ti.i32, shape=MAX_NODES)
node_first_triangle = ti.field(dtype=ti.i32, shape=MAX_NODES)
node_triangle_count = ti.field(dtype=ti.i32, shape=MAX_NODES)
num_nodes = ti.field(dtype=ti.i32, shape=())

# Leaf ranges index into this permutation
triangle_indices = ti.field(dtype=ti.i32, shape=MAX_TRIANGLES)


@ti.kernel
def _copy_vectors(dst: ti.template(), src: ti.types.ndarray(), count: ti.i32):
    for i in range(count):
        for c in ti.static(range(3)):
            dst[i][c] = src[i, c]


@ti.kernel
def _copy_ints(dst: ti.template(), src: ti.types.ndarray(), count: ti.i32):
    for i in range(count):
        dst[i] = src[i]


def _vectors(values: npt.ArrayLike) -> npt.NDArray[np.float32]:
    return np.ascontiguousarray(values, dtype=np.float32)


def _ints(values: npt.ArrayLike) -> npt.NDArray[np.int32]:
    return np.ascontiguousarray(values, dtype=np.int32)


def upload_triangles(triangles: npt.ArrayLike) -> int:
    """Copy world-space triangles to the device.

    Args:
        triangles: (N, 3, 3) vertices or a flat buffer of 9 floats each.

    Returns:
        Number of triangles uploaded.

    Raises:
        ValueError: If there are no triangles.
        RuntimeError: If the maximum number of triangles is exceeded.
    """
    tris = as_triangle_array(triangles)
    count = len(tris)
    if count == 0:
        raise ValueError("Cannot upload empty geometry to the device")
    if count > MAX_TRIANGLES:
        raise RuntimeError(f"Maximum number of triangles ({MAX_TRIANGLES}) exceeded")

    _copy_vectors(triangle_v0, _vectors(tris[:, 0]), count)
    _copy_vectors(triangle_v1, _vectors(tris[:, 1]), count)
    _copy_vectors(triangle_v2, _vectors(tris[:, 2]), count)
    num_triangles[None] = count
    return count


def tree_depth(nodes: npt.NDArray[np.void]) -> int:
    """Depth of the deepest leaf below the root (0 for a single node).

    Relies on parents preceding their children in the arena.
    """
    if len(nodes) == 0:
        return 0
    depth = np.zeros(len(nodes), dtype=np.int64)
    for index in np.flatnonzero(nodes["triangle_count"] == 0):
        depth[nodes["left_child"][index]] = depth[index] + 1
        depth[nodes["right_child"][index]] = depth[index] + 1
    return int(depth.max())


def upload_bvh(nodes: npt.NDArray[np.void], permutation: npt.ArrayLike) -> int:
    """Copy the BVH node arena and triangle permutation to the device.

    Args:
        nodes: Node arena with the BVH_NODE_DTYPE layout.
        permutation: Triangle permutation the leaves index into.

    Returns:
        Number of nodes uploaded.

    Raises:
        RuntimeError: If a capacity is exceeded or the tree is deeper than
            the device traversal stack allows.
    """
    node_count = len(nodes)
    permutation = _ints(permutation)
    if node_count > MAX_NODES:
        raise RuntimeError(f"Maximum number of BVH nodes ({MAX_NODES}) exceeded")
    if len(permutation) > MAX_TRIANGLES:
        raise RuntimeError(f"Maximum number of triangles ({MAX_TRIANGLES}) exceeded")
    depth = tree_depth(nodes)
    if depth > MAX_BVH_DEPTH:
        raise RuntimeError(f"BVH depth {depth} exceeds the traversal limit ({MAX_BVH_DEPTH})")

    if node_count > 0:
        _copy_vectors(node_bounds_min, _vectors(nodes["bounds_min"]), node_count)
        _copy_vectors(node_bounds_max, _vectors(nodes["bounds_max"]), node_count)
        _copy_ints(node_left_child, _ints(nodes["left_child"]), node_count)
        _copy_ints(node_right_child, _ints(nodes["right_child"]), node_count)
        _copy_ints(node_first_triangle, _ints(nodes["first_triangle"]), node_count)
        _copy_ints(node_triangle_count, _ints(nodes["triangle_count"]), node_count)
    if len(permutation) > 0:
        _copy_ints(triangle_indices, permutation, len(permutation))
    num_nodes[None] = node_count
    return node_count


def upload_geometry(
    triangles: npt.ArrayLike,
    nodes: npt.NDArray[np.void],
    permutation: npt.ArrayLike,
) -> None:
    """Upload triangles, BVH nodes and the triangle permutation together."""
    triangle_count = upload_triangles(triangles)
    node_count = upload_bvh(nodes, permutation)
    logger.debug("Uploaded %d triangles and %d BVH nodes to the device", triangle_count, node_count)


def release_geometry() -> None:
    """Drop all uploaded geometry.

    Resets the live counts to zero; kernels then see an empty scene.
    """
    num_triangles[None] = 0
    num_nodes[None] = 0


def get_triangle_count() -> int:
    """Get the number of triangles on the device."""
    return int(num_triangles[None])


def get_node_count() -> int:
    """Get the number of BVH nodes on the device."""
    return int(num_nodes[None])
