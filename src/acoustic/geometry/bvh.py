"""Bounding volume hierarchy over world-space triangles.

The hierarchy is stored as a flat node arena (a numpy structured array) in
exactly the layout the compute kernel reads: two float3 bounds followed by
four int32 fields, 40 bytes per node. Children are referenced by node index
with -1 as the leaf sentinel, and leaves reference a contiguous range of the
triangle index permutation rather than copying triangle data.

Construction is a recursive median split:
    1. Bound the range from cached per-triangle bounds.
    2. Ranges of at most MAX_LEAF_TRIANGLES become leaves.
    3. Otherwise sort the range by centroid along the largest extent axis
       and split at the middle index.

The node slot is reserved before recursing, so the root is node 0 and every
child index is greater than its parent's. refit() relies on that ordering to
update bounds bottom-up with a single reverse sweep, without changing the
topology.

Example:
    >>> from src.acoustic.geometry.bvh import BVHBuilder
    >>> builder = BVHBuilder()
    >>> nodes = builder.build(triangles)
    >>> builder.store.translate((0.5, 0.0, 0.0))
    >>> builder.recompute_triangle_bounds()
    >>> builder.refit(nodes)
"""

from __future__ import annotations

import logging

import numpy as np
import numpy.typing as npt

from src.acoustic.geometry.intersection import brute_force_intersect, intersect_bvh
from src.acoustic.geometry.triangles import TriangleStore, triangle_bounds

logger = logging.getLogger(__name__)

# Leaves hold at most this many triangles
MAX_LEAF_TRIANGLES = 4

# Child index sentinel marking a leaf
LEAF_SENTINEL = -1

BVH_NODE_DTYPE = np.dtype(
    [
        ("bounds_min", np.float32, (3,)),
        ("bounds_max", np.float32, (3,)),
        ("left_child", np.int32),
        ("right_child", np.int32),
        ("first_triangle", np.int32),
        ("triangle_count", np.int32),
    ]
)

BVHNodes = npt.NDArray[np.void]


def empty_nodes(count: int = 0) -> BVHNodes:
    """Allocate a zeroed node arena of the given size."""
    return np.zeros(count, dtype=BVH_NODE_DTYPE)


def is_leaf(node: np.void) -> bool:
    """Whether a node record is a leaf (triangle_count > 0)."""
    return int(node["triangle_count"]) > 0


def bvh_depth(nodes: BVHNodes) -> int:
    """Depth of the tree in levels (0 for an empty arena)."""
    if len(nodes) == 0:
        return 0
    depth = 0
    stack = [(0, 1)]
    while stack:
        index, level = stack.pop()
        depth = max(depth, level)
        node = nodes[index]
        if not is_leaf(node):
            stack.append((int(node["left_child"]), level + 1))
            stack.append((int(node["right_child"]), level + 1))
    return depth


def largest_extent_axis(extent: npt.ArrayLike) -> int:
    """Split axis selection: x, then y, then z unless strictly exceeded."""
    ex, ey, ez = (float(v) for v in extent)
    if ex > ey and ex > ez:
        return 0
    return 1 if ey > ez else 2


class BVHBuilder:
    """Builds the hierarchy once and refits it after geometry motion.

    The builder owns the triangle index permutation and the per-triangle
    bounds caches. It keeps a reference to the triangle store it was built
    from, so positions written into that store are picked up by the next
    recompute_triangle_bounds() call.

    Attributes:
        store: The triangle store the hierarchy was built over.
        triangle_indices: The int32 permutation reordered during build.
        max_leaf_triangles: Leaf size threshold.
    """

    def __init__(self, max_leaf_triangles: int = MAX_LEAF_TRIANGLES) -> None:
        if max_leaf_triangles < 1:
            raise ValueError(f"max_leaf_triangles must be >= 1, got {max_leaf_triangles}")
        self.max_leaf_triangles = max_leaf_triangles
        self.store: TriangleStore | None = None
        self.triangle_indices = np.zeros(0, dtype=np.int32)
        self._tri_min = np.zeros((0, 3), dtype=np.float32)
        self._tri_max = np.zeros((0, 3), dtype=np.float32)
        self._tri_centroid = np.zeros((0, 3), dtype=np.float32)
        self._nodes: BVHNodes = empty_nodes()
        self._node_count = 0

    @property
    def triangles(self) -> npt.NDArray[np.float32]:
        self._check_built()
        return self.store.triangles

    def build(self, triangles: TriangleStore | npt.ArrayLike) -> BVHNodes:
        """Build the hierarchy over a set of triangles.

        Args:
            triangles: A TriangleStore (referenced, not copied) or raw
                triangle data (wrapped in a new store).

        Returns:
            The node arena, root at index 0. Empty when there are no
            triangles.
        """
        self.store = triangles if isinstance(triangles, TriangleStore) else TriangleStore(triangles)
        count = len(self.store)

        self.triangle_indices = np.arange(count, dtype=np.int32)
        self.recompute_triangle_bounds()

        self._nodes = empty_nodes(max(2 * count - 1, 0))
        self._node_count = 0
        if count > 0:
            self._build_node(0, count)

        nodes = self._nodes[: self._node_count].copy()
        self._nodes = empty_nodes()
        logger.info("BVH built: %d nodes for %d triangles", len(nodes), count)
        return nodes

    def _range_bounds(self, start: int, count: int):
        members = self.triangle_indices[start : start + count]
        return self._tri_min[members].min(axis=0), self._tri_max[members].max(axis=0)

    def _build_node(self, start: int, count: int) -> int:
        bounds_min, bounds_max = self._range_bounds(start, count)

        # Reserve the slot first so parents always precede their children
        node_index = self._node_count
        self._node_count += 1
        node = self._nodes[node_index]
        node["bounds_min"] = bounds_min
        node["bounds_max"] = bounds_max

        if count <= self.max_leaf_triangles:
            node["left_child"] = LEAF_SENTINEL
            node["right_child"] = LEAF_SENTINEL
            node["first_triangle"] = start
            node["triangle_count"] = count
            return node_index

        axis = largest_extent_axis(bounds_max - bounds_min)

        # Unstable sort: ties between equal centroids have no defined order
        members = self.triangle_indices[start : start + count]
        order = np.argsort(self._tri_centroid[members, axis], kind="quicksort")
        self.triangle_indices[start : start + count] = members[order]

        mid = start + count // 2
        left_child = self._build_node(start, mid - start)
        right_child = self._build_node(mid, start + count - mid)

        node = self._nodes[node_index]
        node["left_child"] = left_child
        node["right_child"] = right_child
        node["first_triangle"] = -1
        node["triangle_count"] = 0
        return node_index

    def recompute_triangle_bounds(self) -> None:
        """Refresh per-triangle min/max/centroid caches from the store.

        Must be called after any geometry motion and before refit().

        Raises:
            RuntimeError: If no triangles have been built yet.
        """
        self._check_built()
        self._tri_min, self._tri_max = triangle_bounds(self.store.triangles)
        self._tri_centroid = (self._tri_min + self._tri_max) * 0.5

    def refit(self, nodes: BVHNodes) -> None:
        """Update every node's bounds in place, keeping the topology.

        Leaves take the union of their member triangles' cached bounds and
        internal nodes the union of their two children. Children always sit
        at higher indices than their parent, so a reverse sweep visits every
        child before its parent.

        Raises:
            RuntimeError: If no triangles have been built yet.
        """
        self._check_built()
        if len(nodes) == 0:
            return

        leaves = nodes["triangle_count"] > 0
        self._refit_leaves(nodes, np.flatnonzero(leaves))

        for index in np.flatnonzero(~leaves)[::-1]:
            node = nodes[index]
            left = nodes[node["left_child"]]
            right = nodes[node["right_child"]]
            node["bounds_min"] = np.minimum(left["bounds_min"], right["bounds_min"])
            node["bounds_max"] = np.maximum(left["bounds_max"], right["bounds_max"])

    def _refit_leaves(self, nodes: BVHNodes, leaf_indices: npt.NDArray[np.intp]) -> None:
        # Leaf ranges partition the permutation, so one reduceat over the
        # permuted bounds covers every leaf
        order = np.argsort(nodes["first_triangle"][leaf_indices], kind="stable")
        leaf_indices = leaf_indices[order]
        starts = nodes["first_triangle"][leaf_indices]
        ends = starts + nodes["triangle_count"][leaf_indices]

        if starts[0] != 0 or ends[-1] != len(self.triangle_indices) or np.any(ends[:-1] != starts[1:]):
            for index in leaf_indices:
                node = nodes[index]
                node["bounds_min"], node["bounds_max"] = self._range_bounds(
                    int(node["first_triangle"]), int(node["triangle_count"])
                )
            return

        permuted_min = self._tri_min[self.triangle_indices]
        permuted_max = self._tri_max[self.triangle_indices]
        nodes["bounds_min"][leaf_indices] = np.minimum.reduceat(permuted_min, starts, axis=0)
        nodes["bounds_max"][leaf_indices] = np.maximum.reduceat(permuted_max, starts, axis=0)

    def intersect(
        self, nodes: BVHNodes, origin: npt.ArrayLike, direction: npt.ArrayLike
    ) -> tuple[bool, float]:
        """Nearest hit through the hierarchy (see intersection.intersect_bvh)."""
        self._check_built()
        return intersect_bvh(nodes, self.triangle_indices, self.store.triangles, origin, direction)

    def brute_force_intersect(self, origin: npt.ArrayLike, direction: npt.ArrayLike) -> tuple[bool, float]:
        """Nearest hit by scanning every triangle (validation oracle)."""
        self._check_built()
        return brute_force_intersect(self.store.triangles, origin, direction)

    def _check_built(self) -> None:
        if self.store is None:
            raise RuntimeError("BVH not built. Call build() first.")
