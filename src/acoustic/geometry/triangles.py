"""World-space triangle store.

The store holds every acoustic triangle of the scene as a single float32
array of shape (N, 3, 3), indexed as ``[triangle, vertex, xyz]``. The shape
is fixed once the scene is loaded; only vertex positions change between
acoustic updates (moving geometry), so the BVH topology built over it stays
valid and can be refit.

The same array, flattened to vertex triples, is what gets uploaded to the
compute kernel.

Example:
    >>> import numpy as np
    >>> from src.acoustic.geometry.triangles import TriangleStore
    >>> store = TriangleStore(np.array([[[0, 0, 0], [1, 0, 0], [0, 1, 0]]]))
    >>> lo, hi = store.bounds()
"""

from __future__ import annotations

import numpy as np
import numpy.typing as npt

Float3Array = npt.NDArray[np.float32]


def as_triangle_array(triangles: npt.ArrayLike) -> Float3Array:
    """Coerce triangle data to a contiguous (N, 3, 3) float32 array.

    Args:
        triangles: Anything numpy can turn into an (N, 3, 3) array. A flat
            sequence of vertex triples (N*9 values) is accepted too.

    Returns:
        A new contiguous float32 array of shape (N, 3, 3).

    Raises:
        ValueError: If the data cannot be interpreted as triangles.
    """
    array = np.array(triangles, dtype=np.float32)
    if array.ndim == 1:
        if array.size % 9 != 0:
            raise ValueError(f"Flat triangle buffer length {array.size} is not a multiple of 9")
        array = array.reshape(-1, 3, 3)
    if array.size == 0:
        return np.zeros((0, 3, 3), dtype=np.float32)
    if array.ndim != 3 or array.shape[1:] != (3, 3):
        raise ValueError(f"Expected triangles of shape (N, 3, 3), got {array.shape}")
    return np.ascontiguousarray(array)


def triangle_bounds(triangles: Float3Array) -> tuple[Float3Array, Float3Array]:
    """Per-triangle axis-aligned bounds.

    Returns:
        Tuple of (mins, maxs), each of shape (N, 3).
    """
    return triangles.min(axis=1), triangles.max(axis=1)


def triangle_centroids(triangles: Float3Array) -> Float3Array:
    """Vertex-average centroid of each triangle, shape (N, 3)."""
    return triangles.mean(axis=1)


class TriangleStore:
    """Fixed-count array of world-space triangles with mutable positions.

    Attributes:
        triangles: The (N, 3, 3) float32 vertex array. Mutated in place by
            update_positions() so that views held by other components stay
            current.
    """

    def __init__(self, triangles: npt.ArrayLike) -> None:
        self.triangles = as_triangle_array(triangles)

    def __len__(self) -> int:
        return int(self.triangles.shape[0])

    @property
    def count(self) -> int:
        """Number of triangles in the store."""
        return len(self)

    @property
    def is_empty(self) -> bool:
        return len(self) == 0

    def update_positions(self, triangles: npt.ArrayLike) -> None:
        """Overwrite vertex positions in place.

        Args:
            triangles: New positions with exactly the same triangle count.

        Raises:
            ValueError: If the triangle count differs from the stored one.
                The store never changes shape after construction.
        """
        new = as_triangle_array(triangles)
        if new.shape != self.triangles.shape:
            raise ValueError(
                f"Triangle count changed from {len(self)} to {new.shape[0]}; "
                "rebuild the store and BVH instead of updating positions"
            )
        self.triangles[...] = new

    def translate(self, offset: npt.ArrayLike) -> None:
        """Move every triangle by the same offset vector."""
        self.triangles += np.asarray(offset, dtype=np.float32).reshape(1, 1, 3)

    def bounds(self) -> tuple[Float3Array, Float3Array]:
        """Scene bounds as (min, max) over all triangles.

        Raises:
            ValueError: If the store is empty.
        """
        if self.is_empty:
            raise ValueError("Cannot compute bounds of an empty triangle store")
        flat = self.triangles.reshape(-1, 3)
        return flat.min(axis=0), flat.max(axis=0)

    def flat(self) -> Float3Array:
        """Flat upload view of vertex triples, shape (N * 9,)."""
        return self.triangles.reshape(-1)

    def __repr__(self) -> str:
        return f"TriangleStore(count={len(self)})"
