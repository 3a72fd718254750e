"""Mesh instances and world-space triangle extraction.

A scene is described as a list of mesh instances, each with local vertices,
a flat triangle index list and a 4x4 local-to-world transform (position,
rotation and scale). World-space triangles are produced by transforming every
referenced vertex through its instance transform, in instance order, so the
triangle count and ordering only depend on the meshes themselves. Moving an
instance changes positions but never the count, which is what allows the
BVH to be refit instead of rebuilt.

Example:
    >>> from src.acoustic.geometry.meshes import MeshGeometrySource, box_room
    >>> source = MeshGeometrySource([box_room((0, 0, 0), (8, 3, 5))])
    >>> triangles = source.triangles()  # (12, 3, 3)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field

import numpy as np
import numpy.typing as npt

logger = logging.getLogger(__name__)


def translation_matrix(offset: tuple[float, float, float]) -> npt.NDArray[np.float64]:
    """Build a 4x4 translation matrix."""
    matrix = np.eye(4)
    matrix[:3, 3] = offset
    return matrix


@dataclass
class MeshInstance:
    """A mesh placed in the world.

    Attributes:
        vertices: Local-space vertex positions, shape (V, 3).
        indices: Flat triangle index list, length divisible by 3.
        transform: 4x4 local-to-world matrix.
        name: Optional label used in log messages.
    """

    vertices: npt.NDArray[np.float64]
    indices: npt.NDArray[np.int64]
    transform: npt.NDArray[np.float64] = field(default_factory=lambda: np.eye(4))
    name: str = ""

    def __post_init__(self) -> None:
        self.vertices = np.asarray(self.vertices, dtype=np.float64).reshape(-1, 3)
        self.indices = np.asarray(self.indices, dtype=np.int64).reshape(-1)
        self.transform = np.asarray(self.transform, dtype=np.float64)
        if self.indices.size % 3 != 0:
            raise ValueError(f"Mesh '{self.name}' index count {self.indices.size} is not a multiple of 3")
        if self.transform.shape != (4, 4):
            raise ValueError(f"Mesh '{self.name}' transform must be 4x4, got {self.transform.shape}")

    @property
    def triangle_count(self) -> int:
        return self.indices.size // 3

    @property
    def position(self) -> npt.NDArray[np.float64]:
        """World translation component of the transform."""
        return self.transform[:3, 3].copy()

    def set_position(self, position: npt.ArrayLike) -> None:
        """Replace the translation component, keeping rotation and scale."""
        self.transform[:3, 3] = np.asarray(position, dtype=np.float64)

    def world_triangles(self) -> npt.NDArray[np.float32]:
        """Transform the mesh into world-space triangles, shape (T, 3, 3)."""
        homogeneous = np.hstack([self.vertices, np.ones((self.vertices.shape[0], 1))])
        world = (homogeneous @ self.transform.T)[:, :3]
        return world[self.indices].reshape(-1, 3, 3).astype(np.float32)


def build_world_triangles(meshes: list[MeshInstance]) -> npt.NDArray[np.float32]:
    """Concatenate the world-space triangles of all meshes.

    Meshes without triangles are skipped. Returns an empty (0, 3, 3) array
    when there is nothing to collect.
    """
    parts = [mesh.world_triangles() for mesh in meshes if mesh.triangle_count > 0]
    if not parts:
        return np.zeros((0, 3, 3), dtype=np.float32)
    return np.concatenate(parts, axis=0)


class MeshGeometrySource:
    """Geometry source backed by a list of mesh instances.

    Every call to triangles() re-derives world positions from the current
    instance transforms, so callers must re-query after moving a mesh and
    before refitting.
    """

    def __init__(self, meshes: list[MeshInstance]) -> None:
        self.meshes = list(meshes)
        self._triangle_count = sum(mesh.triangle_count for mesh in self.meshes)
        logger.info(
            "Collected %d meshes with %d world-space triangles",
            len(self.meshes),
            self._triangle_count,
        )

    def triangles(self) -> npt.NDArray[np.float32]:
        return build_world_triangles(self.meshes)


def box_room(
    corner: tuple[float, float, float],
    size: tuple[float, float, float],
    name: str = "room",
) -> MeshInstance:
    """Shoebox room as 6 wall quads (12 triangles).

    Args:
        corner: Minimum corner of the room in world space.
        size: Room extent along x, y and z.
        name: Mesh label.

    Returns:
        A MeshInstance whose local vertices span [0, size] and whose
        transform translates them to ``corner``.
    """
    sx, sy, sz = size
    vertices = np.array(
        [
            [0.0, 0.0, 0.0],
            [sx, 0.0, 0.0],
            [sx, sy, 0.0],
            [0.0, sy, 0.0],
            [0.0, 0.0, sz],
            [sx, 0.0, sz],
            [sx, sy, sz],
            [0.0, sy, sz],
        ]
    )
    # One quad per wall; ray tests are two-sided so winding is not significant
    indices = np.array(
        [
            0, 1, 5, 0, 5, 4,  # floor (y = 0)
            3, 7, 6, 3, 6, 2,  # ceiling (y = sy)
            0, 4, 7, 0, 7, 3,  # x = 0
            1, 2, 6, 1, 6, 5,  # x = sx
            0, 3, 2, 0, 2, 1,  # z = 0
            4, 5, 6, 4, 6, 7,  # z = sz
        ]
    )
    return MeshInstance(vertices, indices, translation_matrix(corner), name=name)


def box_mesh(
    center: tuple[float, float, float],
    half_extent: tuple[float, float, float],
    name: str = "box",
) -> MeshInstance:
    """Closed axis-aligned box centred on ``center`` (12 triangles)."""
    hx, hy, hz = half_extent
    room = box_room((-hx, -hy, -hz), (2 * hx, 2 * hy, 2 * hz), name=name)
    room.vertices += room.transform[:3, 3]
    room.transform = translation_matrix(center)
    return room


@dataclass
class SideToSideMotion:
    """Sinusoidal side-to-side motion along the world x axis.

    The phase advances by ``dt * speed / amplitude`` per step and the mesh is
    placed at ``start + (sin(phase) * amplitude, 0, 0)``.

    Attributes:
        mesh: The instance being moved.
        amplitude: Peak displacement in metres.
        speed: Peak speed in metres per second.
    """

    mesh: MeshInstance
    amplitude: float = 1.0
    speed: float = 0.5
    phase: float = 0.0
    start: npt.NDArray[np.float64] | None = None

    def __post_init__(self) -> None:
        if self.amplitude <= 0.0:
            raise ValueError(f"amplitude must be positive, got {self.amplitude}")
        if self.start is None:
            self.start = self.mesh.position

    def reset(self) -> None:
        self.phase = 0.0
        self.mesh.set_position(self.start)

    def step(self, dt: float) -> float:
        """Advance the motion by ``dt`` seconds and return the x offset."""
        self.phase += dt * self.speed / self.amplitude
        offset = math.sin(self.phase) * self.amplitude
        self.mesh.set_position(self.start + np.array([offset, 0.0, 0.0]))
        return offset
