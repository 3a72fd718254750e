"""Tests for mesh instances, world-space extraction and motion."""

import math

import numpy as np
import pytest

from src.acoustic.geometry.meshes import (
    MeshGeometrySource,
    MeshInstance,
    SideToSideMotion,
    box_mesh,
    box_room,
    build_world_triangles,
    translation_matrix,
)


class TestMeshInstance:
    """Test MeshInstance transforms."""

    def test_world_triangles_apply_transform(self):
        """Test that local vertices are moved by the instance transform."""
        mesh = MeshInstance(
            vertices=[[0, 0, 0], [1, 0, 0], [0, 1, 0]],
            indices=[0, 1, 2],
            transform=translation_matrix((1.0, 2.0, 3.0)),
        )
        world = mesh.world_triangles()
        assert world.shape == (1, 3, 3)
        np.testing.assert_allclose(world[0, 1], [2.0, 2.0, 3.0])

    def test_rotation_and_scale(self):
        """Test that the full 4x4 matrix is applied, not only the translation."""
        transform = np.diag([2.0, 2.0, 2.0, 1.0])
        transform[:3, :3] = np.array([[0, -2, 0], [2, 0, 0], [0, 0, 2]])
        mesh = MeshInstance([[1, 0, 0], [0, 0, 0], [0, 0, 1]], [0, 1, 2], transform)
        np.testing.assert_allclose(mesh.world_triangles()[0, 0], [0.0, 2.0, 0.0], atol=1e-6)

    def test_rejects_bad_indices(self):
        """Test that index lists must describe whole triangles."""
        with pytest.raises(ValueError, match="multiple of 3"):
            MeshInstance([[0, 0, 0], [1, 0, 0]], [0, 1])

    def test_set_position(self):
        """Test that set_position replaces the translation."""
        mesh = box_room((0, 0, 0), (1, 1, 1))
        mesh.set_position((5.0, 0.0, 0.0))
        np.testing.assert_allclose(mesh.position, [5.0, 0.0, 0.0])
        assert mesh.world_triangles()[..., 0].min() == pytest.approx(5.0)


class TestBuilders:
    """Test room and box builders."""

    def test_box_room_spans_size(self):
        """Test that a shoebox room has 12 triangles spanning its extent."""
        room = box_room((-1.0, 0.0, -2.0), (2.0, 3.0, 4.0))
        tris = room.world_triangles()
        assert tris.shape == (12, 3, 3)
        flat = tris.reshape(-1, 3)
        np.testing.assert_allclose(flat.min(axis=0), [-1.0, 0.0, -2.0])
        np.testing.assert_allclose(flat.max(axis=0), [1.0, 3.0, 2.0])

    def test_box_room_walls_are_axis_aligned(self):
        """Test that every triangle lies in one wall plane."""
        tris = box_room((0, 0, 0), (2.0, 3.0, 4.0)).world_triangles()
        for tri in tris:
            extent = tri.max(axis=0) - tri.min(axis=0)
            assert np.count_nonzero(extent == 0.0) == 1

    def test_box_mesh_centered(self):
        """Test that box_mesh is centred on its position."""
        box = box_mesh((1.0, 1.0, 1.0), (0.5, 0.25, 0.5))
        flat = box.world_triangles().reshape(-1, 3)
        np.testing.assert_allclose(flat.min(axis=0), [0.5, 0.75, 0.5])
        np.testing.assert_allclose(flat.max(axis=0), [1.5, 1.25, 1.5])
        np.testing.assert_allclose(box.position, [1.0, 1.0, 1.0])

    def test_build_world_triangles_concatenates(self):
        """Test that meshes are concatenated in order."""
        room = box_room((0, 0, 0), (4, 4, 4))
        box = box_mesh((2, 2, 2), (0.5, 0.5, 0.5))
        tris = build_world_triangles([room, box])
        assert tris.shape == (24, 3, 3)
        np.testing.assert_allclose(tris[12:], box.world_triangles())

    def test_build_world_triangles_empty(self):
        """Test that no meshes give an empty array."""
        assert build_world_triangles([]).shape == (0, 3, 3)


class TestMeshGeometrySource:
    """Test the mesh-backed geometry source."""

    def test_triangles_follow_motion(self):
        """Test that triangles are re-derived after moving a mesh, keeping the count."""
        room = box_room((0, 0, 0), (4, 4, 4))
        box = box_mesh((2, 2, 2), (0.5, 0.5, 0.5))
        source = MeshGeometrySource([room, box])

        before = source.triangles()
        box.set_position((3.0, 2.0, 2.0))
        after = source.triangles()

        assert before.shape == after.shape
        np.testing.assert_allclose(after[:12], before[:12])
        np.testing.assert_allclose(after[12:] - before[12:], np.broadcast_to([1.0, 0.0, 0.0], (12, 3, 3)))


class TestSideToSideMotion:
    """Test sinusoidal side-to-side motion."""

    def test_step_offsets_along_x(self):
        """Test that the offset is sin(phase) * amplitude with phase += dt * speed / amplitude."""
        box = box_mesh((1.0, 0.0, 0.0), (0.5, 0.5, 0.5))
        motion = SideToSideMotion(box, amplitude=2.0, speed=1.0)

        offset = motion.step(1.0)

        assert offset == pytest.approx(2.0 * math.sin(0.5))
        np.testing.assert_allclose(box.position, [1.0 + offset, 0.0, 0.0])

    def test_reset_restores_start(self):
        """Test that reset returns the mesh to its start position."""
        box = box_mesh((1.0, 0.0, 0.0), (0.5, 0.5, 0.5))
        motion = SideToSideMotion(box)
        motion.step(0.3)
        motion.reset()
        assert motion.phase == 0.0
        np.testing.assert_allclose(box.position, [1.0, 0.0, 0.0])

    def test_rejects_non_positive_amplitude(self):
        """Test that amplitude must be positive."""
        with pytest.raises(ValueError, match="amplitude"):
            SideToSideMotion(box_mesh((0, 0, 0), (1, 1, 1)), amplitude=0.0)
