"""Pytest configuration for acoustic ray-tracing tests.

This module provides shared fixtures for all test modules, including
Taichi initialization which must happen once per session, and the fake
collaborators used by the acquisition session tests.
"""

import numpy as np
import pytest
import taichi as ti

from src.acoustic.export.acoustic_log import MemoryLogSink
from src.acoustic.geometry.meshes import MeshGeometrySource, box_room
from fakes import FakeDispatcher, ManualClock


@pytest.fixture(scope="session", autouse=True)
def init_taichi_session():
    """Initialize Taichi once for the entire test session.

    Using session scope prevents multiple ti.init() calls which can cause
    segmentation faults due to Taichi runtime conflicts.
    """
    ti.init(arch=ti.cpu, random_seed=42)
    yield


@pytest.fixture
def device_geometry():
    """Release device geometry after a test that uploads it."""
    from src.acoustic.device.buffers import release_geometry

    yield
    release_geometry()


@pytest.fixture
def room_source():
    """8 x 3 x 5 m shoebox room as a geometry source (12 triangles)."""
    return MeshGeometrySource([box_room((-4.0, -1.5, -2.5), (8.0, 3.0, 5.0))])


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def sink():
    return MemoryLogSink()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
