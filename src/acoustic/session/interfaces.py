"""Contracts between the acquisition session and its collaborators.

The session never talks to a GPU, a scene graph or a file directly; it uses
these interfaces instead:

    ComputeDispatcher: receives geometry/BVH uploads and scalar parameters,
        launches ray batches and hands back Readback handles.
    Readback: asynchronous result of one dispatch (fixed-point energy
        counters, one per IR bin).
    GeometrySource: supplies the current world-space triangles.
    LogSink: accepts AcousticRecord rows (see export.acoustic_log).

Any environment can implement them on top of its own task and timer
primitives.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
import numpy.typing as npt

from src.acoustic.export.acoustic_log import AcousticRecord


@dataclass(frozen=True)
class DispatchParams:
    """Scalar parameters bound to the kernel before dispatching.

    Attributes:
        speed_of_sound: m/s.
        ir_bin_count: Number of IR bins the kernel writes.
        bin_size_ms: IR bin width.
        rays: Rays per dispatch.
        max_bounces: Bounce limit per ray.
        source_position: Emitter position.
        listener_position: Receiver sphere centre.
        listener_radius: Receiver sphere radius.
        triangle_count: Triangles in the uploaded buffer.
        node_count: Nodes in the uploaded BVH buffer.
        workgroups: Workgroups to launch (ceil(rays / 64)).
    """

    speed_of_sound: float
    ir_bin_count: int
    bin_size_ms: float
    rays: int
    max_bounces: int
    source_position: tuple[float, float, float]
    listener_position: tuple[float, float, float]
    listener_radius: float
    triangle_count: int
    node_count: int
    workgroups: int


@runtime_checkable
class Readback(Protocol):
    """Handle to an in-flight dispatch result."""

    @property
    def done(self) -> bool: ...

    @property
    def has_error(self) -> bool: ...

    def data(self) -> npt.NDArray[np.uint32]: ...


CompletionCallback = Callable[[Readback], None]


@runtime_checkable
class ComputeDispatcher(Protocol):
    """External compute kernel.

    upload_geometry() and set_params() are only called between dispatches;
    a dispatch snapshot is immutable once issued.
    """

    def upload_geometry(
        self,
        triangles: npt.NDArray[np.float32],
        nodes: npt.NDArray[np.void],
        triangle_indices: npt.NDArray[np.int32],
    ) -> None: ...

    def set_params(self, params: DispatchParams) -> None: ...

    def reset_accumulation(self, template: npt.NDArray[np.uint32]) -> None: ...

    def dispatch(self, frame_index: int, on_complete: CompletionCallback | None = None) -> Readback: ...

    def release(self) -> None: ...


@runtime_checkable
class GeometrySource(Protocol):
    """Supplier of world-space triangles, shape (N, 3, 3)."""

    def triangles(self) -> npt.ArrayLike: ...


@runtime_checkable
class LogSink(Protocol):
    """Destination of measurement records."""

    def log(self, record: AcousticRecord) -> None: ...

    def close(self) -> None: ...


ExitSignal = Callable[[], None]
