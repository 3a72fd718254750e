"""Acquisition session state machine.

The session owns the triangle store, the BVH and the IR buffers for one
scene load and drives the external compute kernel in one of two modes:

    Realtime: one cheap ray batch per scheduler tick. A slower timer
        refreshes world-space triangles, recomputes bounds, refits the BVH
        and re-uploads it before the next dispatch. Results arrive through
        a completion callback and are analysed and logged per frame. The
        run terminates itself after a fixed frame budget.
    Reference: a bounded number of large ray batches. Each iteration
        clears the kernel's accumulation buffer, dispatches, waits for the
        result, decodes it and folds it into a running mean IR. At the end
        one summary record is logged and the host is asked to exit.

States:
    IDLE -> REALTIME | REFERENCE -> TERMINATED

Each mode runs as a generator ("cycle"); every ``yield`` is a cooperative
suspension point and tick() resumes the active cycle by one step. At most
one cycle is active: starting a mode closes the previous cycle and bumps
the session epoch. Realtime completions carry the epoch and frame index
they were issued under and are dropped if the epoch changed, the mode
changed, or the session was shut down.

Example:
    >>> session = AcquisitionSession(config, geometry, dispatcher, sink)
    >>> session.start()
    >>> session.run(idle=dispatcher.poll)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Generator
from enum import IntEnum

import numpy as np
import numpy.typing as npt

from src.acoustic.analysis.accumulator import IRAccumulator
from src.acoustic.analysis.ir import decode_ir, first_reflection_ms, rt60_seconds
from src.acoustic.export.acoustic_log import AcousticRecord
from src.acoustic.geometry.bvh import BVHBuilder, empty_nodes
from src.acoustic.geometry.triangles import TriangleStore
from src.acoustic.session.config import (
    AcquisitionMode,
    SessionConfig,
    SessionConfigError,
    workgroups_for,
)
from src.acoustic.session.interfaces import (
    ComputeDispatcher,
    DispatchParams,
    ExitSignal,
    GeometrySource,
    LogSink,
    Readback,
)

logger = logging.getLogger(__name__)

# BVH maintenance labels written to the log
REALTIME_BVH_STRATEGY = "refit"
REFERENCE_BVH_STRATEGY = "none"

Cycle = Generator[None, None, None]


class SessionMode(IntEnum):
    """Lifecycle state of an acquisition session."""

    IDLE = 0
    REALTIME = 1
    REFERENCE = 2
    TERMINATED = 3


class AcquisitionSession:
    """Explicitly owned acquisition context for one scene load.

    Attributes:
        config: Session settings.
        builder: BVH builder holding the triangle permutation.
        store: World-space triangles (None until start()).
        nodes: BVH node arena (empty until start()).
        frame_index: Last realtime frame dispatched.
        iteration: Current reference iteration.
        acoustic_updates: Number of slow refresh/refit/upload passes.
        stale_completions: Realtime completions dropped as superseded.
        failed_frames: Realtime completions dropped because they failed.
        last_first_reflection_ms / last_rt60_s: Most recent realtime
            metrics (None when not available).
        reference_record: Summary record of a completed reference run.
        reference_failed: Whether the reference run aborted on a failed
            readback.
        exit_requested: Whether the host has been asked to exit.
    """

    def __init__(
        self,
        config: SessionConfig,
        geometry: GeometrySource | None,
        dispatcher: ComputeDispatcher | None,
        log_sink: LogSink,
        exit_signal: ExitSignal | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.config = config
        self.geometry = geometry
        self.dispatcher = dispatcher
        self.log_sink = log_sink
        self._exit_signal = exit_signal
        self._clock = clock

        self._mode = SessionMode.IDLE
        self._alive = False
        self._epoch = 0
        self._cycle: Cycle | None = None

        self.builder = BVHBuilder()
        self.store: TriangleStore | None = None
        self.nodes = empty_nodes()

        self._source_position = tuple(config.source_position)
        self._listener_position = tuple(config.listener_position)

        self._clear_template = np.zeros(0, dtype=np.uint32)
        self._scratch_ir = np.zeros(0, dtype=np.float64)
        self._accumulator: IRAccumulator | None = None
        self._dispatch_times: dict[tuple[int, int], float] = {}

        self.frame_index = 0
        self.iteration = 0
        self.acoustic_updates = 0
        self.stale_completions = 0
        self.failed_frames = 0
        self.last_first_reflection_ms: float | None = None
        self.last_rt60_s: float | None = None
        self.reference_record: AcousticRecord | None = None
        self.reference_failed = False
        self.exit_requested = False

    # =========================================================================
    # State
    # =========================================================================

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def epoch(self) -> int:
        """Counter bumped whenever the active cycle is replaced or stopped."""
        return self._epoch

    @property
    def is_alive(self) -> bool:
        """True between a successful start() and shutdown()."""
        return self._alive

    @property
    def is_running(self) -> bool:
        """True while a realtime or reference cycle is active."""
        return self._cycle is not None

    @property
    def reference_mean_ir(self) -> npt.NDArray[np.float64]:
        """Running mean IR of the current or last reference run."""
        if self._accumulator is None:
            return np.zeros(self.config.ir_bin_count, dtype=np.float64)
        return self._accumulator.mean

    @property
    def reference_iterations_done(self) -> int:
        return 0 if self._accumulator is None else self._accumulator.count

    def set_source_position(self, position: tuple[float, float, float]) -> None:
        """Move the source; picked up by the next parameter upload."""
        self._source_position = tuple(float(v) for v in position)

    def set_listener_position(self, position: tuple[float, float, float]) -> None:
        """Move the listener; picked up by the next parameter upload."""
        self._listener_position = tuple(float(v) for v in position)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, mode: AcquisitionMode | str | None = None) -> None:
        """Set up geometry, BVH and kernel buffers, then enter a mode.

        Args:
            mode: Mode to enter; defaults to config.mode.

        Raises:
            SessionConfigError: If the configuration is invalid, no
                dispatcher or geometry source is assigned, or the geometry
                is empty. No mode is entered in that case.
            RuntimeError: If the session was already started or terminated.
        """
        if self._mode is SessionMode.TERMINATED:
            raise RuntimeError("Session has been terminated")
        if self._alive:
            raise RuntimeError("Session already started")

        requested = None
        if mode is not None:
            try:
                requested = AcquisitionMode(mode)
            except ValueError as err:
                raise SessionConfigError(f"Unknown acquisition mode: {mode!r}") from err

        self.config.validate()
        selected = requested if requested is not None else self.config.mode
        if self.dispatcher is None:
            raise SessionConfigError("Compute dispatcher is not assigned")
        if self.geometry is None:
            raise SessionConfigError("Geometry source is not assigned")

        store = TriangleStore(self.geometry.triangles())
        if store.is_empty:
            raise SessionConfigError("No triangles found; the compute kernel cannot be initialized")
        logger.info("Built %d world-space triangles from geometry", len(store))

        self.store = store
        self.nodes = self.builder.build(store)

        bin_count = self.config.ir_bin_count
        self._clear_template = np.zeros(bin_count, dtype=np.uint32)
        self._scratch_ir = np.zeros(bin_count, dtype=np.float64)
        self._accumulator = IRAccumulator(bin_count)

        self.dispatcher.upload_geometry(self.store.triangles, self.nodes, self.builder.triangle_indices)
        self.dispatcher.reset_accumulation(self._clear_template)
        self._alive = True

        if selected is AcquisitionMode.REFERENCE:
            self.start_reference()
        else:
            self.start_realtime()

    def start_realtime(self) -> None:
        """Stop any active cycle and begin realtime acquisition."""
        self._require_alive()
        self.stop_active()
        self._mode = SessionMode.REALTIME
        self._upload_params(self.config.rays, self.config.max_reflections)
        self._cycle = self._realtime_cycle(self._epoch)
        logger.info("Realtime acquisition started (%d rays, %d bounces)", self.config.rays, self.config.max_reflections)

    def start_reference(self) -> None:
        """Stop any active cycle and begin reference acquisition."""
        self._require_alive()
        self.stop_active()
        self._mode = SessionMode.REFERENCE
        self._upload_params(self.config.reference_rays, self.config.reference_max_reflections)
        self._cycle = self._reference_cycle()
        logger.info(
            "Reference acquisition started (%d rays, %d bounces, %d iterations)",
            self.config.reference_rays,
            self.config.reference_max_reflections,
            self.config.reference_max_iterations,
        )

    def stop_active(self) -> None:
        """Close the active cycle, invalidating its pending completions."""
        if self._cycle is not None:
            self._cycle.close()
            self._cycle = None
        self._epoch += 1
        self._dispatch_times.clear()
        if self._mode is not SessionMode.TERMINATED:
            self._mode = SessionMode.IDLE

    def shutdown(self) -> None:
        """Tear the session down. Safe to call more than once.

        Pending completions are ignored from here on, device buffers are
        released regardless of in-flight work and the log sink is closed.
        """
        if self._mode is SessionMode.TERMINATED:
            return
        self._alive = False
        self.stop_active()
        self._mode = SessionMode.TERMINATED
        if self.dispatcher is not None:
            self.dispatcher.release()
        self.log_sink.close()
        logger.info("Acquisition session shut down")

    def __enter__(self) -> AcquisitionSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    # =========================================================================
    # Scheduling
    # =========================================================================

    def tick(self) -> bool:
        """Advance the active cycle by one cooperative step.

        When the cycle finishes (frame budget reached, reference run done
        or aborted) the session shuts down and requests host exit.

        Returns:
            True while a cycle is still active.
        """
        if self._cycle is None:
            return False
        try:
            next(self._cycle)
        except StopIteration:
            self._cycle = None
            self.shutdown()
            self._request_exit()
            return False
        return True

    def run(self, max_ticks: int | None = None, idle: Callable[[], None] | None = None) -> int:
        """Drive tick() until the active cycle ends.

        Args:
            max_ticks: Optional cap on the number of ticks.
            idle: Called after every tick that leaves the cycle active,
                e.g. to pump dispatcher completions or sleep.

        Returns:
            Number of ticks executed.
        """
        ticks = 0
        while self.tick():
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if idle is not None:
                idle()
        return ticks

    def _request_exit(self) -> None:
        self.exit_requested = True
        if self._exit_signal is not None:
            self._exit_signal()

    def _require_alive(self) -> None:
        if not self._alive:
            raise RuntimeError("Session not started. Call start() first.")

    # =========================================================================
    # Kernel uploads
    # =========================================================================

    def _params(self, rays: int, max_bounces: int) -> DispatchParams:
        return DispatchParams(
            speed_of_sound=self.config.speed_of_sound,
            ir_bin_count=self.config.ir_bin_count,
            bin_size_ms=self.config.ir_bin_size_ms,
            rays=rays,
            max_bounces=max_bounces,
            source_position=self._source_position,
            listener_position=self._listener_position,
            listener_radius=self.config.listener_radius,
            triangle_count=len(self.store),
            node_count=len(self.nodes),
            workgroups=workgroups_for(rays),
        )

    def _upload_params(self, rays: int, max_bounces: int) -> None:
        self.dispatcher.set_params(self._params(rays, max_bounces))

    def _upload_mode_params(self) -> None:
        if self._mode is SessionMode.REFERENCE:
            self._upload_params(self.config.reference_rays, self.config.reference_max_reflections)
        else:
            self._upload_params(self.config.rays, self.config.max_reflections)

    def update_acoustic_state(self) -> None:
        """Slow update: refresh geometry, refit the BVH and re-upload.

        The order is fixed: world positions, triangle bounds, refit, then
        triangle/BVH/permutation upload, accumulation clear and the
        parameters of the active mode.
        """
        self._require_alive()
        self.store.update_positions(self.geometry.triangles())
        self.builder.recompute_triangle_bounds()
        self.builder.refit(self.nodes)

        self.dispatcher.upload_geometry(self.store.triangles, self.nodes, self.builder.triangle_indices)
        self.dispatcher.reset_accumulation(self._clear_template)
        self._upload_mode_params()
        self.acoustic_updates += 1

    # =========================================================================
    # Realtime mode
    # =========================================================================

    def _realtime_cycle(self, epoch: int) -> Cycle:
        config = self.config
        self._scratch_ir.fill(0.0)
        self.frame_index = 0
        next_update = self._clock()

        while True:
            self.frame_index += 1
            frame = self.frame_index

            if self._clock() >= next_update:
                self.update_acoustic_state()
                next_update = self._clock() + config.acoustic_update_interval

            self._dispatch_times[(epoch, frame)] = self._clock()
            self.dispatcher.dispatch(frame, on_complete=self._realtime_completion(epoch, frame))

            if config.update_every_frame:
                yield
            else:
                resume_at = self._clock() + config.acoustic_update_interval
                yield
                while self._clock() < resume_at:
                    yield

            if self.frame_index >= config.realtime_frame_budget:
                logger.info("Realtime frame budget of %d frames reached", config.realtime_frame_budget)
                return

    def _realtime_completion(self, epoch: int, frame: int) -> Callable[[Readback], None]:
        def on_complete(readback: Readback) -> None:
            self._handle_realtime_readback(epoch, frame, readback)

        return on_complete

    def _handle_realtime_readback(self, epoch: int, frame: int, readback: Readback) -> None:
        started = self._dispatch_times.pop((epoch, frame), None)
        if not self._alive or self._mode is not SessionMode.REALTIME or epoch != self._epoch:
            self.stale_completions += 1
            return
        if readback.has_error:
            self.failed_frames += 1
            logger.debug("Skipping failed realtime readback for frame %d", frame)
            return

        config = self.config
        self._scratch_ir[:] = decode_ir(readback.data(), config.energy_scale, config.ir_bin_count)
        self.last_first_reflection_ms = first_reflection_ms(self._scratch_ir, config.ir_bin_size_ms)
        self.last_rt60_s = rt60_seconds(self._scratch_ir, config.ir_bin_size_ms)
        frame_time_ms = None if started is None else (self._clock() - started) * 1000.0

        self.log_sink.log(
            AcousticRecord(
                scene=config.scene_name,
                mode=AcquisitionMode.REALTIME.value,
                frame_idx=frame,
                rays=config.rays,
                max_reflections=config.max_reflections,
                bvh_strategy=REALTIME_BVH_STRATEGY,
                frame_time_ms=frame_time_ms,
                first_reflection_ms=self.last_first_reflection_ms,
                rt60_s=self.last_rt60_s,
            )
        )

    # =========================================================================
    # Reference mode
    # =========================================================================

    def _reference_cycle(self) -> Cycle:
        config = self.config
        accumulator = self._accumulator
        accumulator.reset()
        self.reference_record = None
        self.reference_failed = False
        previous_rt60: float | None = None

        for iteration in range(config.reference_max_iterations):
            self.iteration = iteration
            self.dispatcher.reset_accumulation(self._clear_template)
            readback = self.dispatcher.dispatch(iteration)

            while not readback.done:
                yield

            if readback.has_error:
                logger.error("GPU readback error in reference run (iteration %d)", iteration)
                self.reference_failed = True
                return

            snapshot = decode_ir(readback.data(), config.energy_scale, config.ir_bin_count)
            mean_ir = accumulator.add(snapshot)
            current_rt60 = rt60_seconds(mean_ir, config.ir_bin_size_ms)

            if config.convergence.converged(previous_rt60, current_rt60):
                logger.info("Reference converged at iteration %d", iteration)
                break

            previous_rt60 = current_rt60
            yield

        mean_ir = accumulator.mean
        self.reference_record = AcousticRecord(
            scene=config.scene_name,
            mode=AcquisitionMode.REFERENCE.value,
            frame_idx=0,
            rays=config.reference_rays,
            max_reflections=config.reference_max_reflections,
            bvh_strategy=REFERENCE_BVH_STRATEGY,
            frame_time_ms=None,
            first_reflection_ms=first_reflection_ms(mean_ir, config.ir_bin_size_ms),
            rt60_s=rt60_seconds(mean_ir, config.ir_bin_size_ms),
        )
        self.log_sink.log(self.reference_record)
        logger.info(
            "Reference run completed correctly after %d iterations (rt60=%s s)",
            accumulator.count,
            self.reference_record.rt60_s,
        )
