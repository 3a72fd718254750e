#!/usr/bin/env python3
"""Run an acoustic acquisition on a shoebox room.

This script drives the acquisition session end to end: it builds a room with
one obstacle, uploads the geometry and BVH to the Taichi device, and runs
realtime or reference acquisition, writing one CSV log per run.

The bounce-physics kernel is not part of this package, so the script uses a
synthetic stand-in dispatcher. It traces first-order paths from the source
with the device BVH and adds a Sabine-rate exponential tail, which is enough
to exercise first-reflection detection, RT60 estimation, refit of moving
geometry and both acquisition modes.

Usage:
    python -m examples.run_acquisition [options]

Options:
    --mode MODE             realtime or reference (default: realtime)
    --rays RAYS             Rays per dispatch (default: mode default)
    --frames FRAMES         Realtime frame budget (default: 300)
    --iterations N          Reference iterations (default: 50)
    --moving                Move the obstacle side to side during the run
    --validate              Validate the BVH against brute force first
    --log-dir DIR           Directory for CSV logs (default: logs)
    --quiet                 Only log warnings and errors

Example:
    python -m examples.run_acquisition --mode reference --iterations 10
"""

from __future__ import annotations

import argparse
import logging
import math
import sys
from collections.abc import Callable

import numpy as np
import taichi as ti

logger = logging.getLogger("run_acquisition")

ROOM_CORNER = (-4.0, -1.5, -2.5)
ROOM_SIZE = (8.0, 3.0, 5.0)
SOURCE_POSITION = (-2.0, 0.0, 0.5)
LISTENER_POSITION = (2.5, 0.2, -0.8)

# Maximum rays the stand-in traces per dispatch
MAX_PROBE_RAYS = 4096


def parse_args() -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Run an acoustic acquisition on a shoebox room.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--mode",
        choices=["realtime", "reference"],
        default="realtime",
        help="Acquisition mode (default: realtime)",
    )
    parser.add_argument(
        "--rays",
        type=int,
        default=None,
        help="Rays per dispatch (default: 10000 realtime, 100000 reference)",
    )
    parser.add_argument(
        "--frames",
        type=int,
        default=300,
        help="Realtime frame budget (default: 300)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=50,
        help="Reference iterations (default: 50)",
    )
    parser.add_argument(
        "--absorption",
        type=float,
        default=0.3,
        help="Average wall absorption coefficient (default: 0.3)",
    )
    parser.add_argument(
        "--moving",
        action="store_true",
        help="Move the obstacle side to side during the run",
    )
    parser.add_argument(
        "--validate",
        action="store_true",
        help="Validate the BVH against brute force before acquiring",
    )
    parser.add_argument(
        "--log-dir",
        type=str,
        default="logs",
        help="Directory for CSV logs (default: logs)",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only log warnings and errors",
    )
    return parser.parse_args()


class SyntheticReadback:
    """Readback that completes after a fixed number of polls."""

    def __init__(self, counts: np.ndarray, latency: int, on_complete: Callable | None) -> None:
        self._counts = counts
        self._remaining = latency
        self._on_complete = on_complete
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    @property
    def has_error(self) -> bool:
        return False

    def data(self) -> np.ndarray:
        return self._counts

    def poll(self) -> bool:
        self._remaining -= 1
        if self._remaining <= 0 and not self._done:
            self._done = True
            if self._on_complete is not None:
                self._on_complete(self)
        return self._done


class SyntheticDispatcher:
    """Stand-in compute kernel producing plausible impulse responses.

    Geometry uploads go to the Taichi device buffers. Each dispatch traces
    probe rays from the source through the device BVH; every hit contributes
    a first-order arrival at (|S - P| + |P - L|) / c, and a late tail decays
    at the Sabine rate of the uploaded room.
    """

    def __init__(self, absorption: float = 0.3, latency: int = 2) -> None:
        self.absorption = absorption
        self.latency = latency
        self._params = None
        self._energy = np.zeros(0, dtype=np.float64)
        self._triangles = np.zeros((0, 3, 3), dtype=np.float32)
        self._pending: list[SyntheticReadback] = []

    def upload_geometry(self, triangles, nodes, triangle_indices) -> None:
        from src.acoustic.device.buffers import upload_geometry

        upload_geometry(triangles, nodes, triangle_indices)
        self._triangles = np.array(triangles, dtype=np.float32)

    def set_params(self, params) -> None:
        self._params = params

    def reset_accumulation(self, template) -> None:
        self._energy = np.asarray(template, dtype=np.float64).copy()

    def sabine_rt60(self) -> float:
        lo = self._triangles.reshape(-1, 3).min(axis=0)
        hi = self._triangles.reshape(-1, 3).max(axis=0)
        volume = float(np.prod(hi - lo))
        edges1 = self._triangles[:, 1] - self._triangles[:, 0]
        edges2 = self._triangles[:, 2] - self._triangles[:, 0]
        area = float(0.5 * np.linalg.norm(np.cross(edges1, edges2), axis=1).sum())
        return 0.161 * volume / (area * self.absorption)

    def dispatch(self, frame_index: int, on_complete: Callable | None = None) -> SyntheticReadback:
        from src.acoustic.analysis.ir import ENERGY_SCALE
        from src.acoustic.device.kernels import trace
        from src.acoustic.geometry.validation import random_unit_vectors

        p = self._params
        rng = np.random.default_rng(frame_index)
        source = np.asarray(p.source_position, dtype=np.float64)
        listener = np.asarray(p.listener_position, dtype=np.float64)
        bin_s = p.bin_size_ms * 0.001
        energy = self._energy.copy()

        def deposit(path_lengths: np.ndarray, amounts: np.ndarray) -> None:
            bins = (path_lengths / p.speed_of_sound / bin_s).astype(np.int64)
            valid = bins < p.ir_bin_count
            np.add.at(energy, bins[valid], amounts[valid])

        direct = float(np.linalg.norm(listener - source))
        deposit(np.array([direct]), np.array([1.0]))

        probes = min(p.rays, MAX_PROBE_RAYS)
        directions = random_unit_vectors(probes, rng)
        hits, distances = trace(source, directions)
        points = source + directions[hits] * distances[hits, None]
        paths = distances[hits] + np.linalg.norm(listener - points, axis=1)
        reflected = (1.0 - self.absorption) * (direct / paths) ** 2 * (8.0 / max(probes, 1))
        deposit(paths, reflected)

        rt60 = self.sabine_rt60()
        t = np.arange(p.ir_bin_count) * bin_s
        onset = float(paths.min()) / p.speed_of_sound if paths.size else 0.0
        tail = 0.05 * np.exp(-math.log(1e6) * (t - onset) / rt60)
        tail *= rng.uniform(0.8, 1.2, p.ir_bin_count)
        energy += np.where(t >= onset, tail, 0.0)

        counts = np.minimum(np.round(energy * ENERGY_SCALE), np.iinfo(np.uint32).max).astype(np.uint32)
        readback = SyntheticReadback(counts, self.latency, on_complete)
        self._pending.append(readback)
        return readback

    def poll(self) -> None:
        """Advance in-flight dispatches, firing completion callbacks."""
        self._pending = [readback for readback in self._pending if not readback.poll()]

    def release(self) -> None:
        from src.acoustic.device.buffers import release_geometry

        self._pending.clear()
        release_geometry()


def run_acquisition(args: argparse.Namespace) -> int:
    """Build the scene and run one acquisition.

    Returns:
        Process exit code.
    """
    # Lazy imports to allow Taichi initialization first
    from src.acoustic.export.acoustic_log import CsvLogSink
    from src.acoustic.geometry.meshes import MeshGeometrySource, SideToSideMotion, box_mesh, box_room
    from src.acoustic.geometry.validation import validate_bvh
    from src.acoustic.session.config import AcquisitionMode, SessionConfig
    from src.acoustic.session.session import REALTIME_BVH_STRATEGY, REFERENCE_BVH_STRATEGY, AcquisitionSession

    room = box_room(ROOM_CORNER, ROOM_SIZE, name="room")
    obstacle = box_mesh((0.0, -0.5, 0.0), (0.6, 1.0, 0.6), name="obstacle")
    geometry = MeshGeometrySource([room, obstacle])
    motion = SideToSideMotion(obstacle, amplitude=1.0, speed=0.5) if args.moving else None

    mode = AcquisitionMode(args.mode)
    config = SessionConfig(
        scene_name="shoebox",
        mode=mode,
        realtime_frame_budget=args.frames,
        reference_max_iterations=args.iterations,
        source_position=SOURCE_POSITION,
        listener_position=LISTENER_POSITION,
    )
    if args.rays is not None:
        if mode is AcquisitionMode.REFERENCE:
            config.reference_rays = args.rays
        else:
            config.rays = args.rays

    reference = mode is AcquisitionMode.REFERENCE
    sink = CsvLogSink(
        args.log_dir,
        scene=config.scene_name,
        mode=mode.value,
        rays=config.reference_rays if reference else config.rays,
        bvh_strategy=REFERENCE_BVH_STRATEGY if reference else REALTIME_BVH_STRATEGY,
    )
    dispatcher = SyntheticDispatcher(absorption=args.absorption)
    session = AcquisitionSession(config, geometry, dispatcher, sink)

    session.start()
    if args.validate:
        report = validate_bvh(session.builder, session.nodes, SOURCE_POSITION, batches=5, rays_per_batch=200)
        if not report.passed:
            session.shutdown()
            return 1

    def idle() -> None:
        dispatcher.poll()
        if motion is not None:
            motion.step(1.0 / 60.0)

    ticks = session.run(idle=idle)
    logger.info("Acquisition finished after %d ticks; log written to %s", ticks, sink.path)

    if reference:
        if session.reference_record is None:
            return 1
        record = session.reference_record
        logger.info(
            "Reference result: first reflection %s ms, RT60 %s s (Sabine %.3f s)",
            record.first_reflection_ms,
            record.rt60_s,
            dispatcher.sabine_rt60(),
        )
    else:
        logger.info(
            "Last realtime frame: first reflection %s ms, RT60 %s s",
            session.last_first_reflection_ms,
            session.last_rt60_s,
        )
    return 0


def main() -> int:
    """Main entry point."""
    args = parse_args()
    logging.basicConfig(
        level=logging.WARNING if args.quiet else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    ti.init(arch=ti.cpu)

    try:
        return run_acquisition(args)
    except ValueError as e:
        logger.error("Error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
