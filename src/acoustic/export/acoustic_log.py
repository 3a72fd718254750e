"""Acoustic measurement records and log sinks.

Each realtime frame or reference run produces one AcousticRecord. Sinks
accept records and are closed when the session ends:

    - CsvLogSink: one CSV file per run, named after the scene, mode, ray
      count, BVH strategy and start time.
    - MemoryLogSink: keeps records in a list (tests, notebooks).

Missing metrics (no first reflection, no RT60, no frame time) are carried as
None and written as ``nan``.

Example:
    >>> from src.acoustic.export.acoustic_log import CsvLogSink
    >>> sink = CsvLogSink("logs", scene="shoebox", mode="realtime", rays=10000,
    ...                   bvh_strategy="refit")
    >>> sink.log(record)
    >>> sink.close()
"""

from __future__ import annotations

import csv
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "scene",
    "mode",
    "frame_idx",
    "rays",
    "max_reflections",
    "bvh_strategy",
    "frame_time_ms",
    "first_reflection_ms",
    "rt60_s",
)


def format_metric(value: float | None) -> str:
    """Four-decimal fixed point, ``nan`` for missing or non-finite values."""
    if value is None or math.isnan(value):
        return "nan"
    return f"{value:.4f}"


@dataclass(frozen=True)
class AcousticRecord:
    """One logged measurement.

    Attributes:
        scene: Scene identifier.
        mode: "realtime" or "reference".
        frame_idx: Frame (realtime) or run (reference) index.
        rays: Rays per dispatch.
        max_reflections: Maximum bounce count per ray.
        bvh_strategy: How the BVH is maintained ("refit", "none", ...).
        frame_time_ms: Dispatch-to-readback time, None if not measured.
        first_reflection_ms: First reflection time, None if not found.
        rt60_s: RT60 in seconds, None if not estimable.
    """

    scene: str
    mode: str
    frame_idx: int
    rays: int
    max_reflections: int
    bvh_strategy: str
    frame_time_ms: float | None = None
    first_reflection_ms: float | None = None
    rt60_s: float | None = None

    def as_row(self) -> list[str]:
        return [
            self.scene,
            self.mode,
            str(self.frame_idx),
            str(self.rays),
            str(self.max_reflections),
            self.bvh_strategy,
            format_metric(self.frame_time_ms),
            format_metric(self.first_reflection_ms),
            format_metric(self.rt60_s),
        ]


def log_file_name(scene: str, mode: str, rays: int, bvh_strategy: str, timestamp: datetime) -> str:
    """File name encoding the run parameters and start time."""
    stamp = timestamp.strftime("%Y-%m-%d_%H-%M-%S")
    return f"AcousticLog_scene={scene}_mode={mode}_rays={rays}_bvh={bvh_strategy}_time={stamp}.csv"


class MemoryLogSink:
    """Sink that keeps records in memory."""

    def __init__(self) -> None:
        self.records: list[AcousticRecord] = []
        self.closed = False

    def log(self, record: AcousticRecord) -> None:
        if self.closed:
            return
        self.records.append(record)

    def close(self) -> None:
        self.closed = True


class CsvLogSink:
    """Sink writing one CSV row per record.

    The file is created (with its header) on construction and flushed on
    close(). Records logged after close() are dropped.

    Attributes:
        path: Full path of the CSV file.
    """

    def __init__(
        self,
        directory: str | Path,
        scene: str,
        mode: str,
        rays: int,
        bvh_strategy: str,
        timestamp: datetime | None = None,
    ) -> None:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        self.path = directory / log_file_name(scene, mode, rays, bvh_strategy, timestamp or datetime.now())

        self._file = open(self.path, "w", newline="", encoding="utf-8")
        self._writer = csv.writer(self._file)
        self._writer.writerow(CSV_HEADER)
        logger.info("[AcousticLogger] Logging to %s", self.path)

    @property
    def closed(self) -> bool:
        return self._file.closed

    def log(self, record: AcousticRecord) -> None:
        if self._file.closed:
            return
        self._writer.writerow(record.as_row())

    def flush(self) -> None:
        if not self._file.closed:
            self._file.flush()

    def close(self) -> None:
        if self._file.closed:
            return
        self._file.flush()
        self._file.close()
        logger.info("[AcousticLogger] Closed log file")
