"""Running-mean accumulation of impulse response snapshots.

Reference acquisition fires many independent ray batches and averages the
decoded IR of each one. The accumulator keeps the running sum and the
iteration count; its mean is always ``sum / count``, so after n snapshots it
equals the arithmetic mean of those n snapshots at every bin.

Example:
    >>> from src.acoustic.analysis.accumulator import IRAccumulator
    >>> acc = IRAccumulator(bin_count=1000)
    >>> for snapshot in snapshots:
    ...     acc.add(snapshot)
    >>> mean_ir = acc.mean
"""

from __future__ import annotations

import numpy as np
import numpy.typing as npt


class IRAccumulator:
    """Accumulates IR snapshots and exposes their running mean."""

    def __init__(self, bin_count: int) -> None:
        if bin_count <= 0:
            raise ValueError(f"bin_count must be positive, got {bin_count}")
        self._bin_count = bin_count
        self._sum = np.zeros(bin_count, dtype=np.float64)
        self._mean = np.zeros(bin_count, dtype=np.float64)
        self._count = 0

    @property
    def bin_count(self) -> int:
        return self._bin_count

    @property
    def count(self) -> int:
        """Number of snapshots accumulated since the last reset."""
        return self._count

    @property
    def mean(self) -> npt.NDArray[np.float64]:
        """Running mean IR (all zeros before the first snapshot).

        The returned array is a copy; mutating it does not affect the
        accumulator.
        """
        return self._mean.copy()

    def reset(self) -> None:
        """Discard all accumulated snapshots."""
        self._sum.fill(0.0)
        self._mean.fill(0.0)
        self._count = 0

    def add(self, snapshot: npt.ArrayLike) -> npt.NDArray[np.float64]:
        """Add one snapshot and return the updated running mean.

        Raises:
            ValueError: If the snapshot length differs from bin_count.
        """
        values = np.asarray(snapshot, dtype=np.float64).reshape(-1)
        if values.size != self._bin_count:
            raise ValueError(f"Snapshot has {values.size} bins, expected {self._bin_count}")

        self._sum += values
        self._count += 1
        np.divide(self._sum, self._count, out=self._mean)
        return self.mean

    def __repr__(self) -> str:
        return f"IRAccumulator(bin_count={self._bin_count}, count={self._count})"
